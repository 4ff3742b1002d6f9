"""Error taxonomy for the theme extraction engine."""
from __future__ import annotations

from typing import Any


class ThemeExtractionError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(ThemeExtractionError):
    """Invalid request or configuration, raised before any work starts."""


class ProviderError(ThemeExtractionError):
    """A remote text or embedding provider call failed."""

    def __init__(self, message: str, *, provider: str = "unknown"):
        super().__init__(message)
        self.provider = provider


class ProviderUnavailableError(ProviderError):
    """The provider's circuit is open; the call was not attempted."""

    def __init__(self, message: str, *, provider: str = "unknown", retry_in_seconds: float = 0.0):
        super().__init__(message, provider=provider)
        self.retry_in_seconds = retry_in_seconds


class ProviderCallError(ProviderError):
    """The provider kept failing after every retry."""


class SourceExtractionError(ThemeExtractionError):
    """A single source could not be processed."""

    def __init__(self, message: str, *, source_id: str, stage: str = "coding"):
        super().__init__(message)
        self.source_id = source_id
        self.stage = stage


class PipelineInvariantError(ThemeExtractionError):
    """Internal consistency check failed; the run result cannot be trusted."""

    def __init__(self, message: str, *, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class ExtractionCancelledError(ThemeExtractionError):
    """The run was cancelled and partial results were not requested."""
