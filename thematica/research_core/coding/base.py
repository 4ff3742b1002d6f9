from __future__ import annotations

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass

from thematica.errors import ConfigurationError
from thematica.models.purpose import PurposeProfile
from thematica.models.themes import InitialCode, SourceContent


@dataclass(frozen=True, slots=True)
class CodeTarget:
    minimum: int
    maximum: int
    purpose: str = "qualitative_analysis"
    focus: str = "balanced"

    def __post_init__(self) -> None:
        if self.minimum < 1 or self.minimum > self.maximum:
            raise ConfigurationError(f"Invalid code target {self.minimum}-{self.maximum}")

    @classmethod
    def for_profile(cls, profile: PurposeProfile) -> "CodeTarget":
        return cls(profile.codes_min, profile.codes_max, profile.name, profile.focus)


def code_id(source_id: str, label: str, position: int) -> str:
    digest = hashlib.sha1(f"{source_id}|{label.lower()}|{position}".encode("utf-8")).hexdigest()
    return f"code_{digest[:16]}"


class CodeExtractionStrategy(ABC):
    """Turns one source into codes. Implementations return codes in a stable order."""

    name = "base"
    is_remote = False

    @abstractmethod
    async def extract(self, source: SourceContent, target: CodeTarget) -> list[InitialCode]:
        ...
