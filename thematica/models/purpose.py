"""Research purposes and the theme targets / acceptance thresholds they select."""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from loguru import logger

from thematica.errors import ConfigurationError


class ResearchPurpose(str, Enum):
    Q_METHODOLOGY = "q_methodology"
    QUALITATIVE_ANALYSIS = "qualitative_analysis"
    LITERATURE_SYNTHESIS = "literature_synthesis"
    HYPOTHESIS_GENERATION = "hypothesis_generation"
    SURVEY_CONSTRUCTION = "survey_construction"


@dataclass(frozen=True, slots=True)
class PurposeProfile:
    purpose: ResearchPurpose | None
    min_themes: int
    max_themes: int
    codes_min: int
    codes_max: int
    min_sources: int
    min_coherence: float
    min_distinctiveness: float
    focus: str = "breadth"
    # Set when the caller overrode minDistinctiveness; counts as a purpose-specific adjustment.
    distinctiveness_overridden: bool = False

    @property
    def name(self) -> str:
        return self.purpose.value if self.purpose is not None else "default"

    @property
    def target_code_count(self) -> tuple[int, int]:
        return (self.codes_min, self.codes_max)

    def to_dict(self) -> dict[str, Any]:
        return {
            "purpose": self.name,
            "min_themes": self.min_themes,
            "max_themes": self.max_themes,
            "codes_per_source": [self.codes_min, self.codes_max],
            "min_sources": self.min_sources,
            "min_coherence": self.min_coherence,
            "min_distinctiveness": self.min_distinctiveness,
            "focus": self.focus,
        }


# Used only when strict purpose validation is disabled.
DEFAULT_PROFILE = PurposeProfile(
    purpose=None,
    min_themes=5,
    max_themes=20,
    codes_min=8,
    codes_max=12,
    min_sources=2,
    min_coherence=0.6,
    min_distinctiveness=0.15,
    focus="balanced",
)


def base_profile(purpose: ResearchPurpose) -> PurposeProfile:
    match purpose:
        case ResearchPurpose.Q_METHODOLOGY:
            # Broad and shallow: a large, overlapping statement pool.
            return PurposeProfile(purpose, 30, 80, 15, 20, 1, 0.5, 0.10, "breadth")
        case ResearchPurpose.QUALITATIVE_ANALYSIS:
            return PurposeProfile(purpose, 5, 20, 8, 12, 2, 0.6, 0.15, "saturation")
        case ResearchPurpose.LITERATURE_SYNTHESIS:
            return PurposeProfile(purpose, 10, 25, 10, 14, 3, 0.7, 0.20, "meta_analytic")
        case ResearchPurpose.HYPOTHESIS_GENERATION:
            return PurposeProfile(purpose, 8, 15, 8, 12, 2, 0.6, 0.20, "theoretical")
        case ResearchPurpose.SURVEY_CONSTRUCTION:
            # Narrow and deep: few constructs, each clearly separable.
            return PurposeProfile(purpose, 5, 15, 5, 10, 3, 0.7, 0.25, "depth")
    raise ConfigurationError(f"No profile defined for research purpose {purpose!r}")


def parse_purpose(value: ResearchPurpose | str) -> ResearchPurpose:
    if isinstance(value, ResearchPurpose):
        return value
    normalized = str(value or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return ResearchPurpose(normalized)
    except ValueError:
        allowed = ", ".join(p.value for p in ResearchPurpose)
        raise ConfigurationError(
            f"Unknown research purpose {value!r}; expected one of: {allowed}"
        ) from None


_OVERRIDABLE = (
    "min_themes",
    "max_themes",
    "codes_min",
    "codes_max",
    "min_sources",
    "min_coherence",
    "min_distinctiveness",
)


def build_profile(
    purpose: ResearchPurpose | str,
    overrides: dict[str, Any] | None = None,
    *,
    strict: bool = True,
) -> PurposeProfile:
    """Resolve a purpose (plus optional caller overrides) into a validated profile.

    In strict mode an unknown purpose raises ConfigurationError. Otherwise a
    warning is logged and DEFAULT_PROFILE is used.
    """
    try:
        profile = base_profile(parse_purpose(purpose))
    except ConfigurationError:
        if strict:
            raise
        logger.warning(f"Unknown research purpose {purpose!r}; using default thresholds")
        profile = DEFAULT_PROFILE

    changes = {k: v for k, v in (overrides or {}).items() if v is not None}
    unknown = sorted(set(changes) - set(_OVERRIDABLE))
    if unknown:
        raise ConfigurationError(f"Unsupported purpose overrides: {', '.join(unknown)}")
    if changes:
        if "min_distinctiveness" in changes:
            changes["distinctiveness_overridden"] = True
        profile = replace(profile, **changes)

    _validate_profile(profile)
    return profile


def _validate_profile(profile: PurposeProfile) -> None:
    if profile.min_themes < 1 or profile.min_themes > profile.max_themes:
        raise ConfigurationError(
            f"Invalid theme range {profile.min_themes}-{profile.max_themes}"
        )
    if profile.codes_min < 1 or profile.codes_min > profile.codes_max:
        raise ConfigurationError(
            f"Invalid code range {profile.codes_min}-{profile.codes_max}"
        )
    if profile.min_sources < 1:
        raise ConfigurationError("min_sources must be at least 1")
    for name in ("min_coherence", "min_distinctiveness"):
        value = getattr(profile, name)
        if not 0.0 <= value <= 1.0:
            raise ConfigurationError(f"{name} must be within [0, 1], got {value}")
