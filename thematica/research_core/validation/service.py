"""Purpose-adaptive acceptance of candidate themes.

A theme is accepted iff coherence >= min_coherence, distinctiveness >=
min_distinctiveness and support (distinct sources) >= min_sources.

Threshold adjustments never stack. A purpose-specific adjustment (``breadth``
for Q-methodology, or ``override`` when the caller pinned min_distinctiveness)
wins; only when neither fired does the ``abstract_only`` relaxation apply.
"""
from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from loguru import logger

from thematica.models.purpose import PurposeProfile, ResearchPurpose
from thematica.models.themes import (
    CandidateTheme,
    RejectionDiagnostic,
    ValidationCheck,
    ValidationReport,
)
from thematica.research_core.clustering.service import theme_coherence
from thematica.research_core.similarity import unit_rows

BREADTH_RELAXATION = 0.8


@dataclass(frozen=True, slots=True)
class Thresholds:
    min_coherence: float
    min_distinctiveness: float
    min_sources: int
    adjustments: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, float]:
        return {
            "min_coherence": self.min_coherence,
            "min_distinctiveness": self.min_distinctiveness,
            "min_sources": float(self.min_sources),
        }


@dataclass(slots=True)
class ThemeVerdict:
    theme_id: str
    accepted: bool
    coherence: float
    distinctiveness: float
    support: int
    checks: dict[str, ValidationCheck] = field(default_factory=dict)
    reasons: list[str] = field(default_factory=list)

    @property
    def score(self) -> float:
        support = self.checks["sources"]
        ratio = min(1.0, self.support / support.required) if support.required else 1.0
        return (self.coherence + self.distinctiveness + ratio) / 3.0


class ThemeValidationEngine:
    def __init__(self, abstract_relaxation: float = 0.7):
        self.abstract_relaxation = abstract_relaxation

    def thresholds(self, profile: PurposeProfile, *, abstract_only: bool = False) -> Thresholds:
        min_distinctiveness = profile.min_distinctiveness
        adjustments: list[str] = []
        if profile.distinctiveness_overridden:
            adjustments.append("override")
        elif profile.purpose is ResearchPurpose.Q_METHODOLOGY:
            min_distinctiveness *= BREADTH_RELAXATION
            adjustments.append("breadth")
        if abstract_only and not adjustments:
            min_distinctiveness *= self.abstract_relaxation
            adjustments.append("abstract_only")
        return Thresholds(
            min_coherence=profile.min_coherence,
            min_distinctiveness=min_distinctiveness,
            min_sources=profile.min_sources,
            adjustments=tuple(adjustments),
        )

    @staticmethod
    def distinctiveness_scores(themes: list[CandidateTheme]) -> list[float]:
        """1 - max cosine to any other theme's centroid; a lone theme scores 1."""
        if len(themes) < 2:
            return [1.0] * len(themes)
        units = unit_rows(np.vstack([t.centroid for t in themes]))
        sims = units @ units.T
        np.fill_diagonal(sims, -np.inf)
        return [float(np.clip(1.0 - row.max(), 0.0, 1.0)) for row in sims]

    def validate(
        self,
        theme: CandidateTheme,
        all_themes: list[CandidateTheme],
        profile: PurposeProfile,
        *,
        abstract_only: bool = False,
    ) -> ThemeVerdict:
        others = [t for t in all_themes if t is not theme]
        distinctiveness = self.distinctiveness_scores([theme, *others])[0]
        return self._judge(theme, distinctiveness, self.thresholds(profile, abstract_only=abstract_only))

    def validate_all(
        self,
        themes: list[CandidateTheme],
        profile: PurposeProfile,
        *,
        abstract_only: bool = False,
    ) -> tuple[list[CandidateTheme], list[ThemeVerdict], ValidationReport]:
        """Score every theme against the full candidate set and split accepted from rejected."""
        thresholds = self.thresholds(profile, abstract_only=abstract_only)
        report = ValidationReport(
            purpose=profile.name,
            thresholds=thresholds.to_dict(),
            adjustments=list(thresholds.adjustments),
            total_candidates=len(themes),
        )
        accepted: list[CandidateTheme] = []
        verdicts: list[ThemeVerdict] = []
        for theme, distinctiveness in zip(themes, self.distinctiveness_scores(themes)):
            verdict = self._judge(theme, distinctiveness, thresholds)
            verdicts.append(verdict)
            if verdict.accepted:
                accepted.append(theme)
            else:
                report.rejected.append(
                    RejectionDiagnostic(
                        theme_id=theme.id,
                        label=theme.label,
                        checks=verdict.checks,
                        reasons=verdict.reasons,
                    )
                )
        report.accepted = len(accepted)
        report.recommendations = self._recommend(report, profile, abstract_only)
        logger.info(
            f"Validation ({profile.name}): {len(accepted)}/{len(themes)} accepted, "
            f"adjustments={list(thresholds.adjustments)}"
        )
        return accepted, verdicts, report

    @staticmethod
    def _judge(theme: CandidateTheme, distinctiveness: float, thresholds: Thresholds) -> ThemeVerdict:
        coherence = theme_coherence(theme)
        theme.coherence = coherence
        theme.distinctiveness = distinctiveness
        support = theme.support_count
        checks = {
            "sources": ValidationCheck(support, thresholds.min_sources, support >= thresholds.min_sources),
            "coherence": ValidationCheck(coherence, thresholds.min_coherence, coherence >= thresholds.min_coherence),
            "distinctiveness": ValidationCheck(
                distinctiveness,
                thresholds.min_distinctiveness,
                distinctiveness >= thresholds.min_distinctiveness,
            ),
        }
        reasons = []
        if not checks["sources"].passed:
            reasons.append(f"supported by {support} source(s), needs {thresholds.min_sources}")
        if not checks["coherence"].passed:
            reasons.append(f"coherence {coherence:.2f} below {thresholds.min_coherence:.2f}")
        if not checks["distinctiveness"].passed:
            reasons.append(
                f"distinctiveness {distinctiveness:.2f} below {thresholds.min_distinctiveness:.2f}"
            )
        return ThemeVerdict(
            theme_id=theme.id,
            accepted=not reasons,
            coherence=coherence,
            distinctiveness=distinctiveness,
            support=support,
            checks=checks,
            reasons=reasons,
        )

    @staticmethod
    def _recommend(report: ValidationReport, profile: PurposeProfile, abstract_only: bool) -> list[str]:
        if not report.rejected:
            return []
        failed = {
            name: sum(1 for r in report.rejected if not r.checks[name].passed)
            for name in ("sources", "coherence", "distinctiveness")
        }
        tips: list[str] = []
        if failed["sources"]:
            tips.append(
                f"{failed['sources']} theme(s) lacked support from {profile.min_sources} sources; "
                "add more sources on the same topic."
            )
        if failed["coherence"]:
            tip = f"{failed['coherence']} theme(s) were not coherent enough."
            if abstract_only:
                tip += " Enable full-text sources; abstracts give codes little context."
            tips.append(tip)
        if failed["distinctiveness"]:
            tips.append(
                f"{failed['distinctiveness']} theme(s) overlapped with others; "
                "a broader purpose such as q_methodology tolerates more overlap."
            )
        if report.accepted == 0:
            tips.append(
                f"No theme met the {profile.name} thresholds; "
                "consider qualitative_analysis for exploratory work on a small corpus."
            )
        return tips
