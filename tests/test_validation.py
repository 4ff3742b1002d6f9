"""Tests for purpose-adaptive theme validation."""
import numpy as np
import pytest

from thematica.models.purpose import build_profile
from thematica.models.themes import CandidateTheme, InitialCode
from thematica.research_core.validation.service import ThemeValidationEngine


def _theme(*members) -> CandidateTheme:
    codes = [
        InitialCode(
            id=f"code_{source}_{i}",
            label=f"Label {i}",
            source_id=source,
            raw_text="excerpt",
            embedding=np.asarray(vector, dtype=np.float64),
        )
        for i, (source, vector) in enumerate(members)
    ]
    return CandidateTheme.from_codes(codes)


class TestThresholds:
    def test_q_methodology_gets_breadth_relaxation(self):
        thresholds = ThemeValidationEngine().thresholds(build_profile("q_methodology"))
        assert thresholds.min_distinctiveness == pytest.approx(0.08)
        assert thresholds.adjustments == ("breadth",)

    def test_adjustments_do_not_stack_with_abstract_relaxation(self):
        thresholds = ThemeValidationEngine().thresholds(build_profile("q_methodology"), abstract_only=True)
        assert thresholds.min_distinctiveness == pytest.approx(0.08)
        assert thresholds.adjustments == ("breadth",)

    def test_abstract_relaxation_applies_without_purpose_adjustment(self):
        thresholds = ThemeValidationEngine().thresholds(
            build_profile("qualitative_analysis"), abstract_only=True
        )
        assert thresholds.min_distinctiveness == pytest.approx(0.15 * 0.7)
        assert thresholds.adjustments == ("abstract_only",)

    def test_caller_override_wins(self):
        profile = build_profile("q_methodology", {"min_distinctiveness": 0.3})
        thresholds = ThemeValidationEngine().thresholds(profile, abstract_only=True)
        assert thresholds.min_distinctiveness == pytest.approx(0.3)
        assert thresholds.adjustments == ("override",)

    def test_coherence_and_support_are_never_relaxed(self):
        thresholds = ThemeValidationEngine().thresholds(build_profile("survey_construction"), abstract_only=True)
        assert thresholds.min_coherence == pytest.approx(0.7)
        assert thresholds.min_sources == 3


class TestValidateAll:
    def test_accepts_coherent_distinct_supported_themes(self):
        first = _theme(("s1", [1.0, 0.0, 0.0]), ("s2", [1.0, 0.1, 0.0]))
        second = _theme(("s1", [0.0, 1.0, 0.0]), ("s3", [0.0, 1.0, 0.1]))
        lonely = _theme(("s4", [0.0, 0.0, 1.0]))
        profile = build_profile("qualitative_analysis")

        accepted, verdicts, report = ThemeValidationEngine().validate_all([first, second, lonely], profile)

        assert accepted == [first, second]
        assert report.total_candidates == 3
        assert report.accepted == 2
        assert [r.theme_id for r in report.rejected] == [lonely.id]
        assert report.rejected[0].checks["sources"].passed is False
        assert "supported by 1 source(s), needs 2" in report.rejected[0].reasons
        assert any("add more sources" in tip for tip in report.recommendations)

        assert first.coherence == pytest.approx(verdicts[0].coherence)
        assert 0.0 < verdicts[0].score <= 1.0

    def test_overlapping_themes_fail_distinctiveness(self):
        first = _theme(("s1", [1.0, 0.0]), ("s2", [1.0, 0.01]))
        twin = _theme(("s3", [1.0, 0.02]), ("s4", [1.0, 0.0]))
        profile = build_profile("qualitative_analysis")

        accepted, verdicts, report = ThemeValidationEngine().validate_all([first, twin], profile)

        assert accepted == []
        assert all(not v.checks["distinctiveness"].passed for v in verdicts)
        assert any("q_methodology" in tip for tip in report.recommendations)
        assert any("No theme met" in tip for tip in report.recommendations)

    def test_incoherent_theme_is_rejected(self):
        scattered = _theme(("s1", [1.0, 0.0, 0.0]), ("s2", [0.0, 1.0, 0.0]), ("s3", [0.0, 0.0, 1.0]))
        profile = build_profile("survey_construction")
        accepted, verdicts, _ = ThemeValidationEngine().validate_all([scattered], profile)
        assert accepted == []
        assert verdicts[0].checks["coherence"].passed is False

    def test_report_records_adjustments(self):
        theme = _theme(("s1", [1.0, 0.0]))
        _, _, report = ThemeValidationEngine().validate_all([theme], build_profile("q_methodology"))
        assert report.adjustments == ["breadth"]
        assert report.thresholds["min_distinctiveness"] == pytest.approx(0.08)


def test_single_theme_is_fully_distinct():
    theme = _theme(("s1", [1.0, 0.0]), ("s2", [0.9, 0.1]))
    verdict = ThemeValidationEngine().validate(theme, [theme], build_profile("qualitative_analysis"))
    assert verdict.distinctiveness == 1.0
    assert verdict.accepted is True
