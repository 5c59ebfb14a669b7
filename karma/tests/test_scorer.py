from __future__ import annotations

import pytest

from karma.models import (
    EvaluationTag,
    FitTag,
    ReadinessTag,
    RiskCategory,
    RiskFlag,
    RiskTag,
    RoleType,
    RubricCategory,
    RubricScore,
    Severity,
)
from karma.scorer import (
    RUBRIC,
    compute_fit,
    compute_overall_score,
    compute_readiness,
    derive_tags,
    detect_risk_flags,
    refresh_suggested_tags,
    suggest_score,
    suggest_scores,
    summarize,
)

LONG = "I have spent years shipping reliable software with small distributed teams. " * 4


def _scores(*values: int) -> list[RubricScore]:
    return [RubricScore(category=c, score=v) for c, v in zip(RUBRIC, values)]


def _flag(category: RiskCategory, severity: Severity) -> RiskFlag:
    return RiskFlag(category=category, severity=severity, description="x")


class TestRubric:
    def test_weights_sum_to_one(self):
        assert sum(e.weight for e in RUBRIC.values()) == pytest.approx(1.0)

    def test_every_category_present(self):
        assert set(RUBRIC) == set(RubricCategory)


class TestSuggestScore:
    @pytest.mark.parametrize("answer,expected", [
        ("", 2),
        (None, 2),
        ("short answer", 3),
        ("x" * 150, 4),
        ("x" * 300, 5),
    ])
    def test_length_heuristic(self, answer, expected):
        assert suggest_score(answer) == expected

    def test_suggested_scores_are_marked_ai(self):
        scores = suggest_scores({"experience": LONG})
        assert len(scores) == len(RUBRIC)
        assert all(s.ai_suggested for s in scores)
        by_cat = {s.category: s.score for s in scores}
        assert by_cat[RubricCategory.SKILLS_MATCH] == 5
        assert by_cat[RubricCategory.WORK_SAMPLES] == 2


class TestOverallScore:
    def test_all_fives(self):
        assert compute_overall_score(_scores(5, 5, 5, 5, 5)) == 5.0

    def test_weighted_mean_rounded(self):
        # 5*.25 + 4*.2 + 3*.2 + 2*.2 + 1*.15 = 3.2
        assert compute_overall_score(_scores(5, 4, 3, 2, 1)) == 3.2

    def test_partial_scores_use_present_weights(self):
        scores = [RubricScore(category=RubricCategory.SKILLS_MATCH, score=4)]
        assert compute_overall_score(scores) == 4.0

    def test_no_scores(self):
        assert compute_overall_score([]) == 0.0


class TestRiskFlags:
    def test_clean_responses(self):
        responses = {k: LONG for k in ("experience", "motivation", "availability", "mission", "portfolio")}
        assert detect_risk_flags(responses) == []

    def test_limited_availability(self):
        flags = detect_risk_flags({"availability": "Limited, maybe weekends", "portfolio": LONG})
        assert [(f.category, f.severity) for f in flags] == [(RiskCategory.AVAILABILITY, Severity.MEDIUM)]

    def test_missing_portfolio(self):
        flags = detect_risk_flags({"experience": LONG})
        assert [f.category for f in flags] == [RiskCategory.PORTFOLIO]

    def test_terse_answers(self):
        flags = detect_risk_flags({"experience": "yes", "portfolio": "n/a"})
        assert RiskCategory.COMMUNICATION in {f.category for f in flags}

    def test_conflict_is_high(self):
        flags = detect_risk_flags({"experience": LONG + " I currently work for a competitor.", "portfolio": LONG})
        assert [(f.category, f.severity) for f in flags] == [(RiskCategory.CONFLICT, Severity.HIGH)]


class TestTags:
    @pytest.mark.parametrize("score,expected", [
        (5.0, FitTag.STRONG), (4.0, FitTag.STRONG), (3.9, FitTag.CONDITIONAL),
        (3.0, FitTag.CONDITIONAL), (2.9, FitTag.WEAK),
    ])
    def test_fit_thresholds(self, score, expected):
        assert compute_fit(score) == expected

    def test_readiness_precedence(self):
        high = [_flag(RiskCategory.CONFLICT, Severity.HIGH)]
        low = [_flag(RiskCategory.PORTFOLIO, Severity.LOW)]
        assert compute_readiness(FitTag.STRONG, []) == ReadinessTag.SIGN
        assert compute_readiness(FitTag.STRONG, low) == ReadinessTag.CLARIFY
        assert compute_readiness(FitTag.WEAK, high) == ReadinessTag.DECLINE
        assert compute_readiness(FitTag.CONDITIONAL, high) == ReadinessTag.PAUSE
        assert compute_readiness(FitTag.STRONG, high) == ReadinessTag.PAUSE
        assert compute_readiness(FitTag.CONDITIONAL, []) == ReadinessTag.CLARIFY

    def test_derive_tags_one_per_risk_category(self):
        flags = [
            _flag(RiskCategory.AVAILABILITY, Severity.MEDIUM),
            _flag(RiskCategory.PORTFOLIO, Severity.LOW),
        ]
        tags = [t.tag for t in derive_tags(3.5, flags)]
        assert tags == [FitTag.CONDITIONAL, RiskTag.AVAILABILITY, RiskTag.PORTFOLIO, ReadinessTag.CLARIFY]

    def test_derive_tags_clean(self):
        tags = derive_tags(5.0, [])
        assert [t.tag for t in tags] == [FitTag.STRONG, RiskTag.NONE, ReadinessTag.SIGN]
        assert all(t.ai_suggested and not t.confirmed_by_founder for t in tags)
        assert [t.family for t in tags] == ["fit", "risk", "ready"]

    def test_refresh_keeps_confirmed_and_manual(self):
        current = [
            EvaluationTag(tag=FitTag.STRONG, ai_suggested=True, confirmed_by_founder=True),
            EvaluationTag(tag=RiskTag.NONE, ai_suggested=True),
            EvaluationTag(tag=ReadinessTag.SIGN, ai_suggested=True),
            EvaluationTag(tag=RiskTag.CONFLICT, ai_suggested=False),
        ]
        refreshed = refresh_suggested_tags(current, 2.0, [])
        assert [t.tag for t in refreshed] == [FitTag.STRONG, RiskTag.CONFLICT, ReadinessTag.DECLINE]

    def test_refresh_leaves_confirmed_family_alone(self):
        current = [
            EvaluationTag(tag=FitTag.STRONG, ai_suggested=True),
            EvaluationTag(tag=RiskTag.NONE, ai_suggested=True),
            EvaluationTag(tag=ReadinessTag.SIGN, ai_suggested=True, confirmed_by_founder=True),
        ]
        refreshed = refresh_suggested_tags(current, 3.5, [])
        readiness = [t.tag for t in refreshed if t.family == "ready"]
        assert readiness == [ReadinessTag.SIGN]
        assert FitTag.CONDITIONAL in [t.tag for t in refreshed]

    def test_refresh_skips_dismissed_tags(self):
        current = [EvaluationTag(tag=FitTag.STRONG, ai_suggested=True)]
        refreshed = refresh_suggested_tags(current, 5.0, [], dismissed=[RiskTag.NONE])
        assert [t.tag for t in refreshed] == [FitTag.STRONG, ReadinessTag.SIGN]


class TestSummary:
    def test_summary_mentions_role(self):
        scores = _scores(5, 5, 5, 5, 5)
        summary, strengths, concerns = summarize({"experience": LONG}, RoleType.DESIGN_UX, scores, [])
        assert "strong fit for the Design/UX role" in summary
        assert "Detailed experience description provided" in strengths
        assert concerns == ["No significant concerns identified - founder review recommended"]

    def test_concerns_are_flag_descriptions(self):
        flag = _flag(RiskCategory.PORTFOLIO, Severity.LOW)
        _, _, concerns = summarize({}, RoleType.TECHNICAL, _scores(3, 3, 3, 3, 3), [flag])
        assert concerns == ["x"]
