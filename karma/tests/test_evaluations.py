"""Tests for the evaluation engine and the founder-confirmation gate."""
from __future__ import annotations

import pytest

from karma.db import EVALUATIONS, MemoryStore
from karma.errors import (
    EvaluationFinalizedError,
    FinalizedError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionError,
)
from karma.models import (
    AgreementType,
    Decision,
    EntityType,
    FitTag,
    ReadinessTag,
    RiskTag,
    RoleType,
    RubricCategory,
    WorkflowStage,
)
from karma.services import Governance

LONG = "I have spent years shipping reliable software with small distributed teams. " * 4

STRONG_RESPONSES = {
    "experience": LONG,
    "motivation": LONG,
    "availability": LONG,
    "mission": LONG,
    "portfolio": LONG,
}


@pytest.fixture()
def gov():
    return Governance(MemoryStore())


@pytest.fixture()
def contributor(gov):
    return gov.contributors.create_contributor("Ada Lovelace", "ada@example.com", RoleType.TECHNICAL)


@pytest.fixture()
def strong_eval(gov, contributor):
    return gov.evaluations.submit_questionnaire(contributor.id, RoleType.TECHNICAL, STRONG_RESPONSES)


class TestSubmit:
    def test_strong_questionnaire(self, gov, strong_eval, contributor):
        assert strong_eval.overall_score == 5.0
        assert [t.tag for t in strong_eval.tags] == [FitTag.STRONG, RiskTag.NONE, ReadinessTag.SIGN]
        assert strong_eval.risk_flags == []
        assert strong_eval.decision == Decision.PENDING
        assert strong_eval.ai_summary
        assert gov.evaluations.evaluation_for(contributor.id).id == strong_eval.id

    def test_sparse_questionnaire_flags_risks(self, gov, contributor):
        ev = gov.evaluations.submit_questionnaire(
            contributor.id, RoleType.PRODUCT_OPS, {"experience": "some", "availability": "part-time"},
        )
        categories = {f.category.value for f in ev.risk_flags}
        assert {"availability", "portfolio", "communication"} <= categories
        assert FitTag.WEAK in [t.tag for t in ev.tags]
        assert ReadinessTag.DECLINE in [t.tag for t in ev.tags]

    def test_unknown_contributor(self, gov):
        with pytest.raises(NotFoundError):
            gov.evaluations.submit_questionnaire("missing", RoleType.TECHNICAL, {})

    def test_unknown_role(self, gov, contributor):
        with pytest.raises(PreconditionError):
            gov.evaluations.submit_questionnaire(contributor.id, "wizard", {})

    def test_pending_list(self, gov, strong_eval):
        assert [e.id for e in gov.evaluations.pending_evaluations()] == [strong_eval.id]


class TestScores:
    def test_update_score_recomputes(self, gov, strong_eval):
        ev = gov.evaluations.update_score(strong_eval.id, RubricCategory.SKILLS_MATCH, 1, notes="no evidence")
        entry = next(s for s in ev.scores if s.category == RubricCategory.SKILLS_MATCH)
        assert entry.score == 1
        assert entry.ai_suggested is False
        assert entry.notes == "no evidence"
        # 1*.25 + 5*.75 = 4.0
        assert ev.overall_score == 4.0

    def test_update_score_refreshes_unconfirmed_tags(self, gov, strong_eval):
        for category in RubricCategory:
            ev = gov.evaluations.update_score(strong_eval.id, category, 2)
        tags = [t.tag for t in ev.tags]
        assert FitTag.WEAK in tags
        assert FitTag.STRONG not in tags
        assert ReadinessTag.SIGN not in tags

    def test_confirmed_readiness_stays_the_only_readiness_tag(self, gov, strong_eval):
        gov.evaluations.confirm_tag(strong_eval.id, ReadinessTag.SIGN)
        gov.evaluations.update_score(strong_eval.id, RubricCategory.SKILLS_MATCH, 1)
        ev = gov.evaluations.update_score(strong_eval.id, RubricCategory.COMMUNICATION, 1)
        readiness = [t for t in ev.tags if t.family == "ready"]
        assert [(t.tag, t.confirmed_by_founder) for t in readiness] == [(ReadinessTag.SIGN, True)]

    def test_removed_tag_is_not_suggested_again(self, gov, strong_eval):
        gov.evaluations.remove_tag(strong_eval.id, RiskTag.NONE)
        ev = gov.evaluations.update_score(strong_eval.id, RubricCategory.WORK_SAMPLES, 4)
        assert ev.find_tag(RiskTag.NONE) is None
        assert ev.dismissed_tags == [RiskTag.NONE]
        ev = gov.evaluations.confirm_tag(strong_eval.id, RiskTag.NONE)
        assert ev.dismissed_tags == []

    @pytest.mark.parametrize("score", [0, 6, -1])
    def test_score_out_of_range(self, gov, strong_eval, score):
        with pytest.raises(PreconditionError):
            gov.evaluations.update_score(strong_eval.id, RubricCategory.COMMUNICATION, score)

    def test_unknown_category(self, gov, strong_eval):
        with pytest.raises(PreconditionError):
            gov.evaluations.update_score(strong_eval.id, "charisma", 3)


class TestTags:
    def test_confirm_existing_tag(self, gov, strong_eval):
        ev = gov.evaluations.confirm_tag(strong_eval.id, "ready:sign")
        tag = ev.find_tag(ReadinessTag.SIGN)
        assert tag.confirmed_by_founder
        assert tag.ai_suggested

    def test_confirm_adds_manual_tag(self, gov, strong_eval):
        ev = gov.evaluations.confirm_tag(strong_eval.id, RiskTag.AVAILABILITY)
        tag = ev.find_tag(RiskTag.AVAILABILITY)
        assert tag.confirmed_by_founder and not tag.ai_suggested

    def test_unknown_tag_string(self, gov, strong_eval):
        with pytest.raises(PreconditionError):
            gov.evaluations.confirm_tag(strong_eval.id, "vibe:good")

    def test_remove_tag(self, gov, strong_eval):
        ev = gov.evaluations.remove_tag(strong_eval.id, RiskTag.NONE)
        assert ev.find_tag(RiskTag.NONE) is None
        with pytest.raises(NotFoundError):
            gov.evaluations.remove_tag(strong_eval.id, RiskTag.NONE)

    def test_acknowledge_risk_flag_is_one_way(self, gov, contributor):
        ev = gov.evaluations.submit_questionnaire(contributor.id, RoleType.TECHNICAL, {"experience": LONG})
        flag_id = ev.risk_flags[0].id
        ev = gov.evaluations.acknowledge_risk_flag(ev.id, flag_id)
        assert ev.risk_flags[0].acknowledged
        with pytest.raises(InvalidTransitionError):
            gov.evaluations.acknowledge_risk_flag(ev.id, flag_id)


class TestDecision:
    def test_pending_is_not_a_decision(self, gov, strong_eval):
        with pytest.raises(PreconditionError):
            gov.evaluations.decide(strong_eval.id, Decision.PENDING)

    def test_conditional_requires_requirements(self, gov, strong_eval):
        with pytest.raises(PreconditionError):
            gov.evaluations.decide(strong_eval.id, Decision.CONDITIONAL)
        ev = gov.evaluations.decide(
            strong_eval.id, Decision.CONDITIONAL,
            conditional_requirements="Provide two references", conditional_deadline="2026-12-01",
        )
        assert ev.is_finalized
        assert ev.conditional_requirements == "Provide two references"

    def test_decide_records_who_and_when(self, gov, strong_eval):
        ev = gov.evaluations.decide(strong_eval.id, Decision.DECLINED, "not now", actor="founder")
        assert ev.decision_by == "founder"
        assert ev.decision_timestamp is not None
        assert ev.decision_notes == "not now"

    def test_decide_twice(self, gov, strong_eval):
        gov.evaluations.decide(strong_eval.id, Decision.PAUSED)
        with pytest.raises(EvaluationFinalizedError):
            gov.evaluations.decide(strong_eval.id, Decision.APPROVED)


class TestFinalizationLock:
    def test_mutators_fail_and_leave_record_identical(self, gov, strong_eval):
        gov.evaluations.decide(strong_eval.id, Decision.APPROVED)
        before = gov.store.get(EVALUATIONS)
        audit_before = gov.audit.count()
        attempts = [
            lambda: gov.evaluations.update_score(strong_eval.id, RubricCategory.RELIABILITY, 1),
            lambda: gov.evaluations.confirm_tag(strong_eval.id, ReadinessTag.SIGN),
            lambda: gov.evaluations.remove_tag(strong_eval.id, FitTag.STRONG),
        ]
        for attempt in attempts:
            with pytest.raises(EvaluationFinalizedError):
                attempt()
        assert gov.store.get(EVALUATIONS) == before
        assert gov.audit.count() == audit_before

    def test_finalized_error_is_a_finalized_error(self):
        assert issubclass(EvaluationFinalizedError, FinalizedError)


class TestProceedGate:
    def test_unconfirmed_sign_does_not_pass(self, gov, contributor, strong_eval):
        gov.evaluations.decide(strong_eval.id, Decision.APPROVED)
        assert gov.evaluations.can_proceed_to_agreements(contributor.id) is False

    def test_confirmed_but_undecided_does_not_pass(self, gov, contributor, strong_eval):
        gov.evaluations.confirm_tag(strong_eval.id, ReadinessTag.SIGN)
        assert gov.evaluations.can_proceed_to_agreements(contributor.id) is False

    def test_no_evaluation(self, gov, contributor):
        assert gov.evaluations.can_proceed_to_agreements(contributor.id) is False

    def test_full_approval_scenario(self, gov, contributor, strong_eval):
        assert strong_eval.overall_score == 5.0
        gov.evaluations.confirm_tag(strong_eval.id, ReadinessTag.SIGN)
        gov.evaluations.decide(strong_eval.id, Decision.APPROVED)
        assert gov.evaluations.can_proceed_to_agreements(contributor.id) is True
        with pytest.raises(EvaluationFinalizedError):
            gov.evaluations.update_score(strong_eval.id, RubricCategory.SKILLS_MATCH, 4)

    def test_facade_wires_gate_into_send_agreements(self, gov, contributor, strong_eval):
        with pytest.raises(PreconditionError):
            gov.contributors.send_agreements(contributor.id)
        gov.evaluations.confirm_tag(strong_eval.id, ReadinessTag.SIGN)
        gov.evaluations.decide(strong_eval.id, Decision.APPROVED)
        c = gov.contributors.send_agreements(contributor.id)
        assert c.workflow_stage == WorkflowStage.SIGNING
        gov.contributors.sign_agreement(contributor.id, AgreementType.NDA)
        c = gov.contributors.sign_agreement(contributor.id, AgreementType.IP_ASSIGNMENT)
        assert c.workflow_stage == WorkflowStage.PROVISIONING

    def test_audit_trail_for_evaluation(self, gov, strong_eval):
        gov.evaluations.confirm_tag(strong_eval.id, ReadinessTag.SIGN)
        gov.evaluations.decide(strong_eval.id, Decision.APPROVED)
        actions = [e.action for e in gov.audit.list_by_entity(EntityType.EVALUATION, strong_eval.id)]
        assert actions == ["evaluation_decided", "evaluation_tag_confirmed", "questionnaire_submitted"]
