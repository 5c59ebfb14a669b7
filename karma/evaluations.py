"""Evaluation engine: questionnaire intake, rubric scoring and the founder gate.

Scores and tags start out as AI suggestions (see ``karma.scorer``). The
founder adjusts scores, confirms or removes tags, and finally decides. A
decision other than ``pending`` finalizes the evaluation; every mutator
afterwards raises ``EvaluationFinalizedError``.
"""
from __future__ import annotations

import logging

from karma.audit import AuditLedger, default_actor
from karma.db import CONTRIBUTORS, EVALUATIONS, QUESTIONNAIRES, BaseStore, Transaction, decode_collection
from karma.errors import EvaluationFinalizedError, InvalidTransitionError, NotFoundError, PreconditionError
from karma.models import (
    Decision,
    EntityType,
    Evaluation,
    EvaluationTag,
    QuestionnaireResponse,
    ReadinessTag,
    RoleType,
    RubricCategory,
    RubricScore,
    ScoringTag,
    parse_tag,
)
from karma.scorer import (
    MAX_SCORE,
    MIN_SCORE,
    compute_overall_score,
    derive_tags,
    detect_risk_flags,
    refresh_suggested_tags,
    suggest_scores,
    summarize,
)
from karma.utils import utcnow

log = logging.getLogger(__name__)

PROCEED_DECISIONS = (Decision.APPROVED, Decision.CONDITIONAL)


def _coerce_tag(evaluation_id: str, tag: str | ScoringTag) -> ScoringTag:
    try:
        return parse_tag(tag)
    except ValueError as exc:
        raise PreconditionError(
            str(exc), entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
        ) from exc


class EvaluationEngine:
    def __init__(self, store: BaseStore, ledger: AuditLedger):
        self._store = store
        self._ledger = ledger

    # -- helpers -----------------------------------------------------------

    def _load(self, tx: Transaction, evaluation_id: str) -> Evaluation:
        evaluation = tx.find(EVALUATIONS, evaluation_id)
        if evaluation is None:
            raise NotFoundError(
                f"Evaluation {evaluation_id} not found",
                entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
            )
        return evaluation

    def _load_mutable(self, tx: Transaction, evaluation_id: str) -> Evaluation:
        evaluation = self._load(tx, evaluation_id)
        if evaluation.is_finalized:
            raise EvaluationFinalizedError(
                f"Evaluation is finalized with decision '{evaluation.decision}'",
                entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
            )
        return evaluation

    def _commit(self, tx: Transaction, evaluation: Evaluation, action: str, actor: str | None, **details) -> None:
        evaluation.updated_at = utcnow()
        tx.save(EVALUATIONS)
        self._ledger.record(tx, action, EntityType.EVALUATION, evaluation.id, actor=actor, details=details)

    # -- mutators ----------------------------------------------------------

    def submit_questionnaire(
        self,
        contributor_id: str,
        role_type: RoleType | str,
        responses: dict[str, str],
        actor: str | None = None,
    ) -> Evaluation:
        """Store the questionnaire and create an AI-scored evaluation for it."""
        try:
            role = RoleType(role_type)
        except ValueError as exc:
            raise PreconditionError(
                f"Unknown role type: {role_type!r}",
                entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
            ) from exc
        with self._store.transaction() as tx:
            if tx.find(CONTRIBUTORS, contributor_id) is None:
                raise NotFoundError(
                    f"Contributor {contributor_id} not found",
                    entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
                )
            questionnaire = QuestionnaireResponse(contributor_id=contributor_id, responses=dict(responses))
            tx.load(QUESTIONNAIRES).append(questionnaire)
            tx.save(QUESTIONNAIRES)

            scores = suggest_scores(questionnaire.responses)
            flags = detect_risk_flags(questionnaire.responses)
            overall = compute_overall_score(scores)
            summary, strengths, concerns = summarize(questionnaire.responses, role, scores, flags)
            evaluation = Evaluation(
                contributor_id=contributor_id,
                role_applied_for=role,
                questionnaire_response_id=questionnaire.id,
                scores=scores,
                overall_score=overall,
                ai_summary=summary,
                ai_strengths=strengths,
                ai_concerns=concerns,
                risk_flags=flags,
                tags=derive_tags(overall, flags),
            )
            tx.load(EVALUATIONS).append(evaluation)
            tx.save(EVALUATIONS)
            self._ledger.record(
                tx, "questionnaire_submitted", EntityType.EVALUATION, evaluation.id, actor=actor,
                details={
                    "contributor_id": contributor_id,
                    "questionnaire_id": questionnaire.id,
                    "overall_score": overall,
                    "tags": [t.tag.value for t in evaluation.tags],
                },
            )
        log.info("Evaluation %s created for contributor %s (overall %.1f)", evaluation.id, contributor_id, overall)
        return evaluation

    def update_score(
        self,
        evaluation_id: str,
        category: RubricCategory | str,
        score: int,
        notes: str | None = None,
        actor: str | None = None,
    ) -> Evaluation:
        """Founder override of one category; recomputes the overall score."""
        with self._store.transaction() as tx:
            evaluation = self._load_mutable(tx, evaluation_id)
            try:
                category = RubricCategory(category)
            except ValueError as exc:
                raise PreconditionError(
                    f"Unknown rubric category: {category!r}",
                    entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
                ) from exc
            if isinstance(score, bool) or not isinstance(score, int) or not MIN_SCORE <= score <= MAX_SCORE:
                raise PreconditionError(
                    f"Score must be an integer between {MIN_SCORE} and {MAX_SCORE}, got {score!r}",
                    entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
                )
            entry = next((s for s in evaluation.scores if s.category == category), None)
            previous = entry.score if entry else None
            if entry is None:
                entry = RubricScore(category=category, score=score)
                evaluation.scores.append(entry)
            entry.score = score
            entry.ai_suggested = False
            if notes is not None:
                entry.notes = notes
            evaluation.overall_score = compute_overall_score(evaluation.scores)
            evaluation.tags = refresh_suggested_tags(
                evaluation.tags, evaluation.overall_score, evaluation.risk_flags, evaluation.dismissed_tags,
            )
            self._commit(
                tx, evaluation, "evaluation_score_updated", actor,
                category=category.value, previous=previous, score=score,
                overall_score=evaluation.overall_score,
            )
        return evaluation

    def confirm_tag(self, evaluation_id: str, tag: str | ScoringTag, actor: str | None = None) -> Evaluation:
        """Founder confirmation; adds the tag as a manual one if it was not suggested."""
        with self._store.transaction() as tx:
            evaluation = self._load_mutable(tx, evaluation_id)
            tag = _coerce_tag(evaluation_id, tag)
            entry = evaluation.find_tag(tag)
            if entry is None:
                entry = EvaluationTag(tag=tag, ai_suggested=False)
                evaluation.tags.append(entry)
            entry.confirmed_by_founder = True
            if tag in evaluation.dismissed_tags:
                evaluation.dismissed_tags.remove(tag)
            self._commit(tx, evaluation, "evaluation_tag_confirmed", actor, tag=tag.value)
        return evaluation

    def remove_tag(self, evaluation_id: str, tag: str | ScoringTag, actor: str | None = None) -> Evaluation:
        with self._store.transaction() as tx:
            evaluation = self._load_mutable(tx, evaluation_id)
            tag = _coerce_tag(evaluation_id, tag)
            if evaluation.find_tag(tag) is None:
                raise NotFoundError(
                    f"Tag {tag.value} is not on evaluation {evaluation_id}",
                    entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
                )
            evaluation.tags = [t for t in evaluation.tags if t.tag != tag]
            if tag not in evaluation.dismissed_tags:
                evaluation.dismissed_tags.append(tag)
            self._commit(tx, evaluation, "evaluation_tag_removed", actor, tag=tag.value)
        return evaluation

    def acknowledge_risk_flag(self, evaluation_id: str, flag_id: str, actor: str | None = None) -> Evaluation:
        with self._store.transaction() as tx:
            evaluation = self._load_mutable(tx, evaluation_id)
            flag = next((f for f in evaluation.risk_flags if f.id == flag_id), None)
            if flag is None:
                raise NotFoundError(
                    f"Risk flag {flag_id} not found",
                    entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
                )
            if flag.acknowledged:
                raise InvalidTransitionError(
                    "Risk flag already acknowledged",
                    entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
                    details={"flag_id": flag_id},
                )
            flag.acknowledged = True
            flag.acknowledged_at = utcnow()
            self._commit(tx, evaluation, "risk_flag_acknowledged", actor, flag_id=flag_id)
        return evaluation

    def decide(
        self,
        evaluation_id: str,
        decision: Decision | str,
        notes: str | None = None,
        *,
        conditional_requirements: str | None = None,
        conditional_deadline: str | None = None,
        actor: str | None = None,
    ) -> Evaluation:
        """Record the founder decision. One-way: the evaluation is finalized."""
        with self._store.transaction() as tx:
            evaluation = self._load_mutable(tx, evaluation_id)
            try:
                decision = Decision(decision)
            except ValueError as exc:
                raise PreconditionError(
                    f"Unknown decision: {decision!r}",
                    entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
                ) from exc
            if decision == Decision.PENDING:
                raise PreconditionError(
                    "A decision must be one of approved, conditional, declined or paused",
                    entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
                )
            if decision == Decision.CONDITIONAL and not (conditional_requirements or "").strip():
                raise PreconditionError(
                    "Conditional decisions require conditional requirements",
                    entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
                )
            decided_by = actor or default_actor()
            evaluation.decision = decision
            evaluation.decision_notes = notes
            evaluation.decision_timestamp = utcnow()
            evaluation.decision_by = decided_by
            if decision == Decision.CONDITIONAL:
                evaluation.conditional_requirements = conditional_requirements
                evaluation.conditional_deadline = conditional_deadline
            evaluation.is_finalized = True
            self._commit(
                tx, evaluation, "evaluation_decided", decided_by,
                decision=decision.value, notes=notes, contributor_id=evaluation.contributor_id,
            )
        log.info("Evaluation %s decided: %s", evaluation.id, decision)
        return evaluation

    # -- queries -----------------------------------------------------------

    def list_evaluations(self) -> list[Evaluation]:
        return decode_collection(EVALUATIONS, self._store.get(EVALUATIONS))

    def get(self, evaluation_id: str) -> Evaluation:
        evaluation = next((e for e in self.list_evaluations() if e.id == evaluation_id), None)
        if evaluation is None:
            raise NotFoundError(
                f"Evaluation {evaluation_id} not found",
                entity_type=EntityType.EVALUATION, entity_id=evaluation_id,
            )
        return evaluation

    def evaluation_for(self, contributor_id: str) -> Evaluation | None:
        """Latest evaluation for a contributor, or None."""
        matches = [e for e in self.list_evaluations() if e.contributor_id == contributor_id]
        return matches[-1] if matches else None

    def pending_evaluations(self) -> list[Evaluation]:
        return [e for e in self.list_evaluations() if e.decision == Decision.PENDING]

    def can_proceed_to_agreements(self, contributor_id: str) -> bool:
        evaluation = self.evaluation_for(contributor_id)
        if evaluation is None or evaluation.decision not in PROCEED_DECISIONS:
            return False
        tag = evaluation.find_tag(ReadinessTag.SIGN)
        return tag is not None and tag.confirmed_by_founder
