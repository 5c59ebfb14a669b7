"""AI agent action queue with structural guardrails.

Agents propose actions from a closed ``ActionKind`` set. Whether an action
needs founder approval is looked up once, at request time, from the static
``AGENTS`` table and stored on the action. Denylisted kinds are refused at
the request boundary, so no approval can ever let one through.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from karma.audit import AuditLedger, default_actor
from karma.db import AGENT_ACTIONS, BaseStore, Transaction, decode_collection
from karma.errors import GuardrailViolationError, InvalidActionStateError, NotFoundError, PreconditionError
from karma.models import ActionKind, ActionStatus, AgentAction, AgentId, EntityType
from karma.utils import utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentSpec:
    id: AgentId
    name: str
    description: str
    allowed: frozenset[ActionKind]
    requires_approval: frozenset[ActionKind]
    blocked: frozenset[ActionKind]

    def permits(self, kind: ActionKind) -> bool:
        return kind in self.allowed or kind in self.requires_approval


AGENTS: dict[AgentId, AgentSpec] = {
    AgentId.SYSTEMS_ARCHITECT: AgentSpec(
        id=AgentId.SYSTEMS_ARCHITECT,
        name="Systems Architect Agent",
        description="Designs system architecture, data models, and technical infrastructure.",
        allowed=frozenset({
            ActionKind.GENERATE_ARCHITECTURE, ActionKind.PROPOSE_DATA_MODEL,
            ActionKind.REVIEW_TECHNICAL_SPEC, ActionKind.SUGGEST_INTEGRATION,
            ActionKind.IDENTIFY_TECHNICAL_RISK,
        }),
        requires_approval=frozenset({
            ActionKind.ARCHITECTURE_CHANGE, ActionKind.NEW_INTEGRATION, ActionKind.SCHEMA_CHANGE,
        }),
        blocked=frozenset({
            ActionKind.GRANT_ACCESS, ActionKind.APPROVE_AGREEMENT, ActionKind.DEPLOY_PRODUCTION,
            ActionKind.MODIFY_SECURITY, ActionKind.DELETE_DATA,
        }),
    ),
    AgentId.PRODUCT_SPEC: AgentSpec(
        id=AgentId.PRODUCT_SPEC,
        name="Product Spec Agent",
        description="Generates PRDs, user stories, and product specifications from ideas.",
        allowed=frozenset({
            ActionKind.GENERATE_PRD, ActionKind.CREATE_USER_STORIES, ActionKind.DEFINE_MVP_SCOPE,
            ActionKind.IDENTIFY_NON_GOALS, ActionKind.CREATE_BUILD_PLAN,
        }),
        requires_approval=frozenset({
            ActionKind.FINALIZE_PRD, ActionKind.SCOPE_CHANGE, ActionKind.TIMELINE_COMMITMENT,
        }),
        blocked=frozenset({
            ActionKind.APPROVE_SPEC, ActionKind.ASSIGN_TASKS, ActionKind.MAKE_PRODUCT_DECISION,
            ActionKind.PUBLISH_EXTERNAL,
        }),
    ),
    AgentId.CODE_BUILDER: AgentSpec(
        id=AgentId.CODE_BUILDER,
        name="Code Builder Agent",
        description="Implements features based on approved specs and reviews code quality.",
        allowed=frozenset({
            ActionKind.GENERATE_CODE, ActionKind.REVIEW_CODE, ActionKind.SUGGEST_IMPROVEMENT,
            ActionKind.CREATE_TESTS, ActionKind.DOCUMENT_CODE,
        }),
        requires_approval=frozenset({
            ActionKind.MERGE_FEATURE_BRANCH, ActionKind.ARCHITECTURE_DEVIATION, ActionKind.ADD_DEPENDENCY,
        }),
        blocked=frozenset({
            ActionKind.PUBLISH_CODE, ActionKind.MERGE_MAIN, ActionKind.MODIFY_SECURITY,
            ActionKind.ACCESS_PRODUCTION_DATA, ActionKind.CREATE_API_KEY,
        }),
    ),
    AgentId.RISK_INTEGRITY: AgentSpec(
        id=AgentId.RISK_INTEGRITY,
        name="Risk & Integrity Agent",
        description="Evaluates ethical risks, compliance issues, and maintains integrity checks.",
        allowed=frozenset({
            ActionKind.EVALUATE_ETHICAL_RISK, ActionKind.CHECK_COMPLIANCE, ActionKind.FLAG_ISSUE,
            ActionKind.GENERATE_RISK_REPORT, ActionKind.REVIEW_CONTRIBUTOR_STATUS,
        }),
        requires_approval=frozenset({
            ActionKind.RISK_MITIGATION_PLAN, ActionKind.EXCEPTION_REQUEST, ActionKind.POLICY_RECOMMENDATION,
        }),
        blocked=frozenset({
            ActionKind.OVERRIDE_GUARDRAILS, ActionKind.APPROVE_EXCEPTION, ActionKind.GRANT_ACCESS,
            ActionKind.MODIFY_COMPLIANCE, ActionKind.ARCHIVE_AUDIT_LOG,
        }),
    ),
}

# Refused for every agent regardless of its own table.
DENYLIST: frozenset[ActionKind] = frozenset({
    ActionKind.GRANT_ACCESS, ActionKind.APPROVE_AGREEMENT, ActionKind.PUBLISH_CODE,
    ActionKind.OVERRIDE_FOUNDER, ActionKind.OVERRIDE_GUARDRAILS,
}).union(*(spec.blocked for spec in AGENTS.values()))


def requires_approval(agent_id: AgentId, kind: ActionKind) -> bool:
    return kind in AGENTS[agent_id].requires_approval


class AgentActionQueue:
    def __init__(self, store: BaseStore, ledger: AuditLedger):
        self._store = store
        self._ledger = ledger

    def _load(self, tx: Transaction, action_id: str) -> AgentAction:
        action = tx.find(AGENT_ACTIONS, action_id)
        if action is None:
            raise NotFoundError(
                f"Agent action {action_id} not found",
                entity_type=EntityType.AGENT_ACTION, entity_id=action_id,
            )
        return action

    def _require_status(self, action: AgentAction, op: str, status: ActionStatus) -> None:
        # Losers of an approve/reject race land here and fail.
        if action.status != status:
            raise InvalidActionStateError(
                f"Cannot {op} an action with status '{action.status}'",
                entity_type=EntityType.AGENT_ACTION, entity_id=action.id,
                details={"status": action.status.value},
            )

    def request(
        self,
        agent_id: AgentId | str,
        action: ActionKind | str,
        input: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> AgentAction:
        """Queue an agent action. Actions that need no approval complete immediately."""
        try:
            agent_id = AgentId(agent_id)
            kind = ActionKind(action)
        except ValueError as exc:
            raise PreconditionError(str(exc), entity_type=EntityType.AGENT_ACTION) from exc
        if kind in DENYLIST:
            log.warning("Guardrail refused %s for agent %s", kind, agent_id)
            raise GuardrailViolationError(
                f"Action '{kind}' is blocked for all agents",
                entity_type=EntityType.AGENT_ACTION,
                details={"agent_id": agent_id.value, "action": kind.value},
            )
        spec = AGENTS[agent_id]
        if not spec.permits(kind):
            raise PreconditionError(
                f"{spec.name} cannot perform '{kind}'",
                entity_type=EntityType.AGENT_ACTION,
                details={"agent_id": agent_id.value, "action": kind.value},
            )
        needs_approval = requires_approval(agent_id, kind)
        record = AgentAction(
            agent_id=agent_id,
            action=kind,
            input=input,
            requires_approval=needs_approval,
            status=ActionStatus.PENDING if needs_approval else ActionStatus.COMPLETED,
        )
        if not needs_approval:
            record.completed_at = record.created_at
        with self._store.transaction() as tx:
            tx.load(AGENT_ACTIONS).append(record)
            tx.save(AGENT_ACTIONS)
            self._ledger.record(
                tx, "agent_action_requested", EntityType.AGENT_ACTION, record.id, actor=actor or agent_id.value,
                details={"agent_id": agent_id.value, "action": kind.value, "requires_approval": needs_approval},
            )
        return record

    def approve(self, action_id: str, approver: str | None = None) -> AgentAction:
        approver = approver or default_actor()
        with self._store.transaction() as tx:
            action = self._load(tx, action_id)
            self._require_status(action, "approve", ActionStatus.PENDING)
            action.status = ActionStatus.APPROVED
            action.approved_by = approver
            action.approved_at = utcnow()
            tx.save(AGENT_ACTIONS)
            self._ledger.record(
                tx, "agent_action_approved", EntityType.AGENT_ACTION, action.id, actor=approver,
                details={"agent_id": action.agent_id.value, "action": action.action.value},
            )
        log.info("Agent action %s approved by %s", action.id, approver)
        return action

    def reject(self, action_id: str, actor: str | None = None) -> AgentAction:
        actor = actor or default_actor()
        with self._store.transaction() as tx:
            action = self._load(tx, action_id)
            self._require_status(action, "reject", ActionStatus.PENDING)
            action.status = ActionStatus.REJECTED
            action.rejected_by = actor
            tx.save(AGENT_ACTIONS)
            self._ledger.record(
                tx, "agent_action_rejected", EntityType.AGENT_ACTION, action.id, actor=actor,
                details={"agent_id": action.agent_id.value, "action": action.action.value},
            )
        return action

    def complete(self, action_id: str, output: dict[str, Any] | None = None, actor: str | None = None) -> AgentAction:
        with self._store.transaction() as tx:
            action = self._load(tx, action_id)
            self._require_status(action, "complete", ActionStatus.APPROVED)
            action.status = ActionStatus.COMPLETED
            action.output = output
            action.completed_at = utcnow()
            tx.save(AGENT_ACTIONS)
            self._ledger.record(
                tx, "agent_action_completed", EntityType.AGENT_ACTION, action.id,
                actor=actor or action.agent_id.value,
            )
        return action

    # -- queries -----------------------------------------------------------

    def list_actions(self) -> list[AgentAction]:
        return decode_collection(AGENT_ACTIONS, self._store.get(AGENT_ACTIONS))

    def get(self, action_id: str) -> AgentAction:
        action = next((a for a in self.list_actions() if a.id == action_id), None)
        if action is None:
            raise NotFoundError(
                f"Agent action {action_id} not found",
                entity_type=EntityType.AGENT_ACTION, entity_id=action_id,
            )
        return action

    def pending_actions(self) -> list[AgentAction]:
        return [a for a in self.list_actions() if a.status == ActionStatus.PENDING]

    def actions_for(self, agent_id: AgentId | str) -> list[AgentAction]:
        return [a for a in self.list_actions() if a.agent_id == agent_id]
