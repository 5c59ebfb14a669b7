"""Shared wiring and read-only summaries for the library and the HTTP adapter."""
from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from karma.access import AccessTierGate
from karma.agents import AgentActionQueue
from karma.apps import AppGovernanceLifecycle, is_launch_approved, is_ready_to_launch
from karma.audit import AuditLedger
from karma.contributors import ContributorLifecycle
from karma.db import BaseStore
from karma.evaluations import EvaluationEngine
from karma.migrations import NormalizationMigrator
from karma.models import AppStatus, TrafficLight, WorkflowStage

log = logging.getLogger(__name__)


class Governance:
    """Every component bound to one store handle."""

    def __init__(self, store: BaseStore):
        self.store = store
        self.audit = AuditLedger(store)
        self.gate = AccessTierGate(store, self.audit)
        self.evaluations = EvaluationEngine(store, self.audit)
        self.contributors = ContributorLifecycle(
            store, self.audit, self.gate, can_proceed=self.evaluations.can_proceed_to_agreements,
        )
        self.apps = AppGovernanceLifecycle(store, self.audit)
        self.agents = AgentActionQueue(store, self.audit)
        self.migrator = NormalizationMigrator(store, self.audit)


def open_governance(store: BaseStore) -> Governance:
    """Wire components to *store* and run the load-time migrations once."""
    gov = Governance(store)
    applied = gov.migrator.normalize()
    if applied:
        log.info("Store opened with %d migration pass(es): %s", len(applied), ", ".join(applied))
    return gov


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def compute_stats(gov: Governance) -> dict[str, Any]:
    contributors = gov.contributors.list_contributors()
    apps = gov.apps.list_apps()
    by_stage = Counter(c.workflow_stage.value for c in contributors)
    by_status = Counter(a.status.value for a in apps)
    by_light = Counter(a.traffic_light.value for a in apps if a.traffic_light is not None)
    active = gov.apps.active_app()
    return {
        "contributors": {
            "total": len(contributors),
            "by_stage": {s.value: by_stage.get(s.value, 0) for s in WorkflowStage},
            "with_access": sum(1 for c in contributors if c.access_tier > 0),
        },
        "apps": {
            "total": len(apps),
            "by_status": {s.value: by_status.get(s.value, 0) for s in AppStatus},
            "by_traffic_light": {t.value: by_light.get(t.value, 0) for t in TrafficLight},
            "ready_to_launch": sum(1 for a in apps if is_ready_to_launch(a)),
            "launch_approved": sum(1 for a in apps if is_launch_approved(a)),
            "active_app_id": active.id if active else None,
        },
        "pending_evaluations": len(gov.evaluations.pending_evaluations()),
        "pending_agent_actions": len(gov.agents.pending_actions()),
        "audit_entries": gov.audit.count(),
    }
