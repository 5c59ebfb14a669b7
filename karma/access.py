"""Access-tier gate: turns agreement-signature state into capability levels.

Tier 0 is the default and the only legal tier while either agreement is
unsigned. Tiers 1-3 are a founder choice; the gate only validates the
precondition. Revocation is the one unconditional exit valve.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass

from karma.audit import AuditLedger
from karma.db import AGREEMENTS, CONTRIBUTORS, BaseStore, Transaction
from karma.errors import FinalizedError, GateError, InvalidTransitionError, NotFoundError, PreconditionError
from karma.models import (
    ACCESS_TIER_NAMES,
    AccessLevel,
    Agreement,
    AgreementStatus,
    Contributor,
    EntityType,
    WorkflowStage,
)
from karma.utils import utcnow

log = logging.getLogger(__name__)

MIN_TIER = 0
MAX_TIER = 3

# Initial assignment happens in provisioning; the gate only moves tiers afterwards.
TIER_CHANGE_STAGES = (WorkflowStage.READY, WorkflowStage.WORKING)


@dataclass(frozen=True)
class AllowedTierRange:
    low: int
    high: int

    def __contains__(self, tier: int) -> bool:
        return self.low <= tier <= self.high


def evaluate(contributor: Contributor) -> AllowedTierRange:
    """Tiers the contributor may legally hold right now."""
    if contributor.workflow_stage in (WorkflowStage.EXIT, WorkflowStage.ARCHIVED):
        return AllowedTierRange(MIN_TIER, MIN_TIER)
    if contributor.both_signed:
        return AllowedTierRange(MIN_TIER, MAX_TIER)
    return AllowedTierRange(MIN_TIER, MIN_TIER)


def check_tier(contributor: Contributor, target_tier: int) -> None:
    """Raise ``GateError`` unless *target_tier* is legal for *contributor*."""
    if target_tier not in ACCESS_TIER_NAMES:
        raise PreconditionError(
            f"Access tier must be between {MIN_TIER} and {MAX_TIER}, got {target_tier}",
            entity_type=EntityType.CONTRIBUTOR, entity_id=contributor.id,
        )
    allowed = evaluate(contributor)
    if target_tier not in allowed:
        raise GateError(
            f"Tier {target_tier} requires both NDA and IP assignment signed "
            f"(nda={contributor.nda_status}, ip={contributor.ip_assignment_status})",
            entity_type=EntityType.CONTRIBUTOR, entity_id=contributor.id,
            details={"allowed": [allowed.low, allowed.high]},
        )


def revoke_cascade(contributor: Contributor, agreements: list[Agreement], reason: str) -> list[str]:
    """Apply the revocation cascade in memory. Returns ids of agreements revoked."""
    now = utcnow()
    revoked: list[str] = []
    for agreement in agreements:
        if agreement.contributor_id != contributor.id or agreement.status == AgreementStatus.REVOKED:
            continue
        agreement.status = AgreementStatus.REVOKED
        agreement.revoked_at = now
        revoked.append(agreement.id)
    contributor.nda_status = AgreementStatus.REVOKED
    contributor.ip_assignment_status = AgreementStatus.REVOKED
    contributor.access_tier = 0
    contributor.access_level = AccessLevel.REVOKED
    contributor.workflow_stage = WorkflowStage.EXIT
    contributor.exit_reason = reason
    contributor.updated_at = now
    return revoked


class AccessTierGate:
    def __init__(self, store: BaseStore, ledger: AuditLedger):
        self._store = store
        self._ledger = ledger

    def _load(self, tx: Transaction, contributor_id: str) -> Contributor:
        contributor = tx.find(CONTRIBUTORS, contributor_id)
        if contributor is None:
            raise NotFoundError(
                f"Contributor {contributor_id} not found",
                entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
            )
        if contributor.workflow_stage == WorkflowStage.ARCHIVED:
            raise FinalizedError(
                "Archived contributors cannot be modified",
                entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
            )
        return contributor

    def request_tier_change(self, contributor_id: str, target_tier: int, actor: str | None = None) -> Contributor:
        with self._store.transaction() as tx:
            contributor = self._load(tx, contributor_id)
            check_tier(contributor, target_tier)
            if contributor.workflow_stage not in TIER_CHANGE_STAGES:
                raise InvalidTransitionError(
                    f"Cannot change tier from stage '{contributor.workflow_stage}'; provision access first",
                    entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
                    details={
                        "stage": contributor.workflow_stage.value,
                        "allowed": [s.value for s in TIER_CHANGE_STAGES],
                    },
                )
            previous = contributor.access_tier
            contributor.access_tier = target_tier
            if target_tier > 0:
                contributor.access_level = AccessLevel.ACTIVE
            elif contributor.both_signed:
                contributor.access_level = AccessLevel.LIMITED
            contributor.updated_at = utcnow()
            tx.save(CONTRIBUTORS)
            self._ledger.record(
                tx, "access_tier_changed", EntityType.CONTRIBUTOR, contributor.id, actor=actor,
                details={"from": previous, "to": target_tier, "tier_name": ACCESS_TIER_NAMES[target_tier]},
            )
        log.info("Contributor %s tier %d -> %d", contributor.id, previous, target_tier)
        return contributor

    def revoke(self, contributor_id: str, reason: str, actor: str | None = None) -> Contributor:
        """Revoke from any non-archived stage: agreements, tier and stage in one write."""
        with self._store.transaction() as tx:
            contributor = self._load(tx, contributor_id)
            agreements: list[Agreement] = tx.load(AGREEMENTS)
            previous_tier = contributor.access_tier
            revoked = revoke_cascade(contributor, agreements, reason)
            tx.save(AGREEMENTS)
            tx.save(CONTRIBUTORS)
            self._ledger.record(
                tx, "access_revoked", EntityType.CONTRIBUTOR, contributor.id, actor=actor,
                details={"reason": reason, "previous_tier": previous_tier, "agreements_revoked": revoked},
            )
        log.info("Access revoked for contributor %s: %s", contributor.id, reason)
        return contributor
