"""Contributor lifecycle state machine.

intake -> documents -> signing -> provisioning -> ready -> working -> exit -> archived

Forward transitions are strict. Revocation (delegated to the access gate)
jumps to ``exit`` from any non-archived stage. Archived records are
write-once.
"""
from __future__ import annotations

import logging
from typing import Callable

from karma.access import AccessTierGate, check_tier
from karma.audit import AuditLedger
from karma.db import AGREEMENTS, CONTRIBUTORS, BaseStore, Transaction, decode_collection
from karma.errors import FinalizedError, InvalidTransitionError, NotFoundError, PreconditionError
from karma.models import (
    ACCESS_TIER_NAMES,
    AccessLevel,
    Agreement,
    AgreementStatus,
    AgreementType,
    Contributor,
    EngagementType,
    EntityType,
    RoleType,
    WorkflowStage,
)
from karma.utils import utcnow

log = logging.getLogger(__name__)

SEND_AGREEMENT_STAGES = (WorkflowStage.INTAKE, WorkflowStage.DOCUMENTS)

PROFILE_FIELDS = ("notes", "portfolio_url", "resume_url", "engagement_type")

_STATUS_FIELD = {
    AgreementType.NDA: ("nda_status", "nda_signed_date"),
    AgreementType.IP_ASSIGNMENT: ("ip_assignment_status", "ip_signed_date"),
}


def can_assign_tasks(contributor: Contributor) -> bool:
    return (
        contributor.both_signed
        and contributor.access_level == AccessLevel.ACTIVE
        and contributor.access_tier > 0
    )


class ContributorLifecycle:
    def __init__(
        self,
        store: BaseStore,
        ledger: AuditLedger,
        gate: AccessTierGate,
        can_proceed: Callable[[str], bool] | None = None,
    ):
        self._store = store
        self._ledger = ledger
        self._gate = gate
        self._can_proceed = can_proceed

    # -- helpers -----------------------------------------------------------

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

    def _require_stage(self, contributor: Contributor, op: str, *stages: WorkflowStage) -> None:
        if contributor.workflow_stage not in stages:
            raise InvalidTransitionError(
                f"Cannot {op} from stage '{contributor.workflow_stage}'",
                entity_type=EntityType.CONTRIBUTOR, entity_id=contributor.id,
                details={"stage": contributor.workflow_stage.value, "allowed": [s.value for s in stages]},
            )

    def _commit(self, tx: Transaction, contributor: Contributor, action: str, actor: str | None, **details) -> None:
        contributor.updated_at = utcnow()
        tx.save(CONTRIBUTORS)
        self._ledger.record(tx, action, EntityType.CONTRIBUTOR, contributor.id, actor=actor, details=details)

    # -- intake ------------------------------------------------------------

    def create_contributor(
        self,
        legal_name: str,
        email: str,
        role_type: RoleType | str,
        engagement_type: EngagementType | str = EngagementType.CONTRACT,
        *,
        portfolio_url: str = "",
        resume_url: str = "",
        notes: str = "",
        actor: str | None = None,
    ) -> Contributor:
        if not legal_name.strip() or not email.strip():
            raise PreconditionError("Legal name and email are required", entity_type=EntityType.CONTRIBUTOR)
        try:
            contributor = Contributor(
                legal_name=legal_name.strip(),
                email=email.strip(),
                role_type=RoleType(role_type),
                engagement_type=EngagementType(engagement_type),
                portfolio_url=portfolio_url,
                resume_url=resume_url,
                notes=notes,
            )
        except ValueError as exc:
            raise PreconditionError(str(exc), entity_type=EntityType.CONTRIBUTOR) from exc
        with self._store.transaction() as tx:
            tx.load(CONTRIBUTORS).append(contributor)
            self._commit(
                tx, contributor, "contributor_created", actor,
                role_type=contributor.role_type.value, email=contributor.email,
            )
        log.info("Contributor %s created (%s)", contributor.id, contributor.role_type)
        return contributor

    def update_profile(self, contributor_id: str, actor: str | None = None, **fields) -> Contributor:
        """Update non-governance fields. Statuses, tier and stage are never touched here."""
        unknown = sorted(set(fields) - set(PROFILE_FIELDS))
        if unknown:
            raise PreconditionError(
                f"Fields cannot be updated directly: {', '.join(unknown)}",
                entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
            )
        with self._store.transaction() as tx:
            contributor = self._load(tx, contributor_id)
            changed: dict[str, str] = {}
            for key, value in fields.items():
                if value is None:
                    continue
                if key == "engagement_type":
                    try:
                        value = EngagementType(value)
                    except ValueError as exc:
                        raise PreconditionError(
                            str(exc), entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
                        ) from exc
                setattr(contributor, key, value)
                changed[key] = str(value)
            if not changed:
                return contributor
            self._commit(tx, contributor, "contributor_updated", actor, fields=changed)
        return contributor

    def mark_documents_received(self, contributor_id: str, actor: str | None = None) -> Contributor:
        with self._store.transaction() as tx:
            contributor = self._load(tx, contributor_id)
            self._require_stage(contributor, "mark documents received", WorkflowStage.INTAKE)
            contributor.workflow_stage = WorkflowStage.DOCUMENTS
            self._commit(tx, contributor, "documents_received", actor, stage=WorkflowStage.DOCUMENTS.value)
        return contributor

    # -- agreements --------------------------------------------------------

    def send_agreements(self, contributor_id: str, version: str = "1.0", actor: str | None = None) -> Contributor:
        """Create NDA and IP assignment agreements in ``sent`` and move to signing."""
        with self._store.transaction() as tx:
            contributor = self._load(tx, contributor_id)
            self._require_stage(contributor, "send agreements", *SEND_AGREEMENT_STAGES)
            if contributor.nda_status != AgreementStatus.NOT_SENT:
                raise InvalidTransitionError(
                    f"Agreements already sent (NDA status '{contributor.nda_status}')",
                    entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
                )
            if self._can_proceed is not None and not self._can_proceed(contributor_id):
                raise PreconditionError(
                    "Evaluation must be decided and 'ready:sign' confirmed by the founder before sending agreements",
                    entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
                )
            now = utcnow()
            agreements = [
                Agreement(
                    contributor_id=contributor.id,
                    type=agreement_type,
                    version=version,
                    status=AgreementStatus.SENT,
                    signer_name=contributor.legal_name,
                    signer_email=contributor.email,
                    sent_at=now,
                )
                for agreement_type in AgreementType
            ]
            tx.load(AGREEMENTS).extend(agreements)
            tx.save(AGREEMENTS)
            contributor.nda_status = AgreementStatus.SENT
            contributor.ip_assignment_status = AgreementStatus.SENT
            contributor.agreement_version = version
            contributor.workflow_stage = WorkflowStage.SIGNING
            self._commit(
                tx, contributor, "agreements_sent", actor,
                version=version, agreement_ids=[a.id for a in agreements],
            )
        log.info("Agreements sent to contributor %s", contributor.id)
        return contributor

    def sign_agreement(
        self, contributor_id: str, agreement_type: AgreementType | str, actor: str | None = None,
    ) -> Contributor:
        """Mark one agreement signed. Both signed moves the contributor to provisioning."""
        try:
            agreement_type = AgreementType(agreement_type)
        except ValueError as exc:
            raise PreconditionError(
                str(exc), entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
            ) from exc
        with self._store.transaction() as tx:
            contributor = self._load(tx, contributor_id)
            self._require_stage(contributor, "sign an agreement", WorkflowStage.SIGNING)
            agreement = next(
                (
                    a for a in tx.load(AGREEMENTS)
                    if a.contributor_id == contributor_id and a.type == agreement_type
                    and a.status in (AgreementStatus.SENT, AgreementStatus.SIGNED)
                ),
                None,
            )
            if agreement is None:
                raise NotFoundError(
                    f"No active {agreement_type} agreement for contributor {contributor_id}",
                    entity_type=EntityType.AGREEMENT,
                )
            if agreement.status != AgreementStatus.SENT:
                raise InvalidTransitionError(
                    f"Agreement {agreement.id} is already {agreement.status}",
                    entity_type=EntityType.AGREEMENT, entity_id=agreement.id,
                )
            now = utcnow()
            agreement.status = AgreementStatus.SIGNED
            agreement.signed_at = now
            tx.save(AGREEMENTS)
            status_field, date_field = _STATUS_FIELD[agreement_type]
            setattr(contributor, status_field, AgreementStatus.SIGNED)
            setattr(contributor, date_field, now)
            if contributor.both_signed:
                contributor.workflow_stage = WorkflowStage.PROVISIONING
                contributor.access_level = AccessLevel.LIMITED
            self._commit(
                tx, contributor, "agreement_signed", actor,
                agreement_id=agreement.id, type=agreement_type.value,
                stage=contributor.workflow_stage.value,
            )
        return contributor

    # -- access ------------------------------------------------------------

    def provision_access(self, contributor_id: str, tier: int, actor: str | None = None) -> Contributor:
        with self._store.transaction() as tx:
            contributor = self._load(tx, contributor_id)
            self._require_stage(contributor, "provision access", WorkflowStage.PROVISIONING)
            if contributor.access_tier != 0:
                raise InvalidTransitionError(
                    f"Contributor already holds tier {contributor.access_tier}",
                    entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
                )
            check_tier(contributor, tier)
            if tier == 0:
                raise PreconditionError(
                    "Provisioning requires a tier between 1 and 3",
                    entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
                )
            contributor.access_tier = tier
            contributor.access_level = AccessLevel.ACTIVE
            contributor.workflow_stage = WorkflowStage.READY
            self._commit(
                tx, contributor, "access_provisioned", actor,
                tier=tier, tier_name=ACCESS_TIER_NAMES[tier],
            )
        log.info("Contributor %s provisioned at tier %d", contributor.id, tier)
        return contributor

    def start_work(self, contributor_id: str, actor: str | None = None) -> Contributor:
        with self._store.transaction() as tx:
            contributor = self._load(tx, contributor_id)
            self._require_stage(contributor, "start work", WorkflowStage.READY)
            if not can_assign_tasks(contributor):
                raise PreconditionError(
                    "Contributor cannot be assigned tasks without signed agreements and active access",
                    entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
                )
            contributor.workflow_stage = WorkflowStage.WORKING
            self._commit(tx, contributor, "work_started", actor, stage=WorkflowStage.WORKING.value)
        return contributor

    def revoke_access(self, contributor_id: str, reason: str, actor: str | None = None) -> Contributor:
        if not reason or not reason.strip():
            raise PreconditionError(
                "A revocation reason is required",
                entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
            )
        return self._gate.revoke(contributor_id, reason.strip(), actor=actor)

    def archive(self, contributor_id: str, actor: str | None = None) -> Contributor:
        with self._store.transaction() as tx:
            contributor = self._load(tx, contributor_id)
            self._require_stage(contributor, "archive", WorkflowStage.EXIT)
            contributor.workflow_stage = WorkflowStage.ARCHIVED
            contributor.archived_at = utcnow()
            self._commit(tx, contributor, "contributor_archived", actor)
        log.info("Contributor %s archived", contributor.id)
        return contributor

    # -- queries -----------------------------------------------------------

    def get(self, contributor_id: str) -> Contributor:
        contributor = next((c for c in self.list_contributors() if c.id == contributor_id), None)
        if contributor is None:
            raise NotFoundError(
                f"Contributor {contributor_id} not found",
                entity_type=EntityType.CONTRIBUTOR, entity_id=contributor_id,
            )
        return contributor

    def list_contributors(self, stage: WorkflowStage | str | None = None) -> list[Contributor]:
        contributors = decode_collection(CONTRIBUTORS, self._store.get(CONTRIBUTORS))
        if stage is not None:
            contributors = [c for c in contributors if c.workflow_stage == stage]
        return contributors

    def agreements_for(self, contributor_id: str) -> list[Agreement]:
        agreements = decode_collection(AGREEMENTS, self._store.get(AGREEMENTS))
        return [a for a in agreements if a.contributor_id == contributor_id]

    def can_assign_tasks(self, contributor_id: str) -> bool:
        return can_assign_tasks(self.get(contributor_id))
