"""Tests for the contributor lifecycle and the access-tier gate."""
from __future__ import annotations

import pytest

from karma.access import AccessTierGate, AllowedTierRange, check_tier, evaluate
from karma.audit import AuditLedger
from karma.contributors import ContributorLifecycle, can_assign_tasks
from karma.db import CONTRIBUTORS, MemoryStore
from karma.errors import (
    FinalizedError,
    GateError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionError,
)
from karma.models import (
    AccessLevel,
    AgreementStatus,
    AgreementType,
    Contributor,
    EntityType,
    RoleType,
    WorkflowStage,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def store():
    return MemoryStore()


@pytest.fixture()
def ledger(store):
    return AuditLedger(store)


@pytest.fixture()
def gate(store, ledger):
    return AccessTierGate(store, ledger)


@pytest.fixture()
def lifecycle(store, ledger, gate):
    return ContributorLifecycle(store, ledger, gate)


@pytest.fixture()
def contributor(lifecycle) -> Contributor:
    return lifecycle.create_contributor("Ada Lovelace", "ada@example.com", RoleType.TECHNICAL)


@pytest.fixture()
def signed(lifecycle, contributor) -> Contributor:
    lifecycle.send_agreements(contributor.id)
    lifecycle.sign_agreement(contributor.id, AgreementType.NDA)
    return lifecycle.sign_agreement(contributor.id, AgreementType.IP_ASSIGNMENT)


def _assert_tier_invariant(c: Contributor) -> None:
    if c.access_tier > 0:
        assert c.nda_status == AgreementStatus.SIGNED
        assert c.ip_assignment_status == AgreementStatus.SIGNED


# ---------------------------------------------------------------------------
# Pure gate
# ---------------------------------------------------------------------------


class TestGatePolicy:
    def test_unsigned_only_tier_zero(self):
        c = Contributor(legal_name="A", email="a@x", role_type=RoleType.DESIGN_UX)
        assert evaluate(c) == AllowedTierRange(0, 0)
        assert 1 not in evaluate(c)

    def test_one_signature_is_not_enough(self):
        c = Contributor(
            legal_name="A", email="a@x", role_type=RoleType.DESIGN_UX,
            nda_status=AgreementStatus.SIGNED, ip_assignment_status=AgreementStatus.SENT,
        )
        with pytest.raises(GateError):
            check_tier(c, 1)

    def test_both_signed_allows_all_tiers(self):
        c = Contributor(
            legal_name="A", email="a@x", role_type=RoleType.DESIGN_UX,
            nda_status=AgreementStatus.SIGNED, ip_assignment_status=AgreementStatus.SIGNED,
        )
        assert evaluate(c) == AllowedTierRange(0, 3)
        for tier in (0, 1, 2, 3):
            check_tier(c, tier)

    @pytest.mark.parametrize("tier", [-1, 4, 99])
    def test_out_of_range_tier(self, tier):
        c = Contributor(legal_name="A", email="a@x", role_type=RoleType.DESIGN_UX)
        with pytest.raises(PreconditionError):
            check_tier(c, tier)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestIntake:
    def test_create_defaults(self, contributor, ledger):
        assert contributor.workflow_stage == WorkflowStage.INTAKE
        assert contributor.access_tier == 0
        assert contributor.access_level == AccessLevel.NONE
        entries = ledger.list_by_entity(EntityType.CONTRIBUTOR, contributor.id)
        assert [e.action for e in entries] == ["contributor_created"]

    def test_create_requires_name_and_email(self, lifecycle):
        with pytest.raises(PreconditionError):
            lifecycle.create_contributor("  ", "a@x", RoleType.TECHNICAL)

    def test_create_rejects_unknown_role(self, lifecycle):
        with pytest.raises(PreconditionError):
            lifecycle.create_contributor("A", "a@x", "astronaut")

    def test_documents_received(self, lifecycle, contributor):
        c = lifecycle.mark_documents_received(contributor.id)
        assert c.workflow_stage == WorkflowStage.DOCUMENTS
        with pytest.raises(InvalidTransitionError):
            lifecycle.mark_documents_received(contributor.id)

    def test_update_profile_only_touches_profile_fields(self, lifecycle, contributor):
        c = lifecycle.update_profile(contributor.id, notes="met at meetup", portfolio_url="https://ada.dev")
        assert c.notes == "met at meetup"
        assert c.portfolio_url == "https://ada.dev"
        with pytest.raises(PreconditionError):
            lifecycle.update_profile(contributor.id, access_tier=3)

    def test_unknown_contributor(self, lifecycle):
        with pytest.raises(NotFoundError):
            lifecycle.send_agreements("missing")


class TestAgreements:
    def test_send_creates_two_sent_agreements(self, lifecycle, contributor):
        c = lifecycle.send_agreements(contributor.id, version="2.1")
        assert c.workflow_stage == WorkflowStage.SIGNING
        assert c.nda_status == AgreementStatus.SENT
        assert c.ip_assignment_status == AgreementStatus.SENT
        agreements = lifecycle.agreements_for(contributor.id)
        assert sorted(a.type for a in agreements) == [AgreementType.IP_ASSIGNMENT, AgreementType.NDA]
        assert all(a.status == AgreementStatus.SENT and a.version == "2.1" for a in agreements)
        assert all(a.sent_at is not None for a in agreements)

    def test_send_twice_is_rejected(self, lifecycle, contributor):
        lifecycle.send_agreements(contributor.id)
        with pytest.raises(InvalidTransitionError):
            lifecycle.send_agreements(contributor.id)
        assert len(lifecycle.agreements_for(contributor.id)) == 2

    def test_send_respects_evaluation_gate(self, store, ledger, gate, contributor):
        gated = ContributorLifecycle(store, ledger, gate, can_proceed=lambda _id: False)
        with pytest.raises(PreconditionError):
            gated.send_agreements(contributor.id)
        assert gated.get(contributor.id).workflow_stage == WorkflowStage.INTAKE
        assert gated.agreements_for(contributor.id) == []

    def test_sign_before_send_is_rejected(self, lifecycle, contributor):
        with pytest.raises(InvalidTransitionError):
            lifecycle.sign_agreement(contributor.id, AgreementType.NDA)

    def test_first_signature_keeps_signing_stage(self, lifecycle, contributor):
        lifecycle.send_agreements(contributor.id)
        c = lifecycle.sign_agreement(contributor.id, AgreementType.NDA)
        assert c.workflow_stage == WorkflowStage.SIGNING
        assert c.nda_status == AgreementStatus.SIGNED
        assert c.nda_signed_date is not None
        assert c.access_level == AccessLevel.NONE

    def test_both_signatures_move_to_provisioning(self, signed):
        assert signed.workflow_stage == WorkflowStage.PROVISIONING
        assert signed.access_level == AccessLevel.LIMITED
        assert signed.access_tier == 0

    def test_cannot_sign_twice(self, lifecycle, contributor):
        lifecycle.send_agreements(contributor.id)
        lifecycle.sign_agreement(contributor.id, AgreementType.NDA)
        with pytest.raises(InvalidTransitionError):
            lifecycle.sign_agreement(contributor.id, AgreementType.NDA)

    def test_unknown_agreement_type(self, lifecycle, contributor):
        lifecycle.send_agreements(contributor.id)
        with pytest.raises(PreconditionError):
            lifecycle.sign_agreement(contributor.id, "handshake")


class TestProvisioning:
    def test_provision_requires_signatures(self, lifecycle, contributor):
        lifecycle.send_agreements(contributor.id)
        with pytest.raises(InvalidTransitionError):
            lifecycle.provision_access(contributor.id, 2)
        assert lifecycle.get(contributor.id).access_tier == 0

    def test_provision_sets_tier_and_ready(self, lifecycle, signed):
        c = lifecycle.provision_access(signed.id, 2)
        assert c.access_tier == 2
        assert c.workflow_stage == WorkflowStage.READY
        assert c.access_level == AccessLevel.ACTIVE
        assert can_assign_tasks(c)

    def test_provision_tier_zero_is_rejected(self, lifecycle, signed):
        with pytest.raises(PreconditionError):
            lifecycle.provision_access(signed.id, 0)

    def test_provision_out_of_range(self, lifecycle, signed):
        with pytest.raises(PreconditionError):
            lifecycle.provision_access(signed.id, 4)

    def test_start_work(self, lifecycle, signed):
        lifecycle.provision_access(signed.id, 1)
        c = lifecycle.start_work(signed.id)
        assert c.workflow_stage == WorkflowStage.WORKING

    def test_gate_refuses_tier_before_signatures(self, gate, contributor):
        with pytest.raises(GateError):
            gate.request_tier_change(contributor.id, 1)

    def test_gate_tier_change_after_provisioning(self, lifecycle, gate, signed, ledger):
        lifecycle.provision_access(signed.id, 1)
        c = gate.request_tier_change(signed.id, 3)
        assert c.access_tier == 3
        entry = ledger.list_by_entity(EntityType.CONTRIBUTOR, signed.id)[0]
        assert entry.action == "access_tier_changed"
        assert entry.details["from"] == 1
        assert entry.details["to"] == 3

    def test_gate_refuses_tier_change_before_provisioning(self, lifecycle, gate, signed, store):
        before = store.get(CONTRIBUTORS)
        with pytest.raises(InvalidTransitionError):
            gate.request_tier_change(signed.id, 2)
        assert store.get(CONTRIBUTORS) == before
        c = lifecycle.provision_access(signed.id, 2)
        assert (c.access_tier, c.workflow_stage) == (2, WorkflowStage.READY)
        c = lifecycle.start_work(signed.id)
        assert c.workflow_stage == WorkflowStage.WORKING
        c = gate.request_tier_change(signed.id, 1)
        assert c.access_tier == 1


class TestRevocationAndArchive:
    def test_revoke_from_intake(self, lifecycle, contributor):
        c = lifecycle.revoke_access(contributor.id, "withdrew application")
        assert c.workflow_stage == WorkflowStage.EXIT
        assert c.access_level == AccessLevel.REVOKED
        assert c.exit_reason == "withdrew application"

    def test_revoke_requires_reason(self, lifecycle, contributor):
        with pytest.raises(PreconditionError):
            lifecycle.revoke_access(contributor.id, "  ")

    def test_revoke_marks_agreements_revoked(self, lifecycle, signed):
        lifecycle.revoke_access(signed.id, "breach")
        agreements = lifecycle.agreements_for(signed.id)
        assert all(a.status == AgreementStatus.REVOKED for a in agreements)
        assert all(a.revoked_at is not None for a in agreements)

    def test_archive_only_from_exit(self, lifecycle, contributor):
        with pytest.raises(InvalidTransitionError):
            lifecycle.archive(contributor.id)

    def test_archived_is_write_once(self, lifecycle, contributor, store):
        lifecycle.revoke_access(contributor.id, "done")
        lifecycle.archive(contributor.id)
        before = store.get(CONTRIBUTORS)
        with pytest.raises(FinalizedError):
            lifecycle.revoke_access(contributor.id, "again")
        with pytest.raises(FinalizedError):
            lifecycle.update_profile(contributor.id, notes="x")
        assert store.get(CONTRIBUTORS) == before

    def test_contract_scenario(self, lifecycle):
        c = lifecycle.create_contributor("Grace Hopper", "grace@example.com", RoleType.PRODUCT_OPS)
        assert (c.access_tier, c.workflow_stage) == (0, WorkflowStage.INTAKE)
        lifecycle.send_agreements(c.id)
        lifecycle.sign_agreement(c.id, AgreementType.NDA)
        c = lifecycle.sign_agreement(c.id, AgreementType.IP_ASSIGNMENT)
        assert (c.access_tier, c.workflow_stage) == (0, WorkflowStage.PROVISIONING)
        c = lifecycle.provision_access(c.id, 2)
        assert (c.access_tier, c.workflow_stage) == (2, WorkflowStage.READY)
        c = lifecycle.revoke_access(c.id, "end of contract")
        assert c.access_tier == 0
        assert c.nda_status == AgreementStatus.REVOKED
        assert c.ip_assignment_status == AgreementStatus.REVOKED
        assert c.workflow_stage == WorkflowStage.EXIT


class TestTierMonotonicity:
    def test_invariant_holds_at_every_step(self, lifecycle, gate):
        c = lifecycle.create_contributor("Alan Turing", "alan@example.com", RoleType.TECHNICAL)
        steps = [
            lambda: lifecycle.mark_documents_received(c.id),
            lambda: lifecycle.provision_access(c.id, 3),
            lambda: gate.request_tier_change(c.id, 2),
            lambda: lifecycle.send_agreements(c.id),
            lambda: gate.request_tier_change(c.id, 1),
            lambda: lifecycle.sign_agreement(c.id, AgreementType.NDA),
            lambda: lifecycle.provision_access(c.id, 3),
            lambda: lifecycle.sign_agreement(c.id, AgreementType.IP_ASSIGNMENT),
            lambda: lifecycle.provision_access(c.id, 3),
            lambda: gate.request_tier_change(c.id, 1),
            lambda: lifecycle.start_work(c.id),
            lambda: lifecycle.revoke_access(c.id, "rotation"),
            lambda: gate.request_tier_change(c.id, 2),
            lambda: lifecycle.archive(c.id),
        ]
        for step in steps:
            try:
                step()
            except (GateError, InvalidTransitionError, PreconditionError, FinalizedError):
                pass
            for snapshot in lifecycle.list_contributors():
                _assert_tier_invariant(snapshot)
        final = lifecycle.get(c.id)
        assert final.workflow_stage == WorkflowStage.ARCHIVED
        assert final.access_tier == 0
