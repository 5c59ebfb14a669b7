"""Load-time normalization and one-shot data corrections.

``NormalizationMigrator.normalize`` runs a fixed sequence of named passes
once, when a store is opened. Every pass checks its own precondition and
returns ``None`` when the data already satisfies it; only a pass that
actually changes data writes an audit entry (``entity_type=system``,
``entity_id=migration:<name>``). Running the migrator twice is therefore a
no-op the second time.
"""
from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import ValidationError

from karma.agents import AGENTS
from karma.audit import AuditLedger
from karma.db import (
    AGENT_ACTIONS,
    APPS,
    AUDIT_LOG,
    COLLECTIONS,
    CONTRIBUTORS,
    BaseStore,
    Transaction,
)
from karma.models import (
    AccessLevel,
    ActionKind,
    AgentId,
    App,
    AppLifecycle,
    AppOrigin,
    AppStatus,
    AgreementStatus,
    EntityType,
    TrafficLight,
)
from karma.utils import json_parse, name_key, utcnow

log = logging.getLogger(__name__)

CANONICAL_OWNER_ENTITY = "Clearpath Technologies LLC"

OWNER_ENTITY_VARIANTS = frozenset({
    "clearpath",
    "clearpathllc",
    "clearpathtech",
    "clearpathtechllc",
    "clearpathtechnologies",
    "clearpathtechnologiesllc",
    "clearpathtechnologiesinc",
})

# Identity fields a record must carry to be kept at all.
IDENTITY_FIELDS: dict[str, tuple[str, ...]] = {
    "contributors": ("id", "legal_name", "email"),
    "agreements": ("id", "contributor_id", "type"),
    "evaluations": ("id", "contributor_id", "role_applied_for"),
    "questionnaires": ("id", "contributor_id"),
    "apps": ("id", "name"),
    "agent_actions": ("id", "agent_id", "action"),
    "audit_log": ("action", "entity_type", "entity_id"),
}

FIELDPASS_COMPLIANCE_FLAGS = (
    "no_payments", "no_rankings", "no_guarantees", "safety_first_onboarding",
    "no_medical_claims", "no_financial_claims", "no_employment_claims",
)

FIELDPASS_MODULES = (
    "welcome_orientation", "onboarding_wizard", "volunteer_dashboard",
    "opportunities_list", "opportunity_detail", "profile_credentials",
    "host_dashboard", "readiness_quiz", "monthly_archive",
)


def seed_apps() -> list[App]:
    """Canonical app records that must always exist."""
    return [
        App(
            name="FieldPassReady",
            origin=AppOrigin.LOVABLE,
            description=(
                "FieldPassReady helps volunteers prepare before arriving on site. Complete the "
                "checklist, take the quiz, and understand your skill level."
            ),
            intended_user="Volunteers and volunteer hosts",
            product_type="Volunteer readiness PWA",
            lifecycle=AppLifecycle.EXTERNAL,
            traffic_light=TrafficLight.YELLOW,
            compliance_flags={flag: True for flag in FIELDPASS_COMPLIANCE_FLAGS},
            modules_present={module: True for module in FIELDPASS_MODULES},
        ),
    ]


# ---------------------------------------------------------------------------
# Pure record normalization
# ---------------------------------------------------------------------------


def _has_identity(key: str, record: Any) -> bool:
    if not isinstance(record, dict):
        return False
    return all(record.get(f) not in (None, "") for f in IDENTITY_FIELDS[key])


def _backfill_contributor(record: dict) -> dict:
    signed = (
        record.get("nda_status") == AgreementStatus.SIGNED
        and record.get("ip_assignment_status") == AgreementStatus.SIGNED
    )
    if not signed and record.get("access_tier", 0) != 0:
        record = {**record, "access_tier": 0}
        if record.get("access_level") == AccessLevel.ACTIVE:
            record["access_level"] = AccessLevel.NONE.value
    return record


def _backfill_agent_action(record: dict) -> dict:
    if "requires_approval" in record:
        return record
    try:
        needs = ActionKind(record["action"]) in AGENTS[AgentId(record["agent_id"])].requires_approval
    except (KeyError, ValueError):
        return record
    return {**record, "requires_approval": needs}


def normalize_collection(key: str, records: list[Any]) -> list[dict[str, Any]]:
    """Validate one collection's raw records and return them in canonical JSON form.

    Records missing identity fields or failing validation are dropped, as are
    repeated ids (the first occurrence wins). Optional fields get their
    defaults.
    """
    model = COLLECTIONS[key]
    seen: set[str] = set()
    out: list[dict[str, Any]] = []
    for position, record in enumerate(records):
        if not _has_identity(key, record):
            log.warning("Dropping %s record without identity at position %d", key, position)
            continue
        if key == CONTRIBUTORS:
            record = _backfill_contributor(record)
        elif key == AGENT_ACTIONS:
            record = _backfill_agent_action(record)
        elif key == AUDIT_LOG and "seq" not in record:
            record = {**record, "seq": (out[-1]["seq"] + 1) if out else 1}
        try:
            item = model.model_validate(record).model_dump(mode="json")
        except ValidationError as exc:
            log.warning("Dropping invalid %s record at position %d: %s", key, position, exc.errors()[0]["msg"])
            continue
        ident = str(item.get("id"))
        if ident in seen:
            log.warning("Dropping duplicate %s record %s", key, ident)
            continue
        seen.add(ident)
        out.append(item)
    return out


def normalize(raw: dict[str, Any]) -> dict[str, list[dict[str, Any]]]:
    """Normalize every known collection. Idempotent: ``normalize(normalize(x)) == normalize(x)``."""
    return {
        key: normalize_collection(key, raw[key] if isinstance(raw.get(key), list) else [])
        for key in COLLECTIONS
        if key in raw
    }


# ---------------------------------------------------------------------------
# Migrator
# ---------------------------------------------------------------------------


class NormalizationMigrator:
    def __init__(self, store: BaseStore, ledger: AuditLedger):
        self._store = store
        self._ledger = ledger
        self.passes: list[tuple[str, Callable[[Transaction], dict[str, Any] | None]]] = [
            ("schema_backfill", self._schema_backfill),
            ("canonical_owner_entity", self._canonical_owner_entity),
            ("dedupe_app_names", self._dedupe_app_names),
            ("single_active_app", self._single_active_app),
            ("seed_missing_apps", self._seed_missing_apps),
        ]

    def normalize(self) -> list[str]:
        """Run every pass in order inside one transaction. Returns names of passes that changed data."""
        applied: list[str] = []
        with self._store.transaction() as tx:
            for name, run in self.passes:
                details = run(tx)
                if details is None:
                    continue
                self._ledger.record(
                    tx, f"migration_{name}", EntityType.SYSTEM, f"migration:{name}",
                    actor="system", details=details,
                )
                applied.append(name)
        for name in applied:
            log.info("Migration pass %s applied", name)
        return applied

    # -- passes ------------------------------------------------------------

    def _schema_backfill(self, tx: Transaction) -> dict[str, Any] | None:
        changed: dict[str, dict[str, int]] = {}
        for key in COLLECTIONS:
            payload = tx.raw(key)
            if payload is None:
                continue
            raw = json_parse(payload, None)
            records = raw if isinstance(raw, list) else []
            cleaned = normalize_collection(key, records)
            if cleaned == raw:
                continue
            tx.save(key, [COLLECTIONS[key].model_validate(item) for item in cleaned])
            changed[key] = {"before": len(records), "after": len(cleaned)}
        return {"collections": changed} if changed else None

    def _canonical_owner_entity(self, tx: Transaction) -> dict[str, Any] | None:
        fixed: list[str] = []
        for app in tx.load(APPS):
            if app.owner_entity == CANONICAL_OWNER_ENTITY:
                continue
            if not app.owner_entity.strip() or name_key(app.owner_entity) in OWNER_ENTITY_VARIANTS:
                app.owner_entity = CANONICAL_OWNER_ENTITY
                app.updated_at = utcnow()
                fixed.append(app.id)
        if not fixed:
            return None
        tx.save(APPS)
        return {"apps": fixed, "owner_entity": CANONICAL_OWNER_ENTITY}

    def _dedupe_app_names(self, tx: Transaction) -> dict[str, Any] | None:
        apps: list[App] = tx.load(APPS)
        keep: dict[str, App] = {}
        for app in apps:
            key = name_key(app.name)
            current = keep.get(key)
            if current is None or app.created_at < current.created_at:
                keep[key] = app
        survivors = {a.id for a in keep.values()}
        removed = [a.id for a in apps if a.id not in survivors]
        if not removed:
            return None
        tx.save(APPS, [a for a in apps if a.id in survivors])
        return {"removed": removed}

    def _single_active_app(self, tx: Transaction) -> dict[str, Any] | None:
        apps: list[App] = tx.load(APPS)
        active = [a for a in apps if a.is_active]
        eligible = [a for a in active if a.status == AppStatus.APPROVED]
        winner = max(eligible, key=lambda a: a.updated_at, default=None)
        deactivated = [a.id for a in active if a is not winner]
        if not deactivated:
            return None
        now = utcnow()
        for app in active:
            if app is not winner:
                app.is_active = False
                app.updated_at = now
        tx.save(APPS)
        return {"kept": winner.id if winner else None, "deactivated": deactivated}

    def _seed_missing_apps(self, tx: Transaction) -> dict[str, Any] | None:
        apps: list[App] = tx.load(APPS)
        present = {name_key(a.name) for a in apps}
        missing = [seed for seed in seed_apps() if name_key(seed.name) not in present]
        if not missing:
            return None
        apps.extend(missing)
        tx.save(APPS)
        return {"seeded": [a.name for a in missing]}
