"""App governance lifecycle.

unreviewed -> in_review -> approved | paused | killed

``is_active`` is a side flag on approved apps; at most one app is active at
any time. Killed apps are terminal. Launch approval is never stored: it is
recomputed from the current record by ``is_launch_approved``.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable

from karma.audit import AuditLedger, default_actor
from karma.db import APPS, BaseStore, Transaction, decode_collection
from karma.errors import (
    FinalizedError,
    InvalidTransitionError,
    InvariantViolationError,
    NotFoundError,
    PreconditionError,
)
from karma.models import (
    CHECKLIST_LABELS,
    App,
    AppLifecycle,
    AppOrigin,
    AppRegistration,
    AppStatus,
    EntityType,
    FounderDecision,
    ReviewType,
    TrafficLight,
)
from karma.reviewer import run_review
from karma.utils import name_key, utcnow

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------------

REVIEWABLE_STATUSES = (AppStatus.UNREVIEWED, AppStatus.IN_REVIEW)

DECISION_SOURCES: dict[FounderDecision, tuple[AppStatus, ...]] = {
    FounderDecision.APPROVE: (AppStatus.IN_REVIEW, AppStatus.PAUSED),
    FounderDecision.PAUSE: (AppStatus.UNREVIEWED, AppStatus.IN_REVIEW, AppStatus.APPROVED, AppStatus.PAUSED),
    FounderDecision.KILL: (AppStatus.UNREVIEWED, AppStatus.IN_REVIEW, AppStatus.APPROVED, AppStatus.PAUSED),
}

DECISION_RESULTS: dict[FounderDecision, tuple[AppStatus, str]] = {
    FounderDecision.APPROVE: (AppStatus.APPROVED, "app_approved"),
    FounderDecision.PAUSE: (AppStatus.PAUSED, "app_paused"),
    FounderDecision.KILL: (AppStatus.KILLED, "app_killed"),
}

DESCRIPTIVE_FIELDS = (
    "name", "origin", "description", "intended_user", "mvp_scope", "non_goals",
    "risk_notes", "product_type", "lifecycle", "traffic_light",
    "compliance_flags", "modules_present",
)

_ENUM_FIELDS = {"origin": AppOrigin, "lifecycle": AppLifecycle, "traffic_light": TrafficLight}


# ---------------------------------------------------------------------------
# Pure predicates
# ---------------------------------------------------------------------------


def is_launch_approved(app: App) -> bool:
    return (
        app.lifecycle == AppLifecycle.EXTERNAL
        and app.traffic_light == TrafficLight.GREEN
        and app.readiness_checklist.all_complete
        and not app.unacknowledged_flags()
    )


def get_blockers(app: App) -> list[str]:
    """Unacknowledged review flags followed by missing checklist items."""
    blockers = [flag.description for _, flag in app.unacknowledged_flags()]
    blockers.extend(CHECKLIST_LABELS[key] for key in app.readiness_checklist.missing())
    return blockers


def is_ready_to_launch(app: App) -> bool:
    """Dashboard readiness: approved, owned, green and backed by a repository."""
    return (
        app.status == AppStatus.APPROVED
        and app.owner_confirmed
        and app.asset_ownership_confirmed
        and app.traffic_light == TrafficLight.GREEN
        and bool(app.repo_url)
    )


def can_proceed_to_build(app: App) -> bool:
    return (
        app.status == AppStatus.APPROVED
        and app.is_active
        and app.owner_confirmed
        and app.asset_ownership_confirmed
    )


def _coerce(app_id: str | None, enum: type, value: Any) -> Any:
    try:
        return enum(value)
    except ValueError as exc:
        raise PreconditionError(str(exc), entity_type=EntityType.APP, entity_id=app_id) from exc


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class AppGovernanceLifecycle:
    def __init__(self, store: BaseStore, ledger: AuditLedger):
        self._store = store
        self._ledger = ledger

    def _load(self, tx: Transaction, app_id: str) -> App:
        app = tx.find(APPS, app_id)
        if app is None:
            raise NotFoundError(f"App {app_id} not found", entity_type=EntityType.APP, entity_id=app_id)
        if app.status == AppStatus.KILLED:
            raise FinalizedError(
                f"App '{app.name}' was killed and can no longer be changed",
                entity_type=EntityType.APP, entity_id=app_id,
            )
        return app

    def _commit(self, tx: Transaction, app: App, action: str, actor: str | None, **details) -> None:
        app.updated_at = utcnow()
        tx.save(APPS)
        self._ledger.record(tx, action, EntityType.APP, app.id, actor=actor, details=details)

    def _check_unique_name(self, apps: Iterable[App], name: str, app_id: str | None = None) -> None:
        key = name_key(name)
        clash = next((a for a in apps if a.id != app_id and name_key(a.name) == key), None)
        if clash is not None:
            raise InvariantViolationError(
                f"An app named '{clash.name}' already exists",
                entity_type=EntityType.APP, entity_id=app_id,
                details={"existing_id": clash.id},
            )

    # -- intake ------------------------------------------------------------

    def create_app(
        self,
        name: str,
        origin: AppOrigin | str = AppOrigin.OTHER,
        description: str = "",
        intended_user: str = "",
        mvp_scope: str = "",
        non_goals: str = "",
        risk_notes: str = "",
        *,
        lifecycle: AppLifecycle | str = AppLifecycle.EXTERNAL,
        product_type: str = "",
        actor: str | None = None,
    ) -> App:
        name = (name or "").strip()
        if not name:
            raise PreconditionError("App name is required", entity_type=EntityType.APP)
        app = App(
            name=name,
            origin=_coerce(None, AppOrigin, origin),
            description=description,
            intended_user=intended_user,
            mvp_scope=mvp_scope,
            non_goals=non_goals,
            risk_notes=risk_notes,
            lifecycle=_coerce(None, AppLifecycle, lifecycle),
            product_type=product_type,
        )
        with self._store.transaction() as tx:
            apps: list[App] = tx.load(APPS)
            self._check_unique_name(apps, name)
            apps.insert(0, app)
            self._commit(tx, app, "app_created", actor, name=app.name, origin=app.origin.value)
        log.info("App %s created: %s", app.id, app.name)
        return app

    def quick_register(self, entries: Iterable[AppRegistration | dict], actor: str | None = None) -> list[App]:
        """Register several apps from minimal entries, all or none."""
        registrations = [e if isinstance(e, AppRegistration) else AppRegistration.model_validate(e) for e in entries]
        with self._store.transaction() as tx:
            apps: list[App] = tx.load(APPS)
            created: list[App] = []
            for entry in registrations:
                name = entry.name.strip()
                if not name:
                    raise PreconditionError("App name is required", entity_type=EntityType.APP)
                self._check_unique_name([*apps, *created], name)
                created.append(App(
                    name=name,
                    origin=entry.origin,
                    description=entry.purpose,
                    traffic_light=entry.traffic_light,
                ))
            apps[:0] = created
            tx.save(APPS)
            for app in created:
                self._ledger.record(
                    tx, "app_quick_registered", EntityType.APP, app.id, actor=actor,
                    details={"name": app.name, "origin": app.origin.value, "traffic_light": app.traffic_light.value},
                )
        log.info("Quick-registered %d app(s)", len(created))
        return created

    def update_app(self, app_id: str, actor: str | None = None, **fields) -> App:
        """Update descriptive fields. Status, ownership and reviews have their own operations."""
        unknown = sorted(set(fields) - set(DESCRIPTIVE_FIELDS))
        if unknown:
            raise PreconditionError(
                f"Fields cannot be updated directly: {', '.join(unknown)}",
                entity_type=EntityType.APP, entity_id=app_id,
            )
        with self._store.transaction() as tx:
            app = self._load(tx, app_id)
            changed: dict[str, Any] = {}
            for key, value in fields.items():
                if value is None:
                    continue
                if key in _ENUM_FIELDS:
                    value = _coerce(app_id, _ENUM_FIELDS[key], value)
                if key == "name":
                    value = value.strip()
                    if not value:
                        raise PreconditionError("App name is required", entity_type=EntityType.APP, entity_id=app_id)
                    self._check_unique_name(tx.load(APPS), value, app_id)
                setattr(app, key, value)
                changed[key] = value
            if not changed:
                return app
            self._commit(tx, app, "app_updated", actor, fields=sorted(changed))
        return app

    def update_checklist(self, app_id: str, actor: str | None = None, **items: bool) -> App:
        unknown = sorted(set(items) - set(CHECKLIST_LABELS))
        if unknown:
            raise PreconditionError(
                f"Unknown checklist items: {', '.join(unknown)}",
                entity_type=EntityType.APP, entity_id=app_id,
            )
        with self._store.transaction() as tx:
            app = self._load(tx, app_id)
            for key, value in items.items():
                setattr(app.readiness_checklist, key, bool(value))
            self._commit(
                tx, app, "readiness_checklist_updated", actor,
                items={k: bool(v) for k, v in items.items()},
                missing=app.readiness_checklist.missing(),
            )
        return app

    def confirm_ownership(self, app_id: str, repo_url: str, actor: str | None = None) -> App:
        repo_url = (repo_url or "").strip()
        if not repo_url:
            raise PreconditionError("A repository URL is required", entity_type=EntityType.APP, entity_id=app_id)
        with self._store.transaction() as tx:
            app = self._load(tx, app_id)
            app.owner_confirmed = True
            app.asset_ownership_confirmed = True
            app.repo_url = repo_url
            self._commit(tx, app, "ownership_confirmed", actor, repo_url=repo_url, owner_entity=app.owner_entity)
        return app

    # -- review and decision -----------------------------------------------

    def run_agent_review(self, app_id: str, actor: str | None = None) -> App:
        """Run both rule-based reviews and move the app into review.

        Acknowledgements survive a re-run for flags that are raised again.
        """
        with self._store.transaction() as tx:
            app = self._load(tx, app_id)
            if app.status not in REVIEWABLE_STATUSES:
                raise InvalidTransitionError(
                    f"Cannot review an app in status '{app.status}'",
                    entity_type=EntityType.APP, entity_id=app_id,
                )
            acknowledged = {
                (review_type, flag.id)
                for review_type in ReviewType
                if (review := app.review(review_type)) is not None
                for flag in review.flags
                if flag.acknowledged
            }
            product_review, risk_review = run_review(app)
            for review_type, review in ((ReviewType.PRODUCT_SPEC, product_review), (ReviewType.RISK_INTEGRITY, risk_review)):
                for flag in review.flags:
                    flag.acknowledged = (review_type, flag.id) in acknowledged
                setattr(app, review_type.value, review)
            app.agent_review_complete = True
            app.status = AppStatus.IN_REVIEW
            self._commit(
                tx, app, "agent_review_completed", actor,
                product_flags=len(product_review.flags), risk_flags=len(risk_review.flags),
            )
        log.info("Agent review for app %s: %d product, %d risk flag(s)",
                 app.id, len(product_review.flags), len(risk_review.flags))
        return app

    def make_founder_decision(
        self, app_id: str, decision: FounderDecision | str, notes: str | None = None, actor: str | None = None,
    ) -> App:
        decision = _coerce(app_id, FounderDecision, decision)
        with self._store.transaction() as tx:
            app = self._load(tx, app_id)
            if app.status not in DECISION_SOURCES[decision]:
                raise InvalidTransitionError(
                    f"Cannot {decision} an app in status '{app.status}'",
                    entity_type=EntityType.APP, entity_id=app_id,
                )
            if decision == FounderDecision.APPROVE:
                if not app.owner_confirmed or not app.asset_ownership_confirmed:
                    raise PreconditionError(
                        "Cannot approve: IP & ownership must be confirmed first",
                        entity_type=EntityType.APP, entity_id=app_id,
                    )
                if not app.repo_url:
                    raise PreconditionError(
                        "Cannot approve: Repository URL is required",
                        entity_type=EntityType.APP, entity_id=app_id,
                    )
            status, action = DECISION_RESULTS[decision]
            decided_by = actor or default_actor()
            now = utcnow()
            app.status = status
            if decision != FounderDecision.APPROVE:
                app.is_active = False
            if decision == FounderDecision.KILL:
                app.archived_at = now
            app.founder_decision = decision
            app.founder_decision_notes = notes
            app.founder_decision_at = now
            app.founder_decision_by = decided_by
            self._commit(tx, app, action, decided_by, notes=notes)
        log.info("App %s %s by %s", app.id, status, decided_by)
        return app

    def set_active(self, app_id: str, actor: str | None = None) -> App:
        """Make *app_id* the single active app, deactivating every other one in the same write."""
        with self._store.transaction() as tx:
            app = self._load(tx, app_id)
            if app.status != AppStatus.APPROVED:
                raise PreconditionError(
                    "Only approved apps can be set as active",
                    entity_type=EntityType.APP, entity_id=app_id,
                )
            now = utcnow()
            deactivated = []
            for other in tx.load(APPS):
                if other.id != app.id and other.is_active:
                    other.is_active = False
                    other.updated_at = now
                    deactivated.append(other.id)
            app.is_active = True
            self._commit(tx, app, "app_activated", actor, deactivated=deactivated)
        return app

    def acknowledge_flag(
        self, app_id: str, review_type: ReviewType | str, flag_id: str, actor: str | None = None,
    ) -> App:
        review_type = _coerce(app_id, ReviewType, review_type)
        with self._store.transaction() as tx:
            app = self._load(tx, app_id)
            review = app.review(review_type)
            flag = next((f for f in review.flags if f.id == flag_id), None) if review else None
            if flag is None:
                raise NotFoundError(
                    f"Flag {flag_id} not found in {review_type}",
                    entity_type=EntityType.APP, entity_id=app_id,
                )
            if flag.acknowledged:
                raise InvalidTransitionError(
                    f"Flag {flag_id} already acknowledged",
                    entity_type=EntityType.APP, entity_id=app_id,
                )
            flag.acknowledged = True
            self._commit(tx, app, "flag_acknowledged", actor, review_type=review_type.value, flag_id=flag_id)
        return app

    # -- queries -----------------------------------------------------------

    def list_apps(self) -> list[App]:
        return decode_collection(APPS, self._store.get(APPS))

    def get(self, app_id: str) -> App:
        app = next((a for a in self.list_apps() if a.id == app_id), None)
        if app is None:
            raise NotFoundError(f"App {app_id} not found", entity_type=EntityType.APP, entity_id=app_id)
        return app

    def apps_by_status(self, status: AppStatus | str) -> list[App]:
        return [a for a in self.list_apps() if a.status == status]

    def active_app(self) -> App | None:
        return next((a for a in self.list_apps() if a.is_active), None)

    def is_launch_approved(self, app_id: str) -> bool:
        return is_launch_approved(self.get(app_id))

    def get_blockers(self, app_id: str) -> list[str]:
        return get_blockers(self.get(app_id))

    def is_ready_to_launch(self, app_id: str) -> bool:
        return is_ready_to_launch(self.get(app_id))

    def can_proceed_to_build(self, app_id: str) -> bool:
        return can_proceed_to_build(self.get(app_id))

    def has_unacknowledged_flags(self, app_id: str) -> bool:
        return bool(self.get(app_id).unacknowledged_flags())
