"""Pydantic request bodies for the Karma API."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator

from karma.models import (
    ActionKind,
    AgentId,
    AgreementType,
    AppLifecycle,
    AppOrigin,
    AppRegistration,
    Decision,
    EngagementType,
    FounderDecision,
    ReviewType,
    RoleType,
    RubricCategory,
    TrafficLight,
)


class _ActorMixin(BaseModel):
    actor: str | None = None


# ---------------------------------------------------------------------------
# Contributors
# ---------------------------------------------------------------------------


class ContributorCreate(_ActorMixin):
    legal_name: str
    email: str
    role_type: RoleType
    engagement_type: EngagementType = EngagementType.CONTRACT
    portfolio_url: str = ""
    resume_url: str = ""
    notes: str = ""

    @field_validator("email")
    @classmethod
    def email_must_look_valid(cls, v: str) -> str:
        if "@" not in v:
            raise ValueError("email must contain '@'")
        return v.strip()


class ContributorUpdate(_ActorMixin):
    notes: str | None = None
    portfolio_url: str | None = None
    resume_url: str | None = None
    engagement_type: EngagementType | None = None


class SendAgreements(_ActorMixin):
    version: str = "1.0"


class SignAgreement(_ActorMixin):
    agreement_type: AgreementType


class TierRequest(_ActorMixin):
    tier: int


class RevokeRequest(_ActorMixin):
    reason: str

    @field_validator("reason")
    @classmethod
    def reason_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


class QuestionnaireSubmit(_ActorMixin):
    contributor_id: str
    role_type: RoleType
    responses: dict[str, str] = {}


class ScoreUpdate(_ActorMixin):
    category: RubricCategory
    score: int
    notes: str | None = None


class TagRequest(_ActorMixin):
    tag: str


class DecisionRequest(_ActorMixin):
    decision: Decision
    notes: str | None = None
    conditional_requirements: str | None = None
    conditional_deadline: str | None = None


# ---------------------------------------------------------------------------
# Apps
# ---------------------------------------------------------------------------


class AppCreate(_ActorMixin):
    name: str
    origin: AppOrigin = AppOrigin.OTHER
    description: str = ""
    intended_user: str = ""
    mvp_scope: str = ""
    non_goals: str = ""
    risk_notes: str = ""
    lifecycle: AppLifecycle = AppLifecycle.EXTERNAL
    product_type: str = ""


class QuickRegister(_ActorMixin):
    entries: list[AppRegistration]


class AppUpdate(_ActorMixin):
    name: str | None = None
    origin: AppOrigin | None = None
    description: str | None = None
    intended_user: str | None = None
    mvp_scope: str | None = None
    non_goals: str | None = None
    risk_notes: str | None = None
    product_type: str | None = None
    lifecycle: AppLifecycle | None = None
    traffic_light: TrafficLight | None = None
    compliance_flags: dict[str, bool] | None = None
    modules_present: dict[str, bool] | None = None


class ChecklistUpdate(_ActorMixin):
    pwa_manifest_present: bool | None = None
    service_worker_registered: bool | None = None
    no_false_claims_or_legal_ambiguity: bool | None = None
    clear_informational_language: bool | None = None
    error_free_load: bool | None = None
    ready_for_vercel_deployment: bool | None = None


class OwnershipConfirm(_ActorMixin):
    repo_url: str


class FounderDecisionRequest(_ActorMixin):
    decision: FounderDecision
    notes: str | None = None


class FlagAcknowledge(_ActorMixin):
    review_type: ReviewType
    flag_id: str


class LaunchStatus(BaseModel):
    app_id: str
    launch_approved: bool
    ready_to_launch: bool
    blockers: list[str]


# ---------------------------------------------------------------------------
# Agents
# ---------------------------------------------------------------------------


class ActionRequest(_ActorMixin):
    agent_id: AgentId
    action: ActionKind
    input: dict[str, Any] | None = None


class ActionComplete(_ActorMixin):
    output: dict[str, Any] | None = None
