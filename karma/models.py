from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Any, assert_never

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from sqlalchemy import DateTime, LargeBinary, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from karma.utils import new_id, utcnow


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


# Timestamps without an offset are read as UTC.
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]


class Base(DeclarativeBase):
    pass


class Document(Base):
    """One whole collection, stored as a JSON payload under its key."""
    __tablename__ = "documents"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RoleType(StrEnum):
    PRODUCT_OPS = "product_ops"
    TECHNICAL = "technical"
    DESIGN_UX = "design_ux"


class EngagementType(StrEnum):
    CONTRACT = "contract"
    TRIAL = "trial"
    UNPAID = "unpaid"


class AgreementStatus(StrEnum):
    NOT_SENT = "not_sent"
    SENT = "sent"
    SIGNED = "signed"
    REVOKED = "revoked"
    EXPIRED = "expired"


class AgreementType(StrEnum):
    NDA = "nda"
    IP_ASSIGNMENT = "ip_assignment"


class WorkflowStage(StrEnum):
    INTAKE = "intake"
    DOCUMENTS = "documents"
    SIGNING = "signing"
    PROVISIONING = "provisioning"
    READY = "ready"
    WORKING = "working"
    EXIT = "exit"
    ARCHIVED = "archived"


class AccessLevel(StrEnum):
    NONE = "none"
    LIMITED = "limited"
    ACTIVE = "active"
    REVOKED = "revoked"


ACCESS_TIER_NAMES: dict[int, str] = {
    0: "No Access",
    1: "Limited Contributor",
    2: "Scoped Technical",
    3: "Ops / Coordination",
}


class RubricCategory(StrEnum):
    SKILLS_MATCH = "skills_match"
    COMMUNICATION = "communication"
    RELIABILITY = "reliability"
    MISSION_ALIGNMENT = "mission_alignment"
    WORK_SAMPLES = "work_samples"


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RiskCategory(StrEnum):
    AVAILABILITY = "availability"
    PORTFOLIO = "portfolio"
    COMMUNICATION = "communication"
    CONFLICT = "conflict"


class Decision(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    CONDITIONAL = "conditional"
    DECLINED = "declined"
    PAUSED = "paused"


class AppStatus(StrEnum):
    UNREVIEWED = "unreviewed"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    PAUSED = "paused"
    KILLED = "killed"


class AppOrigin(StrEnum):
    LOVABLE = "lovable"
    RORK = "rork"
    GOOGLE_AI_STUDIO = "google_ai_studio"
    CHAT = "chat"
    MANUAL = "manual"
    OTHER = "other"


class AppLifecycle(StrEnum):
    EXTERNAL = "external"
    INTERNAL_ONLY = "internal-only"


class TrafficLight(StrEnum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class FounderDecision(StrEnum):
    APPROVE = "approve"
    PAUSE = "pause"
    KILL = "kill"


class FlagCategory(StrEnum):
    SCOPE_CREEP = "scope_creep"
    IP_CONFLICT = "ip_conflict"
    ETHICAL_RISK = "ethical_risk"
    OVER_COMPLEXITY = "over_complexity"


class ReviewType(StrEnum):
    PRODUCT_SPEC = "product_spec_review"
    RISK_INTEGRITY = "risk_integrity_review"


class AgentId(StrEnum):
    SYSTEMS_ARCHITECT = "systems_architect"
    PRODUCT_SPEC = "product_spec"
    CODE_BUILDER = "code_builder"
    RISK_INTEGRITY = "risk_integrity"


class ActionKind(StrEnum):
    # systems_architect
    GENERATE_ARCHITECTURE = "generate_architecture"
    PROPOSE_DATA_MODEL = "propose_data_model"
    REVIEW_TECHNICAL_SPEC = "review_technical_spec"
    SUGGEST_INTEGRATION = "suggest_integration"
    IDENTIFY_TECHNICAL_RISK = "identify_technical_risk"
    ARCHITECTURE_CHANGE = "architecture_change"
    NEW_INTEGRATION = "new_integration"
    SCHEMA_CHANGE = "schema_change"
    # product_spec
    GENERATE_PRD = "generate_prd"
    CREATE_USER_STORIES = "create_user_stories"
    DEFINE_MVP_SCOPE = "define_mvp_scope"
    IDENTIFY_NON_GOALS = "identify_non_goals"
    CREATE_BUILD_PLAN = "create_build_plan"
    FINALIZE_PRD = "finalize_prd"
    SCOPE_CHANGE = "scope_change"
    TIMELINE_COMMITMENT = "timeline_commitment"
    # code_builder
    GENERATE_CODE = "generate_code"
    REVIEW_CODE = "review_code"
    SUGGEST_IMPROVEMENT = "suggest_improvement"
    CREATE_TESTS = "create_tests"
    DOCUMENT_CODE = "document_code"
    MERGE_FEATURE_BRANCH = "merge_feature_branch"
    ARCHITECTURE_DEVIATION = "architecture_deviation"
    ADD_DEPENDENCY = "add_dependency"
    # risk_integrity
    EVALUATE_ETHICAL_RISK = "evaluate_ethical_risk"
    CHECK_COMPLIANCE = "check_compliance"
    FLAG_ISSUE = "flag_issue"
    GENERATE_RISK_REPORT = "generate_risk_report"
    REVIEW_CONTRIBUTOR_STATUS = "review_contributor_status"
    RISK_MITIGATION_PLAN = "risk_mitigation_plan"
    EXCEPTION_REQUEST = "exception_request"
    POLICY_RECOMMENDATION = "policy_recommendation"
    # denylisted for every agent
    GRANT_ACCESS = "grant_access"
    APPROVE_AGREEMENT = "approve_agreement"
    PUBLISH_CODE = "publish_code"
    OVERRIDE_FOUNDER = "override_founder"
    OVERRIDE_GUARDRAILS = "override_guardrails"
    APPROVE_EXCEPTION = "approve_exception"
    DEPLOY_PRODUCTION = "deploy_production"
    MERGE_MAIN = "merge_main"
    MODIFY_SECURITY = "modify_security"
    MODIFY_COMPLIANCE = "modify_compliance"
    DELETE_DATA = "delete_data"
    ACCESS_PRODUCTION_DATA = "access_production_data"
    CREATE_API_KEY = "create_api_key"
    ASSIGN_TASKS = "assign_tasks"
    APPROVE_SPEC = "approve_spec"
    MAKE_PRODUCT_DECISION = "make_product_decision"
    PUBLISH_EXTERNAL = "publish_external"
    ARCHIVE_AUDIT_LOG = "archive_audit_log"


class ActionStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"


class EntityType(StrEnum):
    CONTRIBUTOR = "contributor"
    AGREEMENT = "agreement"
    EVALUATION = "evaluation"
    APP = "app"
    AGENT_ACTION = "agent_action"
    SYSTEM = "system"


# ---------------------------------------------------------------------------
# Scoring tags: three closed families
# ---------------------------------------------------------------------------


class FitTag(StrEnum):
    STRONG = "fit:strong"
    CONDITIONAL = "fit:conditional"
    WEAK = "fit:weak"


class RiskTag(StrEnum):
    NONE = "risk:none"
    AVAILABILITY = "risk:availability"
    PORTFOLIO = "risk:portfolio"
    COMMUNICATION = "risk:communication"
    CONFLICT = "risk:conflict"


class ReadinessTag(StrEnum):
    SIGN = "ready:sign"
    CLARIFY = "ready:clarify"
    PAUSE = "ready:pause"
    DECLINE = "ready:decline"


ScoringTag = FitTag | RiskTag | ReadinessTag

_TAG_FAMILIES: tuple[type[StrEnum], ...] = (FitTag, RiskTag, ReadinessTag)


def parse_tag(value: str | ScoringTag) -> ScoringTag:
    """Resolve a raw tag string into its family enum. Raises ValueError if unknown."""
    if isinstance(value, (FitTag, RiskTag, ReadinessTag)):
        return value
    for family in _TAG_FAMILIES:
        try:
            return family(value)  # type: ignore[return-value]
        except ValueError:
            continue
    raise ValueError(f"Unknown scoring tag: {value!r}")


def tag_family(tag: ScoringTag) -> str:
    if isinstance(tag, FitTag):
        return "fit"
    if isinstance(tag, RiskTag):
        return "risk"
    if isinstance(tag, ReadinessTag):
        return "ready"
    assert_never(tag)


def risk_tag_for(category: RiskCategory) -> RiskTag:
    return RiskTag(f"risk:{category.value}")


# ---------------------------------------------------------------------------
# Contributors and agreements
# ---------------------------------------------------------------------------


class Contributor(BaseModel):
    id: str = Field(default_factory=new_id)
    legal_name: str
    email: str
    role_type: RoleType
    engagement_type: EngagementType = EngagementType.CONTRACT
    nda_status: AgreementStatus = AgreementStatus.NOT_SENT
    ip_assignment_status: AgreementStatus = AgreementStatus.NOT_SENT
    nda_signed_date: UtcDatetime | None = None
    ip_signed_date: UtcDatetime | None = None
    agreement_version: str = "1.0"
    access_tier: int = Field(default=0, ge=0, le=3)
    access_level: AccessLevel = AccessLevel.NONE
    workflow_stage: WorkflowStage = WorkflowStage.INTAKE
    portfolio_url: str = ""
    resume_url: str = ""
    notes: str = ""
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)
    archived_at: UtcDatetime | None = None
    exit_reason: str | None = None

    @property
    def both_signed(self) -> bool:
        return (
            self.nda_status == AgreementStatus.SIGNED
            and self.ip_assignment_status == AgreementStatus.SIGNED
        )


class Agreement(BaseModel):
    id: str = Field(default_factory=new_id)
    contributor_id: str
    type: AgreementType
    version: str = "1.0"
    status: AgreementStatus = AgreementStatus.SENT
    signer_name: str = ""
    signer_email: str = ""
    sent_at: UtcDatetime | None = None
    signed_at: UtcDatetime | None = None
    revoked_at: UtcDatetime | None = None


# ---------------------------------------------------------------------------
# Evaluations
# ---------------------------------------------------------------------------


class RubricScore(BaseModel):
    category: RubricCategory
    score: int = Field(ge=1, le=5)
    notes: str = ""
    ai_suggested: bool = True


class RiskFlag(BaseModel):
    id: str = Field(default_factory=new_id)
    category: RiskCategory
    severity: Severity
    description: str
    ai_generated: bool = True
    acknowledged: bool = False
    acknowledged_at: UtcDatetime | None = None


class EvaluationTag(BaseModel):
    tag: ScoringTag
    ai_suggested: bool = False
    confirmed_by_founder: bool = False

    @property
    def family(self) -> str:
        return tag_family(self.tag)


class QuestionnaireResponse(BaseModel):
    id: str = Field(default_factory=new_id)
    contributor_id: str
    responses: dict[str, str] = {}
    submitted_at: UtcDatetime = Field(default_factory=utcnow)


class Evaluation(BaseModel):
    id: str = Field(default_factory=new_id)
    contributor_id: str
    role_applied_for: RoleType
    questionnaire_response_id: str | None = None
    scores: list[RubricScore] = []
    overall_score: float = 0.0
    ai_summary: str = ""
    ai_strengths: list[str] = []
    ai_concerns: list[str] = []
    risk_flags: list[RiskFlag] = []
    tags: list[EvaluationTag] = []
    dismissed_tags: list[ScoringTag] = []
    decision: Decision = Decision.PENDING
    decision_notes: str | None = None
    decision_timestamp: UtcDatetime | None = None
    decision_by: str | None = None
    conditional_requirements: str | None = None
    conditional_deadline: str | None = None
    is_finalized: bool = False
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    def find_tag(self, tag: ScoringTag) -> EvaluationTag | None:
        return next((t for t in self.tags if t.tag == tag), None)


# ---------------------------------------------------------------------------
# Apps
# ---------------------------------------------------------------------------


class AppAgentFlag(BaseModel):
    id: str
    category: FlagCategory
    severity: Severity
    description: str
    acknowledged: bool = False


class AppAgentReview(BaseModel):
    agent_id: AgentId
    summary: str
    flags: list[AppAgentFlag] = []
    recommendations: list[str] = []
    reviewed_at: UtcDatetime = Field(default_factory=utcnow)


CHECKLIST_LABELS: dict[str, str] = {
    "pwa_manifest_present": "PWA manifest present",
    "service_worker_registered": "Service worker registered",
    "no_false_claims_or_legal_ambiguity": "No false claims / legal ambiguity",
    "clear_informational_language": "Clear informational-only language",
    "error_free_load": "Error-free load (no runtime crash)",
    "ready_for_vercel_deployment": "Ready for Vercel deployment",
}


class ReadinessChecklist(BaseModel):
    pwa_manifest_present: bool = False
    service_worker_registered: bool = False
    no_false_claims_or_legal_ambiguity: bool = False
    clear_informational_language: bool = False
    error_free_load: bool = False
    ready_for_vercel_deployment: bool = False

    def missing(self) -> list[str]:
        return [key for key in CHECKLIST_LABELS if not getattr(self, key)]

    @property
    def all_complete(self) -> bool:
        return not self.missing()


class App(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    origin: AppOrigin = AppOrigin.OTHER
    description: str = ""
    intended_user: str = ""
    mvp_scope: str = ""
    non_goals: str = ""
    risk_notes: str = ""
    product_type: str = ""
    status: AppStatus = AppStatus.UNREVIEWED
    is_active: bool = False
    lifecycle: AppLifecycle = AppLifecycle.EXTERNAL
    owner_confirmed: bool = False
    owner_entity: str = "Clearpath Technologies LLC"
    asset_ownership_confirmed: bool = False
    repo_url: str | None = None
    agent_review_complete: bool = False
    product_spec_review: AppAgentReview | None = None
    risk_integrity_review: AppAgentReview | None = None
    readiness_checklist: ReadinessChecklist = Field(default_factory=ReadinessChecklist)
    traffic_light: TrafficLight | None = None
    compliance_flags: dict[str, bool] | None = None
    modules_present: dict[str, bool] | None = None
    founder_decision: FounderDecision | None = None
    founder_decision_notes: str | None = None
    founder_decision_at: UtcDatetime | None = None
    founder_decision_by: str | None = None
    archived_at: UtcDatetime | None = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    updated_at: UtcDatetime = Field(default_factory=utcnow)

    def review(self, review_type: ReviewType) -> AppAgentReview | None:
        if review_type == ReviewType.PRODUCT_SPEC:
            return self.product_spec_review
        return self.risk_integrity_review

    def unacknowledged_flags(self) -> list[tuple[ReviewType, AppAgentFlag]]:
        found: list[tuple[ReviewType, AppAgentFlag]] = []
        for review_type in ReviewType:
            review = self.review(review_type)
            if review is None:
                continue
            found.extend((review_type, f) for f in review.flags if not f.acknowledged)
        return found


class AppRegistration(BaseModel):
    """Minimal quick-register entry."""
    name: str
    origin: AppOrigin = AppOrigin.OTHER
    purpose: str = ""
    traffic_light: TrafficLight = TrafficLight.YELLOW


# ---------------------------------------------------------------------------
# Agent actions and audit
# ---------------------------------------------------------------------------


class AgentAction(BaseModel):
    id: str = Field(default_factory=new_id)
    agent_id: AgentId
    action: ActionKind
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    status: ActionStatus = ActionStatus.PENDING
    requires_approval: bool
    approved_by: str | None = None
    approved_at: UtcDatetime | None = None
    rejected_by: str | None = None
    created_at: UtcDatetime = Field(default_factory=utcnow)
    completed_at: UtcDatetime | None = None


class AuditLogEntry(BaseModel):
    """Immutable once appended; ``seq`` is the append order."""
    model_config = ConfigDict(frozen=True)

    seq: int
    id: str = Field(default_factory=new_id)
    action: str
    entity_type: EntityType
    entity_id: str
    actor: str
    timestamp: UtcDatetime = Field(default_factory=utcnow)
    details: dict[str, Any] = {}
