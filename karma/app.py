from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from karma.access import evaluate
from karma.agents import AGENTS, DENYLIST
from karma.apps import get_blockers, is_launch_approved, is_ready_to_launch
from karma.contributors import can_assign_tasks
from karma.db import SqlStore
from karma.errors import GovernanceError
from karma.models import (
    ACCESS_TIER_NAMES,
    AgentAction,
    Agreement,
    App,
    AppStatus,
    AuditLogEntry,
    Contributor,
    EntityType,
    Evaluation,
    WorkflowStage,
)
from karma.schemas import (
    ActionComplete,
    ActionRequest,
    AppCreate,
    AppUpdate,
    ChecklistUpdate,
    ContributorCreate,
    ContributorUpdate,
    DecisionRequest,
    FlagAcknowledge,
    FounderDecisionRequest,
    LaunchStatus,
    OwnershipConfirm,
    QuestionnaireSubmit,
    QuickRegister,
    RevokeRequest,
    ScoreUpdate,
    SendAgreements,
    SignAgreement,
    TagRequest,
    TierRequest,
)
from karma.services import Governance, compute_stats, open_governance

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    store = SqlStore.open()
    app.state.governance = open_governance(store)
    try:
        yield
    finally:
        store.dispose()


app = FastAPI(
    title="Karma",
    version="0.1.0",
    description=(
        "Founder-operated governance API: contributor onboarding and access tiers, "
        "evaluations, app review and launch readiness, and AI agent guardrails. "
        "Every mutation is recorded in an append-only audit log."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Contributors", "description": "Contributor lifecycle, agreements and access tiers."},
        {"name": "Evaluations", "description": "Questionnaires, rubric scores, tags and founder decisions."},
        {"name": "Apps", "description": "App intake, agent review, founder decisions and launch readiness."},
        {"name": "Agents", "description": "AI agent action queue and guardrails."},
        {"name": "Audit", "description": "Read-only audit log."},
        {"name": "Stats", "description": "Dashboard counts."},
    ],
)


@app.exception_handler(GovernanceError)
async def governance_error_handler(request: Request, exc: GovernanceError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.as_dict())


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def governance(request: Request) -> Governance:
    return request.app.state.governance


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", tags=["Stats"], summary="Dashboard counts")
def stats(gov: Governance = Depends(governance)) -> dict[str, Any]:
    return compute_stats(gov)


# ---------------------------------------------------------------------------
# Routes: Contributors
# ---------------------------------------------------------------------------


@app.post("/api/contributors", response_model=Contributor, status_code=201,
          tags=["Contributors"], summary="Create a contributor at intake")
def create_contributor(body: ContributorCreate, gov: Governance = Depends(governance)):
    return gov.contributors.create_contributor(
        body.legal_name, body.email, body.role_type, body.engagement_type,
        portfolio_url=body.portfolio_url, resume_url=body.resume_url, notes=body.notes,
        actor=body.actor,
    )


@app.get("/api/contributors", response_model=list[Contributor],
         tags=["Contributors"], summary="List contributors, optionally by workflow stage")
def list_contributors(stage: WorkflowStage | None = Query(None), gov: Governance = Depends(governance)):
    return gov.contributors.list_contributors(stage)


@app.get("/api/contributors/{contributor_id}", response_model=Contributor, tags=["Contributors"])
def get_contributor(contributor_id: str, gov: Governance = Depends(governance)):
    return gov.contributors.get(contributor_id)


@app.put("/api/contributors/{contributor_id}", response_model=Contributor,
         tags=["Contributors"], summary="Update notes, links or engagement type")
def update_contributor(contributor_id: str, body: ContributorUpdate, gov: Governance = Depends(governance)):
    fields = body.model_dump(exclude={"actor"}, exclude_none=True)
    return gov.contributors.update_profile(contributor_id, actor=body.actor, **fields)


@app.get("/api/contributors/{contributor_id}/access", tags=["Contributors"],
         summary="Allowed tier range and task eligibility")
def contributor_access(contributor_id: str, gov: Governance = Depends(governance)) -> dict[str, Any]:
    contributor = gov.contributors.get(contributor_id)
    allowed = evaluate(contributor)
    return {
        "contributor_id": contributor.id,
        "access_tier": contributor.access_tier,
        "tier_name": ACCESS_TIER_NAMES[contributor.access_tier],
        "access_level": contributor.access_level,
        "allowed": {"low": allowed.low, "high": allowed.high},
        "can_assign_tasks": can_assign_tasks(contributor),
        "can_proceed_to_agreements": gov.evaluations.can_proceed_to_agreements(contributor.id),
    }


@app.get("/api/contributors/{contributor_id}/agreements", response_model=list[Agreement], tags=["Contributors"])
def contributor_agreements(contributor_id: str, gov: Governance = Depends(governance)):
    gov.contributors.get(contributor_id)
    return gov.contributors.agreements_for(contributor_id)


@app.get("/api/contributors/{contributor_id}/evaluation", response_model=Evaluation | None,
         tags=["Evaluations"], summary="Latest evaluation for a contributor")
def contributor_evaluation(contributor_id: str, gov: Governance = Depends(governance)):
    return gov.evaluations.evaluation_for(contributor_id)


@app.post("/api/contributors/{contributor_id}/documents-received", response_model=Contributor, tags=["Contributors"])
def documents_received(contributor_id: str, gov: Governance = Depends(governance)):
    return gov.contributors.mark_documents_received(contributor_id)


@app.post("/api/contributors/{contributor_id}/send-agreements", response_model=Contributor, tags=["Contributors"])
def send_agreements(contributor_id: str, body: SendAgreements, gov: Governance = Depends(governance)):
    return gov.contributors.send_agreements(contributor_id, version=body.version, actor=body.actor)


@app.post("/api/contributors/{contributor_id}/sign", response_model=Contributor, tags=["Contributors"])
def sign_agreement(contributor_id: str, body: SignAgreement, gov: Governance = Depends(governance)):
    return gov.contributors.sign_agreement(contributor_id, body.agreement_type, actor=body.actor)


@app.post("/api/contributors/{contributor_id}/provision", response_model=Contributor, tags=["Contributors"])
def provision_access(contributor_id: str, body: TierRequest, gov: Governance = Depends(governance)):
    return gov.contributors.provision_access(contributor_id, body.tier, actor=body.actor)


@app.post("/api/contributors/{contributor_id}/tier", response_model=Contributor,
          tags=["Contributors"], summary="Change the access tier of a signed contributor")
def change_tier(contributor_id: str, body: TierRequest, gov: Governance = Depends(governance)):
    return gov.gate.request_tier_change(contributor_id, body.tier, actor=body.actor)


@app.post("/api/contributors/{contributor_id}/start-work", response_model=Contributor, tags=["Contributors"])
def start_work(contributor_id: str, gov: Governance = Depends(governance)):
    return gov.contributors.start_work(contributor_id)


@app.post("/api/contributors/{contributor_id}/revoke", response_model=Contributor,
          tags=["Contributors"], summary="Revoke agreements and access")
def revoke_access(contributor_id: str, body: RevokeRequest, gov: Governance = Depends(governance)):
    return gov.contributors.revoke_access(contributor_id, body.reason, actor=body.actor)


@app.post("/api/contributors/{contributor_id}/archive", response_model=Contributor, tags=["Contributors"])
def archive_contributor(contributor_id: str, gov: Governance = Depends(governance)):
    return gov.contributors.archive(contributor_id)


# ---------------------------------------------------------------------------
# Routes: Evaluations
# ---------------------------------------------------------------------------


@app.post("/api/evaluations", response_model=Evaluation, status_code=201,
          tags=["Evaluations"], summary="Submit a questionnaire and create an AI-scored evaluation")
def submit_questionnaire(body: QuestionnaireSubmit, gov: Governance = Depends(governance)):
    return gov.evaluations.submit_questionnaire(body.contributor_id, body.role_type, body.responses, actor=body.actor)


@app.get("/api/evaluations", response_model=list[Evaluation], tags=["Evaluations"])
def list_evaluations(pending: bool = Query(False), gov: Governance = Depends(governance)):
    if pending:
        return gov.evaluations.pending_evaluations()
    return gov.evaluations.list_evaluations()


@app.get("/api/evaluations/{evaluation_id}", response_model=Evaluation, tags=["Evaluations"])
def get_evaluation(evaluation_id: str, gov: Governance = Depends(governance)):
    return gov.evaluations.get(evaluation_id)


@app.put("/api/evaluations/{evaluation_id}/scores", response_model=Evaluation, tags=["Evaluations"])
def update_score(evaluation_id: str, body: ScoreUpdate, gov: Governance = Depends(governance)):
    return gov.evaluations.update_score(evaluation_id, body.category, body.score, body.notes, actor=body.actor)


@app.post("/api/evaluations/{evaluation_id}/tags/confirm", response_model=Evaluation, tags=["Evaluations"])
def confirm_tag(evaluation_id: str, body: TagRequest, gov: Governance = Depends(governance)):
    return gov.evaluations.confirm_tag(evaluation_id, body.tag, actor=body.actor)


@app.post("/api/evaluations/{evaluation_id}/tags/remove", response_model=Evaluation, tags=["Evaluations"])
def remove_tag(evaluation_id: str, body: TagRequest, gov: Governance = Depends(governance)):
    return gov.evaluations.remove_tag(evaluation_id, body.tag, actor=body.actor)


@app.post("/api/evaluations/{evaluation_id}/risk-flags/{flag_id}/acknowledge",
          response_model=Evaluation, tags=["Evaluations"])
def acknowledge_risk_flag(evaluation_id: str, flag_id: str, gov: Governance = Depends(governance)):
    return gov.evaluations.acknowledge_risk_flag(evaluation_id, flag_id)


@app.post("/api/evaluations/{evaluation_id}/decision", response_model=Evaluation,
          tags=["Evaluations"], summary="Record the founder decision; finalizes the evaluation")
def decide(evaluation_id: str, body: DecisionRequest, gov: Governance = Depends(governance)):
    return gov.evaluations.decide(
        evaluation_id, body.decision, body.notes,
        conditional_requirements=body.conditional_requirements,
        conditional_deadline=body.conditional_deadline,
        actor=body.actor,
    )


# ---------------------------------------------------------------------------
# Routes: Apps
# ---------------------------------------------------------------------------


@app.post("/api/apps", response_model=App, status_code=201, tags=["Apps"])
def create_app(body: AppCreate, gov: Governance = Depends(governance)):
    return gov.apps.create_app(
        body.name, body.origin, body.description, body.intended_user,
        body.mvp_scope, body.non_goals, body.risk_notes,
        lifecycle=body.lifecycle, product_type=body.product_type, actor=body.actor,
    )


@app.post("/api/apps/quick-register", response_model=list[App], status_code=201, tags=["Apps"])
def quick_register(body: QuickRegister, gov: Governance = Depends(governance)):
    return gov.apps.quick_register(body.entries, actor=body.actor)


@app.get("/api/apps", response_model=list[App], tags=["Apps"])
def list_apps(status: AppStatus | None = Query(None), gov: Governance = Depends(governance)):
    if status is not None:
        return gov.apps.apps_by_status(status)
    return gov.apps.list_apps()


@app.get("/api/apps/active", response_model=App | None, tags=["Apps"], summary="The single active app, if any")
def active_app(gov: Governance = Depends(governance)):
    return gov.apps.active_app()


@app.get("/api/apps/{app_id}", response_model=App, tags=["Apps"])
def get_app(app_id: str, gov: Governance = Depends(governance)):
    return gov.apps.get(app_id)


@app.put("/api/apps/{app_id}", response_model=App, tags=["Apps"])
def update_app(app_id: str, body: AppUpdate, gov: Governance = Depends(governance)):
    fields = body.model_dump(exclude={"actor"}, exclude_none=True)
    return gov.apps.update_app(app_id, actor=body.actor, **fields)


@app.put("/api/apps/{app_id}/checklist", response_model=App, tags=["Apps"])
def update_checklist(app_id: str, body: ChecklistUpdate, gov: Governance = Depends(governance)):
    items = body.model_dump(exclude={"actor"}, exclude_none=True)
    return gov.apps.update_checklist(app_id, actor=body.actor, **items)


@app.post("/api/apps/{app_id}/ownership", response_model=App, tags=["Apps"])
def confirm_ownership(app_id: str, body: OwnershipConfirm, gov: Governance = Depends(governance)):
    return gov.apps.confirm_ownership(app_id, body.repo_url, actor=body.actor)


@app.post("/api/apps/{app_id}/review", response_model=App, tags=["Apps"], summary="Run the rule-based agent review")
def run_agent_review(app_id: str, gov: Governance = Depends(governance)):
    return gov.apps.run_agent_review(app_id)


@app.post("/api/apps/{app_id}/decision", response_model=App, tags=["Apps"])
def founder_decision(app_id: str, body: FounderDecisionRequest, gov: Governance = Depends(governance)):
    return gov.apps.make_founder_decision(app_id, body.decision, body.notes, actor=body.actor)


@app.post("/api/apps/{app_id}/activate", response_model=App, tags=["Apps"])
def activate_app(app_id: str, gov: Governance = Depends(governance)):
    return gov.apps.set_active(app_id)


@app.post("/api/apps/{app_id}/flags/acknowledge", response_model=App, tags=["Apps"])
def acknowledge_flag(app_id: str, body: FlagAcknowledge, gov: Governance = Depends(governance)):
    return gov.apps.acknowledge_flag(app_id, body.review_type, body.flag_id, actor=body.actor)


@app.get("/api/apps/{app_id}/launch", response_model=LaunchStatus,
         tags=["Apps"], summary="Launch approval, dashboard readiness and blockers")
def launch_status(app_id: str, gov: Governance = Depends(governance)):
    target = gov.apps.get(app_id)
    return LaunchStatus(
        app_id=target.id,
        launch_approved=is_launch_approved(target),
        ready_to_launch=is_ready_to_launch(target),
        blockers=get_blockers(target),
    )


# ---------------------------------------------------------------------------
# Routes: Agents
# ---------------------------------------------------------------------------


@app.get("/api/agents", tags=["Agents"], summary="Agent capability table and global denylist")
def list_agents() -> dict[str, Any]:
    return {
        "agents": [
            {
                "id": spec.id,
                "name": spec.name,
                "description": spec.description,
                "allowed": sorted(spec.allowed),
                "requires_approval": sorted(spec.requires_approval),
                "blocked": sorted(spec.blocked),
            }
            for spec in AGENTS.values()
        ],
        "denylist": sorted(DENYLIST),
    }


@app.post("/api/agent-actions", response_model=AgentAction, status_code=201, tags=["Agents"])
def request_action(body: ActionRequest, gov: Governance = Depends(governance)):
    return gov.agents.request(body.agent_id, body.action, body.input, actor=body.actor)


@app.get("/api/agent-actions", response_model=list[AgentAction], tags=["Agents"])
def list_actions(pending: bool = Query(False), gov: Governance = Depends(governance)):
    if pending:
        return gov.agents.pending_actions()
    return gov.agents.list_actions()


@app.post("/api/agent-actions/{action_id}/approve", response_model=AgentAction, tags=["Agents"])
def approve_action(action_id: str, approver: str | None = Query(None), gov: Governance = Depends(governance)):
    return gov.agents.approve(action_id, approver)


@app.post("/api/agent-actions/{action_id}/reject", response_model=AgentAction, tags=["Agents"])
def reject_action(action_id: str, gov: Governance = Depends(governance)):
    return gov.agents.reject(action_id)


@app.post("/api/agent-actions/{action_id}/complete", response_model=AgentAction, tags=["Agents"])
def complete_action(action_id: str, body: ActionComplete, gov: Governance = Depends(governance)):
    return gov.agents.complete(action_id, body.output, actor=body.actor)


# ---------------------------------------------------------------------------
# Routes: Audit
# ---------------------------------------------------------------------------


@app.get("/api/audit", response_model=list[AuditLogEntry], tags=["Audit"], summary="Most recent audit entries")
def recent_audit(limit: int = Query(50, ge=1, le=1000), gov: Governance = Depends(governance)):
    return gov.audit.list_recent(limit)


@app.get("/api/audit/{entity_type}/{entity_id}", response_model=list[AuditLogEntry], tags=["Audit"])
def entity_audit(entity_type: EntityType, entity_id: str, gov: Governance = Depends(governance)):
    return gov.audit.list_by_entity(entity_type, entity_id)


def main():
    import uvicorn
    uvicorn.run("karma.app:app", host="127.0.0.1", port=8002, reload=True)


if __name__ == "__main__":
    main()
