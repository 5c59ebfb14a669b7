"""Rule-based app review.

Two reviewers run over the app intake: the product-spec reviewer checks
that the MVP scope and non-goals are written down, the risk-integrity
reviewer looks at origin, risk notes and description length. Both are pure
functions of the app. Each rule owns a fixed flag id (``<agent>:<rule>``),
so an acknowledgement stays with the rule that raised the flag across
re-runs.
"""
from __future__ import annotations

from karma.models import (
    AgentId,
    App,
    AppAgentFlag,
    AppAgentReview,
    AppOrigin,
    FlagCategory,
    Severity,
)

MIN_MVP_SCOPE_CHARS = 50
MIN_NON_GOALS_CHARS = 20
MAX_DESCRIPTION_CHARS = 500

UNCLEAR_ORIGINS = (AppOrigin.OTHER, AppOrigin.CHAT)


def _flag(agent: AgentId, rule: str, category: FlagCategory, severity: Severity, description: str) -> AppAgentFlag:
    return AppAgentFlag(
        id=f"{agent.value}:{rule}",
        category=category,
        severity=severity,
        description=description,
    )


def review_product_spec(app: App) -> AppAgentReview:
    agent = AgentId.PRODUCT_SPEC
    flags: list[AppAgentFlag] = []
    if len(app.mvp_scope.strip()) < MIN_MVP_SCOPE_CHARS:
        flags.append(_flag(
            agent, "mvp_scope", FlagCategory.SCOPE_CREEP, Severity.MEDIUM,
            "MVP scope is not clearly defined. Consider adding specific deliverables.",
        ))
    if len(app.non_goals.strip()) < MIN_NON_GOALS_CHARS:
        flags.append(_flag(
            agent, "non_goals", FlagCategory.SCOPE_CREEP, Severity.LOW,
            "Non-goals section is sparse. Explicit non-goals prevent scope creep.",
        ))
    verdict = "No major concerns." if not flags else f"{len(flags)} item(s) flagged for attention."
    return AppAgentReview(
        agent_id=agent,
        summary=f'Product specification review for "{app.name}". {verdict}',
        flags=flags,
        recommendations=[
            "Define 3-5 specific MVP deliverables",
            "Add timeline estimates for each deliverable",
        ],
    )


def review_risk_integrity(app: App) -> AppAgentReview:
    agent = AgentId.RISK_INTEGRITY
    flags: list[AppAgentFlag] = []
    if app.origin in UNCLEAR_ORIGINS:
        flags.append(_flag(
            agent, "origin", FlagCategory.IP_CONFLICT, Severity.MEDIUM,
            "Origin source unclear. Verify no external IP dependencies.",
        ))
    if "user data" in app.risk_notes.lower():
        flags.append(_flag(
            agent, "user_data", FlagCategory.ETHICAL_RISK, Severity.HIGH,
            "User data handling mentioned. Ensure privacy compliance.",
        ))
    if len(app.description) > MAX_DESCRIPTION_CHARS:
        flags.append(_flag(
            agent, "description_length", FlagCategory.OVER_COMPLEXITY, Severity.LOW,
            "Description is lengthy. Consider simplifying scope for MVP.",
        ))
    verdict = "No risks identified." if not flags else f"{len(flags)} potential risk(s) identified."
    return AppAgentReview(
        agent_id=agent,
        summary=f'Risk & integrity assessment for "{app.name}". {verdict}',
        flags=flags,
        recommendations=[
            "Confirm all code is original or properly licensed",
            "Document any third-party dependencies",
        ],
    )


def run_review(app: App) -> tuple[AppAgentReview, AppAgentReview]:
    """Return ``(product_spec_review, risk_integrity_review)``."""
    return review_product_spec(app), review_risk_integrity(app)
