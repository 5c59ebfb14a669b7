"""Scoring engine: deterministic rubric scores, risk heuristics, and tag derivation.

Architecture
------------
A contributor questionnaire is scored on five rubric categories. Each
category reads one questionnaire answer and starts from a neutral 3:

- **skills_match** (0.25) reads ``experience``
- **communication** (0.20) reads ``motivation``
- **reliability** (0.20) reads ``availability``
- **mission_alignment** (0.20) reads ``mission``
- **work_samples** (0.15) reads ``portfolio``

The category scores are aggregated into:

- ``overall_score`` = ``round(sum(score * weight) / sum(weight), 1)``
- ``fit:*``   from the overall score (>= 4 strong, < 3 weak, else conditional)
- ``risk:*``  one tag per distinct risk-flag category, or ``risk:none``
- ``ready:*`` exactly one, by precedence sign, decline, pause, clarify

Every derived score and tag is marked AI-suggested and unconfirmed; only
the founder can confirm.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

from karma.models import (
    EvaluationTag,
    FitTag,
    ReadinessTag,
    RiskCategory,
    RiskFlag,
    RiskTag,
    RoleType,
    RubricCategory,
    RubricScore,
    ScoringTag,
    Severity,
    risk_tag_for,
)

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Rubric table
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RubricEntry:
    label: str
    description: str
    weight: float
    question: str


RUBRIC: dict[RubricCategory, RubricEntry] = {
    RubricCategory.SKILLS_MATCH: RubricEntry(
        "Skills Match", "Relevant experience for the role applied for", 0.25, "experience",
    ),
    RubricCategory.COMMUNICATION: RubricEntry(
        "Communication", "Clarity and substance of written answers", 0.20, "motivation",
    ),
    RubricCategory.RELIABILITY: RubricEntry(
        "Reliability", "Availability and likelihood of follow-through", 0.20, "availability",
    ),
    RubricCategory.MISSION_ALIGNMENT: RubricEntry(
        "Mission Alignment", "Fit with the mission and working principles", 0.20, "mission",
    ),
    RubricCategory.WORK_SAMPLES: RubricEntry(
        "Work Samples", "Portfolio or verifiable prior work", 0.15, "portfolio",
    ),
}

MIN_SCORE = 1
MAX_SCORE = 5

DETAILED_RESPONSE_CHARS = 100
THOROUGH_RESPONSE_CHARS = 250
TERSE_RESPONSE_CHARS = 20

_AVAILABILITY_MARKERS = ("limited", "part-time", "part time")
_CONFLICT_MARKERS = ("competitor", "conflict of interest", "non-compete")

ROLE_LABELS: dict[RoleType, str] = {
    RoleType.PRODUCT_OPS: "Product/Operations",
    RoleType.TECHNICAL: "Technical",
    RoleType.DESIGN_UX: "Design/UX",
}


# ---------------------------------------------------------------------------
# Scores
# ---------------------------------------------------------------------------


def clamp_score(value: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, value))


def suggest_score(answer: str | None) -> int:
    """Heuristic score for one answer: neutral 3, more for depth, less for silence."""
    text = (answer or "").strip()
    if not text:
        return clamp_score(2)
    score = 3
    if len(text) > DETAILED_RESPONSE_CHARS:
        score += 1
    if len(text) > THOROUGH_RESPONSE_CHARS:
        score += 1
    return clamp_score(score)


def suggest_scores(responses: dict[str, str]) -> list[RubricScore]:
    return [
        RubricScore(
            category=category,
            score=suggest_score(responses.get(entry.question)),
            notes="AI-assessed based on questionnaire responses",
            ai_suggested=True,
        )
        for category, entry in RUBRIC.items()
    ]


def compute_overall_score(scores: list[RubricScore]) -> float:
    """Weighted mean of category scores, rounded to one decimal. 0.0 if nothing scored."""
    weighted = total = 0.0
    for s in scores:
        entry = RUBRIC.get(s.category)
        if entry is None:
            continue
        weighted += s.score * entry.weight
        total += entry.weight
    if total <= 0:
        return 0.0
    return round(weighted / total, 1)


# ---------------------------------------------------------------------------
# Risk flags
# ---------------------------------------------------------------------------


def detect_risk_flags(responses: dict[str, str]) -> list[RiskFlag]:
    flags: list[RiskFlag] = []
    availability = (responses.get("availability") or "").lower()
    if any(marker in availability for marker in _AVAILABILITY_MARKERS):
        flags.append(RiskFlag(
            category=RiskCategory.AVAILABILITY,
            severity=Severity.MEDIUM,
            description="Contributor indicated limited availability which may impact project timelines",
        ))
    if not (responses.get("portfolio") or "").strip():
        flags.append(RiskFlag(
            category=RiskCategory.PORTFOLIO,
            severity=Severity.LOW,
            description="No portfolio or work samples were provided for review",
        ))
    answers = [v.strip() for v in responses.values() if v and v.strip()]
    if not answers or all(len(a) < TERSE_RESPONSE_CHARS for a in answers):
        flags.append(RiskFlag(
            category=RiskCategory.COMMUNICATION,
            severity=Severity.LOW,
            description="Questionnaire answers are too brief to assess communication",
        ))
    joined = " ".join(answers).lower()
    if any(marker in joined for marker in _CONFLICT_MARKERS):
        flags.append(RiskFlag(
            category=RiskCategory.CONFLICT,
            severity=Severity.HIGH,
            description="Possible conflict of interest mentioned; founder must review before signing",
        ))
    return flags


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------


def compute_fit(overall_score: float) -> FitTag:
    if overall_score >= 4:
        return FitTag.STRONG
    if overall_score < 3:
        return FitTag.WEAK
    return FitTag.CONDITIONAL


def compute_risk_tags(flags: list[RiskFlag]) -> list[RiskTag]:
    seen: list[RiskTag] = []
    for flag in flags:
        tag = risk_tag_for(flag.category)
        if tag not in seen:
            seen.append(tag)
    return seen or [RiskTag.NONE]


def compute_readiness(fit: FitTag, flags: list[RiskFlag]) -> ReadinessTag:
    if fit == FitTag.STRONG and not flags:
        return ReadinessTag.SIGN
    if fit == FitTag.WEAK:
        return ReadinessTag.DECLINE
    if any(f.severity == Severity.HIGH for f in flags):
        return ReadinessTag.PAUSE
    return ReadinessTag.CLARIFY


def derive_tags(overall_score: float, flags: list[RiskFlag]) -> list[EvaluationTag]:
    """Initial AI-suggested tags: one fit, one or more risk, one readiness."""
    fit = compute_fit(overall_score)
    tags = [fit, *compute_risk_tags(flags), compute_readiness(fit, flags)]
    return [EvaluationTag(tag=t, ai_suggested=True, confirmed_by_founder=False) for t in tags]


def refresh_suggested_tags(
    current: list[EvaluationTag],
    overall_score: float,
    flags: list[RiskFlag],
    dismissed: Iterable[ScoringTag] = (),
) -> list[EvaluationTag]:
    """Replace unconfirmed AI suggestions with a fresh derivation.

    Founder-confirmed tags and manually added tags are kept as they are, and
    their family gets no new suggestions. Tags in *dismissed* (removed by the
    founder) are never suggested again.
    """
    kept = [t for t in current if t.confirmed_by_founder or not t.ai_suggested]
    settled_families = {t.family for t in kept}
    skip = set(dismissed)
    fresh = [
        t for t in derive_tags(overall_score, flags)
        if t.family not in settled_families and t.tag not in skip
    ]
    return kept + fresh


# ---------------------------------------------------------------------------
# Narrative summary
# ---------------------------------------------------------------------------


def summarize(
    responses: dict[str, str], role: RoleType, scores: list[RubricScore], flags: list[RiskFlag],
) -> tuple[str, list[str], list[str]]:
    """Return ``(summary, strengths, concerns)`` for the evaluation record."""
    strong_categories = sum(1 for s in scores if s.score >= 4)
    detailed = any(len(v or "") > DETAILED_RESPONSE_CHARS for v in responses.values())
    summary = (
        f"Candidate appears to be a {'strong' if strong_categories >= 4 else 'moderate'} fit "
        f"for the {ROLE_LABELS[role]} role. Questionnaire responses indicate "
        f"{'thoughtful engagement' if detailed else 'brief responses'}. "
        "Further founder review recommended."
    )
    experience = responses.get("experience") or ""
    strengths = [
        "Completed intake questionnaire",
        "Detailed experience description provided" if len(experience) > 50 else "Experience information provided",
    ]
    strengths.extend(
        f"Strong {RUBRIC[s.category].label.lower()}" for s in scores if s.score == MAX_SCORE
    )
    concerns = [f.description for f in flags] or [
        "No significant concerns identified - founder review recommended"
    ]
    return summary, strengths, concerns
