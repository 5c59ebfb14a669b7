"""Error taxonomy for the governance engine.

Every refused operation raises one of these. A raised error always means the
store was left untouched and no audit entry was written.

- ``PreconditionError``: a business rule is unmet (approve without ownership).
- ``InvalidTransitionError``: the state machine has no such edge from here.
- ``FinalizedError``: the record is terminal or locked.
- ``NotFoundError``: unknown entity id.
- ``InvariantViolationError``: the write would break a cross-entity invariant.
"""
from __future__ import annotations

from typing import Any


class GovernanceError(Exception):
    """Base error with the entity it concerns and structured details."""

    http_status = 400

    def __init__(
        self,
        message: str,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.details = details or {}

    @property
    def code(self) -> str:
        return type(self).__name__

    def as_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.entity_type:
            d["entity_type"] = self.entity_type
        if self.entity_id:
            d["entity_id"] = self.entity_id
        if self.details:
            d["details"] = self.details
        return d


class PreconditionError(GovernanceError):
    http_status = 422


class InvalidTransitionError(GovernanceError):
    http_status = 409


class FinalizedError(GovernanceError):
    http_status = 409


class NotFoundError(GovernanceError):
    http_status = 404


class InvariantViolationError(GovernanceError):
    http_status = 409


class EvaluationFinalizedError(FinalizedError):
    """Mutation attempted on an evaluation after the founder decided."""


class GateError(PreconditionError):
    """Access-tier change refused by the tier gate."""


class GuardrailViolationError(PreconditionError):
    """Agent requested an action on the static denylist."""


class InvalidActionStateError(InvalidTransitionError):
    """Approve/reject/complete on an agent action that is no longer in the required state."""
