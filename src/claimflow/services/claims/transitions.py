"""Claim status state machine.

    submitted     -> under_review, rejected
    under_review  -> approved, rejected
    approved      -> paid
    rejected, paid   terminal

Independently of the table, a claim in approved or paid may not be modified
at all. That lock is checked first and is a Forbidden condition; an
unreachable target status is a BusinessRule condition.
"""

from __future__ import annotations

from claimflow.errors import BusinessRuleError, ForbiddenError
from claimflow.models.claim import ClaimStatus

INVALID_STATUS_TRANSITION = "INVALID_STATUS_TRANSITION"

VALID_TRANSITIONS: dict[ClaimStatus, frozenset[ClaimStatus]] = {
    ClaimStatus.SUBMITTED: frozenset({ClaimStatus.UNDER_REVIEW, ClaimStatus.REJECTED}),
    ClaimStatus.UNDER_REVIEW: frozenset({ClaimStatus.APPROVED, ClaimStatus.REJECTED}),
    ClaimStatus.APPROVED: frozenset({ClaimStatus.PAID}),
    ClaimStatus.REJECTED: frozenset(),
    ClaimStatus.PAID: frozenset(),
}

TERMINAL_STATUSES: frozenset[ClaimStatus] = frozenset({ClaimStatus.REJECTED, ClaimStatus.PAID})
LOCKED_STATUSES: frozenset[ClaimStatus] = frozenset({ClaimStatus.APPROVED, ClaimStatus.PAID})

# Listing order of ClaimStatus, used to render allowed sets deterministically.
_STATUS_ORDER = list(ClaimStatus)


def allowed_transitions(current: ClaimStatus) -> list[ClaimStatus]:
    """Statuses reachable from current, in declaration order."""
    targets = VALID_TRANSITIONS.get(current, frozenset())
    return [s for s in _STATUS_ORDER if s in targets]


def is_transition_allowed(current: ClaimStatus, target: ClaimStatus) -> bool:
    return current not in LOCKED_STATUSES and target in VALID_TRANSITIONS.get(
        current, frozenset()
    )


def ensure_modifiable(current: ClaimStatus) -> None:
    """Raise ForbiddenError if a claim in this status is locked."""
    if current in LOCKED_STATUSES:
        raise ForbiddenError("Cannot modify approved or paid claims")


def validate_transition(current: ClaimStatus, target: ClaimStatus) -> None:
    """Raise BusinessRuleError if target is not reachable from current.

    The error details carry the current status, the requested status and the
    allowed set so clients can reconstruct the cause.
    """
    allowed = allowed_transitions(current)
    if target not in allowed:
        raise BusinessRuleError(
            f"Invalid status transition from {current.value} to {target.value}",
            INVALID_STATUS_TRANSITION,
            {
                "current_status": current.value,
                "requested_status": target.value,
                "allowed_transitions": [s.value for s in allowed],
            },
        )
