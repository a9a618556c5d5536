"""Tests for the claim status state machine."""

from __future__ import annotations

import pytest

from claimflow.errors import BusinessRuleError, ForbiddenError
from claimflow.models.claim import ClaimStatus
from claimflow.services.claims.transitions import (
    INVALID_STATUS_TRANSITION,
    TERMINAL_STATUSES,
    allowed_transitions,
    ensure_modifiable,
    is_transition_allowed,
    validate_transition,
)

S = ClaimStatus


class TestTransitionTable:
    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (S.SUBMITTED, S.UNDER_REVIEW),
            (S.SUBMITTED, S.REJECTED),
            (S.UNDER_REVIEW, S.APPROVED),
            (S.UNDER_REVIEW, S.REJECTED),
        ],
    )
    def test_allowed_edges(self, current: ClaimStatus, target: ClaimStatus) -> None:
        validate_transition(current, target)
        assert is_transition_allowed(current, target)

    @pytest.mark.parametrize(
        ("current", "target"),
        [
            (S.SUBMITTED, S.APPROVED),
            (S.SUBMITTED, S.PAID),
            (S.UNDER_REVIEW, S.SUBMITTED),
            (S.REJECTED, S.UNDER_REVIEW),
            (S.PAID, S.SUBMITTED),
        ],
    )
    def test_disallowed_edges(self, current: ClaimStatus, target: ClaimStatus) -> None:
        with pytest.raises(BusinessRuleError):
            validate_transition(current, target)
        assert not is_transition_allowed(current, target)

    def test_terminal_statuses_have_no_exits(self) -> None:
        for status in TERMINAL_STATUSES:
            assert allowed_transitions(status) == []

    def test_allowed_transitions_in_declaration_order(self) -> None:
        assert allowed_transitions(S.SUBMITTED) == [S.UNDER_REVIEW, S.REJECTED]
        assert allowed_transitions(S.UNDER_REVIEW) == [S.APPROVED, S.REJECTED]

    def test_approved_to_paid_is_locked(self) -> None:
        """approved -> paid is in the table but the lock forbids modifying approved claims."""
        assert allowed_transitions(S.APPROVED) == [S.PAID]
        assert not is_transition_allowed(S.APPROVED, S.PAID)


class TestTransitionErrors:
    def test_error_carries_state_details(self) -> None:
        """The BusinessRuleError reports current, requested and allowed statuses."""
        with pytest.raises(BusinessRuleError) as exc_info:
            validate_transition(S.SUBMITTED, S.APPROVED)

        err = exc_info.value
        assert err.status_code == 422
        assert err.code == INVALID_STATUS_TRANSITION
        assert err.details == {
            "current_status": "submitted",
            "requested_status": "approved",
            "allowed_transitions": ["under_review", "rejected"],
        }

    @pytest.mark.parametrize("status", [S.APPROVED, S.PAID])
    def test_locked_statuses_are_forbidden(self, status: ClaimStatus) -> None:
        with pytest.raises(ForbiddenError) as exc_info:
            ensure_modifiable(status)

        assert exc_info.value.message == "Cannot modify approved or paid claims"

    @pytest.mark.parametrize("status", [S.SUBMITTED, S.UNDER_REVIEW, S.REJECTED])
    def test_unlocked_statuses_are_modifiable(self, status: ClaimStatus) -> None:
        ensure_modifiable(status)
