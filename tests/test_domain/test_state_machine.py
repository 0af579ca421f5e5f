"""Tests for the job, payment hold and dispute state machines.

These tests verify that:
    1. The dispute transitions of each machine are allowed.
    2. Illegal transitions are blocked.
    3. The convenience function validate_transition works.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from escrow_arbiter.domain.exceptions import InvalidStateTransitionError
from escrow_arbiter.domain.state_machine import (
    HOLD_SETTLEMENT_EVENTS,
    JOB_SETTLEMENT_EVENTS,
    DisputeStateMachine,
    JobStateMachine,
    PaymentHoldStateMachine,
    validate_transition,
)


class TestJobMachine:
    def test_hold_and_resume(self) -> None:
        sm = JobStateMachine("in_progress")
        sm.hold_for_dispute()
        assert sm.status == "on_hold"

        sm.resume_after_dismissal()
        assert sm.status == "in_progress"

    def test_settle_from_hold(self) -> None:
        sm = JobStateMachine("on_hold")
        sm.settle_cancelled()
        assert sm.status == "cancelled"

    def test_completed_job_cannot_be_held(self) -> None:
        sm = JobStateMachine("completed")
        with pytest.raises(TransitionNotAllowed):
            sm.hold_for_dispute()

    def test_open_job_cannot_be_held(self) -> None:
        sm = JobStateMachine("open")
        with pytest.raises(TransitionNotAllowed):
            sm.hold_for_dispute()

    def test_settlement_event_table(self) -> None:
        for target, event in JOB_SETTLEMENT_EVENTS.items():
            assert validate_transition(JobStateMachine, "on_hold", event) == target


class TestPaymentHoldMachine:
    @pytest.mark.parametrize("start", ["pending", "authorized", "captured"])
    def test_freeze(self, start: str) -> None:
        sm = PaymentHoldStateMachine(start)
        sm.freeze()
        assert sm.status == "disputed"

    def test_settlement_event_table(self) -> None:
        for target, event in HOLD_SETTLEMENT_EVENTS.items():
            assert validate_transition(PaymentHoldStateMachine, "disputed", event) == target

    def test_released_is_final(self) -> None:
        sm = PaymentHoldStateMachine("released")
        assert sm.get_allowed_events() == []

    def test_refunded_hold_cannot_be_frozen(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            validate_transition(PaymentHoldStateMachine, "refunded", "freeze")


class TestDisputeMachine:
    def test_review_then_resolve(self) -> None:
        sm = DisputeStateMachine("open")
        sm.begin_review()
        sm.claim()
        assert sm.status == "resolving"
        sm.finish()
        assert sm.status == "resolved"

    def test_claim_straight_from_open(self) -> None:
        assert validate_transition(DisputeStateMachine, "open", "claim") == "resolving"

    def test_resolved_is_final(self) -> None:
        sm = DisputeStateMachine("resolved")
        assert sm.get_allowed_events() == []

    def test_resolving_cannot_be_claimed_again(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            validate_transition(DisputeStateMachine, "resolving", "claim")

    def test_open_allowed(self) -> None:
        allowed = DisputeStateMachine("open").get_allowed_events()
        assert set(allowed) == {"begin_review", "claim"}


class TestValidateTransitionFunction:
    def test_invalid_event_name(self) -> None:
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_transition(DisputeStateMachine, "open", "nonexistent_event")
        assert exc_info.value.code == "INVALID_STATE_TRANSITION"

    def test_invalid_status_in_validate(self) -> None:
        with pytest.raises(InvalidStateTransitionError):
            validate_transition(JobStateMachine, "archived", "hold_for_dispute")

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            DisputeStateMachine("INVALID_STATUS")
