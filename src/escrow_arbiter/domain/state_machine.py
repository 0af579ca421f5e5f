"""State machine guards for jobs, payment holds and disputes.

Uses python-statemachine to enforce legal state transitions at the domain
level. No matter what the API or the reconciler asks for, an illegal move
(e.g., a COMPLETED job going ON_HOLD) raises before anything is written.

A machine is instantiated at a record's current status, the named event is
fired, and the resulting status is what the repository writes.

Job transitions driven here:
    in_progress -> on_hold        (hold_for_dispute)
    on_hold     -> in_progress    (resume_after_dismissal)
    on_hold     -> completed      (settle_completed)
    on_hold     -> cancelled      (settle_cancelled)

Payment hold transitions driven here:
    pending|authorized|captured -> disputed      (freeze)
    disputed -> released | refunded | partial_refund
    disputed -> pending | authorized | captured  (restore_* on dismissal)

Dispute transitions:
    open         -> under_review  (begin_review)
    open|under_review -> resolving (claim)
    resolving    -> resolved      (finish)
"""

from __future__ import annotations

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed

from escrow_arbiter.domain.enums import DisputeStatus, JobStatus, PaymentHoldStatus
from escrow_arbiter.domain.exceptions import InvalidStateTransitionError


class _StatusGuardMixin:
    """Start a machine at a stored status string and expose it back."""

    def __init__(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}'. Valid states: {valid}"
            )
        super().__init__(start_value=current_status)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the enum)."""
        return str(self.current_state_value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [event.name for event in self.allowed_events]


class JobStateMachine(_StatusGuardMixin, StateMachine):
    """Guards the job lifecycle.

    Usage:
        sm = JobStateMachine("in_progress")
        sm.hold_for_dispute()
        sm.status  # "on_hold"
    """

    open = State("Open", value=JobStatus.OPEN.value, initial=True)
    in_progress = State("In progress", value=JobStatus.IN_PROGRESS.value)
    on_hold = State("On hold", value=JobStatus.ON_HOLD.value)
    completed = State("Completed", value=JobStatus.COMPLETED.value, final=True)
    cancelled = State("Cancelled", value=JobStatus.CANCELLED.value, final=True)

    # Posting / bidding flow
    start_work = open.to(in_progress)
    complete = in_progress.to(completed)
    cancel = open.to(cancelled) | in_progress.to(cancelled)

    # Disputes
    hold_for_dispute = in_progress.to(on_hold)
    resume_after_dismissal = on_hold.to(in_progress)
    settle_completed = on_hold.to(completed)
    settle_cancelled = on_hold.to(cancelled)


class PaymentHoldStateMachine(_StatusGuardMixin, StateMachine):
    """Guards the escrow hold lifecycle."""

    pending = State("Pending", value=PaymentHoldStatus.PENDING.value, initial=True)
    authorized = State("Authorized", value=PaymentHoldStatus.AUTHORIZED.value)
    captured = State("Captured", value=PaymentHoldStatus.CAPTURED.value)
    disputed = State("Disputed", value=PaymentHoldStatus.DISPUTED.value)
    released = State("Released", value=PaymentHoldStatus.RELEASED.value, final=True)
    refunded = State("Refunded", value=PaymentHoldStatus.REFUNDED.value, final=True)
    partial_refund = State(
        "Partially refunded", value=PaymentHoldStatus.PARTIAL_REFUND.value, final=True
    )
    failed = State("Failed", value=PaymentHoldStatus.FAILED.value, final=True)

    # Payment flow
    authorize = pending.to(authorized)
    capture = authorized.to(captured)
    decline = pending.to(failed) | authorized.to(failed)
    payout = captured.to(released)

    # Disputes
    freeze = pending.to(disputed) | authorized.to(disputed) | captured.to(disputed)
    release = disputed.to(released)
    refund = disputed.to(refunded)
    split = disputed.to(partial_refund)
    restore_pending = disputed.to(pending)
    restore_authorized = disputed.to(authorized)
    restore_captured = disputed.to(captured)


class DisputeStateMachine(_StatusGuardMixin, StateMachine):
    """Guards the dispute lifecycle. RESOLVED is final; nothing reopens it."""

    open = State("Open", value=DisputeStatus.OPEN.value, initial=True)
    under_review = State("Under review", value=DisputeStatus.UNDER_REVIEW.value)
    resolving = State("Resolving", value=DisputeStatus.RESOLVING.value)
    resolved = State("Resolved", value=DisputeStatus.RESOLVED.value, final=True)

    begin_review = open.to(under_review)
    claim = open.to(resolving) | under_review.to(resolving)
    finish = resolving.to(resolved)


# Event that settles a frozen hold into each target status
HOLD_SETTLEMENT_EVENTS: dict[PaymentHoldStatus, str] = {
    PaymentHoldStatus.RELEASED: "release",
    PaymentHoldStatus.REFUNDED: "refund",
    PaymentHoldStatus.PARTIAL_REFUND: "split",
    PaymentHoldStatus.PENDING: "restore_pending",
    PaymentHoldStatus.AUTHORIZED: "restore_authorized",
    PaymentHoldStatus.CAPTURED: "restore_captured",
}

# Event that moves an on-hold job into each target status
JOB_SETTLEMENT_EVENTS: dict[JobStatus, str] = {
    JobStatus.COMPLETED: "settle_completed",
    JobStatus.CANCELLED: "settle_cancelled",
    JobStatus.IN_PROGRESS: "resume_after_dismissal",
}


def validate_transition(
    machine_cls: type[_StatusGuardMixin],
    current_status: str,
    event_name: str,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine, fires the named event, and returns
    the resulting status string.

    Args:
        machine_cls: One of the machines above.
        current_status: Current status value of the record.
        event_name: The event to fire (e.g., "hold_for_dispute").

    Returns:
        The new status string after the transition.

    Raises:
        InvalidStateTransitionError: If the status, the event or the move is illegal.
    """
    try:
        sm = machine_cls(current_status=current_status)
    except ValueError as err:
        raise InvalidStateTransitionError(current_status, event_name) from err

    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise InvalidStateTransitionError(current_status, event_name)

    try:
        event_method()
    except TransitionNotAllowed as err:
        raise InvalidStateTransitionError(current_status, event_name) from err
    return sm.status
