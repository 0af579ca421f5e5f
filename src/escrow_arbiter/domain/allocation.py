"""Allocation calculator: turns a resolution action into settlement instructions.

This is a pure function of (action, hold snapshot, payout destination). It
performs no I/O and never talks to the database or the processor, which is
what lets the orchestrator validate a decision completely before claiming
the dispute.

Amounts on holds are stored in major units (dollars). The processor works in
integer minor units (cents); conversion rounds half away from zero.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING

from escrow_arbiter.domain.enums import JobStatus, PaymentHoldStatus
from escrow_arbiter.domain.exceptions import ValidationError
from escrow_arbiter.domain.resolution import (
    Dismissed,
    PartialRefund,
    RefundHomeowner,
    ReleaseToContractor,
)

if TYPE_CHECKING:
    import uuid

    from escrow_arbiter.domain.resolution import ResolutionAction

# Currencies the processor expects without a fractional part
ZERO_DECIMAL_CURRENCIES = frozenset({"bif", "clp", "jpy", "krw", "pyg", "vnd", "xaf", "xof"})


def to_minor_units(amount: Decimal, currency: str = "usd") -> int:
    """Convert a major-unit amount to integer minor units, rounding half away from zero."""
    factor = 1 if currency.lower() in ZERO_DECIMAL_CURRENCIES else 100
    return int((Decimal(amount) * factor).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class HoldSnapshot:
    """The parts of a payment hold the calculator needs."""

    hold_id: uuid.UUID
    status: PaymentHoldStatus
    total_amount: Decimal
    platform_fee: Decimal
    provider_payout: Decimal
    currency: str = "usd"
    processor_reference: str | None = None
    pre_dispute_status: PaymentHoldStatus | None = None

    @property
    def funding_status(self) -> PaymentHoldStatus:
        """Status the money was in before the dispute froze it."""
        if self.status is PaymentHoldStatus.DISPUTED and self.pre_dispute_status:
            return self.pre_dispute_status
        return self.status


@dataclass(frozen=True)
class TransferInstruction:
    """Move money from the platform to the provider's connected account."""

    amount_minor: int
    destination: str
    currency: str


@dataclass(frozen=True)
class RefundInstruction:
    """Return money to the requester. amount_minor=None refunds in full."""

    hold_reference: str
    amount_minor: int | None
    currency: str


@dataclass(frozen=True)
class SettlementPlan:
    """Result of the calculator: processor calls plus the target statuses."""

    target_job_status: JobStatus
    target_payment_status: PaymentHoldStatus | None
    transfer: TransferInstruction | None = None
    refund: RefundInstruction | None = None
    skipped: tuple[str, ...] = field(default_factory=tuple)

    @property
    def has_processor_calls(self) -> bool:
        return self.transfer is not None or self.refund is not None


def plan_settlement(
    action: ResolutionAction,
    hold: HoldSnapshot | None,
    provider_destination: str | None,
) -> SettlementPlan:
    """Compute the settlement for an admin decision.

    Args:
        action: The resolution variant.
        hold: Snapshot of the job's payment hold, or None if the job has none.
        provider_destination: Provider's payout account reference, if any.

    Returns:
        A SettlementPlan. Calls the processor cannot make (no hold, no
        processor reference, no payout account, hold never captured) are
        left out and explained in `skipped`.

    Raises:
        ValidationError: Over-allocated split, or a dismissal that cannot
            tell which status to restore the hold to.
    """
    if isinstance(action, ReleaseToContractor):
        return _plan_release(hold, provider_destination)
    if isinstance(action, RefundHomeowner):
        return _plan_refund(hold)
    if isinstance(action, PartialRefund):
        return _plan_split(action, hold, provider_destination)
    if isinstance(action, Dismissed):
        return _plan_dismissal(action, hold)
    raise ValidationError(f"Unsupported resolution action: {action!r}")


def _plan_release(hold: HoldSnapshot | None, destination: str | None) -> SettlementPlan:
    skipped: list[str] = []
    transfer = None
    if hold is None:
        skipped.append("no payment hold for job")
    elif hold.funding_status is not PaymentHoldStatus.CAPTURED:
        skipped.append(f"hold not captured ({hold.funding_status.value})")
    elif not destination:
        skipped.append("provider has no payout destination")
    else:
        transfer = TransferInstruction(
            amount_minor=to_minor_units(hold.provider_payout, hold.currency),
            destination=destination,
            currency=hold.currency,
        )

    return SettlementPlan(
        target_job_status=JobStatus.COMPLETED,
        target_payment_status=PaymentHoldStatus.RELEASED if hold else None,
        transfer=transfer,
        skipped=tuple(skipped),
    )


def _plan_refund(hold: HoldSnapshot | None) -> SettlementPlan:
    skipped: list[str] = []
    refund = None
    if hold is None:
        skipped.append("no payment hold for job")
    elif not hold.processor_reference:
        skipped.append("hold has no processor reference")
    else:
        refund = RefundInstruction(
            hold_reference=hold.processor_reference,
            amount_minor=None,
            currency=hold.currency,
        )

    return SettlementPlan(
        target_job_status=JobStatus.CANCELLED,
        target_payment_status=PaymentHoldStatus.REFUNDED if hold else None,
        refund=refund,
        skipped=tuple(skipped),
    )


def _plan_split(
    action: PartialRefund,
    hold: HoldSnapshot | None,
    destination: str | None,
) -> SettlementPlan:
    if hold is not None and action.total > hold.total_amount:
        raise ValidationError(
            f"Split of {action.total} exceeds the held amount of {hold.total_amount}",
            code="OVER_ALLOCATION",
        )

    skipped: list[str] = []
    refund = None
    transfer = None
    if hold is None:
        skipped.append("no payment hold for job")
    else:
        refund_minor = to_minor_units(action.homeowner_refund, hold.currency)
        if refund_minor > 0:
            if hold.processor_reference:
                refund = RefundInstruction(
                    hold_reference=hold.processor_reference,
                    amount_minor=refund_minor,
                    currency=hold.currency,
                )
            else:
                skipped.append("hold has no processor reference")

        transfer_minor = to_minor_units(action.contractor_amount, hold.currency)
        if transfer_minor > 0:
            if destination:
                transfer = TransferInstruction(
                    amount_minor=transfer_minor,
                    destination=destination,
                    currency=hold.currency,
                )
            else:
                skipped.append("provider has no payout destination")

    return SettlementPlan(
        target_job_status=JobStatus.COMPLETED,
        target_payment_status=PaymentHoldStatus.PARTIAL_REFUND if hold else None,
        transfer=transfer,
        refund=refund,
        skipped=tuple(skipped),
    )


def _plan_dismissal(action: Dismissed, hold: HoldSnapshot | None) -> SettlementPlan:
    if hold is None:
        return SettlementPlan(
            target_job_status=JobStatus.IN_PROGRESS,
            target_payment_status=None,
        )

    if hold.status is not PaymentHoldStatus.DISPUTED:
        # Hold was never frozen by this dispute; leave it where it is
        target = hold.status
    elif hold.pre_dispute_status is not None:
        target = hold.pre_dispute_status
    elif action.restore_payment_status is not None:
        target = action.restore_payment_status
    else:
        raise ValidationError(
            "Pre-dispute payment status is unknown; "
            "dismissal requires an explicit restorePaymentStatus",
            code="RESTORE_STATUS_REQUIRED",
        )

    return SettlementPlan(
        target_job_status=JobStatus.IN_PROGRESS,
        target_payment_status=target,
    )
