"""Tests for the allocation calculator."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from escrow_arbiter.domain.allocation import HoldSnapshot, plan_settlement, to_minor_units
from escrow_arbiter.domain.enums import JobStatus, PaymentHoldStatus
from escrow_arbiter.domain.exceptions import ValidationError
from escrow_arbiter.domain.resolution import (
    Dismissed,
    PartialRefund,
    RefundHomeowner,
    ReleaseToContractor,
)


def make_hold(
    status: PaymentHoldStatus = PaymentHoldStatus.DISPUTED,
    pre_dispute_status: PaymentHoldStatus | None = PaymentHoldStatus.CAPTURED,
    processor_reference: str | None = "pi_123",
) -> HoldSnapshot:
    return HoldSnapshot(
        hold_id=uuid.uuid4(),
        status=status,
        total_amount=Decimal("500.00"),
        platform_fee=Decimal("50.00"),
        provider_payout=Decimal("450.00"),
        processor_reference=processor_reference,
        pre_dispute_status=pre_dispute_status,
    )


class TestMinorUnits:
    def test_cents(self) -> None:
        assert to_minor_units(Decimal("450.00")) == 45000

    def test_rounds_half_away_from_zero(self) -> None:
        assert to_minor_units(Decimal("10.005")) == 1001
        assert to_minor_units(Decimal("0.125")) == 13

    def test_zero_decimal_currency(self) -> None:
        assert to_minor_units(Decimal("1500"), "JPY") == 1500


class TestRelease:
    def test_transfers_provider_payout(self) -> None:
        plan = plan_settlement(ReleaseToContractor(), make_hold(), "acct_1")
        assert plan.transfer is not None
        assert plan.transfer.amount_minor == 45000
        assert plan.transfer.destination == "acct_1"
        assert plan.refund is None
        assert plan.target_job_status is JobStatus.COMPLETED
        assert plan.target_payment_status is PaymentHoldStatus.RELEASED

    def test_uncaptured_hold_is_not_transferred(self) -> None:
        hold = make_hold(pre_dispute_status=PaymentHoldStatus.AUTHORIZED)
        plan = plan_settlement(ReleaseToContractor(), hold, "acct_1")
        assert plan.transfer is None
        assert not plan.has_processor_calls
        assert plan.target_payment_status is PaymentHoldStatus.RELEASED
        assert "not captured" in plan.skipped[0]

    def test_missing_destination_is_skipped(self) -> None:
        plan = plan_settlement(ReleaseToContractor(), make_hold(), None)
        assert plan.transfer is None
        assert plan.skipped == ("provider has no payout destination",)

    def test_no_hold(self) -> None:
        plan = plan_settlement(ReleaseToContractor(), None, "acct_1")
        assert plan.target_job_status is JobStatus.COMPLETED
        assert plan.target_payment_status is None
        assert not plan.has_processor_calls


class TestRefund:
    def test_full_refund(self) -> None:
        plan = plan_settlement(RefundHomeowner(), make_hold(), "acct_1")
        assert plan.refund is not None
        assert plan.refund.amount_minor is None
        assert plan.refund.hold_reference == "pi_123"
        assert plan.transfer is None
        assert plan.target_job_status is JobStatus.CANCELLED
        assert plan.target_payment_status is PaymentHoldStatus.REFUNDED

    def test_hold_without_reference(self) -> None:
        plan = plan_settlement(RefundHomeowner(), make_hold(processor_reference=None), None)
        assert plan.refund is None
        assert plan.target_payment_status is PaymentHoldStatus.REFUNDED


class TestSplit:
    def test_refund_and_transfer(self) -> None:
        action = PartialRefund(Decimal("300"), Decimal("150"))
        plan = plan_settlement(action, make_hold(), "acct_1")
        assert plan.refund.amount_minor == 15000
        assert plan.transfer.amount_minor == 30000
        assert plan.target_job_status is JobStatus.COMPLETED
        assert plan.target_payment_status is PaymentHoldStatus.PARTIAL_REFUND

    def test_whole_hold_may_be_allocated(self) -> None:
        plan = plan_settlement(PartialRefund(Decimal("250"), Decimal("250")), make_hold(), "acct_1")
        assert plan.refund.amount_minor + plan.transfer.amount_minor == 50000

    def test_over_allocation_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            plan_settlement(PartialRefund(Decimal("400"), Decimal("200")), make_hold(), "acct_1")
        assert exc_info.value.code == "OVER_ALLOCATION"

    def test_zero_side_is_omitted(self) -> None:
        plan = plan_settlement(PartialRefund(Decimal("0"), Decimal("100")), make_hold(), "acct_1")
        assert plan.transfer is None
        assert plan.refund.amount_minor == 10000

    def test_missing_destination_keeps_refund(self) -> None:
        plan = plan_settlement(PartialRefund(Decimal("300"), Decimal("150")), make_hold(), None)
        assert plan.transfer is None
        assert plan.refund is not None
        assert "provider has no payout destination" in plan.skipped


class TestDismissal:
    def test_restores_pre_dispute_status(self) -> None:
        plan = plan_settlement(Dismissed(), make_hold(), "acct_1")
        assert plan.target_job_status is JobStatus.IN_PROGRESS
        assert plan.target_payment_status is PaymentHoldStatus.CAPTURED
        assert not plan.has_processor_calls

    def test_unknown_pre_dispute_status_requires_explicit_restore(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            plan_settlement(Dismissed(), make_hold(pre_dispute_status=None), None)
        assert exc_info.value.code == "RESTORE_STATUS_REQUIRED"

    def test_explicit_restore(self) -> None:
        action = Dismissed(restore_payment_status=PaymentHoldStatus.AUTHORIZED)
        plan = plan_settlement(action, make_hold(pre_dispute_status=None), None)
        assert plan.target_payment_status is PaymentHoldStatus.AUTHORIZED

    def test_recorded_status_wins_over_explicit(self) -> None:
        action = Dismissed(restore_payment_status=PaymentHoldStatus.PENDING)
        plan = plan_settlement(action, make_hold(), None)
        assert plan.target_payment_status is PaymentHoldStatus.CAPTURED

    def test_hold_never_frozen_is_left_alone(self) -> None:
        hold = make_hold(status=PaymentHoldStatus.RELEASED, pre_dispute_status=None)
        plan = plan_settlement(Dismissed(), hold, None)
        assert plan.target_payment_status is PaymentHoldStatus.RELEASED

    def test_no_hold(self) -> None:
        plan = plan_settlement(Dismissed(), None, None)
        assert plan.target_payment_status is None
