"""Tests for building resolution actions from request fields."""

from __future__ import annotations

from decimal import Decimal

import pytest

from escrow_arbiter.domain.enums import PaymentHoldStatus, ResolutionActionType
from escrow_arbiter.domain.exceptions import ValidationError
from escrow_arbiter.domain.resolution import (
    Dismissed,
    PartialRefund,
    RefundHomeowner,
    ReleaseToContractor,
    resolution_action_from_request,
)


class TestFromRequest:
    def test_release(self) -> None:
        action = resolution_action_from_request("release_to_contractor")
        assert isinstance(action, ReleaseToContractor)
        assert action.action_type is ResolutionActionType.RELEASE_TO_CONTRACTOR

    def test_refund_ignores_amounts(self) -> None:
        action = resolution_action_from_request("refund_homeowner", contractor_amount=10)
        assert isinstance(action, RefundHomeowner)

    def test_partial_refund(self) -> None:
        action = resolution_action_from_request(
            "partial_refund", contractor_amount=200.5, homeowner_refund="99.50"
        )
        assert isinstance(action, PartialRefund)
        assert action.contractor_amount == Decimal("200.5")
        assert action.total == Decimal("300.00")

    def test_partial_refund_requires_both_amounts(self) -> None:
        with pytest.raises(ValidationError, match="requires"):
            resolution_action_from_request("partial_refund", contractor_amount=100)

    def test_partial_refund_rejects_non_numbers(self) -> None:
        with pytest.raises(ValidationError, match="must be a number"):
            resolution_action_from_request(
                "partial_refund", contractor_amount="lots", homeowner_refund=1
            )

    def test_partial_refund_rejects_infinity(self) -> None:
        with pytest.raises(ValidationError, match="finite"):
            resolution_action_from_request(
                "partial_refund", contractor_amount="Infinity", homeowner_refund=1
            )

    def test_unknown_action(self) -> None:
        with pytest.raises(ValidationError, match="Invalid action"):
            resolution_action_from_request("split_the_difference")

    def test_dismissed_with_restore(self) -> None:
        action = resolution_action_from_request("dismissed", restore_payment_status="authorized")
        assert isinstance(action, Dismissed)
        assert action.restore_payment_status is PaymentHoldStatus.AUTHORIZED

    def test_dismissed_unknown_restore_status(self) -> None:
        with pytest.raises(ValidationError, match="Unknown payment status"):
            resolution_action_from_request("dismissed", restore_payment_status="frozen")


class TestVariants:
    def test_negative_amounts_rejected(self) -> None:
        with pytest.raises(ValidationError, match="negative"):
            PartialRefund(contractor_amount=Decimal("-1"), homeowner_refund=Decimal("10"))

    def test_restore_to_terminal_status_rejected(self) -> None:
        with pytest.raises(ValidationError, match="restore_payment_status"):
            Dismissed(restore_payment_status=PaymentHoldStatus.RELEASED)

    def test_variants_are_immutable(self) -> None:
        action = PartialRefund(Decimal("1"), Decimal("2"))
        with pytest.raises(AttributeError):
            action.contractor_amount = Decimal("5")  # type: ignore[misc]
