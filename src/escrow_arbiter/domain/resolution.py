"""Resolution actions as a closed set of variants.

An admin's decision is one of four frozen dataclasses. Only PartialRefund
carries amounts, and it cannot be built without both of them, so the
"are the split amounts present?" question is answered once, at the edge,
by resolution_action_from_request().

Usage:
    action = resolution_action_from_request(
        "partial_refund", contractor_amount=Decimal("200"), homeowner_refund=Decimal("250")
    )
    action.action_type  # ResolutionActionType.PARTIAL_REFUND
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import ClassVar

from escrow_arbiter.domain.enums import (
    RESTORABLE_HOLD_STATUSES,
    PaymentHoldStatus,
    ResolutionActionType,
)
from escrow_arbiter.domain.exceptions import ValidationError


@dataclass(frozen=True)
class ReleaseToContractor:
    """Pay the provider their full payout from the hold."""

    action_type: ClassVar[ResolutionActionType] = ResolutionActionType.RELEASE_TO_CONTRACTOR


@dataclass(frozen=True)
class RefundHomeowner:
    """Refund the requester the full hold amount."""

    action_type: ClassVar[ResolutionActionType] = ResolutionActionType.REFUND_HOMEOWNER


@dataclass(frozen=True)
class PartialRefund:
    """Split the hold between the provider and the requester."""

    contractor_amount: Decimal
    homeowner_refund: Decimal

    action_type: ClassVar[ResolutionActionType] = ResolutionActionType.PARTIAL_REFUND

    def __post_init__(self) -> None:
        if self.contractor_amount < 0 or self.homeowner_refund < 0:
            raise ValidationError("partial_refund amounts must not be negative")

    @property
    def total(self) -> Decimal:
        return self.contractor_amount + self.homeowner_refund


@dataclass(frozen=True)
class Dismissed:
    """Close the dispute without moving money; the job continues.

    restore_payment_status is only consulted when the hold's pre-dispute
    status was never recorded.
    """

    restore_payment_status: PaymentHoldStatus | None = None

    action_type: ClassVar[ResolutionActionType] = ResolutionActionType.DISMISSED

    def __post_init__(self) -> None:
        if (
            self.restore_payment_status is not None
            and self.restore_payment_status not in RESTORABLE_HOLD_STATUSES
        ):
            allowed = ", ".join(sorted(s.value for s in RESTORABLE_HOLD_STATUSES))
            raise ValidationError(
                f"restore_payment_status must be one of: {allowed}"
            )


ResolutionAction = ReleaseToContractor | RefundHomeowner | PartialRefund | Dismissed


def _to_decimal(value: object, field_name: str) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as err:
        raise ValidationError(f"{field_name} must be a number") from err
    if not amount.is_finite():
        raise ValidationError(f"{field_name} must be a finite number")
    return amount


def resolution_action_from_request(
    action: str,
    contractor_amount: object | None = None,
    homeowner_refund: object | None = None,
    restore_payment_status: str | None = None,
) -> ResolutionAction:
    """Build the resolution variant from loosely-typed request fields.

    Amounts are ignored for every action except partial_refund.

    Raises:
        ValidationError: Unknown action, or partial_refund without both amounts.
    """
    try:
        action_type = ResolutionActionType(action)
    except ValueError as err:
        valid = ", ".join(a.value for a in ResolutionActionType)
        raise ValidationError(f"Invalid action. Must be one of: {valid}") from err

    if action_type is ResolutionActionType.RELEASE_TO_CONTRACTOR:
        return ReleaseToContractor()
    if action_type is ResolutionActionType.REFUND_HOMEOWNER:
        return RefundHomeowner()
    if action_type is ResolutionActionType.PARTIAL_REFUND:
        if contractor_amount is None or homeowner_refund is None:
            raise ValidationError(
                "partial_refund requires contractorAmount and homeownerRefund"
            )
        return PartialRefund(
            contractor_amount=_to_decimal(contractor_amount, "contractorAmount"),
            homeowner_refund=_to_decimal(homeowner_refund, "homeownerRefund"),
        )

    restore = None
    if restore_payment_status is not None:
        try:
            restore = PaymentHoldStatus(restore_payment_status)
        except ValueError as err:
            raise ValidationError(
                f"Unknown payment status: {restore_payment_status}"
            ) from err
    return Dismissed(restore_payment_status=restore)
