"""Domain layer — pure business logic with zero framework dependencies."""

from escrow_arbiter.domain.allocation import (
    HoldSnapshot,
    SettlementPlan,
    plan_settlement,
    to_minor_units,
)
from escrow_arbiter.domain.enums import (
    DisputeReason,
    DisputeStatus,
    EventType,
    FilerRole,
    JobStatus,
    PaymentHoldStatus,
    ResolutionActionType,
    SettlementKind,
    SettlementStatus,
)
from escrow_arbiter.domain.exceptions import (
    ArbiterError,
    AuthorizationError,
    NotFoundError,
    PaymentProcessorError,
    PersistenceError,
    StateConflictError,
    ValidationError,
)
from escrow_arbiter.domain.resolution import (
    Dismissed,
    PartialRefund,
    RefundHomeowner,
    ReleaseToContractor,
    ResolutionAction,
    resolution_action_from_request,
)

__all__ = [
    "DisputeReason",
    "DisputeStatus",
    "EventType",
    "FilerRole",
    "JobStatus",
    "PaymentHoldStatus",
    "ResolutionActionType",
    "SettlementKind",
    "SettlementStatus",
    "ArbiterError",
    "AuthorizationError",
    "NotFoundError",
    "PaymentProcessorError",
    "PersistenceError",
    "StateConflictError",
    "ValidationError",
    "Dismissed",
    "PartialRefund",
    "RefundHomeowner",
    "ReleaseToContractor",
    "ResolutionAction",
    "resolution_action_from_request",
    "HoldSnapshot",
    "SettlementPlan",
    "plan_settlement",
    "to_minor_units",
]
