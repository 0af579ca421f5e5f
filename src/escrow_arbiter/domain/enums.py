"""Domain enumerations for the Escrow Arbiter.

These enums define the canonical states and categories used throughout the
system. They are framework-agnostic (no SQLAlchemy, no FastAPI imports) and
their values are exactly what gets stored in the database.
"""

import enum


class JobStatus(enum.StrEnum):
    """Lifecycle states of a job.

    Only IN_PROGRESS -> ON_HOLD and the ON_HOLD exits are driven by this
    service; the rest belong to the posting and bidding flows.
    """

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentHoldStatus(enum.StrEnum):
    """Lifecycle states of the escrow hold backing a job's payment."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    DISPUTED = "disputed"
    RELEASED = "released"
    REFUNDED = "refunded"
    PARTIAL_REFUND = "partial_refund"
    FAILED = "failed"


# Statuses a hold may be restored to when a dispute is dismissed
RESTORABLE_HOLD_STATUSES = frozenset(
    {
        PaymentHoldStatus.PENDING,
        PaymentHoldStatus.AUTHORIZED,
        PaymentHoldStatus.CAPTURED,
    }
)


class DisputeStatus(enum.StrEnum):
    """Lifecycle states of a dispute.

    RESOLVING is the claim marker: exactly one resolution call can move a
    dispute into it, and only that call talks to the payment processor.
    """

    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVING = "resolving"
    RESOLVED = "resolved"


# A job may have at most one dispute in one of these statuses
ACTIVE_DISPUTE_STATUSES = frozenset(
    {DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW, DisputeStatus.RESOLVING}
)

# Statuses from which a resolution may be claimed
CLAIMABLE_DISPUTE_STATUSES = frozenset({DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW})


class FilerRole(enum.StrEnum):
    """Which side of the job filed the dispute."""

    REQUESTER = "requester"
    PROVIDER = "provider"

    @classmethod
    def from_user_type(cls, user_type: str) -> "FilerRole":
        """Map the marketplace vocabulary (homeowner/contractor) to a role."""
        mapping = {"homeowner": cls.REQUESTER, "contractor": cls.PROVIDER}
        try:
            return mapping[user_type]
        except KeyError:
            return cls(user_type)

    @property
    def counterparty(self) -> "FilerRole":
        return FilerRole.PROVIDER if self is FilerRole.REQUESTER else FilerRole.REQUESTER


class DisputeReason(enum.StrEnum):
    """Closed set of reasons a party can give when filing."""

    WORK_NOT_COMPLETED = "work_not_completed"
    QUALITY_ISSUES = "quality_issues"
    PROVIDER_NO_SHOW = "provider_no_show"
    PRICE_DISAGREEMENT = "price_disagreement"
    SAFETY_CONCERN = "safety_concern"
    OTHER = "other"


class ResolutionActionType(enum.StrEnum):
    """Stored form of an admin's resolution decision."""

    RELEASE_TO_CONTRACTOR = "release_to_contractor"
    REFUND_HOMEOWNER = "refund_homeowner"
    PARTIAL_REFUND = "partial_refund"
    DISMISSED = "dismissed"


class SettlementKind(enum.StrEnum):
    """Kinds of payment processor call a resolution can require."""

    TRANSFER = "transfer"
    REFUND = "refund"


class SettlementStatus(enum.StrEnum):
    """Outbox states of a settlement operation."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    ABANDONED = "abandoned"  # failed for good: rejected by the processor or out of attempts


class EventType(enum.StrEnum):
    """Types of audit events recorded in the dispute_events table.

    Every dispute status change produces exactly one event; settlement
    failures and retries get their own entries for manual reconciliation.
    """

    DISPUTE_FILED = "DISPUTE_FILED"
    REVIEW_STARTED = "REVIEW_STARTED"
    RESOLUTION_CLAIMED = "RESOLUTION_CLAIMED"
    DISPUTE_RESOLVED = "DISPUTE_RESOLVED"

    SETTLEMENT_FAILED = "SETTLEMENT_FAILED"
    SETTLEMENT_RETRIED = "SETTLEMENT_RETRIED"
    STALLED_RESOLUTION_FINISHED = "STALLED_RESOLUTION_FINISHED"
