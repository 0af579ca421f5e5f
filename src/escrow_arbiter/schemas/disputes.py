"""Pydantic schemas for the Dispute API.

These schemas define the request/response shapes for the REST API and
MCP tools. They are separate from the ORM models to maintain clean
boundaries between the API and database layers.

Field names are snake_case in Python and camelCase on the wire; both spellings
are accepted on input.
"""

from __future__ import annotations

import uuid  # noqa: TC003 - pydantic resolves field types at runtime
from datetime import datetime  # noqa: TC003
from decimal import Decimal  # noqa: TC003

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)
_CAMEL_ORM = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class FileDisputeRequest(BaseModel):
    """Request body for filing a dispute against an in-progress job."""

    model_config = _CAMEL

    job_id: uuid.UUID = Field(..., description="UUID of the disputed job")
    reason: str = Field(
        ...,
        description=(
            "One of: work_not_completed, quality_issues, provider_no_show, "
            "price_disagreement, safety_concern, other"
        ),
        examples=["quality_issues"],
    )
    description: str | None = Field(
        default=None,
        max_length=5000,
        description="Free-text account of what went wrong",
    )
    user_id: str = Field(..., min_length=1, description="Id of the filing user")
    user_type: str = Field(
        ...,
        description="homeowner (the job's requester) or contractor (its provider)",
        examples=["homeowner"],
    )
    idempotency_key: str | None = Field(
        default=None,
        max_length=200,
        description="Optional key to prevent filing the same dispute twice",
    )


class ResolveDisputeRequest(BaseModel):
    """Request body for an administrator resolving a dispute."""

    model_config = _CAMEL

    dispute_id: uuid.UUID
    action: str = Field(
        ...,
        description="release_to_contractor, refund_homeowner, partial_refund or dismissed",
        examples=["partial_refund"],
    )
    resolution: str = Field(
        ...,
        min_length=1,
        max_length=5000,
        description="Explanation sent to both parties",
    )
    contractor_amount: Decimal | None = Field(
        default=None,
        description="Amount paid to the contractor (partial_refund only)",
    )
    homeowner_refund: Decimal | None = Field(
        default=None,
        description="Amount refunded to the homeowner (partial_refund only)",
    )
    restore_payment_status: str | None = Field(
        default=None,
        description=(
            "Dismissal only: status to restore the payment hold to when its "
            "pre-dispute status was never recorded"
        ),
    )
    admin_notes: str | None = Field(default=None, max_length=5000)
    admin_id: str = Field(..., min_length=1)


class BeginReviewRequest(BaseModel):
    """Request body for an administrator taking a dispute under review."""

    model_config = _CAMEL

    admin_id: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class DisputeResponse(BaseModel):
    """Response schema for a dispute."""

    model_config = _CAMEL_ORM

    id: uuid.UUID
    job_id: uuid.UUID
    filed_by_id: uuid.UUID
    filed_by_role: str
    reason: str
    description: str | None
    status: str
    reviewed_by: str | None = None
    resolution: str | None = None
    resolution_action: str | None = None
    contractor_amount: Decimal | None = None
    homeowner_refund: Decimal | None = None
    resolved_by: str | None = None
    admin_notes: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class FileDisputeResponse(BaseModel):
    """Envelope returned when a dispute is filed."""

    model_config = _CAMEL

    dispute: DisputeResponse


class SettlementOperationResponse(BaseModel):
    """Response schema for one settlement (outbox) operation."""

    model_config = _CAMEL_ORM

    id: uuid.UUID
    dispute_id: uuid.UUID
    hold_id: uuid.UUID
    kind: str
    amount_minor: int | None
    currency: str
    destination: str | None
    hold_reference: str | None
    status: str
    processor_reference: str | None
    last_error: str | None
    attempts: int
    retryable: bool
    created_at: datetime
    updated_at: datetime


class ResolveDisputeResponse(BaseModel):
    """Outcome of a resolution: final statuses plus the processor calls made."""

    model_config = _CAMEL

    dispute_id: uuid.UUID
    new_job_status: str
    new_payment_status: str | None
    settlement_operations: list[SettlementOperationResponse] = Field(default_factory=list)


class DisputeEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = _CAMEL_ORM

    id: uuid.UUID
    dispute_id: uuid.UUID
    event_type: str
    old_status: str | None
    new_status: str
    actor: str
    metadata: dict | None = Field(
        default=None,
        validation_alias=AliasChoices("metadata_json", "metadata"),
        serialization_alias="metadata",
    )
    created_at: datetime


class DisputeStatsResponse(BaseModel):
    """Dispute counts per status."""

    model_config = _CAMEL

    open: int = 0
    under_review: int = 0
    resolving: int = 0
    resolved: int = 0
    total: int = 0


class ReconcileResponse(BaseModel):
    """Counts from one reconciler run."""

    model_config = _CAMEL

    stalled_finished: int
    retried: int
    confirmed: int
    failed: int
    abandoned: int = 0
    finished_dispute_ids: list[str] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
    settlement_backlog: dict[str, int] = Field(
        default_factory=dict,
        description="Counts of outbox rows not yet confirmed, by status",
    )
