"""SQLAlchemy 2.0 ORM models for the Escrow Arbiter.

Six tables:
    1. participants           — Requesters and providers (contact + payout account).
    2. jobs                   — Units of requested work.
    3. payment_holds          — Escrow holds, at most one per job.
    4. disputes               — Claims filed against in-progress jobs.
    5. settlement_operations  — Outbox of intended processor calls.
    6. dispute_events         — Append-only audit log of every dispute transition.

Design decisions:
    - UUIDs as primary keys (no sequential leakage of marketplace volume).
    - Numeric for money in major units; the outbox stores integer minor units,
      exactly what was sent to the processor.
    - CHECK constraints on every status column and on the hold's fee split.
    - A partial unique index makes "one active dispute per job" a database
      fact, not just an application check.
    - dispute_events is append-only: no UPDATE or DELETE at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests and simulation)
JSONType = JSON().with_variant(JSONB(), "postgresql")

_ACTIVE_DISPUTE_PREDICATE = "status IN ('open', 'under_review', 'resolving')"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. participants
# ---------------------------------------------------------------------------
class Participant(Base):
    """A homeowner (requester) or contractor (provider)."""

    __tablename__ = "participants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True, default=None)
    payout_destination: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Processor connected-account id (e.g. acct_...), providers only",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        CheckConstraint("role IN ('requester', 'provider')", name="ck_participant_role"),
    )

    def __repr__(self) -> str:
        return f"<Participant id={self.id} role={self.role} name={self.name!r}>"


# ---------------------------------------------------------------------------
# 2. jobs
# ---------------------------------------------------------------------------
class Job(Base):
    """One unit of requested work."""

    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="open",
        comment="Current lifecycle state (guarded by JobStateMachine)",
    )
    requester_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("participants.id"), nullable=False
    )
    provider_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("participants.id"), nullable=True, default=None
    )
    final_cost: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    requester: Mapped[Participant] = relationship(
        "Participant", foreign_keys=[requester_id], lazy="selectin"
    )
    provider: Mapped[Participant | None] = relationship(
        "Participant", foreign_keys=[provider_id], lazy="selectin"
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'in_progress', 'on_hold', 'completed', 'cancelled')",
            name="ck_job_valid_status",
        ),
        Index("idx_job_status", "status"),
        Index("idx_job_requester", "requester_id"),
        Index("idx_job_provider", "provider_id"),
    )

    def __repr__(self) -> str:
        return f"<Job id={self.id} status={self.status} title={self.title!r}>"


# ---------------------------------------------------------------------------
# 3. payment_holds
# ---------------------------------------------------------------------------
class PaymentHold(Base):
    """Escrowed payment for a job."""

    __tablename__ = "payment_holds"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id"), nullable=False, unique=True
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    pre_dispute_status: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        default=None,
        comment="Status before a dispute froze the hold; restored on dismissal",
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    provider_payout: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    processor_reference: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        default=None,
        comment="Processor payment intent id (pi_...)",
    )
    released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'authorized', 'captured', 'disputed', "
            "'released', 'refunded', 'partial_refund', 'failed')",
            name="ck_hold_valid_status",
        ),
        CheckConstraint("total_amount > 0", name="ck_hold_positive_amount"),
        CheckConstraint(
            "provider_payout + platform_fee = total_amount",
            name="ck_hold_fee_split",
        ),
        Index("idx_hold_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<PaymentHold id={self.id} job={self.job_id} status={self.status} "
            f"amount={self.total_amount}>"
        )


# ---------------------------------------------------------------------------
# 4. disputes
# ---------------------------------------------------------------------------
class Dispute(Base):
    """A claim filed by one party of an in-progress job."""

    __tablename__ = "disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("jobs.id"), nullable=False)

    # --- Filing ---
    filed_by_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    filed_by_role: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[str] = mapped_column(String(40), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)

    # --- Status (Enum-guarded) ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default="open",
        comment="Current lifecycle state (guarded by DisputeStateMachine)",
    )
    reviewed_by: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)

    # --- Resolution (written at claim time, finalized at commit) ---
    resolution: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    resolution_action: Mapped[str | None] = mapped_column(
        String(30), nullable=True, default=None
    )
    contractor_amount: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True, default=None
    )
    homeowner_refund: Mapped[Decimal | None] = mapped_column(
        Numeric(12, 2), nullable=True, default=None
    )
    target_job_status: Mapped[str | None] = mapped_column(
        String(20), nullable=True, default=None
    )
    target_payment_status: Mapped[str | None] = mapped_column(
        String(20), nullable=True, default=None
    )
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )
    resolved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None
    )

    # --- Timestamps ---
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    job: Mapped[Job] = relationship("Job", lazy="selectin")

    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'under_review', 'resolving', 'resolved')",
            name="ck_dispute_valid_status",
        ),
        CheckConstraint(
            "filed_by_role IN ('requester', 'provider')",
            name="ck_dispute_filer_role",
        ),
        Index(
            "uq_dispute_active_per_job",
            "job_id",
            unique=True,
            postgresql_where=text(_ACTIVE_DISPUTE_PREDICATE),
            sqlite_where=text(_ACTIVE_DISPUTE_PREDICATE),
        ),
        Index("idx_dispute_status", "status"),
        Index("idx_dispute_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<Dispute id={self.id} job={self.job_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 5. settlement_operations (outbox)
# ---------------------------------------------------------------------------
class SettlementOperation(Base):
    """One intended processor call, written before the call is made."""

    __tablename__ = "settlement_operations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.id"), nullable=False
    )
    hold_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payment_holds.id"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(10), nullable=False)
    amount_minor: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Minor units; NULL on a refund means 'refund in full'",
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    destination: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    hold_reference: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    status: Mapped[str] = mapped_column(String(10), nullable=False, default="pending")
    idempotency_key: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    processor_reference: Mapped[str | None] = mapped_column(
        String(64), nullable=True, default=None
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retryable: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        comment="False once the processor rejected the call outright",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        CheckConstraint("kind IN ('transfer', 'refund')", name="ck_settlement_kind"),
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'failed', 'abandoned')",
            name="ck_settlement_status",
        ),
        CheckConstraint(
            "amount_minor IS NULL OR amount_minor > 0",
            name="ck_settlement_positive_amount",
        ),
        Index("idx_settlement_dispute", "dispute_id"),
        Index("idx_settlement_status", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<SettlementOperation id={self.id} kind={self.kind} "
            f"amount={self.amount_minor} status={self.status}>"
        )


# ---------------------------------------------------------------------------
# 6. dispute_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class DisputeEvent(Base):
    """Immutable audit record of a dispute transition or settlement outcome.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "dispute_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("disputes.id"), nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False, default="SYSTEM")
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
        comment="Arbitrary context: amounts, processor errors, receipts",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_event_dispute", "dispute_id"),
        Index("idx_event_type", "event_type"),
        Index("idx_event_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<DisputeEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )
