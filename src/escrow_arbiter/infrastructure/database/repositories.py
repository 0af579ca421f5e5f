"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Status writes are conditional where a race matters: `update_status` takes
the status(es) the caller expects the row to be in and reports whether the
row actually moved. Zero rows means somebody else got there first.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, select, update

from escrow_arbiter.domain.enums import ACTIVE_DISPUTE_STATUSES, SettlementStatus
from escrow_arbiter.infrastructure.database.orm_models import (
    Dispute,
    DisputeEvent,
    Job,
    Participant,
    PaymentHold,
    SettlementOperation,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_arbiter.domain.enums import (
        DisputeStatus,
        EventType,
        JobStatus,
        PaymentHoldStatus,
    )


def _values(statuses: Iterable[str]) -> list[str]:
    return [str(s) for s in statuses]


class ParticipantRepository:
    """Data access for requesters and providers."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, participant: Participant) -> Participant:
        self._session.add(participant)
        await self._session.flush()
        return participant

    async def get_by_id(self, participant_id: uuid.UUID) -> Participant | None:
        return await self._session.get(Participant, participant_id)


class JobRepository:
    """Data access for jobs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, job: Job) -> Job:
        """Insert a new job."""
        self._session.add(job)
        await self._session.flush()
        return job

    async def get_by_id(self, job_id: uuid.UUID) -> Job | None:
        """Fetch a job (with its participants) by UUID."""
        result = await self._session.execute(select(Job).where(Job.id == job_id))
        return result.scalar_one_or_none()

    async def update_status(
        self,
        job_id: uuid.UUID,
        new_status: JobStatus,
        expected_status: JobStatus | None = None,
    ) -> bool:
        """Set a job's status, optionally only if it is still `expected_status`."""
        stmt = update(Job).where(Job.id == job_id).values(status=new_status.value)
        if expected_status is not None:
            stmt = stmt.where(Job.status == expected_status.value)
        result = await self._session.execute(
            stmt.execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class PaymentHoldRepository:
    """Data access for escrow holds."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, hold: PaymentHold) -> PaymentHold:
        self._session.add(hold)
        await self._session.flush()
        return hold

    async def get_by_id(self, hold_id: uuid.UUID) -> PaymentHold | None:
        return await self._session.get(PaymentHold, hold_id)

    async def get_by_job(self, job_id: uuid.UUID) -> PaymentHold | None:
        """Fetch the hold backing a job, if the job has one."""
        result = await self._session.execute(
            select(PaymentHold).where(PaymentHold.job_id == job_id)
        )
        return result.scalar_one_or_none()

    async def freeze(self, hold_id: uuid.UUID, current_status: str) -> bool:
        """Move a hold to DISPUTED, remembering where it was."""
        result = await self._session.execute(
            update(PaymentHold)
            .where(PaymentHold.id == hold_id, PaymentHold.status == current_status)
            .values(status="disputed", pre_dispute_status=current_status)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def update_status(
        self,
        hold_id: uuid.UUID,
        new_status: PaymentHoldStatus,
        released_at: datetime | None = None,
    ) -> bool:
        """Set a hold's status and its released timestamp."""
        result = await self._session.execute(
            update(PaymentHold)
            .where(PaymentHold.id == hold_id)
            .values(status=new_status.value, released_at=released_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class DisputeRepository:
    """Data access for disputes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: Dispute) -> Dispute:
        """Insert a new dispute. The active-dispute index may reject it."""
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_id(self, dispute_id: uuid.UUID) -> Dispute | None:
        """Fetch a dispute (with its job) by UUID."""
        result = await self._session.execute(
            select(Dispute).where(Dispute.id == dispute_id)
        )
        return result.scalar_one_or_none()

    async def find_active_for_job(self, job_id: uuid.UUID) -> Dispute | None:
        """Return the job's open / under-review / resolving dispute, if any."""
        result = await self._session.execute(
            select(Dispute).where(
                Dispute.job_id == job_id,
                Dispute.status.in_(_values(ACTIVE_DISPUTE_STATUSES)),
            )
        )
        return result.scalar_one_or_none()

    async def list_by_status(
        self,
        statuses: Iterable[DisputeStatus] | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Dispute]:
        """List disputes, newest first, optionally filtered by status."""
        stmt = select(Dispute).order_by(Dispute.created_at.desc()).limit(limit).offset(offset)
        if statuses:
            stmt = stmt.where(Dispute.status.in_(_values(statuses)))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        """Return {status: count} across all disputes."""
        result = await self._session.execute(
            select(Dispute.status, func.count(Dispute.id)).group_by(Dispute.status)
        )
        return {status: count for status, count in result.all()}

    async def list_claimed_before(self, cutoff: datetime, limit: int = 50) -> list[Dispute]:
        """Disputes stuck in RESOLVING since before `cutoff`."""
        result = await self._session.execute(
            select(Dispute)
            .where(Dispute.status == "resolving", Dispute.claimed_at < cutoff)
            .order_by(Dispute.claimed_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        dispute_id: uuid.UUID,
        expected: Iterable[DisputeStatus],
        new_status: DisputeStatus,
        **values: object,
    ) -> bool:
        """Compare-and-set a dispute's status.

        Only a row whose status is in `expected` is updated; any extra column
        values ride along in the same statement.

        Returns:
            True if this call moved the row, False if another caller already had.
        """
        result = await self._session.execute(
            update(Dispute)
            .where(Dispute.id == dispute_id, Dispute.status.in_(_values(expected)))
            .values(status=new_status.value, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class SettlementRepository:
    """Data access for the settlement outbox."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, operation: SettlementOperation) -> SettlementOperation:
        self._session.add(operation)
        await self._session.flush()
        return operation

    async def get_by_id(self, operation_id: uuid.UUID) -> SettlementOperation | None:
        return await self._session.get(SettlementOperation, operation_id)

    async def list_by_dispute(self, dispute_id: uuid.UUID) -> list[SettlementOperation]:
        result = await self._session.execute(
            select(SettlementOperation)
            .where(SettlementOperation.dispute_id == dispute_id)
            .order_by(SettlementOperation.created_at.asc(), SettlementOperation.kind.asc())
        )
        return list(result.scalars().all())

    async def list_by_status(
        self, status: SettlementStatus | None = None, limit: int = 100
    ) -> list[SettlementOperation]:
        stmt = (
            select(SettlementOperation)
            .order_by(SettlementOperation.created_at.desc())
            .limit(limit)
        )
        if status is not None:
            stmt = stmt.where(SettlementOperation.status == status.value)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        """Return {status: count} across the outbox."""
        result = await self._session.execute(
            select(SettlementOperation.status, func.count(SettlementOperation.id)).group_by(
                SettlementOperation.status
            )
        )
        return {status: count for status, count in result.all()}

    async def list_retryable(
        self, stale_before: datetime, max_attempts: int, limit: int = 50
    ) -> list[SettlementOperation]:
        """Failed operations, plus pending ones nobody has touched since `stale_before`.

        Rows the processor rejected outright, and rows that already used up
        `max_attempts`, are left out.
        """
        result = await self._session.execute(
            select(SettlementOperation)
            .where(
                SettlementOperation.retryable.is_(True),
                SettlementOperation.attempts < max_attempts,
                (SettlementOperation.status == SettlementStatus.FAILED.value)
                | (
                    (SettlementOperation.status == SettlementStatus.PENDING.value)
                    & (SettlementOperation.updated_at < stale_before)
                ),
            )
            .order_by(SettlementOperation.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def record_outcome(
        self,
        operation_id: uuid.UUID,
        status: SettlementStatus,
        processor_reference: str | None = None,
        error: str | None = None,
        retryable: bool = True,
    ) -> None:
        """Store the result of one processor attempt."""
        await self._session.execute(
            update(SettlementOperation)
            .where(SettlementOperation.id == operation_id)
            .values(
                status=status.value,
                processor_reference=processor_reference,
                last_error=error,
                retryable=retryable,
                attempts=SettlementOperation.attempts + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        dispute_id: uuid.UUID,
        event_type: EventType,
        old_status: DisputeStatus | None,
        new_status: DisputeStatus,
        actor: str = "SYSTEM",
        metadata: dict | None = None,
    ) -> DisputeEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = DisputeEvent(
            dispute_id=dispute_id,
            event_type=event_type.value,
            old_status=old_status.value if old_status else None,
            new_status=new_status.value,
            actor=actor,
            metadata_json=metadata,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_dispute(self, dispute_id: uuid.UUID) -> list[DisputeEvent]:
        """Fetch all events for a dispute in chronological order."""
        result = await self._session.execute(
            select(DisputeEvent)
            .where(DisputeEvent.dispute_id == dispute_id)
            .order_by(DisputeEvent.created_at.asc())
        )
        return list(result.scalars().all())
