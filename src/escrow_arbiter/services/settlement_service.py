"""Settlement execution and resolution commit.

Shared by the resolution workflow and the reconciler:
    - SettlementExecutor runs one outbox row against the payment processor
      under a timeout and turns every failure into a recorded result.
    - commit_resolution writes the final dispute, job and hold statuses plus
      the outbox outcomes and audit events, in that order, in the caller's
      transaction.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from escrow_arbiter.domain.enums import (
    DisputeStatus,
    EventType,
    JobStatus,
    PaymentHoldStatus,
    ResolutionActionType,
    SettlementKind,
    SettlementStatus,
)
from escrow_arbiter.domain.exceptions import PaymentProcessorError, StateConflictError
from escrow_arbiter.domain.state_machine import (
    HOLD_SETTLEMENT_EVENTS,
    JOB_SETTLEMENT_EVENTS,
    JobStateMachine,
    PaymentHoldStateMachine,
    validate_transition,
)
from escrow_arbiter.infrastructure.database.repositories import (
    DisputeRepository,
    EventRepository,
    JobRepository,
    PaymentHoldRepository,
    SettlementRepository,
)
from escrow_arbiter.logging_config import get_logger

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_arbiter.domain.protocols import PaymentProcessor, ProcessorReceipt
    from escrow_arbiter.infrastructure.database.orm_models import SettlementOperation

logger = get_logger(__name__)


def settlement_idempotency_key(operation_id: uuid.UUID) -> str:
    """Processor idempotency key for an outbox row; stable across retries."""
    return f"settlement-{operation_id}"


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of one processor attempt for one outbox row."""

    operation_id: uuid.UUID
    kind: SettlementKind
    status: SettlementStatus
    amount_minor: int | None = None
    processor_reference: str | None = None
    error: str | None = None
    retryable: bool = True

    @property
    def succeeded(self) -> bool:
        return self.status is SettlementStatus.CONFIRMED

    @property
    def unsettled(self) -> bool:
        return self.status in (SettlementStatus.FAILED, SettlementStatus.ABANDONED)


class SettlementExecutor:
    """Runs outbox rows against the processor. Never raises for processor failures.

    A failure is recorded as ABANDONED instead of FAILED when the processor
    rejected the call outright or the row has used its last attempt.
    """

    def __init__(
        self, processor: PaymentProcessor, timeout_seconds: float, max_attempts: int = 5
    ) -> None:
        self._processor = processor
        self._timeout = timeout_seconds
        self._max_attempts = max_attempts

    async def execute(self, operation: SettlementOperation) -> SettlementResult:
        kind = SettlementKind(operation.kind)
        log = logger.bind(
            operation_id=str(operation.id),
            dispute_id=str(operation.dispute_id),
            kind=kind.value,
            amount_minor=operation.amount_minor,
        )
        metadata = {
            "dispute_id": str(operation.dispute_id),
            "settlement_operation_id": str(operation.id),
        }

        try:
            receipt = await asyncio.wait_for(
                self._call(kind, operation, metadata), timeout=self._timeout
            )
        except TimeoutError:
            error = f"processor call timed out after {self._timeout:g}s"
            log.error("settlement.timed_out", error=error)
            return self._failed(operation, kind, error, retryable=True, log=log)
        except PaymentProcessorError as exc:
            log.error("settlement.failed", error=exc.message, retryable=exc.retryable)
            return self._failed(operation, kind, exc.message, retryable=exc.retryable, log=log)
        except Exception as exc:
            log.exception("settlement.unexpected_error")
            return self._failed(
                operation, kind, str(exc) or type(exc).__name__, retryable=True, log=log
            )

        log.info("settlement.confirmed", reference=receipt.reference)
        return SettlementResult(
            operation_id=operation.id,
            kind=kind,
            status=SettlementStatus.CONFIRMED,
            amount_minor=operation.amount_minor,
            processor_reference=receipt.reference,
        )

    async def execute_all(
        self, operations: Sequence[SettlementOperation]
    ) -> list[SettlementResult]:
        """Run independent operations concurrently; one failing never stops another."""
        if not operations:
            return []
        return list(await asyncio.gather(*(self.execute(op) for op in operations)))

    async def _call(
        self,
        kind: SettlementKind,
        operation: SettlementOperation,
        metadata: dict[str, str],
    ) -> ProcessorReceipt:
        key = settlement_idempotency_key(operation.id)
        if kind is SettlementKind.TRANSFER:
            if not operation.destination or operation.amount_minor is None:
                raise PaymentProcessorError(
                    "transfer is missing its destination or amount", retryable=False
                )
            return await self._processor.transfer(
                amount_minor=operation.amount_minor,
                destination=operation.destination,
                metadata=metadata,
                idempotency_key=key,
                currency=operation.currency,
            )

        if not operation.hold_reference:
            raise PaymentProcessorError("refund is missing its hold reference", retryable=False)
        return await self._processor.refund(
            hold_reference=operation.hold_reference,
            amount_minor=operation.amount_minor,
            metadata=metadata,
            idempotency_key=key,
        )

    def _failed(
        self,
        operation: SettlementOperation,
        kind: SettlementKind,
        error: str,
        *,
        retryable: bool,
        log: Any,
    ) -> SettlementResult:
        attempt = (operation.attempts or 0) + 1
        status = SettlementStatus.FAILED
        if not retryable or attempt >= self._max_attempts:
            status = SettlementStatus.ABANDONED
            log.warning(
                "settlement.abandoned",
                attempt=attempt,
                max_attempts=self._max_attempts,
                retryable=retryable,
            )
        return SettlementResult(
            operation_id=operation.id,
            kind=kind,
            status=status,
            amount_minor=operation.amount_minor,
            error=error,
            retryable=retryable,
        )


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CommittedStatuses:
    """What the job and hold actually ended up as."""

    job_status: JobStatus
    payment_status: PaymentHoldStatus | None


async def commit_resolution(
    session: AsyncSession,
    *,
    dispute_id: uuid.UUID,
    job_id: uuid.UUID,
    action_type: ResolutionActionType,
    target_job_status: JobStatus,
    target_payment_status: PaymentHoldStatus | None,
    results: Sequence[SettlementResult],
    actor: str,
    event_type: EventType = EventType.DISPUTE_RESOLVED,
) -> CommittedStatuses:
    """Finish a claimed resolution inside the caller's transaction.

    Writes in the order dispute -> job -> hold -> outbox -> events.

    Raises:
        StateConflictError: The dispute is no longer RESOLVING.
    """
    now = datetime.now(UTC)

    # 1. Dispute
    finished = await DisputeRepository(session).update_status(
        dispute_id,
        expected=[DisputeStatus.RESOLVING],
        new_status=DisputeStatus.RESOLVED,
        resolved_at=now,
    )
    if not finished:
        raise StateConflictError(
            f"Dispute {dispute_id} is no longer being resolved",
            current_state=None,
        )

    # 2. Job
    job_repo = JobRepository(session)
    job = await job_repo.get_by_id(job_id)
    job_status = JobStatus(job.status) if job is not None else target_job_status
    if job is not None and job.status == JobStatus.ON_HOLD:
        validate_transition(JobStateMachine, job.status, JOB_SETTLEMENT_EVENTS[target_job_status])
        if await job_repo.update_status(job_id, target_job_status, expected_status=JobStatus.ON_HOLD):
            job_status = target_job_status
    elif job is not None:
        # The resolution decides the job; whatever moved it off on_hold is overridden.
        logger.warning(
            "resolution.job_not_on_hold",
            job_id=str(job_id),
            job_status=job.status,
            target_job_status=target_job_status.value,
        )
        await job_repo.update_status(job_id, target_job_status)
        job_status = target_job_status

    # 3. Hold
    payment_status: PaymentHoldStatus | None = None
    hold_repo = PaymentHoldRepository(session)
    hold = await hold_repo.get_by_job(job_id)
    if hold is not None:
        payment_status = PaymentHoldStatus(hold.status)
        if (
            hold.status == PaymentHoldStatus.DISPUTED
            and target_payment_status is not None
            and target_payment_status is not PaymentHoldStatus.DISPUTED
        ):
            validate_transition(
                PaymentHoldStateMachine,
                hold.status,
                HOLD_SETTLEMENT_EVENTS[target_payment_status],
            )
            released_at = None if action_type is ResolutionActionType.DISMISSED else now
            await hold_repo.update_status(hold.id, target_payment_status, released_at=released_at)
            payment_status = target_payment_status

    # 4. Outbox
    settlement_repo = SettlementRepository(session)
    for result in results:
        await settlement_repo.record_outcome(
            result.operation_id,
            result.status,
            processor_reference=result.processor_reference,
            error=result.error,
            retryable=result.retryable,
        )

    # 5. Audit trail
    event_repo = EventRepository(session)
    failed = [r for r in results if r.unsettled]
    await event_repo.record(
        dispute_id=dispute_id,
        event_type=event_type,
        old_status=DisputeStatus.RESOLVING,
        new_status=DisputeStatus.RESOLVED,
        actor=actor,
        metadata={
            "action": action_type.value,
            "job_status": job_status.value,
            "payment_status": payment_status.value if payment_status else None,
            "confirmed_operations": [str(r.operation_id) for r in results if r.succeeded],
            "failed_operations": [str(r.operation_id) for r in failed],
        },
    )
    for result in failed:
        await event_repo.record(
            dispute_id=dispute_id,
            event_type=EventType.SETTLEMENT_FAILED,
            old_status=DisputeStatus.RESOLVED,
            new_status=DisputeStatus.RESOLVED,
            actor="SYSTEM",
            metadata={
                "operation_id": str(result.operation_id),
                "kind": result.kind.value,
                "amount_minor": result.amount_minor,
                "status": result.status.value,
                "error": result.error,
            },
        )

    return CommittedStatuses(job_status=job_status, payment_status=payment_status)
