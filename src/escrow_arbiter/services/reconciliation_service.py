"""Settlement reconciler — drives the outbox to completion.

Two passes, both safe to run repeatedly and from more than one worker:

    finish_stalled_resolutions  Disputes stuck in RESOLVING (the process died
                                between claim and commit) get their pending
                                outbox rows executed and are committed with
                                the target statuses recorded at claim time.
    retry_failed_operations     Failed outbox rows, and pending rows nobody
                                touched within the stale threshold, are sent
                                again with their original idempotency key.
                                Rows the processor rejected outright, or that
                                reach the attempt limit, end up ABANDONED and
                                are never sent again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from escrow_arbiter.domain.enums import (
    DisputeStatus,
    EventType,
    JobStatus,
    PaymentHoldStatus,
    ResolutionActionType,
    SettlementStatus,
)
from escrow_arbiter.domain.exceptions import PersistenceError, StateConflictError
from escrow_arbiter.infrastructure.database.repositories import (
    DisputeRepository,
    EventRepository,
    SettlementRepository,
)
from escrow_arbiter.logging_config import get_logger
from escrow_arbiter.services.settlement_service import (
    SettlementExecutor,
    SettlementResult,
    commit_resolution,
)

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_arbiter.domain.protocols import PaymentProcessor
    from escrow_arbiter.infrastructure.database.orm_models import Dispute

logger = get_logger(__name__)


@dataclass
class ReconciliationReport:
    """Counts from one reconciler run."""

    stalled_finished: int = 0
    retried: int = 0
    confirmed: int = 0
    failed: int = 0
    abandoned: int = 0
    finished_dispute_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "stalled_finished": self.stalled_finished,
            "retried": self.retried,
            "confirmed": self.confirmed,
            "failed": self.failed,
            "abandoned": self.abandoned,
            "finished_dispute_ids": self.finished_dispute_ids,
        }


class SettlementReconciler:
    """Retries failed settlements and finishes interrupted resolutions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: PaymentProcessor,
        payment_timeout_seconds: float = 15.0,
        stale_after: timedelta = timedelta(minutes=15),
        batch_size: int = 50,
        max_attempts: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self._executor = SettlementExecutor(processor, payment_timeout_seconds, max_attempts)
        self._max_attempts = max_attempts
        self._stale_after = stale_after
        self._batch_size = batch_size

    async def reconcile(self) -> ReconciliationReport:
        """Run both passes: stalled resolutions first, then failed operations."""
        report = ReconciliationReport()
        await self.finish_stalled_resolutions(report=report)
        await self.retry_failed_operations(report=report)
        logger.info("reconciler.run_complete", **report.as_dict())
        return report

    # ------------------------------------------------------------------
    # Failed / stale operations
    # ------------------------------------------------------------------

    async def retry_failed_operations(
        self,
        limit: int | None = None,
        report: ReconciliationReport | None = None,
    ) -> ReconciliationReport:
        """Send failed and stale pending outbox rows to the processor again."""
        report = report or ReconciliationReport()
        stale_before = datetime.now(UTC) - self._stale_after

        async with self._session_factory() as session:
            operations = await SettlementRepository(session).list_retryable(
                stale_before, self._max_attempts, limit=limit or self._batch_size
            )

        for operation in operations:
            previous = operation.status
            result = await self._executor.execute(operation)
            try:
                async with self._session_factory() as session, session.begin():
                    await self._record_retry(session, operation.dispute_id, previous, result)
            except SQLAlchemyError as exc:
                logger.error(
                    "reconciler.record_failed",
                    operation_id=str(operation.id),
                    error=str(exc),
                )
                raise PersistenceError(f"Could not record settlement retry: {exc}") from exc

            report.retried += 1
            if result.succeeded:
                report.confirmed += 1
            elif result.status is SettlementStatus.ABANDONED:
                report.abandoned += 1
            else:
                report.failed += 1

        if operations:
            logger.info(
                "reconciler.operations_retried",
                retried=len(operations),
                confirmed=report.confirmed,
                failed=report.failed,
                abandoned=report.abandoned,
            )
        return report

    async def _record_retry(
        self,
        session: AsyncSession,
        dispute_id: uuid.UUID,
        previous_status: str,
        result: SettlementResult,
    ) -> None:
        await SettlementRepository(session).record_outcome(
            result.operation_id,
            result.status,
            processor_reference=result.processor_reference,
            error=result.error,
            retryable=result.retryable,
        )
        dispute = await DisputeRepository(session).get_by_id(dispute_id)
        status = DisputeStatus(dispute.status) if dispute else DisputeStatus.RESOLVED
        await EventRepository(session).record(
            dispute_id=dispute_id,
            event_type=EventType.SETTLEMENT_RETRIED,
            old_status=status,
            new_status=status,
            actor="RECONCILER",
            metadata={
                "operation_id": str(result.operation_id),
                "kind": result.kind.value,
                "previous_status": previous_status,
                "status": result.status.value,
                "processor_reference": result.processor_reference,
                "error": result.error,
                "retryable": result.retryable,
            },
        )

    # ------------------------------------------------------------------
    # Stalled resolutions
    # ------------------------------------------------------------------

    async def finish_stalled_resolutions(
        self,
        older_than: timedelta | None = None,
        report: ReconciliationReport | None = None,
    ) -> ReconciliationReport:
        """Commit disputes that were claimed but never finished."""
        report = report or ReconciliationReport()
        cutoff = datetime.now(UTC) - (older_than if older_than is not None else self._stale_after)

        async with self._session_factory() as session:
            stalled = await DisputeRepository(session).list_claimed_before(
                cutoff, limit=self._batch_size
            )

        for dispute in stalled:
            if await self._finish(dispute):
                report.stalled_finished += 1
                report.finished_dispute_ids.append(str(dispute.id))
        return report

    async def _finish(self, dispute: Dispute) -> bool:
        log = logger.bind(dispute_id=str(dispute.id))
        if not dispute.target_job_status or not dispute.resolution_action:
            log.error("reconciler.stalled_without_targets")
            return False

        async with self._session_factory() as session:
            operations = await SettlementRepository(session).list_by_dispute(dispute.id)
        pending = [op for op in operations if op.status == SettlementStatus.PENDING]
        results = await self._executor.execute_all(pending)

        try:
            async with self._session_factory() as session, session.begin():
                await commit_resolution(
                    session,
                    dispute_id=dispute.id,
                    job_id=dispute.job_id,
                    action_type=ResolutionActionType(dispute.resolution_action),
                    target_job_status=JobStatus(dispute.target_job_status),
                    target_payment_status=(
                        PaymentHoldStatus(dispute.target_payment_status)
                        if dispute.target_payment_status
                        else None
                    ),
                    results=results,
                    actor="RECONCILER",
                    event_type=EventType.STALLED_RESOLUTION_FINISHED,
                )
        except StateConflictError:
            # Finished by the original caller or another reconciler meanwhile
            log.info("reconciler.stalled_already_finished")
            return False
        except SQLAlchemyError as exc:
            log.error("reconciler.stalled_commit_failed", error=str(exc))
            raise PersistenceError(f"Could not finish stalled resolution: {exc}") from exc

        log.info(
            "reconciler.stalled_finished",
            executed=len(results),
            failed=len([r for r in results if r.unsettled]),
        )
        return True
