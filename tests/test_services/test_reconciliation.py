"""Tests for the settlement reconciler."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import update

from escrow_arbiter.domain.resolution import ReleaseToContractor
from escrow_arbiter.infrastructure.database.orm_models import Dispute, SettlementOperation
from escrow_arbiter.infrastructure.database.repositories import (
    DisputeRepository,
    JobRepository,
    PaymentHoldRepository,
    SettlementRepository,
)
from escrow_arbiter.services.reconciliation_service import SettlementReconciler
from escrow_arbiter.services.settlement_service import settlement_idempotency_key

ADMIN_ID = "admin-1"


@pytest.fixture
def reconciler(session_factory, processor) -> SettlementReconciler:
    return SettlementReconciler(
        session_factory, processor, payment_timeout_seconds=1.0, stale_after=timedelta(minutes=15)
    )


async def stall_resolution(session_factory, seeded, dispute_id) -> uuid.UUID:
    """Leave a dispute the way a crash between claim and commit would."""
    op_id = uuid.uuid4()
    async with session_factory() as session, session.begin():
        await session.execute(
            update(Dispute)
            .where(Dispute.id == dispute_id)
            .values(
                status="resolving",
                resolution="Verified on site",
                resolution_action="release_to_contractor",
                target_job_status="completed",
                target_payment_status="released",
                resolved_by=ADMIN_ID,
                claimed_at=datetime.now(UTC) - timedelta(hours=1),
            )
        )
        await SettlementRepository(session).create(
            SettlementOperation(
                id=op_id,
                dispute_id=dispute_id,
                hold_id=seeded.hold_id,
                kind="transfer",
                amount_minor=45000,
                currency="usd",
                destination="acct_test",
                status="pending",
                idempotency_key=settlement_idempotency_key(op_id),
            )
        )
    return op_id


class TestRetryFailedOperations:
    @pytest.mark.asyncio
    async def test_failed_transfer_is_retried_with_same_key(
        self, orchestrator, reconciler, processor, dispute_service, seed_job, file_dispute,
        session_factory,
    ) -> None:
        seeded = await seed_job()
        dispute = await file_dispute(seeded)
        processor.fail_transfers = True
        outcome = await orchestrator.resolve(dispute.id, ReleaseToContractor(), "Ok", ADMIN_ID)
        op_id = outcome.failed_operations[0].id

        processor.fail_transfers = False
        report = await reconciler.retry_failed_operations()

        assert (report.retried, report.confirmed, report.failed) == (1, 1, 0)
        assert len(processor.transfers) == 2
        assert processor.transfers[0]["idempotency_key"] == processor.transfers[1]["idempotency_key"]

        async with session_factory() as session:
            op = await SettlementRepository(session).get_by_id(op_id)
        assert op.status == "confirmed"
        assert op.attempts == 2
        assert op.last_error is None
        assert op.processor_reference == "tr_2"

        events = await dispute_service.get_events(dispute.id)
        retried = [e for e in events if e.event_type == "SETTLEMENT_RETRIED"]
        assert len(retried) == 1
        assert retried[0].actor == "RECONCILER"
        assert retried[0].metadata_json["previous_status"] == "failed"
        assert retried[0].metadata_json["status"] == "confirmed"

    @pytest.mark.asyncio
    async def test_still_failing_stays_failed(
        self, orchestrator, reconciler, processor, seed_job, file_dispute
    ) -> None:
        dispute = await file_dispute(await seed_job())
        processor.fail_transfers = True
        await orchestrator.resolve(dispute.id, ReleaseToContractor(), "Ok", ADMIN_ID)

        report = await reconciler.retry_failed_operations()
        assert (report.retried, report.confirmed, report.failed) == (1, 0, 1)

        # Still queued for the next run
        again = await reconciler.retry_failed_operations()
        assert again.retried == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(
        self, orchestrator, processor, seed_job, file_dispute, session_factory, dispute_service
    ) -> None:
        reconciler = SettlementReconciler(
            session_factory, processor, payment_timeout_seconds=1.0, max_attempts=3
        )
        dispute = await file_dispute(await seed_job())
        processor.fail_transfers = True
        outcome = await orchestrator.resolve(dispute.id, ReleaseToContractor(), "Ok", ADMIN_ID)
        op_id = outcome.failed_operations[0].id

        reports = [await reconciler.retry_failed_operations() for _ in range(5)]

        # One call at resolution plus two retries, then nothing more
        assert len(processor.transfers) == 3
        assert [r.retried for r in reports] == [1, 1, 0, 0, 0]
        assert (reports[1].failed, reports[1].abandoned) == (0, 1)

        async with session_factory() as session:
            op = await SettlementRepository(session).get_by_id(op_id)
        assert op.status == "abandoned"
        assert op.attempts == 3
        assert op.retryable is True

        events = await dispute_service.get_events(dispute.id)
        retried = [e for e in events if e.event_type == "SETTLEMENT_RETRIED"]
        assert retried[-1].metadata_json["status"] == "abandoned"

    @pytest.mark.asyncio
    async def test_rejected_operation_is_never_resent(
        self, orchestrator, reconciler, processor, seed_job, file_dispute, session_factory
    ) -> None:
        dispute = await file_dispute(await seed_job())
        processor.fail_transfers = True
        processor.retryable = False
        outcome = await orchestrator.resolve(dispute.id, ReleaseToContractor(), "Ok", ADMIN_ID)

        assert [op.status for op in outcome.failed_operations] == ["abandoned"]

        processor.fail_transfers = False
        report = await reconciler.retry_failed_operations()

        assert report.retried == 0
        assert len(processor.transfers) == 1
        async with session_factory() as session:
            op = await SettlementRepository(session).get_by_id(outcome.failed_operations[0].id)
        assert op.status == "abandoned"
        assert op.retryable is False
        assert "No such destination" in op.last_error

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, reconciler, processor) -> None:
        report = await reconciler.reconcile()
        assert report.as_dict() == {
            "stalled_finished": 0,
            "retried": 0,
            "confirmed": 0,
            "failed": 0,
            "abandoned": 0,
            "finished_dispute_ids": [],
        }
        assert processor.transfers == []

    @pytest.mark.asyncio
    async def test_recent_pending_operation_is_left_alone(
        self, reconciler, processor, seed_job, file_dispute, session_factory
    ) -> None:
        seeded = await seed_job()
        dispute = await file_dispute(seeded)
        await stall_resolution(session_factory, seeded, dispute.id)

        report = await reconciler.retry_failed_operations()
        assert report.retried == 0
        assert processor.transfers == []


class TestStalledResolutions:
    @pytest.mark.asyncio
    async def test_stalled_resolution_is_finished(
        self, reconciler, processor, dispute_service, seed_job, file_dispute, session_factory
    ) -> None:
        seeded = await seed_job()
        dispute = await file_dispute(seeded)
        op_id = await stall_resolution(session_factory, seeded, dispute.id)

        report = await reconciler.finish_stalled_resolutions()

        assert report.stalled_finished == 1
        assert report.finished_dispute_ids == [str(dispute.id)]
        assert processor.transfers[0]["idempotency_key"] == f"settlement-{op_id}"

        async with session_factory() as session:
            stored = await DisputeRepository(session).get_by_id(dispute.id)
            job = await JobRepository(session).get_by_id(seeded.job_id)
            hold = await PaymentHoldRepository(session).get_by_job(seeded.job_id)
            op = await SettlementRepository(session).get_by_id(op_id)
        assert stored.status == "resolved"
        assert job.status == "completed"
        assert hold.status == "released"
        assert op.status == "confirmed"

        events = await dispute_service.get_events(dispute.id)
        assert events[-1].event_type == "STALLED_RESOLUTION_FINISHED"
        assert events[-1].actor == "RECONCILER"

    @pytest.mark.asyncio
    async def test_fresh_claim_is_not_touched(
        self, reconciler, processor, seed_job, file_dispute, session_factory
    ) -> None:
        seeded = await seed_job()
        dispute = await file_dispute(seeded)
        await stall_resolution(session_factory, seeded, dispute.id)

        report = await reconciler.finish_stalled_resolutions(older_than=timedelta(hours=2))
        assert report.stalled_finished == 0
        assert processor.transfers == []

    @pytest.mark.asyncio
    async def test_reconcile_runs_both_passes(
        self, reconciler, processor, seed_job, file_dispute, session_factory
    ) -> None:
        seeded = await seed_job()
        dispute = await file_dispute(seeded)
        await stall_resolution(session_factory, seeded, dispute.id)
        processor.fail_transfers = True

        report = await reconciler.reconcile()

        # Finished with a failed transfer, which the retry pass then tries again
        assert report.stalled_finished == 1
        assert report.retried == 1
        assert report.failed == 1
        assert len(processor.transfers) == 2
