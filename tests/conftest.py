"""Shared test fixtures for the Escrow Arbiter test suite.

Provides:
    - A file-backed SQLite database per test (separate connections per
      session, so concurrent resolutions really race)
    - Factory functions for creating participants, jobs and payment holds
    - Fake collaborators: payment processor, notifier, authorization gate
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from escrow_arbiter.domain.exceptions import PaymentProcessorError
from escrow_arbiter.domain.protocols import ProcessorReceipt
from escrow_arbiter.infrastructure.database.engine import build_session_factory
from escrow_arbiter.infrastructure.database.orm_models import (
    Base,
    Job,
    Participant,
    PaymentHold,
)
from escrow_arbiter.services.authorization import JobPartyAuthorizationGate
from escrow_arbiter.services.notification_service import NotificationDispatcher

ADMIN_ID = "admin-1"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakePaymentProcessor:
    """Records every call; can be told to fail (transiently or for good) or to stall."""

    def __init__(self) -> None:
        self.transfers: list[dict] = []
        self.refunds: list[dict] = []
        self.fail_transfers = False
        self.fail_refunds = False
        self.retryable = True
        self.delay = 0.0

    async def transfer(
        self,
        amount_minor: int,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
        currency: str = "usd",
    ) -> ProcessorReceipt:
        self.transfers.append(
            {
                "amount_minor": amount_minor,
                "destination": destination,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
                "currency": currency,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_transfers:
            raise PaymentProcessorError(
                "No such destination: acct_test", retryable=self.retryable
            )
        return ProcessorReceipt(reference=f"tr_{len(self.transfers)}", amount_minor=amount_minor)

    async def refund(
        self,
        hold_reference: str,
        amount_minor: int | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorReceipt:
        self.refunds.append(
            {
                "hold_reference": hold_reference,
                "amount_minor": amount_minor,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_refunds:
            raise PaymentProcessorError(
                "Charge has already been refunded", retryable=self.retryable
            )
        return ProcessorReceipt(reference=f"re_{len(self.refunds)}", amount_minor=amount_minor)


class RecordingNotifier:
    """Collects notices instead of sending them."""

    def __init__(self, fail: bool = False) -> None:
        self.filed: list = []
        self.resolved: list = []
        self.fail = fail

    async def notify_dispute_filed(self, notice) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.filed.append(notice)

    async def notify_dispute_resolved(self, notice) -> None:
        if self.fail:
            raise ConnectionError("smtp down")
        self.resolved.append(notice)


@dataclass(frozen=True)
class SeededJob:
    job_id: uuid.UUID
    requester_id: uuid.UUID
    provider_id: uuid.UUID
    hold_id: uuid.UUID | None


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def seed_job(session_factory):
    """Factory: create a requester, a provider, a job and (optionally) its hold."""

    async def _seed(
        job_status: str = "in_progress",
        hold_status: str | None = "captured",
        pre_dispute_status: str | None = None,
        payout_destination: str | None = "acct_test",
        processor_reference: str | None = "pi_test",
    ) -> SeededJob:
        async with session_factory() as session, session.begin():
            requester = Participant(role="requester", name="Rita Requester", email="rita@example.com")
            provider = Participant(
                role="provider",
                name="Paul Provider",
                email="paul@example.com",
                payout_destination=payout_destination,
            )
            session.add_all([requester, provider])
            await session.flush()

            job = Job(
                title="Fix leaking roof",
                status=job_status,
                requester_id=requester.id,
                provider_id=provider.id,
                final_cost=Decimal("500.00"),
            )
            session.add(job)
            await session.flush()

            hold_id = None
            if hold_status is not None:
                hold = PaymentHold(
                    job_id=job.id,
                    status=hold_status,
                    pre_dispute_status=pre_dispute_status,
                    total_amount=Decimal("500.00"),
                    platform_fee=Decimal("50.00"),
                    provider_payout=Decimal("450.00"),
                    processor_reference=processor_reference,
                )
                session.add(hold)
                await session.flush()
                hold_id = hold.id

        return SeededJob(
            job_id=job.id,
            requester_id=requester.id,
            provider_id=provider.id,
            hold_id=hold_id,
        )

    return _seed


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier) -> NotificationDispatcher:
    return NotificationDispatcher(notifier, timeout_seconds=1.0)


@pytest.fixture
def gate() -> JobPartyAuthorizationGate:
    return JobPartyAuthorizationGate(admin_user_ids=[ADMIN_ID])


@pytest.fixture
def dispute_service(session_factory, gate, dispatcher):
    from escrow_arbiter.services.dispute_service import DisputeService

    return DisputeService(session_factory, gate, dispatcher)


@pytest.fixture
def orchestrator(session_factory, processor, gate, dispatcher):
    from escrow_arbiter.orchestration.resolution_workflow import DisputeResolutionOrchestrator

    return DisputeResolutionOrchestrator(
        session_factory, processor, gate, dispatcher, payment_timeout_seconds=1.0
    )


@pytest.fixture
def file_dispute(dispute_service):
    """Factory: file a dispute as the seeded job's requester."""

    async def _file(seeded: SeededJob, reason: str = "quality_issues"):
        return await dispute_service.file(
            job_id=seeded.job_id,
            filer_id=str(seeded.requester_id),
            filer_role="homeowner",
            reason=reason,
            description="Roof still leaks after the repair",
        )

    return _file
