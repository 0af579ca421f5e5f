#!/usr/bin/env python3
"""Escrow Arbiter — End-to-End Simulation.

Simulates four dispute scenarios between a HomeownerBot, a ContractorBot and
an AdminBot, with the payment processor in simulation mode:

    Scenario 1: Release to Contractor
        - Homeowner files a quality dispute -> job ON_HOLD, payment DISPUTED
        - Admin releases the payout -> job COMPLETED, payment RELEASED

    Scenario 2: Review and Split
        - Contractor files a price disagreement
        - Admin takes it under review, then splits 300 / 150
        - One refund and one transfer -> payment PARTIAL_REFUND

    Scenario 3: Flaky Processor
        - Admin releases the payout but the processor is down
        - The resolution still commits; the transfer is recorded as failed
        - The reconciler retries it with the same idempotency key -> confirmed

    Scenario 4: Dismissal and Double Resolve
        - Two admins resolve the same dispute at the same time
        - Exactly one wins; the dismissal puts the job back IN_PROGRESS and
          the payment back to CAPTURED

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite file in a temp directory):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario 3
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from escrow_arbiter.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

ADMIN_ID = "admin-sim"

# Module-level state
_sqlite_engine = None
_session_factory = None
_tmpdir: tempfile.TemporaryDirectory | None = None


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def init_database(use_sqlite: bool = False) -> None:
    """Initialize database engine and create tables."""
    global _sqlite_engine, _session_factory, _tmpdir

    if use_sqlite:
        from sqlalchemy.ext.asyncio import create_async_engine

        from escrow_arbiter.infrastructure.database.engine import build_session_factory
        from escrow_arbiter.infrastructure.database.orm_models import Base

        # A file, not :memory:, so concurrent resolutions get separate connections
        _tmpdir = tempfile.TemporaryDirectory(prefix="escrow-arbiter-")
        db_path = Path(_tmpdir.name) / "simulation.db"
        _sqlite_engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=False)
        _session_factory = build_session_factory(_sqlite_engine)
        async with _sqlite_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database.sqlite_initialized", path=str(db_path))
    else:
        from escrow_arbiter.infrastructure.database.engine import get_session_factory, init_db

        await init_db()
        _session_factory = get_session_factory()


async def shutdown_database() -> None:
    """Close database connections."""
    global _sqlite_engine, _session_factory, _tmpdir

    if _sqlite_engine is not None:
        await _sqlite_engine.dispose()
        _sqlite_engine = None
        _session_factory = None
        if _tmpdir is not None:
            _tmpdir.cleanup()
            _tmpdir = None
    else:
        from escrow_arbiter.infrastructure.database.engine import close_db

        await close_db()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
class FlakyProcessor:
    """Simulated processor whose first `failures` transfers fail."""

    def __init__(self, failures: int = 1) -> None:
        from escrow_arbiter.services.payment_service import StripePaymentProcessor

        self._inner = StripePaymentProcessor(simulate=True)
        self._failures_left = failures

    async def transfer(self, amount_minor, destination, metadata, idempotency_key, currency="usd"):
        from escrow_arbiter.domain.exceptions import PaymentProcessorError

        if self._failures_left > 0:
            self._failures_left -= 1
            raise PaymentProcessorError("simulated outage: connection reset by processor")
        return await self._inner.transfer(
            amount_minor, destination, metadata, idempotency_key, currency
        )

    async def refund(self, hold_reference, amount_minor, metadata, idempotency_key):
        return await self._inner.refund(hold_reference, amount_minor, metadata, idempotency_key)


def build_services(processor: Any = None) -> tuple[Any, Any, Any, Any]:
    """Wire the dispute service, orchestrator, reconciler and notifier."""
    from escrow_arbiter.orchestration.resolution_workflow import DisputeResolutionOrchestrator
    from escrow_arbiter.services.authorization import JobPartyAuthorizationGate
    from escrow_arbiter.services.dispute_service import DisputeService
    from escrow_arbiter.services.notification_service import (
        LoggingNotifier,
        NotificationDispatcher,
    )
    from escrow_arbiter.services.payment_service import StripePaymentProcessor
    from escrow_arbiter.services.reconciliation_service import SettlementReconciler

    processor = processor or StripePaymentProcessor(simulate=True)
    gate = JobPartyAuthorizationGate(admin_user_ids=[ADMIN_ID])
    dispatcher = NotificationDispatcher(LoggingNotifier())

    disputes = DisputeService(_session_factory, gate, dispatcher)
    orchestrator = DisputeResolutionOrchestrator(
        _session_factory, processor, gate, dispatcher, payment_timeout_seconds=5.0
    )
    reconciler = SettlementReconciler(
        _session_factory, processor, payment_timeout_seconds=5.0, stale_after=timedelta(0)
    )
    return disputes, orchestrator, reconciler, dispatcher


async def seed_job(title: str, amount: Decimal = Decimal("450.00")) -> dict:
    """Create a homeowner, a contractor, an in-progress job and a captured hold."""
    from escrow_arbiter.infrastructure.database.orm_models import (
        Job,
        Participant,
        PaymentHold,
    )
    from escrow_arbiter.infrastructure.database.repositories import (
        JobRepository,
        ParticipantRepository,
        PaymentHoldRepository,
    )

    fee = (amount * Decimal("0.10")).quantize(Decimal("0.01"))
    async with _session_factory() as session, session.begin():
        participants = ParticipantRepository(session)
        homeowner = await participants.create(
            Participant(role="requester", name="Hana Homeowner", email="hana@example.com")
        )
        contractor = await participants.create(
            Participant(
                role="provider",
                name="Carl Contractor",
                email="carl@example.com",
                payout_destination="acct_sim_" + uuid.uuid4().hex[:12],
            )
        )

        job = await JobRepository(session).create(
            Job(
                title=title,
                status="in_progress",
                requester_id=homeowner.id,
                provider_id=contractor.id,
                final_cost=amount,
            )
        )

        await PaymentHoldRepository(session).create(
            PaymentHold(
                job_id=job.id,
                status="captured",
                total_amount=amount,
                platform_fee=fee,
                provider_payout=amount - fee,
                processor_reference="pi_sim_" + uuid.uuid4().hex[:16],
            )
        )

    logger.info("seed.job_created", job_id=str(job.id), title=title, amount=str(amount))
    return {"job_id": job.id, "homeowner_id": str(homeowner.id), "contractor_id": str(contractor.id)}


async def job_and_hold_status(job_id: uuid.UUID) -> tuple[str, str | None]:
    from escrow_arbiter.infrastructure.database.repositories import (
        JobRepository,
        PaymentHoldRepository,
    )

    async with _session_factory() as session:
        job = await JobRepository(session).get_by_id(job_id)
        hold = await PaymentHoldRepository(session).get_by_job(job_id)
    return job.status, hold.status if hold else None


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------
@dataclass
class PartyBot:
    """Simulated homeowner or contractor filing disputes."""

    user_id: str
    user_type: str
    label: str = field(default="")

    async def file_dispute(self, disputes: Any, job_id: uuid.UUID, reason: str, text: str) -> Any:
        dispute = await disputes.file(
            job_id=job_id,
            filer_id=self.user_id,
            filer_role=self.user_type,
            reason=reason,
            description=text,
        )
        logger.info(
            f"{self.label}: Dispute filed",
            dispute_id=str(dispute.id),
            reason=reason,
        )
        return dispute


@dataclass
class AdminBot:
    """Simulated administrator reviewing and resolving disputes."""

    admin_id: str = ADMIN_ID

    async def review(self, disputes: Any, dispute_id: uuid.UUID) -> None:
        await disputes.begin_review(dispute_id, self.admin_id)
        logger.info("ADMIN: Dispute under review", dispute_id=str(dispute_id))

    async def resolve(
        self,
        orchestrator: Any,
        dispute_id: uuid.UUID,
        action: str,
        text: str,
        contractor_amount: str | None = None,
        homeowner_refund: str | None = None,
    ) -> Any:
        from escrow_arbiter.domain.resolution import resolution_action_from_request

        decision = resolution_action_from_request(
            action,
            contractor_amount=contractor_amount,
            homeowner_refund=homeowner_refund,
        )
        outcome = await orchestrator.resolve(
            dispute_id=dispute_id,
            action=decision,
            resolution_text=text,
            admin_id=self.admin_id,
        )
        logger.info(
            "ADMIN: Dispute resolved",
            dispute_id=str(dispute_id),
            action=action,
            job_status=outcome.new_job_status.value,
            payment_status=outcome.new_payment_status.value if outcome.new_payment_status else None,
        )
        return outcome


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_outcome(outcome: Any) -> None:
    """Pretty-print a resolution outcome."""
    print(f"  Job status:     {outcome.new_job_status.value}")
    payment = outcome.new_payment_status.value if outcome.new_payment_status else "-"
    print(f"  Payment status: {payment}")
    for op in outcome.settlement_operations:
        amount = f"{op.amount_minor / 100:.2f}" if op.amount_minor is not None else "full"
        ref = op.processor_reference or op.last_error or ""
        print(f"  {op.kind:<9} {amount:>8} {op.currency}  {op.status:<10} {ref}")


async def print_audit_trail(disputes: Any, dispute_id: uuid.UUID) -> None:
    """Print the full audit trail for a dispute."""
    events = await disputes.get_events(dispute_id)
    section(f"Audit Trail ({len(events)} events)")
    for evt in events:
        old = evt.old_status or "(none)"
        print(f"  {evt.event_type:<30} {old:>14} -> {evt.new_status:<14} by {evt.actor}")


# ===========================================================================
# Scenarios
# ===========================================================================
async def scenario_1_release() -> None:
    banner("SCENARIO 1: Release to Contractor")
    disputes, orchestrator, _, dispatcher = build_services()
    ids = await seed_job("Replace kitchen faucet")
    homeowner = PartyBot(ids["homeowner_id"], "homeowner", "HOMEOWNER")

    section("Homeowner files a dispute")
    dispute = await homeowner.file_dispute(
        disputes, ids["job_id"], "quality_issues", "Faucet still drips after the repair."
    )
    job_status, hold_status = await job_and_hold_status(ids["job_id"])
    print(f"  Job: {job_status}   Payment: {hold_status}")

    section("Admin releases the payout")
    outcome = await AdminBot().resolve(
        orchestrator, dispute.id, "release_to_contractor", "Photos show the faucet fixed."
    )
    print_outcome(outcome)

    await dispatcher.drain()
    await print_audit_trail(disputes, dispute.id)


async def scenario_2_split() -> None:
    banner("SCENARIO 2: Review and Split")
    disputes, orchestrator, _, dispatcher = build_services()
    ids = await seed_job("Paint two bedrooms", Decimal("500.00"))
    contractor = PartyBot(ids["contractor_id"], "contractor", "CONTRACTOR")
    admin = AdminBot()

    section("Contractor files a dispute")
    dispute = await contractor.file_dispute(
        disputes, ids["job_id"], "price_disagreement", "Homeowner added a third room."
    )

    section("Admin reviews and splits the hold")
    await admin.review(disputes, dispute.id)
    outcome = await admin.resolve(
        orchestrator,
        dispute.id,
        "partial_refund",
        "Two rooms were painted as agreed; the third is refunded.",
        contractor_amount="300.00",
        homeowner_refund="150.00",
    )
    print_outcome(outcome)

    await dispatcher.drain()
    await print_audit_trail(disputes, dispute.id)


async def scenario_3_flaky_processor() -> None:
    banner("SCENARIO 3: Flaky Processor")
    disputes, orchestrator, reconciler, dispatcher = build_services(FlakyProcessor(failures=1))
    ids = await seed_job("Fix garage door opener")
    homeowner = PartyBot(ids["homeowner_id"], "homeowner", "HOMEOWNER")

    dispute = await homeowner.file_dispute(
        disputes, ids["job_id"], "work_not_completed", "Opener still does not close."
    )

    section("Admin releases the payout while the processor is down")
    outcome = await AdminBot().resolve(
        orchestrator, dispute.id, "release_to_contractor", "Technician visit confirmed repair."
    )
    print_outcome(outcome)

    section("Reconciler retries the failed transfer")
    report = await reconciler.retry_failed_operations()
    print(f"  Retried: {report.retried}  Confirmed: {report.confirmed}  Failed: {report.failed}")

    await dispatcher.drain()
    await print_audit_trail(disputes, dispute.id)


async def scenario_4_dismiss_race() -> None:
    banner("SCENARIO 4: Dismissal and Double Resolve")
    from escrow_arbiter.domain.exceptions import StateConflictError

    disputes, orchestrator, _, dispatcher = build_services()
    ids = await seed_job("Install ceiling fan")
    contractor = PartyBot(ids["contractor_id"], "contractor", "CONTRACTOR")
    dispute = await contractor.file_dispute(
        disputes, ids["job_id"], "other", "Homeowner is not answering the door."
    )

    section("Two admins resolve at the same time")
    admin = AdminBot()
    results = await asyncio.gather(
        admin.resolve(orchestrator, dispute.id, "dismissed", "Access was arranged; continue."),
        admin.resolve(orchestrator, dispute.id, "dismissed", "Duplicate click."),
        return_exceptions=True,
    )
    for result in results:
        if isinstance(result, StateConflictError):
            print(f"  Rejected: {result.message}")
        elif isinstance(result, Exception):
            raise result
        else:
            print_outcome(result)

    job_status, hold_status = await job_and_hold_status(ids["job_id"])
    print(f"\n  Job: {job_status}   Payment: {hold_status}")

    await dispatcher.drain()
    await print_audit_trail(disputes, dispute.id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_release,
    2: scenario_2_split,
    3: scenario_3_flaky_processor,
    4: scenario_4_dismiss_race,
}


async def run_all(use_sqlite: bool = False) -> None:
    """Run all scenarios sequentially."""
    await init_database(use_sqlite=use_sqlite)

    try:
        print("\n" + "#" * 70)
        print("  ESCROW ARBITER — SIMULATION")
        db_type = "SQLite (temp file)" if use_sqlite else "PostgreSQL"
        print(f"  Database: {db_type}")
        print("  Payments: simulated")
        print("#" * 70 + "\n")

        for scenario in SCENARIOS.values():
            await scenario()

        print("\n" + "=" * 70)
        print("  ALL SCENARIOS COMPLETED SUCCESSFULLY")
        print("=" * 70 + "\n")

    finally:
        await shutdown_database()


async def run_scenario(num: int, use_sqlite: bool = False) -> None:
    """Run a specific scenario."""
    await init_database(use_sqlite=use_sqlite)

    try:
        if num not in SCENARIOS:
            print(f"Unknown scenario {num}. Available: {', '.join(map(str, SCENARIOS))}")
            return
        await SCENARIOS[num]()
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Escrow Arbiter Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a temporary SQLite file instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()

    if args.scenario == 0:
        asyncio.run(run_all(use_sqlite=args.sqlite))
    else:
        asyncio.run(run_scenario(args.scenario, use_sqlite=args.sqlite))
