"""Dispute resolution workflow — orchestrates plan, claim, settle and commit.

Runs an administrator's decision on a dispute through five steps:

    plan -> claim -> settle -> commit -> notify

    plan    Read the dispute, job, hold and provider; compute the settlement
            with the pure allocation calculator. Any rule violation is
            raised here, before anything is written.
    claim   One transaction: move the dispute to RESOLVING (only one caller
            can), record the decision and target statuses on it, and write
            a pending outbox row per processor call.
    settle  Run the outbox rows against the payment processor, each under a
            timeout. Failures are recorded, never raised.
    commit  One transaction: dispute RESOLVED, job and hold to their target
            statuses, outbox outcomes, audit events.
    notify  Tell both parties, in the background.

Usage:
    from escrow_arbiter.orchestration import DisputeResolutionOrchestrator

    outcome = await orchestrator.resolve(
        dispute_id=dispute.id,
        action=ReleaseToContractor(),
        resolution_text="Work verified on site",
        admin_id="admin-1",
    )
    outcome.new_job_status  # JobStatus.COMPLETED
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from escrow_arbiter.domain.allocation import HoldSnapshot, plan_settlement
from escrow_arbiter.domain.enums import (
    CLAIMABLE_DISPUTE_STATUSES,
    DisputeStatus,
    EventType,
    JobStatus,
    PaymentHoldStatus,
    SettlementKind,
    SettlementStatus,
)
from escrow_arbiter.domain.exceptions import (
    AuthorizationError,
    DisputeNotFoundError,
    PersistenceError,
    StateConflictError,
    ValidationError,
)
from escrow_arbiter.domain.protocols import DisputeResolvedNotice, Recipient
from escrow_arbiter.domain.resolution import PartialRefund
from escrow_arbiter.domain.state_machine import (
    JOB_SETTLEMENT_EVENTS,
    DisputeStateMachine,
    JobStateMachine,
    validate_transition,
)
from escrow_arbiter.infrastructure.database.orm_models import SettlementOperation
from escrow_arbiter.infrastructure.database.repositories import (
    DisputeRepository,
    EventRepository,
    JobRepository,
    PaymentHoldRepository,
    SettlementRepository,
)
from escrow_arbiter.logging_config import get_logger
from escrow_arbiter.services.settlement_service import (
    SettlementExecutor,
    commit_resolution,
    settlement_idempotency_key,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_arbiter.domain.allocation import SettlementPlan
    from escrow_arbiter.domain.protocols import AuthorizationGate, PaymentProcessor
    from escrow_arbiter.domain.resolution import ResolutionAction
    from escrow_arbiter.infrastructure.database.orm_models import Job, PaymentHold
    from escrow_arbiter.services.notification_service import NotificationDispatcher

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolutionOutcome:
    """What a resolve call reports back to the caller."""

    dispute_id: uuid.UUID
    new_job_status: JobStatus
    new_payment_status: PaymentHoldStatus | None
    settlement_operations: list[SettlementOperation] = field(default_factory=list)

    @property
    def failed_operations(self) -> list[SettlementOperation]:
        return [
            op
            for op in self.settlement_operations
            if op.status in (SettlementStatus.FAILED, SettlementStatus.ABANDONED)
        ]


@dataclass
class _ResolutionContext:
    """Everything read in the plan step, carried through the later steps."""

    job: Job
    hold: PaymentHold | None
    plan: SettlementPlan
    claimed_from: DisputeStatus
    target_payment_status: PaymentHoldStatus | None


def _effective_payment_target(
    plan: SettlementPlan, hold: PaymentHold | None
) -> PaymentHoldStatus | None:
    """A hold the dispute never froze keeps its status."""
    if hold is None:
        return None
    if hold.status != PaymentHoldStatus.DISPUTED:
        return PaymentHoldStatus(hold.status)
    return plan.target_payment_status


class DisputeResolutionOrchestrator:
    """Resolves disputes. Safe to call concurrently for the same dispute."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        processor: PaymentProcessor,
        gate: AuthorizationGate,
        notifications: NotificationDispatcher | None = None,
        payment_timeout_seconds: float = 15.0,
        max_settlement_attempts: int = 5,
    ) -> None:
        self._session_factory = session_factory
        self._gate = gate
        self._notifications = notifications
        self._executor = SettlementExecutor(
            processor, payment_timeout_seconds, max_settlement_attempts
        )

    async def resolve(
        self,
        dispute_id: uuid.UUID,
        action: ResolutionAction,
        resolution_text: str,
        admin_id: str,
        admin_notes: str | None = None,
    ) -> ResolutionOutcome:
        """Apply an admin decision to a dispute and settle its funds.

        Args:
            dispute_id: Dispute to resolve.
            action: The decision, already validated into a variant.
            resolution_text: Explanation shown to both parties. Required.
            admin_id: Resolving administrator; must pass the authorization gate.
            admin_notes: Internal notes, never sent to the parties.

        Returns:
            ResolutionOutcome with the final job and payment statuses and the
            settlement operations (confirmed or failed).

        Raises:
            ValidationError: Empty resolution text, over-allocation, or a
                dismissal that cannot tell what to restore the hold to.
            AuthorizationError: admin_id may not resolve disputes.
            DisputeNotFoundError: No such dispute.
            StateConflictError: Already resolved, or claimed by another caller.
            PersistenceError: A store write failed.
        """
        if not resolution_text or not resolution_text.strip():
            raise ValidationError("Resolution text is required", code="RESOLUTION_REQUIRED")

        if not self._gate.can_resolve_disputes(str(admin_id)):
            raise AuthorizationError(f"User {admin_id} may not resolve disputes")

        log = logger.bind(dispute_id=str(dispute_id), action=action.action_type.value)

        # --- 1. Plan ---
        ctx = await self._plan(dispute_id, action)
        log.info(
            "resolution.planned",
            transfer=ctx.plan.transfer is not None,
            refund=ctx.plan.refund is not None,
            skipped=list(ctx.plan.skipped),
        )

        # --- 2. Claim ---
        operations = await self._claim(dispute_id, action, resolution_text, admin_id, admin_notes, ctx)
        log.info("resolution.claimed", operations=len(operations))

        # --- 3. Settle ---
        results = await self._executor.execute_all(operations)

        # --- 4. Commit ---
        try:
            async with self._session_factory() as session, session.begin():
                committed = await commit_resolution(
                    session,
                    dispute_id=dispute_id,
                    job_id=ctx.job.id,
                    action_type=action.action_type,
                    target_job_status=ctx.plan.target_job_status,
                    target_payment_status=ctx.target_payment_status,
                    results=results,
                    actor=str(admin_id),
                )
        except SQLAlchemyError as exc:
            log.error("resolution.commit_failed", error=str(exc))
            raise PersistenceError(f"Could not commit resolution: {exc}") from exc

        async with self._session_factory() as session:
            settled_ops = await SettlementRepository(session).list_by_dispute(dispute_id)

        failed = [r for r in results if not r.succeeded]
        log.info(
            "resolution.committed",
            job_status=committed.job_status.value,
            payment_status=committed.payment_status.value if committed.payment_status else None,
            failed_operations=len(failed),
        )

        # --- 5. Notify ---
        self._notify_parties(ctx.job, resolution_text, action.action_type.value)

        return ResolutionOutcome(
            dispute_id=dispute_id,
            new_job_status=committed.job_status,
            new_payment_status=committed.payment_status,
            settlement_operations=settled_ops,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _plan(self, dispute_id: uuid.UUID, action: ResolutionAction) -> _ResolutionContext:
        async with self._session_factory() as session:
            dispute = await DisputeRepository(session).get_by_id(dispute_id)
            if dispute is None:
                raise DisputeNotFoundError(str(dispute_id))

            if dispute.status not in CLAIMABLE_DISPUTE_STATUSES:
                raise StateConflictError(
                    f"Dispute is already {dispute.status}",
                    current_state=dispute.status,
                )
            validate_transition(DisputeStateMachine, dispute.status, "claim")

            job = await JobRepository(session).get_by_id(dispute.job_id)
            hold = await PaymentHoldRepository(session).get_by_job(dispute.job_id)

        if job is None:
            raise StateConflictError(f"Job {dispute.job_id} of dispute {dispute_id} is missing")

        snapshot = None
        if hold is not None:
            snapshot = HoldSnapshot(
                hold_id=hold.id,
                status=PaymentHoldStatus(hold.status),
                total_amount=hold.total_amount,
                platform_fee=hold.platform_fee,
                provider_payout=hold.provider_payout,
                currency=hold.currency,
                processor_reference=hold.processor_reference,
                pre_dispute_status=(
                    PaymentHoldStatus(hold.pre_dispute_status)
                    if hold.pre_dispute_status
                    else None
                ),
            )
        destination = job.provider.payout_destination if job.provider is not None else None
        plan = plan_settlement(action, snapshot, destination)

        if job.status == JobStatus.ON_HOLD:
            validate_transition(
                JobStateMachine, job.status, JOB_SETTLEMENT_EVENTS[plan.target_job_status]
            )
        else:
            # Moved by some other flow while disputed; the commit overwrites it.
            logger.warning(
                "resolution.job_not_on_hold",
                dispute_id=str(dispute_id),
                job_id=str(job.id),
                job_status=job.status,
                target_job_status=plan.target_job_status.value,
            )

        return _ResolutionContext(
            job=job,
            hold=hold,
            plan=plan,
            claimed_from=DisputeStatus(dispute.status),
            target_payment_status=_effective_payment_target(plan, hold),
        )

    async def _claim(
        self,
        dispute_id: uuid.UUID,
        action: ResolutionAction,
        resolution_text: str,
        admin_id: str,
        admin_notes: str | None,
        ctx: _ResolutionContext,
    ) -> list[SettlementOperation]:
        plan = ctx.plan
        contractor_amount = action.contractor_amount if isinstance(action, PartialRefund) else None
        homeowner_refund = action.homeowner_refund if isinstance(action, PartialRefund) else None

        try:
            async with self._session_factory() as session, session.begin():
                # Conditional update first: exactly one concurrent caller wins
                claimed = await DisputeRepository(session).update_status(
                    dispute_id,
                    expected=CLAIMABLE_DISPUTE_STATUSES,
                    new_status=DisputeStatus.RESOLVING,
                    resolution=resolution_text.strip(),
                    resolution_action=action.action_type.value,
                    contractor_amount=contractor_amount,
                    homeowner_refund=homeowner_refund,
                    target_job_status=plan.target_job_status.value,
                    target_payment_status=(
                        ctx.target_payment_status.value if ctx.target_payment_status else None
                    ),
                    resolved_by=str(admin_id),
                    admin_notes=admin_notes,
                    claimed_at=datetime.now(UTC),
                )
                if not claimed:
                    raise StateConflictError(
                        "Dispute was already resolved or is being resolved by another request"
                    )

                operations = await self._write_outbox(session, dispute_id, ctx)

                await EventRepository(session).record(
                    dispute_id=dispute_id,
                    event_type=EventType.RESOLUTION_CLAIMED,
                    old_status=ctx.claimed_from,
                    new_status=DisputeStatus.RESOLVING,
                    actor=str(admin_id),
                    metadata={
                        "action": action.action_type.value,
                        "target_job_status": plan.target_job_status.value,
                        "target_payment_status": (
                            ctx.target_payment_status.value if ctx.target_payment_status else None
                        ),
                        "operations": [str(op.id) for op in operations],
                        "skipped": list(plan.skipped),
                    },
                )
        except SQLAlchemyError as exc:
            logger.error("resolution.claim_failed", dispute_id=str(dispute_id), error=str(exc))
            raise PersistenceError(f"Could not claim dispute: {exc}") from exc

        return operations

    async def _write_outbox(
        self,
        session: AsyncSession,
        dispute_id: uuid.UUID,
        ctx: _ResolutionContext,
    ) -> list[SettlementOperation]:
        plan = ctx.plan
        if not plan.has_processor_calls or ctx.hold is None:
            return []

        repo = SettlementRepository(session)
        operations: list[SettlementOperation] = []
        if plan.refund is not None:
            op_id = uuid.uuid4()
            operations.append(
                await repo.create(
                    SettlementOperation(
                        id=op_id,
                        dispute_id=dispute_id,
                        hold_id=ctx.hold.id,
                        kind=SettlementKind.REFUND.value,
                        amount_minor=plan.refund.amount_minor,
                        currency=plan.refund.currency,
                        hold_reference=plan.refund.hold_reference,
                        status=SettlementStatus.PENDING.value,
                        idempotency_key=settlement_idempotency_key(op_id),
                    )
                )
            )
        if plan.transfer is not None:
            op_id = uuid.uuid4()
            operations.append(
                await repo.create(
                    SettlementOperation(
                        id=op_id,
                        dispute_id=dispute_id,
                        hold_id=ctx.hold.id,
                        kind=SettlementKind.TRANSFER.value,
                        amount_minor=plan.transfer.amount_minor,
                        currency=plan.transfer.currency,
                        destination=plan.transfer.destination,
                        status=SettlementStatus.PENDING.value,
                        idempotency_key=settlement_idempotency_key(op_id),
                    )
                )
            )
        return operations

    def _notify_parties(self, job: Job, resolution_text: str, action: str) -> None:
        if self._notifications is None:
            return
        for party in (job.requester, job.provider):
            if party is None:
                continue
            self._notifications.dispute_resolved(
                DisputeResolvedNotice(
                    recipient=Recipient(name=party.name, email=party.email),
                    job_title=job.title,
                    resolution=resolution_text,
                    action=action,
                )
            )
