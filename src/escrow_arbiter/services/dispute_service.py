"""Dispute Service — filing, review and the read side of disputes.

This is the application layer that coordinates between:
    - Domain state machines (transition guards)
    - Repositories (data access)
    - Event log (audit trail)
    - Authorization gate and notifications (injected collaborators)

Both REST routes and MCP tools call into this service. It takes a session
factory rather than a session: validation reads run in their own short
session, and every write runs in a single transaction whose first statement
is a write, so two concurrent filings serialize instead of deadlocking.
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from escrow_arbiter.domain.enums import (
    DisputeReason,
    DisputeStatus,
    EventType,
    FilerRole,
    JobStatus,
    PaymentHoldStatus,
)
from escrow_arbiter.domain.exceptions import (
    AuthorizationError,
    DisputeNotFoundError,
    DuplicateActiveDisputeError,
    JobNotFoundError,
    PersistenceError,
    ValidationError,
)
from escrow_arbiter.domain.protocols import DisputeFiledNotice, Recipient
from escrow_arbiter.domain.state_machine import (
    DisputeStateMachine,
    JobStateMachine,
    PaymentHoldStateMachine,
    validate_transition,
)
from escrow_arbiter.infrastructure.database.orm_models import Dispute
from escrow_arbiter.infrastructure.database.repositories import (
    DisputeRepository,
    EventRepository,
    JobRepository,
    PaymentHoldRepository,
)
from escrow_arbiter.logging_config import get_logger

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_arbiter.domain.protocols import AuthorizationGate
    from escrow_arbiter.infrastructure.database.orm_models import (
        DisputeEvent,
        Job,
        Participant,
    )
    from escrow_arbiter.services.notification_service import NotificationDispatcher

logger = get_logger(__name__)

_FREEZABLE_HOLD_STATUSES = frozenset(
    {PaymentHoldStatus.PENDING, PaymentHoldStatus.AUTHORIZED, PaymentHoldStatus.CAPTURED}
)


def _party(job: Job, role: FilerRole) -> Participant | None:
    return job.requester if role is FilerRole.REQUESTER else job.provider


class DisputeService:
    """Files disputes, moves them under review and answers dispute queries."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gate: AuthorizationGate,
        notifications: NotificationDispatcher | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._gate = gate
        self._notifications = notifications

    # ------------------------------------------------------------------
    # Filing
    # ------------------------------------------------------------------

    async def file(
        self,
        job_id: uuid.UUID,
        filer_id: str,
        filer_role: FilerRole | str,
        reason: DisputeReason | str,
        description: str | None = None,
    ) -> Dispute:
        """File a dispute against an in-progress job.

        Puts the job on hold and freezes its payment hold (if it has one) in
        the same transaction that creates the dispute, then notifies the
        other party in the background.

        Raises:
            JobNotFoundError: No such job.
            ValidationError: Job not in progress, bad role or reason, or an
                active dispute already exists.
            AuthorizationError: The filer is not that party of the job.
            PersistenceError: The store rejected the write.
        """
        # --- Validation (fail fast, nothing written) ---
        async with self._session_factory() as session:
            job = await JobRepository(session).get_by_id(job_id)
            if job is None:
                raise JobNotFoundError(str(job_id))

            if job.status != JobStatus.IN_PROGRESS:
                raise ValidationError(
                    f"Disputes can only be filed on in-progress jobs (job is {job.status})",
                    code="JOB_NOT_IN_PROGRESS",
                )

            role = self._parse_role(filer_role)
            reason = self._parse_reason(reason)

            if not self._gate.can_act_on_job(str(filer_id), job, role):
                raise AuthorizationError(
                    f"User {filer_id} is not the {role.value} of job {job_id}"
                )

            if await DisputeRepository(session).find_active_for_job(job_id) is not None:
                raise DuplicateActiveDisputeError(str(job_id))

        # --- Effect (one transaction: dispute -> job -> hold -> event) ---
        try:
            async with self._session_factory() as session, session.begin():
                dispute, hold_frozen = await self._create_and_freeze(
                    session, job_id, uuid.UUID(str(filer_id)), role, reason, description
                )
        except IntegrityError as exc:
            raise DuplicateActiveDisputeError(str(job_id)) from exc
        except SQLAlchemyError as exc:
            logger.error("dispute.file_failed", job_id=str(job_id), error=str(exc))
            raise PersistenceError(f"Could not file dispute: {exc}") from exc

        logger.info(
            "dispute.filed",
            dispute_id=str(dispute.id),
            job_id=str(job_id),
            role=role.value,
            reason=reason.value,
            hold_frozen=hold_frozen,
        )

        self._notify_counterparty(job, role, reason)
        return dispute

    async def _create_and_freeze(
        self,
        session: AsyncSession,
        job_id: uuid.UUID,
        filer_id: uuid.UUID,
        role: FilerRole,
        reason: DisputeReason,
        description: str | None,
    ) -> tuple[Dispute, bool]:
        job_repo = JobRepository(session)
        hold_repo = PaymentHoldRepository(session)

        # The partial unique index rejects a second active dispute here
        dispute = await DisputeRepository(session).create(
            Dispute(
                job_id=job_id,
                filed_by_id=filer_id,
                filed_by_role=role.value,
                reason=reason.value,
                description=description,
                status=DisputeStatus.OPEN.value,
            )
        )

        new_job_status = JobStatus(
            validate_transition(JobStateMachine, JobStatus.IN_PROGRESS, "hold_for_dispute")
        )
        moved = await job_repo.update_status(
            job_id, new_job_status, expected_status=JobStatus.IN_PROGRESS
        )
        if not moved:
            current = await job_repo.get_by_id(job_id)
            if current is not None and current.status == JobStatus.ON_HOLD:
                raise DuplicateActiveDisputeError(str(job_id))
            raise ValidationError(
                "Job is no longer in progress",
                code="JOB_NOT_IN_PROGRESS",
            )

        hold_frozen = False
        hold = await hold_repo.get_by_job(job_id)
        if hold is not None:
            if hold.status in _FREEZABLE_HOLD_STATUSES:
                validate_transition(PaymentHoldStateMachine, hold.status, "freeze")
                hold_frozen = await hold_repo.freeze(hold.id, hold.status)
            if not hold_frozen:
                logger.warning(
                    "dispute.hold_not_frozen",
                    job_id=str(job_id),
                    hold_id=str(hold.id),
                    hold_status=hold.status,
                )

        await EventRepository(session).record(
            dispute_id=dispute.id,
            event_type=EventType.DISPUTE_FILED,
            old_status=None,
            new_status=DisputeStatus.OPEN,
            actor=str(filer_id),
            metadata={
                "job_id": str(job_id),
                "reason": reason.value,
                "filed_by_role": role.value,
                "hold_frozen": hold_frozen,
                "pre_dispute_status": hold.status if hold is not None else None,
            },
        )
        return dispute, hold_frozen

    @staticmethod
    def _parse_role(filer_role: FilerRole | str) -> FilerRole:
        try:
            return FilerRole.from_user_type(str(filer_role))
        except ValueError as err:
            raise ValidationError(
                "userType must be one of: homeowner, contractor",
                code="INVALID_ROLE",
            ) from err

    @staticmethod
    def _parse_reason(reason: DisputeReason | str) -> DisputeReason:
        try:
            return DisputeReason(reason)
        except ValueError as err:
            valid = ", ".join(r.value for r in DisputeReason)
            raise ValidationError(
                f"Invalid reason. Must be one of: {valid}",
                code="INVALID_REASON",
            ) from err

    def _notify_counterparty(self, job: Job, role: FilerRole, reason: DisputeReason) -> None:
        if self._notifications is None:
            return
        other = _party(job, role.counterparty)
        if other is None:
            logger.info("dispute.no_counterparty_to_notify", job_id=str(job.id))
            return
        filer = _party(job, role)
        self._notifications.dispute_filed(
            DisputeFiledNotice(
                recipient=Recipient(name=other.name, email=other.email),
                job_title=job.title,
                reason=reason.value,
                filed_by_role=role.value,
                filed_by_name=filer.name if filer is not None else role.value,
            )
        )

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def begin_review(self, dispute_id: uuid.UUID, admin_id: str) -> Dispute:
        """Move an open dispute under review. Repeating the call is a no-op."""
        if not self._gate.can_resolve_disputes(str(admin_id)):
            raise AuthorizationError(f"User {admin_id} may not review disputes")

        try:
            async with self._session_factory() as session, session.begin():
                repo = DisputeRepository(session)
                moved = await repo.update_status(
                    dispute_id,
                    expected=[DisputeStatus.OPEN],
                    new_status=DisputeStatus.UNDER_REVIEW,
                    reviewed_by=str(admin_id),
                )
                if moved:
                    await EventRepository(session).record(
                        dispute_id=dispute_id,
                        event_type=EventType.REVIEW_STARTED,
                        old_status=DisputeStatus.OPEN,
                        new_status=DisputeStatus.UNDER_REVIEW,
                        actor=str(admin_id),
                    )
        except SQLAlchemyError as exc:
            logger.error("dispute.review_failed", dispute_id=str(dispute_id), error=str(exc))
            raise PersistenceError(f"Could not start review: {exc}") from exc

        dispute = await self.get_dispute(dispute_id)
        if moved:
            logger.info("dispute.review_started", dispute_id=str(dispute_id), admin=admin_id)
        elif dispute.status != DisputeStatus.UNDER_REVIEW:
            validate_transition(DisputeStateMachine, dispute.status, "begin_review")
        return dispute

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_dispute(self, dispute_id: uuid.UUID) -> Dispute:
        """Fetch a dispute or raise DisputeNotFoundError."""
        async with self._session_factory() as session:
            dispute = await DisputeRepository(session).get_by_id(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        return dispute

    async def list_disputes(
        self,
        status: DisputeStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Dispute]:
        async with self._session_factory() as session:
            return await DisputeRepository(session).list_by_status(
                [status] if status else None, limit=limit, offset=offset
            )

    async def dispute_stats(self) -> dict[str, int]:
        """Count disputes per status, including statuses with none."""
        async with self._session_factory() as session:
            counts = await DisputeRepository(session).count_by_status()
        stats = {s.value: counts.get(s.value, 0) for s in DisputeStatus}
        stats["total"] = sum(counts.values())
        return stats

    async def get_events(self, dispute_id: uuid.UUID) -> list[DisputeEvent]:
        """The dispute's audit trail, oldest first."""
        async with self._session_factory() as session:
            if await DisputeRepository(session).get_by_id(dispute_id) is None:
                raise DisputeNotFoundError(str(dispute_id))
            return await EventRepository(session).get_by_dispute(dispute_id)
