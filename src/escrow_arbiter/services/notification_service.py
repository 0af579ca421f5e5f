"""Dispute notifications.

Two notifiers share the NotificationService shape:
    - LoggingNotifier: writes the message to the log (default, and in tests).
    - EmailNotifier: sends plain-text e-mail over SMTP.

Callers never await delivery. NotificationDispatcher schedules each send as a
detached asyncio task, keeps a reference until it finishes, and logs any
failure; nothing a notifier does can fail or slow down a dispute operation.
"""

from __future__ import annotations

import asyncio
import smtplib
from email.mime.text import MIMEText
from typing import TYPE_CHECKING

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from escrow_arbiter.config import get_settings
from escrow_arbiter.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Coroutine

    from escrow_arbiter.config import Settings
    from escrow_arbiter.domain.protocols import (
        DisputeFiledNotice,
        DisputeResolvedNotice,
        NotificationService,
    )

logger = get_logger(__name__)

_ROLE_LABELS = {"requester": "homeowner", "provider": "contractor"}

_ACTION_LABELS = {
    "release_to_contractor": "Payment released to the contractor",
    "refund_homeowner": "Payment refunded to the homeowner",
    "partial_refund": "Payment split between the contractor and the homeowner",
    "dismissed": "Dispute dismissed; the job continues",
}


def render_filed(notice: DisputeFiledNotice) -> tuple[str, str]:
    """Return (subject, body) for a dispute-filed message."""
    filer = _ROLE_LABELS.get(notice.filed_by_role, notice.filed_by_role)
    reason = notice.reason.replace("_", " ")
    subject = f"Dispute filed on \"{notice.job_title}\""
    body = (
        f"Hi {notice.recipient.name},\n\n"
        f"{notice.filed_by_name} (the {filer}) has filed a dispute on "
        f"\"{notice.job_title}\".\n"
        f"Reason: {reason}\n\n"
        "The job is on hold and its payment is frozen until an administrator "
        "resolves the dispute.\n"
    )
    return subject, body


def render_resolved(notice: DisputeResolvedNotice) -> tuple[str, str]:
    """Return (subject, body) for a dispute-resolved message."""
    outcome = _ACTION_LABELS.get(notice.action, notice.action)
    subject = f"Dispute resolved on \"{notice.job_title}\""
    body = (
        f"Hi {notice.recipient.name},\n\n"
        f"The dispute on \"{notice.job_title}\" has been resolved.\n"
        f"Outcome: {outcome}\n\n"
        f"{notice.resolution}\n"
    )
    return subject, body


class LoggingNotifier:
    """Writes notifications to the structured log instead of sending them."""

    async def notify_dispute_filed(self, notice: DisputeFiledNotice) -> None:
        subject, _ = render_filed(notice)
        logger.info(
            "notification.dispute_filed",
            recipient=notice.recipient.name,
            email=notice.recipient.email,
            subject=subject,
        )

    async def notify_dispute_resolved(self, notice: DisputeResolvedNotice) -> None:
        subject, _ = render_resolved(notice)
        logger.info(
            "notification.dispute_resolved",
            recipient=notice.recipient.name,
            email=notice.recipient.email,
            subject=subject,
        )


class EmailNotifier:
    """Sends notifications as plain-text e-mail over SMTP."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    async def notify_dispute_filed(self, notice: DisputeFiledNotice) -> None:
        subject, body = render_filed(notice)
        await self._send(notice.recipient.email, subject, body)

    async def notify_dispute_resolved(self, notice: DisputeResolvedNotice) -> None:
        subject, body = render_resolved(notice)
        await self._send(notice.recipient.email, subject, body)

    async def _send(self, to_addr: str | None, subject: str, body: str) -> None:
        if not to_addr:
            logger.warning("notification.no_email_address", subject=subject)
            return

        msg = MIMEText(body, "plain", "utf-8")
        msg["Subject"] = subject
        msg["From"] = self._settings.smtp_sender
        msg["To"] = to_addr

        await asyncio.to_thread(self._smtp_send, to_addr, msg)
        logger.info("notification.email_sent", to=to_addr, subject=subject)

    @retry(
        retry=retry_if_exception_type((smtplib.SMTPException, OSError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        reraise=True,
    )
    def _smtp_send(self, to_addr: str, msg: MIMEText) -> None:
        s = self._settings
        with smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.notification_timeout_seconds) as server:
            if s.smtp_use_tls:
                server.starttls()
            if s.smtp_username:
                server.login(s.smtp_username, s.smtp_password)
            server.sendmail(s.smtp_sender, [to_addr], msg.as_string())


class NotificationDispatcher:
    """Fire-and-forget wrapper around a NotificationService."""

    def __init__(self, notifier: NotificationService, timeout_seconds: float = 20.0) -> None:
        self._notifier = notifier
        self._timeout = timeout_seconds
        self._tasks: set[asyncio.Task[None]] = set()

    def dispute_filed(self, notice: DisputeFiledNotice) -> None:
        self._spawn("dispute_filed", self._notifier.notify_dispute_filed(notice))

    def dispute_resolved(self, notice: DisputeResolvedNotice) -> None:
        self._spawn("dispute_resolved", self._notifier.notify_dispute_resolved(notice))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight notification. Used at shutdown and in tests."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _spawn(self, kind: str, coro: Coroutine[object, object, None]) -> None:
        task = asyncio.create_task(
            asyncio.wait_for(coro, timeout=self._timeout),
            name=f"notify:{kind}",
        )
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(kind, t))

    def _finished(self, kind: str, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("notification.cancelled", kind=kind)
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "notification.failed",
                kind=kind,
                error=str(exc) or type(exc).__name__,
            )


def build_notifier() -> NotificationService:
    """E-mail when NOTIFICATIONS_ENABLED is set, log-only otherwise."""
    settings = get_settings()
    if settings.notifications_enabled:
        return EmailNotifier(settings)
    return LoggingNotifier()
