"""Tests for notification rendering, dispatch and SMTP delivery."""

from __future__ import annotations

import asyncio

import pytest

from escrow_arbiter.config import Settings
from escrow_arbiter.domain.protocols import DisputeFiledNotice, DisputeResolvedNotice, Recipient
from escrow_arbiter.services.notification_service import (
    EmailNotifier,
    LoggingNotifier,
    NotificationDispatcher,
    render_filed,
    render_resolved,
)


def filed_notice(email: str | None = "rita@example.com") -> DisputeFiledNotice:
    return DisputeFiledNotice(
        recipient=Recipient(name="Rita", email=email),
        job_title="Fix leaking roof",
        reason="work_not_completed",
        filed_by_role="provider",
        filed_by_name="Paul",
    )


def resolved_notice() -> DisputeResolvedNotice:
    return DisputeResolvedNotice(
        recipient=Recipient(name="Paul", email="paul@example.com"),
        job_title="Fix leaking roof",
        resolution="Half the work was done.",
        action="partial_refund",
    )


class TestRendering:
    def test_filed(self) -> None:
        subject, body = render_filed(filed_notice())
        assert subject == 'Dispute filed on "Fix leaking roof"'
        assert "Paul (the contractor)" in body
        assert "Reason: work not completed" in body

    def test_resolved(self) -> None:
        subject, body = render_resolved(resolved_notice())
        assert subject == 'Dispute resolved on "Fix leaking roof"'
        assert "split between the contractor and the homeowner" in body
        assert "Half the work was done." in body


class SlowNotifier:
    async def notify_dispute_filed(self, notice) -> None:
        await asyncio.sleep(5)

    async def notify_dispute_resolved(self, notice) -> None:
        await asyncio.sleep(5)


class TestDispatcher:
    @pytest.mark.asyncio
    async def test_delivery_happens_in_background(self, dispatcher, notifier) -> None:
        dispatcher.dispute_filed(filed_notice())
        dispatcher.dispute_resolved(resolved_notice())
        assert dispatcher.pending == 2

        await dispatcher.drain()
        assert dispatcher.pending == 0
        assert len(notifier.filed) == 1
        assert len(notifier.resolved) == 1

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self, dispatcher, notifier) -> None:
        notifier.fail = True
        dispatcher.dispute_filed(filed_notice())
        await dispatcher.drain()
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_slow_notifier_times_out(self) -> None:
        dispatcher = NotificationDispatcher(SlowNotifier(), timeout_seconds=0.05)
        dispatcher.dispute_filed(filed_notice())
        await asyncio.wait_for(dispatcher.drain(), timeout=1.0)
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_logging_notifier(self) -> None:
        notifier = LoggingNotifier()
        await notifier.notify_dispute_filed(filed_notice())
        await notifier.notify_dispute_resolved(resolved_notice())


class FakeSMTP:
    """Stands in for smtplib.SMTP and records what would be sent."""

    sent: list[tuple[str, list[str], str]] = []
    started_tls = False
    logged_in: tuple[str, str] | None = None

    def __init__(self, host: str, port: int, timeout: float) -> None:
        self.host = host
        self.port = port

    def __enter__(self) -> FakeSMTP:
        return self

    def __exit__(self, *exc) -> None:
        return None

    def starttls(self) -> None:
        FakeSMTP.started_tls = True

    def login(self, user: str, password: str) -> None:
        FakeSMTP.logged_in = (user, password)

    def sendmail(self, sender: str, to: list[str], message: str) -> None:
        FakeSMTP.sent.append((sender, to, message))


class TestEmailNotifier:
    @pytest.fixture(autouse=True)
    def fake_smtp(self, monkeypatch):
        FakeSMTP.sent = []
        FakeSMTP.started_tls = False
        FakeSMTP.logged_in = None
        monkeypatch.setattr(
            "escrow_arbiter.services.notification_service.smtplib.SMTP", FakeSMTP
        )

    @pytest.mark.asyncio
    async def test_sends_plain_text_mail(self) -> None:
        settings = Settings(
            smtp_host="mail.test",
            smtp_username="mailer",
            smtp_password="pw",
            smtp_sender="disputes@test",
        )
        await EmailNotifier(settings).notify_dispute_filed(filed_notice())

        assert len(FakeSMTP.sent) == 1
        sender, to, message = FakeSMTP.sent[0]
        assert sender == "disputes@test"
        assert to == ["rita@example.com"]
        assert "Subject: Dispute filed on" in message
        assert FakeSMTP.started_tls is True
        assert FakeSMTP.logged_in == ("mailer", "pw")

    @pytest.mark.asyncio
    async def test_recipient_without_address_is_skipped(self) -> None:
        await EmailNotifier(Settings()).notify_dispute_filed(filed_notice(email=None))
        assert FakeSMTP.sent == []
