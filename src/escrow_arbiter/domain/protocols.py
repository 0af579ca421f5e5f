"""Collaborator protocols consumed by the dispute services.

These are Protocols (structural subtyping): the Stripe adapter, the SMTP
notifier and the default authorization policy don't inherit from anything,
they just match the shape. Tests plug in fakes the same way.

The domain layer has ZERO imports from Stripe, SMTP or the database driver.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from escrow_arbiter.domain.enums import FilerRole


@dataclass(frozen=True)
class ProcessorReceipt:
    """What the processor hands back for a successful transfer or refund.

    Attributes:
        reference: The processor's object id (e.g. tr_..., re_...).
        amount_minor: Amount actually moved, in minor units.
        raw: Selected fields of the processor response, for the audit log.
    """

    reference: str
    amount_minor: int | None = None
    raw: dict = field(default_factory=dict)


@runtime_checkable
class PaymentProcessor(Protocol):
    """Executes money movements. Each call is independent of the other.

    Implementations raise PaymentProcessorError on any failure.
    """

    async def transfer(
        self,
        amount_minor: int,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
        currency: str = "usd",
    ) -> ProcessorReceipt:
        """Send amount_minor to a provider's connected account."""
        ...

    async def refund(
        self,
        hold_reference: str,
        amount_minor: int | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorReceipt:
        """Refund a captured payment, in full when amount_minor is None."""
        ...


@dataclass(frozen=True)
class Recipient:
    """A party to a job, as far as notifications are concerned."""

    name: str
    email: str | None


@dataclass(frozen=True)
class DisputeFiledNotice:
    """Sent to the party that did NOT file the dispute."""

    recipient: Recipient
    job_title: str
    reason: str
    filed_by_role: str
    filed_by_name: str


@dataclass(frozen=True)
class DisputeResolvedNotice:
    """Sent to both parties once a resolution is committed."""

    recipient: Recipient
    job_title: str
    resolution: str
    action: str


@runtime_checkable
class NotificationService(Protocol):
    """Best-effort delivery of dispute messages. Callers never await the outcome."""

    async def notify_dispute_filed(self, notice: DisputeFiledNotice) -> None:
        ...

    async def notify_dispute_resolved(self, notice: DisputeResolvedNotice) -> None:
        ...


@runtime_checkable
class AuthorizationGate(Protocol):
    """Answers who may file and who may resolve disputes.

    `job` is any object exposing requester_id and provider_id.
    """

    def can_act_on_job(self, user_id: str, job: object, role: FilerRole) -> bool:
        ...

    def can_resolve_disputes(self, user_id: str) -> bool:
        ...
