"""Payment Service — moves escrowed money through Stripe.

Provides both a real Stripe integration and a simulated mode for local
development and the simulation script.

In simulation mode, generates fake transfer and refund ids.
In production mode, calls the Stripe API with the outbox row's idempotency
key, so a retried call never moves money twice.

The Stripe SDK is synchronous; calls run in a worker thread so the event
loop keeps serving other requests while a call is in flight.
"""

from __future__ import annotations

import asyncio
import uuid

import stripe
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from escrow_arbiter.config import get_settings
from escrow_arbiter.domain.exceptions import PaymentProcessorError
from escrow_arbiter.domain.protocols import ProcessorReceipt
from escrow_arbiter.logging_config import get_logger

logger = get_logger(__name__)

# Failures worth another attempt; everything else is a definite answer
_TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


class StripePaymentProcessor:
    """Executes provider transfers and requester refunds."""

    def __init__(self, simulate: bool = True, api_key: str | None = None) -> None:
        """Initialize the processor.

        Args:
            simulate: If True, generate fake receipt ids instead of calling Stripe.
            api_key: Stripe secret key. Defaults to STRIPE_SECRET_KEY.
        """
        self._simulate = simulate
        if simulate:
            return

        settings = get_settings()
        key = api_key or settings.stripe_secret_key
        if not key:
            raise PaymentProcessorError(
                "STRIPE_SECRET_KEY must be set when payment simulation is off",
                retryable=False,
            )
        stripe.api_key = key
        stripe.api_version = settings.stripe_api_version
        stripe.max_network_retries = settings.stripe_max_network_retries

    @property
    def simulated(self) -> bool:
        return self._simulate

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def transfer(
        self,
        amount_minor: int,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
        currency: str = "usd",
    ) -> ProcessorReceipt:
        """Send amount_minor to a provider's connected account."""
        if self._simulate:
            reference = "tr_sim_" + uuid.uuid4().hex[:24]
            logger.info(
                "payment.transfer_simulated",
                reference=reference,
                amount_minor=amount_minor,
                destination=destination,
                idempotency_key=idempotency_key,
            )
            return ProcessorReceipt(reference=reference, amount_minor=amount_minor)

        try:
            transfer = await self._create_transfer(
                amount_minor, destination, metadata, idempotency_key, currency
            )
        except stripe.StripeError as exc:
            logger.error(
                "payment.transfer_failed",
                destination=destination,
                amount_minor=amount_minor,
                error=str(exc),
            )
            raise PaymentProcessorError(
                f"Transfer failed: {exc.user_message or exc}",
                retryable=isinstance(exc, _TRANSIENT_ERRORS),
            ) from exc

        logger.info(
            "payment.transfer_complete",
            reference=transfer.id,
            amount_minor=transfer.amount,
            destination=destination,
        )
        return ProcessorReceipt(
            reference=transfer.id,
            amount_minor=transfer.amount,
            raw={"destination": destination, "currency": transfer.currency},
        )

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _create_transfer(
        self,
        amount_minor: int,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
        currency: str,
    ) -> stripe.Transfer:
        return await asyncio.to_thread(
            stripe.Transfer.create,
            amount=amount_minor,
            currency=currency,
            destination=destination,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    async def refund(
        self,
        hold_reference: str,
        amount_minor: int | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> ProcessorReceipt:
        """Refund a captured payment intent, in full when amount_minor is None."""
        if self._simulate:
            reference = "re_sim_" + uuid.uuid4().hex[:24]
            logger.info(
                "payment.refund_simulated",
                reference=reference,
                hold_reference=hold_reference,
                amount_minor=amount_minor,
                idempotency_key=idempotency_key,
            )
            return ProcessorReceipt(reference=reference, amount_minor=amount_minor)

        try:
            refund = await self._create_refund(
                hold_reference, amount_minor, metadata, idempotency_key
            )
        except stripe.StripeError as exc:
            logger.error(
                "payment.refund_failed",
                hold_reference=hold_reference,
                amount_minor=amount_minor,
                error=str(exc),
            )
            raise PaymentProcessorError(
                f"Refund failed: {exc.user_message or exc}",
                retryable=isinstance(exc, _TRANSIENT_ERRORS),
            ) from exc

        logger.info(
            "payment.refund_complete",
            reference=refund.id,
            amount_minor=refund.amount,
            hold_reference=hold_reference,
            status=refund.status,
        )
        return ProcessorReceipt(
            reference=refund.id,
            amount_minor=refund.amount,
            raw={"payment_intent": hold_reference, "status": refund.status},
        )

    @retry(
        retry=retry_if_exception_type(_TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    async def _create_refund(
        self,
        hold_reference: str,
        amount_minor: int | None,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> stripe.Refund:
        params: dict[str, object] = {
            "payment_intent": hold_reference,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        }
        if amount_minor is not None:
            params["amount"] = amount_minor
        return await asyncio.to_thread(stripe.Refund.create, **params)


def build_payment_processor() -> StripePaymentProcessor:
    """Create the processor configured by PAYMENT_SIMULATE / STRIPE_SECRET_KEY."""
    settings = get_settings()
    return StripePaymentProcessor(simulate=settings.payment_simulate)
