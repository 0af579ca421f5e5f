"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the session
factory, the dispute services and their collaborators, and
configuration. Tests swap collaborators through app.dependency_overrides.
"""

from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from typing import TYPE_CHECKING

from fastapi import Depends

from escrow_arbiter.config import Settings, get_settings
from escrow_arbiter.infrastructure.database.engine import get_session_factory
from escrow_arbiter.orchestration.resolution_workflow import DisputeResolutionOrchestrator
from escrow_arbiter.services.authorization import JobPartyAuthorizationGate
from escrow_arbiter.services.dispute_service import DisputeService
from escrow_arbiter.services.notification_service import (
    NotificationDispatcher,
    build_notifier,
)
from escrow_arbiter.services.payment_service import build_payment_processor
from escrow_arbiter.services.reconciliation_service import SettlementReconciler

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_arbiter.domain.protocols import AuthorizationGate, PaymentProcessor


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()


def get_db_session_factory() -> async_sessionmaker[AsyncSession]:
    """Provide the session factory services open their transactions from."""
    return get_session_factory()


@lru_cache(maxsize=1)
def get_payment_processor() -> PaymentProcessor:
    """Provide the (process-wide) payment processor."""
    return build_payment_processor()


@lru_cache(maxsize=1)
def get_notification_dispatcher() -> NotificationDispatcher:
    """Provide the (process-wide) background notification dispatcher."""
    settings = get_settings()
    return NotificationDispatcher(build_notifier(), settings.notification_timeout_seconds)


def get_authorization_gate() -> AuthorizationGate:
    """Provide the authorization policy."""
    return JobPartyAuthorizationGate()


def get_dispute_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    notifications: NotificationDispatcher = Depends(get_notification_dispatcher),
) -> DisputeService:
    """Provide a DisputeService wired to the current collaborators."""
    return DisputeService(session_factory, gate, notifications)


def get_resolution_orchestrator(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    processor: PaymentProcessor = Depends(get_payment_processor),
    gate: AuthorizationGate = Depends(get_authorization_gate),
    notifications: NotificationDispatcher = Depends(get_notification_dispatcher),
    settings: Settings = Depends(get_app_settings),
) -> DisputeResolutionOrchestrator:
    """Provide the resolution workflow."""
    return DisputeResolutionOrchestrator(
        session_factory,
        processor,
        gate,
        notifications,
        payment_timeout_seconds=settings.payment_timeout_seconds,
        max_settlement_attempts=settings.settlement_max_attempts,
    )


def get_reconciler(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    processor: PaymentProcessor = Depends(get_payment_processor),
    settings: Settings = Depends(get_app_settings),
) -> SettlementReconciler:
    """Provide the settlement reconciler."""
    return SettlementReconciler(
        session_factory,
        processor,
        payment_timeout_seconds=settings.payment_timeout_seconds,
        stale_after=timedelta(minutes=settings.settlement_stale_after_minutes),
        batch_size=settings.settlement_retry_batch_size,
        max_attempts=settings.settlement_max_attempts,
    )
