"""Application services — use case orchestration."""

from escrow_arbiter.services.authorization import JobPartyAuthorizationGate
from escrow_arbiter.services.dispute_service import DisputeService
from escrow_arbiter.services.notification_service import (
    EmailNotifier,
    LoggingNotifier,
    NotificationDispatcher,
)
from escrow_arbiter.services.payment_service import StripePaymentProcessor
from escrow_arbiter.services.reconciliation_service import SettlementReconciler

__all__ = [
    "DisputeService",
    "EmailNotifier",
    "JobPartyAuthorizationGate",
    "LoggingNotifier",
    "NotificationDispatcher",
    "SettlementReconciler",
    "StripePaymentProcessor",
]
