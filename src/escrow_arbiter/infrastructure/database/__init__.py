"""Database infrastructure — engine, ORM models, and repositories."""

from escrow_arbiter.infrastructure.database.engine import (
    build_session_factory,
    close_db,
    get_session_factory,
    init_db,
)
from escrow_arbiter.infrastructure.database.orm_models import (
    Base,
    Dispute,
    DisputeEvent,
    Job,
    Participant,
    PaymentHold,
    SettlementOperation,
)
from escrow_arbiter.infrastructure.database.repositories import (
    DisputeRepository,
    EventRepository,
    JobRepository,
    ParticipantRepository,
    PaymentHoldRepository,
    SettlementRepository,
)

__all__ = [
    "Base",
    "Dispute",
    "DisputeEvent",
    "Job",
    "Participant",
    "PaymentHold",
    "SettlementOperation",
    "DisputeRepository",
    "EventRepository",
    "JobRepository",
    "ParticipantRepository",
    "PaymentHoldRepository",
    "SettlementRepository",
    "build_session_factory",
    "get_session_factory",
    "init_db",
    "close_db",
]
