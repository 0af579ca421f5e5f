"""Health check endpoint.

Verifies connectivity to the database and Redis, and reports the settlement
backlog: outbox rows that have not reached the processor yet, or that failed
and need the reconciler (or a person, once abandoned).
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from escrow_arbiter.api.deps import get_db_session_factory
from escrow_arbiter.domain.enums import SettlementStatus
from escrow_arbiter.infrastructure.database.repositories import SettlementRepository
from escrow_arbiter.infrastructure.redis_client import get_redis
from escrow_arbiter.logging_config import get_logger
from escrow_arbiter.schemas.disputes import HealthResponse

router = APIRouter(tags=["Health"])
logger = get_logger(__name__)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Returns the health status of the application and its dependencies.",
)
async def health_check(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> HealthResponse:
    """Check the database and Redis, and count unconfirmed settlements."""
    db_status = "unknown"
    redis_status = "unknown"
    backlog: dict[str, int] = {}

    # Database, plus the outbox counts in the same round trip
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            counts = await SettlementRepository(session).count_by_status()
        db_status = "healthy"
        backlog = {
            status: count
            for status, count in counts.items()
            if status != SettlementStatus.CONFIRMED
        }
    except Exception as exc:
        db_status = f"unhealthy: {exc}"
        logger.error("health.db_check_failed", error=str(exc))

    # Redis only backs idempotency keys; filing works without it
    try:
        await get_redis().ping()
        redis_status = "healthy"
    except Exception as exc:
        redis_status = f"unhealthy: {exc}"
        logger.warning("health.redis_check_failed", error=str(exc))

    if backlog.get(SettlementStatus.ABANDONED):
        logger.warning("health.abandoned_settlements", count=backlog[SettlementStatus.ABANDONED])

    overall = "ok" if db_status == "healthy" and redis_status == "healthy" else "degraded"

    return HealthResponse(
        status=overall,
        version="0.1.0",
        database=db_status,
        redis=redis_status,
        settlement_backlog=backlog,
    )
