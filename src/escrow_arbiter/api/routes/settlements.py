"""Settlement outbox REST API routes.

Routes:
    GET    /api/v1/settlements             — List settlement operations
    POST   /api/v1/settlements/reconcile   — Retry failed and stalled settlements
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker  # noqa: TC002

from escrow_arbiter.api.deps import get_db_session_factory, get_reconciler
from escrow_arbiter.domain.enums import SettlementStatus
from escrow_arbiter.infrastructure.database.repositories import SettlementRepository
from escrow_arbiter.logging_config import get_logger
from escrow_arbiter.schemas.disputes import ReconcileResponse, SettlementOperationResponse
from escrow_arbiter.services.reconciliation_service import SettlementReconciler

router = APIRouter(prefix="/api/v1/settlements", tags=["Settlements"])
logger = get_logger(__name__)


@router.get(
    "",
    response_model=list[SettlementOperationResponse],
    summary="List settlement operations",
)
async def list_settlements(
    status: SettlementStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
) -> list[SettlementOperationResponse]:
    """List outbox rows, newest first. Filter by status=failed for the manual queue."""
    async with session_factory() as session:
        operations = await SettlementRepository(session).list_by_status(status, limit=limit)
    return [SettlementOperationResponse.model_validate(op) for op in operations]


@router.post(
    "/reconcile",
    response_model=ReconcileResponse,
    summary="Retry failed settlements and finish stalled resolutions",
)
async def reconcile_settlements(
    reconciler: SettlementReconciler = Depends(get_reconciler),
) -> ReconcileResponse:
    report = await reconciler.reconcile()
    return ReconcileResponse(**report.as_dict())
