"""Dispute REST API routes.

These endpoints provide the HTTP interface for filing, reviewing and
resolving disputes and for the admin dashboard queries. The MCP tools in
mcp_server/tools.py call the same service layer, ensuring consistency.

Routes:
    POST   /api/v1/disputes               — File a dispute
    POST   /api/v1/disputes/resolve       — Resolve a dispute (admin)
    GET    /api/v1/disputes               — List disputes, optionally by status
    GET    /api/v1/disputes/stats         — Dispute counts per status
    GET    /api/v1/disputes/{id}          — Get dispute details
    GET    /api/v1/disputes/{id}/events   — Get audit trail
    POST   /api/v1/disputes/{id}/review   — Take a dispute under review (admin)
"""

from __future__ import annotations

import uuid  # noqa: TC003 - FastAPI resolves parameter types at runtime

from fastapi import APIRouter, Depends, Query
from redis.exceptions import RedisError

from escrow_arbiter.api.deps import get_dispute_service, get_resolution_orchestrator
from escrow_arbiter.domain.enums import DisputeStatus
from escrow_arbiter.domain.exceptions import DuplicateOperationError
from escrow_arbiter.domain.resolution import resolution_action_from_request
from escrow_arbiter.infrastructure.redis_client import (
    complete_idempotency_key,
    release_idempotency_key,
    reserve_idempotency_key,
)
from escrow_arbiter.logging_config import get_logger
from escrow_arbiter.orchestration.resolution_workflow import DisputeResolutionOrchestrator
from escrow_arbiter.schemas.disputes import (
    BeginReviewRequest,
    DisputeEventResponse,
    DisputeResponse,
    DisputeStatsResponse,
    FileDisputeRequest,
    FileDisputeResponse,
    ResolveDisputeRequest,
    ResolveDisputeResponse,
    SettlementOperationResponse,
)
from escrow_arbiter.services.dispute_service import DisputeService

router = APIRouter(prefix="/api/v1/disputes", tags=["Disputes"])
logger = get_logger(__name__)

_FILE_SCOPE = "file_dispute"


async def _reserve_key(key: str) -> bool:
    """Claim an idempotency key. Returns False if Redis is unavailable."""
    try:
        reserved = await reserve_idempotency_key(_FILE_SCOPE, key)
    except (RuntimeError, RedisError) as exc:
        logger.warning("idempotency.unavailable", error=str(exc))
        return False
    if not reserved:
        raise DuplicateOperationError(key)
    return True


async def _complete_key(key: str, dispute_id: uuid.UUID) -> None:
    # Runs after the filing has committed; Redis errors are logged only.
    try:
        await complete_idempotency_key(_FILE_SCOPE, key, str(dispute_id))
    except (RuntimeError, RedisError) as exc:
        logger.warning(
            "idempotency.unavailable", step="complete", dispute_id=str(dispute_id), error=str(exc)
        )


async def _release_key(key: str) -> None:
    try:
        await release_idempotency_key(_FILE_SCOPE, key)
    except (RuntimeError, RedisError) as exc:
        logger.warning("idempotency.unavailable", step="release", error=str(exc))


# ---------------------------------------------------------------------------
# File
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=FileDisputeResponse,
    status_code=201,
    summary="File a dispute",
)
async def file_dispute(
    request: FileDisputeRequest,
    svc: DisputeService = Depends(get_dispute_service),
) -> FileDisputeResponse:
    """File a dispute on an in-progress job. The job goes ON_HOLD and its payment is frozen."""
    key = request.idempotency_key
    reserved = await _reserve_key(key) if key else False

    try:
        dispute = await svc.file(
            job_id=request.job_id,
            filer_id=request.user_id,
            filer_role=request.user_type,
            reason=request.reason,
            description=request.description,
        )
    except Exception:
        if reserved:
            await _release_key(key)
        raise

    if reserved:
        await _complete_key(key, dispute.id)
    return FileDisputeResponse(dispute=DisputeResponse.model_validate(dispute))


# ---------------------------------------------------------------------------
# Resolve
# ---------------------------------------------------------------------------


@router.post(
    "/resolve",
    response_model=ResolveDisputeResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    request: ResolveDisputeRequest,
    orchestrator: DisputeResolutionOrchestrator = Depends(get_resolution_orchestrator),
) -> ResolveDisputeResponse:
    """Apply an admin decision: release, refund, split or dismiss."""
    action = resolution_action_from_request(
        request.action,
        contractor_amount=request.contractor_amount,
        homeowner_refund=request.homeowner_refund,
        restore_payment_status=request.restore_payment_status,
    )
    outcome = await orchestrator.resolve(
        dispute_id=request.dispute_id,
        action=action,
        resolution_text=request.resolution,
        admin_id=request.admin_id,
        admin_notes=request.admin_notes,
    )
    return ResolveDisputeResponse(
        dispute_id=outcome.dispute_id,
        new_job_status=outcome.new_job_status.value,
        new_payment_status=(
            outcome.new_payment_status.value if outcome.new_payment_status else None
        ),
        settlement_operations=[
            SettlementOperationResponse.model_validate(op)
            for op in outcome.settlement_operations
        ],
    )


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=list[DisputeResponse],
    summary="List disputes",
)
async def list_disputes(
    status: DisputeStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    svc: DisputeService = Depends(get_dispute_service),
) -> list[DisputeResponse]:
    """List disputes, newest first."""
    disputes = await svc.list_disputes(status=status, limit=limit, offset=offset)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get(
    "/stats",
    response_model=DisputeStatsResponse,
    summary="Dispute counts per status",
)
async def dispute_stats(
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeStatsResponse:
    return DisputeStatsResponse(**await svc.dispute_stats())


@router.get(
    "/{dispute_id}",
    response_model=DisputeResponse,
    summary="Get dispute details",
)
async def get_dispute(
    dispute_id: uuid.UUID,
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    dispute = await svc.get_dispute(dispute_id)
    return DisputeResponse.model_validate(dispute)


@router.get(
    "/{dispute_id}/events",
    response_model=list[DisputeEventResponse],
    summary="Get the dispute's audit trail",
)
async def get_dispute_events(
    dispute_id: uuid.UUID,
    svc: DisputeService = Depends(get_dispute_service),
) -> list[DisputeEventResponse]:
    """Return every audit event for a dispute, oldest first."""
    events = await svc.get_events(dispute_id)
    return [DisputeEventResponse.model_validate(e) for e in events]


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


@router.post(
    "/{dispute_id}/review",
    response_model=DisputeResponse,
    summary="Take a dispute under review",
)
async def begin_review(
    dispute_id: uuid.UUID,
    request: BeginReviewRequest,
    svc: DisputeService = Depends(get_dispute_service),
) -> DisputeResponse:
    """Move an open dispute to UNDER_REVIEW. Repeating the call is harmless."""
    dispute = await svc.begin_review(dispute_id, request.admin_id)
    return DisputeResponse.model_validate(dispute)
