"""Pydantic API schemas."""

from escrow_arbiter.schemas.disputes import (
    BeginReviewRequest,
    DisputeEventResponse,
    DisputeResponse,
    DisputeStatsResponse,
    FileDisputeRequest,
    FileDisputeResponse,
    HealthResponse,
    ReconcileResponse,
    ResolveDisputeRequest,
    ResolveDisputeResponse,
    SettlementOperationResponse,
)

__all__ = [
    "BeginReviewRequest",
    "DisputeEventResponse",
    "DisputeResponse",
    "DisputeStatsResponse",
    "FileDisputeRequest",
    "FileDisputeResponse",
    "HealthResponse",
    "ReconcileResponse",
    "ResolveDisputeRequest",
    "ResolveDisputeResponse",
    "SettlementOperationResponse",
]
