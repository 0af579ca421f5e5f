"""Orchestration layer — multi-step dispute resolution workflow."""

from escrow_arbiter.orchestration.resolution_workflow import (
    DisputeResolutionOrchestrator,
    ResolutionOutcome,
)

__all__ = ["DisputeResolutionOrchestrator", "ResolutionOutcome"]
