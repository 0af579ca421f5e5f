"""MCP Tool definitions for the Escrow Arbiter.

These tools expose dispute handling via the Model Context Protocol, so an
operator's assistant can file, review and resolve disputes programmatically.

Tools:
    - file_dispute: File a dispute against an in-progress job
    - begin_review: Take a dispute under review (admin)
    - resolve_dispute: Resolve a dispute and settle its funds (admin)
    - check_dispute: Check a dispute's status and settlement operations
    - reconcile_settlements: Retry failed and stalled settlements

The MCP server is mounted into FastAPI at /mcp via app.mount().
Tools call the same services as the REST routes; each service opens its
own database sessions from the shared session factory.
"""

from __future__ import annotations

import uuid

from mcp.server.fastmcp import FastMCP

from escrow_arbiter.logging_config import get_logger

logger = get_logger(__name__)

# Initialize the MCP server
# This will be mounted into the FastAPI app in main.py
mcp = FastMCP(
    "Escrow Arbiter",
    json_response=True,
)


def _dispute_service():
    """Build a DisputeService outside of a FastAPI request."""
    from escrow_arbiter.api.deps import get_notification_dispatcher
    from escrow_arbiter.infrastructure.database.engine import get_session_factory
    from escrow_arbiter.services.authorization import JobPartyAuthorizationGate
    from escrow_arbiter.services.dispute_service import DisputeService

    return DisputeService(
        get_session_factory(),
        JobPartyAuthorizationGate(),
        get_notification_dispatcher(),
    )


@mcp.tool()
async def file_dispute(
    job_id: str,
    user_id: str,
    user_type: str,
    reason: str,
    description: str = "",
) -> dict:
    """File a dispute against an in-progress job.

    Args:
        job_id: UUID of the disputed job.
        user_id: Id of the filing user (the job's homeowner or contractor).
        user_type: 'homeowner' or 'contractor'.
        reason: One of work_not_completed, quality_issues, provider_no_show,
            price_disagreement, safety_concern, other.
        description: Optional free-text account of the problem.

    Returns:
        The new dispute's id and status. The job is now on hold.
    """
    try:
        svc = _dispute_service()
        dispute = await svc.file(
            job_id=uuid.UUID(job_id),
            filer_id=user_id,
            filer_role=user_type,
            reason=reason,
            description=description or None,
        )
        return {
            "dispute_id": str(dispute.id),
            "job_id": str(dispute.job_id),
            "status": dispute.status,
            "message": "Dispute filed. The job is on hold until an admin resolves it.",
        }
    except Exception as exc:
        logger.exception("mcp.file_dispute.error")
        return {"error": str(exc)}


@mcp.tool()
async def begin_review(dispute_id: str, admin_id: str) -> dict:
    """Take an open dispute under review.

    Args:
        dispute_id: UUID of the dispute.
        admin_id: Your administrator id.

    Returns:
        The dispute's status (under_review).
    """
    try:
        svc = _dispute_service()
        dispute = await svc.begin_review(uuid.UUID(dispute_id), admin_id)
        return {
            "dispute_id": str(dispute.id),
            "status": dispute.status,
            "reviewed_by": dispute.reviewed_by,
        }
    except Exception as exc:
        logger.exception("mcp.begin_review.error")
        return {"error": str(exc)}


@mcp.tool()
async def resolve_dispute(
    dispute_id: str,
    action: str,
    resolution: str,
    admin_id: str,
    contractor_amount: float | None = None,
    homeowner_refund: float | None = None,
    restore_payment_status: str = "",
    admin_notes: str = "",
) -> dict:
    """Resolve a dispute and settle the escrowed payment.

    Args:
        dispute_id: UUID of the dispute.
        action: release_to_contractor, refund_homeowner, partial_refund or dismissed.
        resolution: Explanation sent to both parties.
        admin_id: Your administrator id.
        contractor_amount: Amount for the contractor (partial_refund only).
        homeowner_refund: Amount refunded to the homeowner (partial_refund only).
        restore_payment_status: Dismissal only, when the hold's prior status is unknown.
        admin_notes: Internal notes.

    Returns:
        The final job and payment statuses and each settlement operation.
    """
    from escrow_arbiter.api.deps import get_notification_dispatcher, get_payment_processor
    from escrow_arbiter.config import get_settings
    from escrow_arbiter.domain.resolution import resolution_action_from_request
    from escrow_arbiter.infrastructure.database.engine import get_session_factory
    from escrow_arbiter.orchestration.resolution_workflow import DisputeResolutionOrchestrator
    from escrow_arbiter.services.authorization import JobPartyAuthorizationGate

    try:
        decision = resolution_action_from_request(
            action,
            contractor_amount=contractor_amount,
            homeowner_refund=homeowner_refund,
            restore_payment_status=restore_payment_status or None,
        )
        orchestrator = DisputeResolutionOrchestrator(
            get_session_factory(),
            get_payment_processor(),
            JobPartyAuthorizationGate(),
            get_notification_dispatcher(),
            payment_timeout_seconds=get_settings().payment_timeout_seconds,
            max_settlement_attempts=get_settings().settlement_max_attempts,
        )
        outcome = await orchestrator.resolve(
            dispute_id=uuid.UUID(dispute_id),
            action=decision,
            resolution_text=resolution,
            admin_id=admin_id,
            admin_notes=admin_notes or None,
        )
        return {
            "dispute_id": str(outcome.dispute_id),
            "new_job_status": outcome.new_job_status.value,
            "new_payment_status": (
                outcome.new_payment_status.value if outcome.new_payment_status else None
            ),
            "settlement_operations": [
                {
                    "id": str(op.id),
                    "kind": op.kind,
                    "amount_minor": op.amount_minor,
                    "status": op.status,
                    "processor_reference": op.processor_reference,
                    "error": op.last_error,
                }
                for op in outcome.settlement_operations
            ],
        }
    except Exception as exc:
        logger.exception("mcp.resolve_dispute.error")
        return {"error": str(exc)}


@mcp.tool()
async def check_dispute(dispute_id: str) -> dict:
    """Check the current status of a dispute.

    Args:
        dispute_id: UUID of the dispute.

    Returns:
        Status, resolution (if any), allowed next actions and the audit trail.
    """
    from escrow_arbiter.domain.state_machine import DisputeStateMachine

    try:
        svc = _dispute_service()
        did = uuid.UUID(dispute_id)
        dispute = await svc.get_dispute(did)
        events = await svc.get_events(did)
        return {
            "dispute_id": str(dispute.id),
            "job_id": str(dispute.job_id),
            "status": dispute.status,
            "reason": dispute.reason,
            "resolution_action": dispute.resolution_action,
            "resolution": dispute.resolution,
            "allowed_events": DisputeStateMachine(dispute.status).get_allowed_events(),
            "events": [
                {
                    "event_type": e.event_type,
                    "old_status": e.old_status,
                    "new_status": e.new_status,
                    "actor": e.actor,
                    "created_at": e.created_at.isoformat(),
                }
                for e in events
            ],
        }
    except Exception as exc:
        logger.exception("mcp.check_dispute.error")
        return {"error": str(exc)}


@mcp.tool()
async def reconcile_settlements() -> dict:
    """Retry failed settlement operations and finish interrupted resolutions.

    Returns:
        Counts of retried, confirmed and failed operations and finished disputes.
    """
    from datetime import timedelta

    from escrow_arbiter.api.deps import get_payment_processor
    from escrow_arbiter.config import get_settings
    from escrow_arbiter.infrastructure.database.engine import get_session_factory
    from escrow_arbiter.services.reconciliation_service import SettlementReconciler

    try:
        settings = get_settings()
        reconciler = SettlementReconciler(
            get_session_factory(),
            get_payment_processor(),
            payment_timeout_seconds=settings.payment_timeout_seconds,
            stale_after=timedelta(minutes=settings.settlement_stale_after_minutes),
            batch_size=settings.settlement_retry_batch_size,
            max_attempts=settings.settlement_max_attempts,
        )
        report = await reconciler.reconcile()
        return report.as_dict()
    except Exception as exc:
        logger.exception("mcp.reconcile_settlements.error")
        return {"error": str(exc)}
