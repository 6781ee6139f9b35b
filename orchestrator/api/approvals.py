"""
Approvals API — list pending approval requests and record decisions.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from orchestrator.api.deps import get_orchestrator
from orchestrator.schemas.approvals import ApprovalDecisionRequest, ApprovalRequest
from orchestrator.services.orchestration_service import DeploymentOrchestrationService

router = APIRouter(prefix="/approvals", tags=["approvals"])


def _serialize(approval: ApprovalRequest) -> dict:
    return {
        "approval_id": str(approval.approval_id),
        "deployment_execution_id": str(approval.deployment_execution_id),
        "module_name": approval.module_name,
        "module_version": approval.module_version,
        "target_environment": approval.target_environment.value,
        "requester_email": approval.requester_email,
        "approver_emails": list(approval.approver_emails),
        "status": approval.status.value,
        "requested_at": approval.requested_at.isoformat(),
        "timeout_at": approval.timeout_at.isoformat(),
        "responded_at": approval.responded_at.isoformat() if approval.responded_at else None,
        "responded_by_email": approval.responded_by_email,
        "response_reason": approval.response_reason,
    }


@router.get("/pending")
def list_pending_approvals(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    orchestrator: DeploymentOrchestrationService = Depends(get_orchestrator),
):
    approvals = orchestrator.get_pending_approvals()
    return [_serialize(a) for a in approvals[offset : offset + limit]]


@router.get("/deployments/{execution_id}")
def get_deployment_approval(
    execution_id: UUID,
    orchestrator: DeploymentOrchestrationService = Depends(get_orchestrator),
):
    return _serialize(orchestrator.get_approval(execution_id))


@router.post("/deployments/{execution_id}/approve", status_code=status.HTTP_200_OK)
async def approve_deployment(
    execution_id: UUID,
    payload: ApprovalDecisionRequest,
    orchestrator: DeploymentOrchestrationService = Depends(get_orchestrator),
):
    approval = await orchestrator.decide_approval(execution_id, payload.approver_email, True, payload.reason)
    return _serialize(approval)


@router.post("/deployments/{execution_id}/reject", status_code=status.HTTP_200_OK)
async def reject_deployment(
    execution_id: UUID,
    payload: ApprovalDecisionRequest,
    orchestrator: DeploymentOrchestrationService = Depends(get_orchestrator),
):
    approval = await orchestrator.decide_approval(execution_id, payload.approver_email, False, payload.reason)
    return _serialize(approval)
