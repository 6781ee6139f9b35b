"""
Deployments API — submit, inspect and cancel pipeline executions.
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from orchestrator.api.deps import get_db, get_orchestrator
from orchestrator.errors import DeploymentNotFoundError
from orchestrator.schemas.deployments import DeploymentCreateRequest, DeploymentCreateResponse
from orchestrator.services.audit_service import AuditQueryService
from orchestrator.services.orchestration_service import DeploymentOrchestrationService

router = APIRouter(prefix="/deployments", tags=["deployments"])


def _links(execution_id: UUID) -> dict[str, str]:
    base = f"/api/v1/deployments/{execution_id}"
    return {
        "self": base,
        "cancel": f"{base}/cancel",
        "approval": f"/api/v1/approvals/deployments/{execution_id}",
    }


@router.post("", status_code=status.HTTP_202_ACCEPTED, response_model=DeploymentCreateResponse)
async def create_deployment(
    payload: DeploymentCreateRequest,
    orchestrator: DeploymentOrchestrationService = Depends(get_orchestrator),
):
    execution_id = await orchestrator.submit_deployment(payload.to_request())
    return DeploymentCreateResponse(execution_id=execution_id, status="accepted", links=_links(execution_id))


@router.get("")
def list_deployments(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    orchestrator: DeploymentOrchestrationService = Depends(get_orchestrator),
):
    return [
        {
            "execution_id": str(r.execution_id),
            "module_name": r.module_name,
            "module_version": r.module_version,
            "target_environment": r.target_environment.value,
            "success": r.success,
            "message": r.message,
            "started_at": r.started_at.isoformat(),
            "completed_at": r.completed_at.isoformat() if r.completed_at else None,
        }
        for r in orchestrator.list_results(limit=limit, offset=offset)
    ]


@router.get("/{execution_id}")
def get_deployment(
    execution_id: UUID,
    orchestrator: DeploymentOrchestrationService = Depends(get_orchestrator),
):
    try:
        result = orchestrator.get_execution_result(execution_id)
        return {"state": "finished", "result": result.model_dump(mode="json")}
    except DeploymentNotFoundError:
        state = orchestrator.get_execution_state(execution_id)
        return {"state": "in_progress", "execution": state.model_dump(mode="json")}


@router.post("/{execution_id}/cancel", status_code=status.HTTP_202_ACCEPTED)
async def cancel_deployment(
    execution_id: UUID,
    orchestrator: DeploymentOrchestrationService = Depends(get_orchestrator),
):
    cancelled = orchestrator.cancel_deployment(execution_id)
    return {"execution_id": str(execution_id), "cancellation_requested": cancelled}


@router.get("/{execution_id}/audit")
def list_deployment_audit_events(
    execution_id: UUID,
    limit: int = Query(default=200, ge=1, le=500),
    db: Session = Depends(get_db),
):
    svc = AuditQueryService(db)
    return [AuditQueryService.serialize_event(e) for e in svc.list_for_execution(execution_id, limit=limit)]
