from fastapi import HTTPException, Request

from orchestrator.db import SessionLocal
from orchestrator.services.orchestration_service import DeploymentOrchestrationService


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_orchestrator(request: Request) -> DeploymentOrchestrationService:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator is not running")
    return orchestrator
