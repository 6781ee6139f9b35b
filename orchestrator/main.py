from contextlib import asynccontextmanager
from time import monotonic

from fastapi import FastAPI, Request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy import select
from starlette.responses import Response

from orchestrator.api.approvals import router as approvals_router
from orchestrator.api.deployments import router as deployments_router
from orchestrator.config import settings
from orchestrator.db import SessionLocal, init_db
from orchestrator.errors import register_error_handlers
from orchestrator.logging import configure_logging
from orchestrator.metrics import REQUEST_COUNT, REQUEST_LATENCY
from orchestrator.services.audit_service import SqlAuditSink
from orchestrator.services.orchestration_service import build_default_orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    orchestrator = build_default_orchestrator(settings, audit_sink=SqlAuditSink(SessionLocal))
    orchestrator.start()
    app.state.orchestrator = orchestrator
    try:
        yield
    finally:
        await orchestrator.shutdown()
        app.state.orchestrator = None


app = FastAPI(title="Deployment Orchestrator API", lifespan=lifespan)

configure_logging()
register_error_handlers(app)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    started = monotonic()
    status = 500
    try:
        response = await call_next(request)
        status = response.status_code
        return response
    finally:
        route = request.scope.get("route")
        path = getattr(route, "path", request.url.path)
        labels = {"method": request.method, "path": path, "status": str(status)}
        REQUEST_COUNT.labels(**labels).inc()
        REQUEST_LATENCY.labels(**labels).observe(monotonic() - started)


app.include_router(deployments_router, prefix="/api/v1")
app.include_router(approvals_router, prefix="/api/v1")


@app.get("/health")
def health_check():
    checks = {"db": False, "orchestrator": False}

    try:
        with SessionLocal() as db:
            db.execute(select(1))
        checks["db"] = True
    except Exception:
        pass

    orchestrator = getattr(app.state, "orchestrator", None)
    checks["orchestrator"] = orchestrator is not None

    all_ok = all(checks.values())
    return {
        "status": "ok" if all_ok else "degraded",
        "checks": checks,
    }


@app.get("/metrics")
def metrics():
    data = generate_latest()
    return Response(content=data, media_type=CONTENT_TYPE_LATEST)
