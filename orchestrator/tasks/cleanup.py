"""
Cleanup Task — Periodically prune audit events past the retention window.
"""
import logging
import time

from celery import shared_task

from orchestrator.config import settings
from orchestrator.db import SessionLocal
from orchestrator.metrics import observe_job
from orchestrator.services.audit_service import AuditQueryService

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=2, default_retry_delay=60)
def cleanup_old_audit_events(self, retention_days: int | None = None) -> dict:
    """Delete audit events older than AUDIT_RETENTION_DAYS."""
    days = retention_days if retention_days is not None else settings.audit_retention_days
    started = time.monotonic()
    try:
        with SessionLocal() as db:
            svc = AuditQueryService(db)
            count = svc.prune_older_than(days)
            db.commit()
    except Exception as exc:
        observe_job("cleanup_old_audit_events", "error", time.monotonic() - started)
        logger.exception("Audit cleanup failed")
        raise self.retry(exc=exc)

    observe_job("cleanup_old_audit_events", "success", time.monotonic() - started)
    logger.info("Cleaned up %d audit events older than %d days", count, days)
    return {"deleted_audit_events": count, "retention_days": days}
