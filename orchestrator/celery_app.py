from celery import Celery
from celery.schedules import crontab

from orchestrator.config import settings

celery_app = Celery("orchestrator")
celery_app.conf.update(
    broker_url=settings.celery_broker_url,
    result_backend=settings.celery_result_backend,
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_always_eager=settings.testing,
)
celery_app.conf.beat_schedule = {
    "cleanup-old-audit-events": {
        "task": "orchestrator.tasks.cleanup.cleanup_old_audit_events",
        "schedule": crontab(hour=3, minute=0),
    },
}
celery_app.autodiscover_tasks(["orchestrator.tasks"], related_name="cleanup")
