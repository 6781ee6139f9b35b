"""Audit Service — best-effort persistence and querying of audit events."""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from orchestrator.models.audit_event import AuditCategory, AuditEvent

logger = logging.getLogger(__name__)


@dataclass
class AuditRecord:
    category: AuditCategory
    event_type: str
    execution_id: uuid.UUID
    module_name: str
    module_version: str
    target_environment: str
    result: str
    pipeline_stage: str | None = None
    stage_status: str | None = None
    strategy: str | None = None
    nodes_deployed: int | None = None
    nodes_failed: int | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    actor_email: str | None = None
    trace_id: str | None = None


class AuditSink(Protocol):
    async def record(self, event: AuditRecord) -> None: ...


class NullAuditSink:
    async def record(self, event: AuditRecord) -> None:
        return None


class SqlAuditSink:
    """Writes audit records through a SQLAlchemy session factory."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    async def record(self, event: AuditRecord) -> None:
        await asyncio.to_thread(self._write, event)

    def _write(self, event: AuditRecord) -> None:
        with self.session_factory() as db:
            db.add(AuditEvent(**asdict(event)))
            db.commit()


class AuditQueryService:
    def __init__(self, db: Session):
        self.db = db

    def list_for_execution(self, execution_id: uuid.UUID, limit: int = 200) -> list[AuditEvent]:
        stmt = (
            select(AuditEvent)
            .where(AuditEvent.execution_id == execution_id)
            .order_by(AuditEvent.created_at.asc(), AuditEvent.id.asc())
            .limit(limit)
        )
        return list(self.db.scalars(stmt).all())

    def list_recent(
        self,
        *,
        category: AuditCategory | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditEvent]:
        stmt = select(AuditEvent)
        if category is not None:
            stmt = stmt.where(AuditEvent.category == category)
        stmt = stmt.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(limit).offset(offset)
        return list(self.db.scalars(stmt).all())

    def prune_older_than(self, days: int) -> int:
        cutoff = datetime.now(UTC) - timedelta(days=days)
        result = self.db.execute(delete(AuditEvent).where(AuditEvent.created_at < cutoff))
        self.db.flush()
        return result.rowcount or 0

    @staticmethod
    def serialize_event(event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "category": event.category.value,
            "event_type": event.event_type,
            "execution_id": str(event.execution_id),
            "module_name": event.module_name,
            "module_version": event.module_version,
            "target_environment": event.target_environment,
            "pipeline_stage": event.pipeline_stage,
            "stage_status": event.stage_status,
            "result": event.result,
            "strategy": event.strategy,
            "nodes_deployed": event.nodes_deployed,
            "nodes_failed": event.nodes_failed,
            "duration_ms": event.duration_ms,
            "error_message": event.error_message,
            "actor_email": event.actor_email,
            "trace_id": event.trace_id,
            "created_at": event.created_at.isoformat() if event.created_at else None,
        }
