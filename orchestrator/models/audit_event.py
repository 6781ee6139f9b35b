"""Audit Event — persisted trail of pipeline and approval activity."""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, Enum, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from orchestrator.db import Base


class AuditCategory(str, enum.Enum):
    deployment = "deployment"
    approval = "approval"


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[AuditCategory] = mapped_column(Enum(AuditCategory), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(60), nullable=False)
    execution_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    module_name: Mapped[str] = mapped_column(String(100), nullable=False)
    module_version: Mapped[str] = mapped_column(String(60), nullable=False)
    target_environment: Mapped[str] = mapped_column(String(30), nullable=False)
    pipeline_stage: Mapped[str | None] = mapped_column(String(60))
    stage_status: Mapped[str | None] = mapped_column(String(30))
    result: Mapped[str] = mapped_column(String(30), nullable=False)
    strategy: Mapped[str | None] = mapped_column(String(60))
    nodes_deployed: Mapped[int | None] = mapped_column(Integer)
    nodes_failed: Mapped[int | None] = mapped_column(Integer)
    duration_ms: Mapped[int | None] = mapped_column(Integer)
    error_message: Mapped[str | None] = mapped_column(Text)
    actor_email: Mapped[str | None] = mapped_column(String(254))
    trace_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), index=True
    )
