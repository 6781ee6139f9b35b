from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, model_validator

from orchestrator.schemas.deployments import utcnow

if TYPE_CHECKING:
    from orchestrator.services.collaborators import NodeMetrics


class StabilizationConfig(BaseModel):
    """Thresholds are percentage deltas against the pre-deployment baseline."""

    model_config = ConfigDict(frozen=True)

    cpu_delta_threshold: float = Field(default=10.0, ge=0)
    memory_delta_threshold: float = Field(default=10.0, ge=0)
    latency_delta_threshold: float = Field(default=15.0, ge=0)
    polling_interval: timedelta = timedelta(seconds=30)
    consecutive_stable_checks: int = Field(default=3, ge=1)
    minimum_wait: timedelta = timedelta(minutes=2)
    maximum_wait: timedelta = timedelta(minutes=30)

    @model_validator(mode="after")
    def validate_windows(self) -> StabilizationConfig:
        if self.polling_interval < timedelta(0):
            raise ValueError("polling_interval must not be negative")
        if self.maximum_wait < self.minimum_wait:
            raise ValueError("maximum_wait must not be shorter than minimum_wait")
        return self


class ClusterMetricsSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    environment: str
    node_count: int = 0
    avg_cpu_usage: float
    avg_memory_usage: float
    avg_latency: float
    taken_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def from_node_metrics(cls, environment: str, metrics: Sequence[NodeMetrics]) -> ClusterMetricsSnapshot:
        if not metrics:
            raise ValueError("Cannot build a baseline from an empty metrics sample")
        count = len(metrics)
        return cls(
            environment=environment,
            node_count=count,
            avg_cpu_usage=sum(m.cpu_percent for m in metrics) / count,
            avg_memory_usage=sum(m.memory_percent for m in metrics) / count,
            avg_latency=sum(m.latency_ms for m in metrics) / count,
        )


class StabilizationResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_stable: bool
    elapsed: timedelta
    consecutive_stable_checks: int
    timeout_reached: bool
    total_checks: int
    message: str
