"""Deployment request and pipeline result value types."""

from __future__ import annotations

import enum
import re
import uuid
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?"
    r"(?:\+[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*)?$"
)


def utcnow() -> datetime:
    return datetime.now(UTC)


class Environment(str, enum.Enum):
    development = "development"
    qa = "qa"
    staging = "staging"
    production = "production"

    @classmethod
    def parse(cls, value: str) -> Environment:
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(f"Unknown environment: {value}") from None

    @property
    def rank(self) -> int:
        return list(Environment).index(self)

    @property
    def label(self) -> str:
        return _ENVIRONMENT_LABELS[self]

    @property
    def requires_approval(self) -> bool:
        return self in (Environment.staging, Environment.production)

    def promotion_chain(self) -> list[Environment]:
        """Every environment up to and including this one, lowest first."""
        ordered = list(Environment)
        return ordered[: ordered.index(self) + 1]

    def __lt__(self, other):
        if not isinstance(other, Environment):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Environment):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Environment):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Environment):
            return NotImplemented
        return self.rank >= other.rank


_ENVIRONMENT_LABELS = {
    Environment.development: "Development",
    Environment.qa: "QA",
    Environment.staging: "Staging",
    Environment.production: "Production",
}


class ResourceRequirements(BaseModel):
    model_config = ConfigDict(frozen=True)

    memory_mb: int = Field(default=512, gt=0)
    cpu_cores: float = Field(default=1.0, gt=0)
    disk_mb: int = Field(default=100, gt=0)


class ModuleDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1, max_length=100)
    version: str
    description: str = ""
    author: str = ""
    # Hex SHA-256 digest of the module artifact, when signed
    signature: str | None = Field(default=None, max_length=128)
    resource_requirements: ResourceRequirements = Field(default_factory=ResourceRequirements)
    dependencies: dict[str, str] = Field(default_factory=dict)
    configuration: dict[str, str] = Field(default_factory=dict)

    @field_validator("version")
    @classmethod
    def validate_version(cls, value: str) -> str:
        if not _SEMVER_RE.match(value):
            raise ValueError(f"Invalid semantic version: {value}")
        return value


class DeploymentRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    execution_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    module: ModuleDescriptor
    target_environment: Environment
    requester_email: str = Field(min_length=3, max_length=254)
    require_approval: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class PipelineStageStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


_TERMINAL_STAGE_STATUSES = {PipelineStageStatus.succeeded, PipelineStageStatus.failed}


class PipelineStageResult(BaseModel):
    name: str
    status: PipelineStageStatus = PipelineStageStatus.pending
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    message: str = ""
    error: str | None = None
    strategy: str | None = None
    nodes_deployed: int | None = None
    nodes_failed: int | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL_STAGE_STATUSES

    @property
    def duration(self) -> timedelta:
        if self.completed_at is None:
            return timedelta(0)
        return self.completed_at - self.started_at

    def complete(self, status: PipelineStageStatus, message: str, error: str | None = None) -> None:
        if self.is_terminal:
            raise RuntimeError(f"Stage {self.name} already {self.status.value}")
        if status not in _TERMINAL_STAGE_STATUSES:
            raise ValueError(f"{status.value} is not a terminal stage status")
        self.status = status
        self.message = message
        self.error = error
        self.completed_at = utcnow()


class PipelineExecutionResult(BaseModel):
    execution_id: uuid.UUID
    module_name: str
    module_version: str
    target_environment: Environment
    success: bool = False
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
    trace_id: str | None = None
    message: str = ""
    stage_results: list[PipelineStageResult] = Field(default_factory=list)

    @property
    def is_finished(self) -> bool:
        return self.completed_at is not None

    @property
    def duration(self) -> timedelta:
        if self.completed_at is None:
            return timedelta(0)
        return self.completed_at - self.started_at

    def add_stage(self, stage: PipelineStageResult) -> None:
        if self.is_finished:
            raise RuntimeError(f"Execution {self.execution_id} already finished")
        self.stage_results.append(stage)

    def finish(self, success: bool, message: str) -> None:
        if self.is_finished:
            raise RuntimeError(f"Execution {self.execution_id} already finished")
        self.success = success
        self.message = message
        self.completed_at = utcnow()


class PipelineStatus(str, enum.Enum):
    running = "running"
    pending_approval = "pending_approval"
    succeeded = "succeeded"
    failed = "failed"


class PipelineExecutionState(BaseModel):
    execution_id: uuid.UUID
    request: DeploymentRequest
    status: PipelineStatus = PipelineStatus.running
    current_stage: str | None = None
    stages: list[PipelineStageResult] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)


class DeploymentCreateRequest(BaseModel):
    module: ModuleDescriptor
    target_environment: Environment
    requester_email: str = Field(min_length=3, max_length=254)
    require_approval: bool = False
    metadata: dict[str, str] = Field(default_factory=dict)

    def to_request(self) -> DeploymentRequest:
        return DeploymentRequest(**self.model_dump())


class DeploymentCreateResponse(BaseModel):
    execution_id: uuid.UUID
    status: str
    links: dict[str, Any] = Field(default_factory=dict)
