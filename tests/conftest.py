import asyncio
import os
import uuid
from collections.abc import Iterable
from datetime import UTC, datetime, timedelta

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

# Set environment variables before any orchestrator imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["UPFRONT_APPROVAL"] = "true"
os.environ["SIMULATED_STAGE_DELAY_SECONDS"] = "0"

from orchestrator.db import Base, engine as _test_engine, init_db  # noqa: E402
from orchestrator.schemas.approvals import ApprovalRequest  # noqa: E402
from orchestrator.schemas.deployments import (  # noqa: E402
    DeploymentRequest,
    Environment,
    ModuleDescriptor,
    PipelineExecutionState,
)
from orchestrator.services.approval_service import ApprovalService  # noqa: E402
from orchestrator.services.audit_service import AuditRecord  # noqa: E402
from orchestrator.services.collaborators import (  # noqa: E402
    Cluster,
    DeploymentOutcome,
    ModuleValidation,
    NodeDeploymentResult,
    NodeMetrics,
    StageOutcome,
    StaticClusterRegistry,
)
from orchestrator.services.orchestration_service import DeploymentOrchestrationService  # noqa: E402
from orchestrator.services.pipeline_service import DeploymentPipeline, PipelineConfig  # noqa: E402
from orchestrator.services.tracker import InMemoryDeploymentTracker  # noqa: E402

init_db()


class SyncASGIClient:
    def __init__(self, app):
        self._app = app

    async def _request(self, method: str, url: str, **kwargs):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self._app, raise_app_exceptions=False),
            base_url="http://testserver",
        ) as client:
            return await client.request(method, url, **kwargs)

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)


# ──────────────────────────── Fake collaborators ────────────────────────────


class FakeExecutor:
    def __init__(self, succeeded: bool = True, message: str = "ok", artifact: bytes | None = None, error=None):
        self.succeeded = succeeded
        self.message = message
        self.artifact = artifact
        self.error = error
        self.calls = 0

    async def run(self, request: DeploymentRequest) -> StageOutcome:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return StageOutcome(succeeded=self.succeeded, message=self.message, artifact=self.artifact)


class BlockingExecutor:
    """Parks until released so tests can act on an in-flight stage."""

    def __init__(self):
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, request: DeploymentRequest) -> StageOutcome:
        self.started.set()
        await self.release.wait()
        return StageOutcome(succeeded=True, message="released")


class FakeVerifier:
    def __init__(self, is_valid: bool = True, messages: list[str] | None = None):
        self.is_valid = is_valid
        self.messages = messages or []
        self.artifacts: list[bytes] = []

    async def validate(self, descriptor, artifact: bytes) -> ModuleValidation:
        self.artifacts.append(artifact)
        return ModuleValidation(is_valid=self.is_valid, messages=list(self.messages))


class FakeStrategy:
    def __init__(self, name: str = "Direct", success: bool = True, failed_nodes: int = 0):
        self.name = name
        self.success = success
        self.failed_nodes = failed_nodes
        self.deployed: list[Environment] = []

    async def deploy(self, request: DeploymentRequest, cluster: Cluster) -> DeploymentOutcome:
        self.deployed.append(cluster.environment)
        results = [
            NodeDeploymentResult(node_id=node_id, success=index >= self.failed_nodes)
            for index, node_id in enumerate(cluster.node_ids)
        ]
        if not self.success:
            return DeploymentOutcome(
                success=False,
                message=f"Deployment to {cluster.environment.label} failed",
                node_results=results,
                error="node rejected module",
            )
        return DeploymentOutcome(success=True, message=f"Deployed to {cluster.environment.label}", node_results=results)


class SequenceMetricsProvider:
    """Replays (cpu, memory, latency) samples; the last one repeats."""

    def __init__(self, samples: Iterable[tuple[float, float, float]]):
        self.samples = list(samples)
        self.calls = 0

    async def get_node_metrics(self, node_ids) -> list[NodeMetrics]:
        index = min(self.calls, len(self.samples) - 1)
        self.calls += 1
        cpu, memory, latency = self.samples[index]
        return [
            NodeMetrics(node_id=node_id, cpu_percent=cpu, memory_percent=memory, latency_ms=latency)
            for node_id in node_ids
        ]


class FakeClock:
    """Monotonic clock advanced by the fake sleep."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class MutableClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now += delta


class RecordingAuditSink:
    def __init__(self):
        self.events: list[AuditRecord] = []

    async def record(self, event: AuditRecord) -> None:
        self.events.append(event)


class SlowCompletionAuditSink(RecordingAuditSink):
    """Holds the final pipeline audit write until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.completion_started = asyncio.Event()
        self.release = asyncio.Event()

    async def record(self, event: AuditRecord) -> None:
        if event.event_type in ("PipelineCompleted", "PipelineFailed"):
            self.completion_started.set()
            await self.release.wait()
        self.events.append(event)


class FailingAuditSink:
    async def record(self, event: AuditRecord) -> None:
        raise RuntimeError("audit store unavailable")


class RecordingApprovalNotifier:
    def __init__(self):
        self.events: list[tuple[str, ApprovalRequest]] = []

    async def approval_requested(self, approval):
        self.events.append(("requested", approval))

    async def approval_granted(self, approval):
        self.events.append(("granted", approval))

    async def approval_rejected(self, approval):
        self.events.append(("rejected", approval))

    async def approval_expired(self, approval):
        self.events.append(("expired", approval))


class FailingApprovalNotifier:
    async def approval_requested(self, approval):
        raise RuntimeError("smtp down")

    async def approval_granted(self, approval):
        raise RuntimeError("smtp down")

    async def approval_rejected(self, approval):
        raise RuntimeError("smtp down")

    async def approval_expired(self, approval):
        raise RuntimeError("smtp down")


class RecordingDeploymentNotifier:
    def __init__(self):
        self.states: list[PipelineExecutionState] = []
        self.progress: list[tuple[str, int]] = []

    async def notify_status_changed(self, execution_id: str, state: PipelineExecutionState) -> None:
        self.states.append(state)

    async def notify_progress(self, execution_id: str, stage: str, percent: int) -> None:
        self.progress.append((stage, percent))


class FailingDeploymentNotifier:
    async def notify_status_changed(self, execution_id, state):
        raise RuntimeError("websocket closed")

    async def notify_progress(self, execution_id, stage, percent):
        raise RuntimeError("websocket closed")


class FailingTracker:
    async def update_state(self, execution_id, state):
        raise RuntimeError("tracker offline")


# ──────────────────────────── Builders ────────────────────────────


def make_request(
    environment: Environment = Environment.production,
    *,
    require_approval: bool = False,
    signature: str | None = None,
    name: str = "billing",
    version: str = "1.2.0",
) -> DeploymentRequest:
    return DeploymentRequest(
        module=ModuleDescriptor(name=name, version=version, signature=signature),
        target_environment=environment,
        requester_email="dev@example.com",
        require_approval=require_approval,
    )


def make_pipeline(
    *,
    build=None,
    test=None,
    validation=None,
    verifier=None,
    strategy=None,
    strategies=None,
    config: PipelineConfig | None = None,
    approval_service: ApprovalService | None = None,
    stabilization_service=None,
    audit_sink=None,
    tracker=None,
    notifier=None,
    registry=None,
) -> DeploymentPipeline:
    strategy = strategy or FakeStrategy()
    return DeploymentPipeline(
        build_executor=build or FakeExecutor(message="Build completed"),
        test_executor=test or FakeExecutor(message="Tests passed"),
        validation_executor=validation or FakeExecutor(message="Validation passed"),
        module_verifier=verifier or FakeVerifier(),
        cluster_registry=registry or StaticClusterRegistry.with_generated_nodes(2),
        strategies=strategies or {env: strategy for env in Environment},
        config=config,
        approval_service=approval_service,
        stabilization_service=stabilization_service,
        audit_sink=audit_sink,
        tracker=tracker,
        notifier=notifier,
    )


def make_orchestrator(
    *,
    approval_service: ApprovalService | None = None,
    max_concurrent_pipelines: int = 5,
    **pipeline_kwargs,
) -> DeploymentOrchestrationService:
    approval_service = approval_service or ApprovalService()
    tracker = InMemoryDeploymentTracker()
    pipeline = make_pipeline(approval_service=approval_service, tracker=tracker, **pipeline_kwargs)
    return DeploymentOrchestrationService(
        pipeline,
        tracker,
        approval_service,
        max_concurrent_pipelines=max_concurrent_pipelines,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _clean_audit_events(engine):
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def execution_id():
    return uuid.uuid4()
