"""
Collaborator contracts consumed by the deployment pipeline.

Concrete build/test tooling, signature verification, node inventories and
rollout strategies live outside the orchestrator. The simple implementations
below wire the service end to end and back the test suite.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Protocol

from orchestrator.schemas.deployments import DeploymentRequest, Environment, ModuleDescriptor

logger = logging.getLogger(__name__)


@dataclass
class StageOutcome:
    succeeded: bool
    message: str
    # Build executors hand the produced artifact to the security scan
    artifact: bytes | None = None


@dataclass
class ModuleValidation:
    is_valid: bool
    messages: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Cluster:
    environment: Environment
    node_ids: tuple[uuid.UUID, ...]
    name: str = ""


@dataclass
class NodeDeploymentResult:
    node_id: uuid.UUID
    success: bool
    message: str = ""


@dataclass
class DeploymentOutcome:
    success: bool
    message: str
    node_results: list[NodeDeploymentResult] = field(default_factory=list)
    error: str | None = None

    @property
    def nodes_deployed(self) -> int:
        return sum(1 for r in self.node_results if r.success)

    @property
    def nodes_failed(self) -> int:
        return sum(1 for r in self.node_results if not r.success)


@dataclass(frozen=True)
class NodeMetrics:
    node_id: uuid.UUID
    cpu_percent: float
    memory_percent: float
    latency_ms: float


class StageExecutor(Protocol):
    async def run(self, request: DeploymentRequest) -> StageOutcome: ...


class ModuleVerifier(Protocol):
    async def validate(self, descriptor: ModuleDescriptor, artifact: bytes) -> ModuleValidation: ...


class ClusterRegistry(Protocol):
    async def get_cluster(self, environment: Environment) -> Cluster: ...


class DeploymentStrategy(Protocol):
    name: str

    async def deploy(self, request: DeploymentRequest, cluster: Cluster) -> DeploymentOutcome: ...


class MetricsProvider(Protocol):
    async def get_node_metrics(self, node_ids: Iterable[uuid.UUID]) -> list[NodeMetrics]: ...


class SimulatedStageExecutor:
    def __init__(self, stage_name: str, delay_seconds: float = 0.0):
        self.stage_name = stage_name
        self.delay_seconds = delay_seconds

    async def run(self, request: DeploymentRequest) -> StageOutcome:
        logger.debug("Simulating %s for %s v%s", self.stage_name, request.module.name, request.module.version)
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        artifact = None
        if self.stage_name == "build":
            artifact = f"{request.module.name}:{request.module.version}".encode()
        return StageOutcome(succeeded=True, message=f"{self.stage_name.capitalize()} completed successfully", artifact=artifact)


class DescriptorModuleVerifier:
    """Checks descriptor sanity and, for signed modules, the artifact digest."""

    async def validate(self, descriptor: ModuleDescriptor, artifact: bytes) -> ModuleValidation:
        messages: list[str] = []
        if not descriptor.name.strip():
            messages.append("Module name is blank")
        if descriptor.signature:
            digest = hashlib.sha256(artifact).hexdigest()
            if digest != descriptor.signature.lower():
                messages.append("Artifact digest does not match module signature")
        return ModuleValidation(is_valid=not messages, messages=messages)


class StaticClusterRegistry:
    def __init__(self, node_ids: Mapping[Environment, Iterable[uuid.UUID]]):
        self._clusters = {
            env: Cluster(environment=env, node_ids=tuple(ids), name=f"{env.value}-cluster")
            for env, ids in node_ids.items()
        }

    @classmethod
    def with_generated_nodes(cls, nodes_per_environment: int = 2) -> StaticClusterRegistry:
        return cls({env: [uuid.uuid4() for _ in range(nodes_per_environment)] for env in Environment})

    async def get_cluster(self, environment: Environment) -> Cluster:
        cluster = self._clusters.get(environment)
        if cluster is None:
            raise LookupError(f"No cluster registered for {environment.label}")
        return cluster


class DirectDeploymentStrategy:
    """Pushes the module to every node of the cluster at once."""

    def __init__(self, name: str = "Direct"):
        self.name = name

    async def deploy(self, request: DeploymentRequest, cluster: Cluster) -> DeploymentOutcome:
        results = [
            NodeDeploymentResult(node_id=node_id, success=True, message="Module loaded")
            for node_id in cluster.node_ids
        ]
        return DeploymentOutcome(
            success=True,
            message=f"Deployed {request.module.name} v{request.module.version} to {len(results)} node(s)",
            node_results=results,
        )


# Strategy names per environment, as the rollout tooling reports them
DEFAULT_STRATEGY_NAMES = {
    Environment.development: "Direct",
    Environment.qa: "Rolling",
    Environment.staging: "BlueGreen",
    Environment.production: "Canary",
}


class StaticMetricsProvider:
    def __init__(self, cpu_percent: float = 40.0, memory_percent: float = 50.0, latency_ms: float = 20.0):
        self.cpu_percent = cpu_percent
        self.memory_percent = memory_percent
        self.latency_ms = latency_ms

    async def get_node_metrics(self, node_ids: Iterable[uuid.UUID]) -> list[NodeMetrics]:
        return [
            NodeMetrics(
                node_id=node_id,
                cpu_percent=self.cpu_percent,
                memory_percent=self.memory_percent,
                latency_ms=self.latency_ms,
            )
            for node_id in node_ids
        ]
