"""
Deployment Orchestration Service — entry point for submitting and steering
pipeline executions.

Each submission runs as its own asyncio task; a semaphore caps how many
pipelines execute at once. Finished results are kept in the tracker.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import timedelta

from orchestrator.config import Settings
from orchestrator.errors import ApprovalNotFoundError, DeploymentNotFoundError, DuplicateDeploymentError
from orchestrator.schemas.approvals import ApprovalRequest
from orchestrator.schemas.deployments import (
    DeploymentRequest,
    Environment,
    PipelineExecutionResult,
    PipelineExecutionState,
    PipelineStatus,
)
from orchestrator.services.approval_service import ApprovalService, ApprovalSweeper
from orchestrator.services.audit_service import AuditSink
from orchestrator.services.collaborators import (
    DEFAULT_STRATEGY_NAMES,
    DescriptorModuleVerifier,
    DirectDeploymentStrategy,
    SimulatedStageExecutor,
    StaticClusterRegistry,
    StaticMetricsProvider,
)
from orchestrator.services.notifiers import ApprovalNotifier, DeploymentNotifier, LoggingDeploymentNotifier
from orchestrator.services.pipeline_service import DeploymentPipeline, PipelineConfig
from orchestrator.services.stabilization_service import StabilizationService
from orchestrator.services.tracker import InMemoryDeploymentTracker

logger = logging.getLogger(__name__)


class DeploymentOrchestrationService:
    def __init__(
        self,
        pipeline: DeploymentPipeline,
        tracker: InMemoryDeploymentTracker,
        approval_service: ApprovalService,
        *,
        max_concurrent_pipelines: int = 5,
        sweeper: ApprovalSweeper | None = None,
    ):
        if max_concurrent_pipelines < 1:
            raise ValueError("max_concurrent_pipelines must be at least 1")
        self.pipeline = pipeline
        self.tracker = tracker
        self.approval_service = approval_service
        self.sweeper = sweeper
        self.max_concurrent_pipelines = max_concurrent_pipelines
        self._semaphore = asyncio.Semaphore(max_concurrent_pipelines)
        self._tasks: dict[uuid.UUID, asyncio.Task] = {}

    def start(self) -> None:
        if self.sweeper is not None:
            self.sweeper.start()

    async def shutdown(self) -> None:
        if self.sweeper is not None:
            await self.sweeper.stop()
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            logger.info("Cancelling %d running pipeline(s) on shutdown", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    async def submit_deployment(self, request: DeploymentRequest) -> uuid.UUID:
        """Queue a pipeline run and return its execution id without waiting."""
        execution_id = request.execution_id
        if execution_id in self._tasks or self.tracker.knows(execution_id):
            raise DuplicateDeploymentError(f"Deployment {execution_id} was already submitted")

        await self.tracker.update_state(
            execution_id,
            PipelineExecutionState(
                execution_id=execution_id,
                request=request,
                status=PipelineStatus.running,
                current_stage="Queued",
            ),
        )
        task = asyncio.get_running_loop().create_task(self._run(request), name=f"pipeline-{execution_id}")
        self._tasks[execution_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(execution_id, None))

        logger.info(
            "Queued deployment %s of %s v%s to %s",
            execution_id,
            request.module.name,
            request.module.version,
            request.target_environment.label,
        )
        return execution_id

    async def run_deployment(self, request: DeploymentRequest) -> PipelineExecutionResult:
        """Submit and wait for the final result."""
        execution_id = await self.submit_deployment(request)
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.shield(task)
        result = self.tracker.get_result(execution_id)
        if result is None:
            raise DeploymentNotFoundError(f"Deployment {execution_id} finished without a result")
        return result

    async def _run(self, request: DeploymentRequest) -> None:
        started = False
        try:
            async with self._semaphore:
                started = True
                result = await self.pipeline.execute(request)
        except asyncio.CancelledError:
            if started:
                logger.warning("Deployment %s cancelled while its pipeline was running", request.execution_id)
                raise
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            logger.warning("Deployment %s cancelled before its pipeline started", request.execution_id)
            result = PipelineExecutionResult(
                execution_id=request.execution_id,
                module_name=request.module.name,
                module_version=request.module.version,
                target_environment=request.target_environment,
            )
            result.finish(False, "Pipeline cancelled before start")
            await self.tracker.update_state(
                request.execution_id,
                PipelineExecutionState(
                    execution_id=request.execution_id,
                    request=request,
                    status=PipelineStatus.failed,
                    current_stage="Completed",
                    started_at=result.started_at,
                ),
            )
        except Exception:
            logger.exception("Deployment %s crashed outside the pipeline", request.execution_id)
            raise
        self.tracker.store_result(result)

    def get_execution_result(self, execution_id: uuid.UUID) -> PipelineExecutionResult:
        result = self.tracker.get_result(execution_id)
        if result is None:
            raise DeploymentNotFoundError(f"No result for deployment {execution_id}")
        return result

    def get_execution_state(self, execution_id: uuid.UUID) -> PipelineExecutionState:
        state = self.tracker.get_state(execution_id)
        if state is None:
            raise DeploymentNotFoundError(f"Deployment {execution_id} not found")
        return state

    def list_results(self, limit: int = 50, offset: int = 0) -> list[PipelineExecutionResult]:
        return self.tracker.list_results(limit=limit, offset=offset)

    def is_running(self, execution_id: uuid.UUID) -> bool:
        return execution_id in self._tasks

    def cancel_deployment(self, execution_id: uuid.UUID) -> bool:
        """Request cancellation. Returns False if the run already finished."""
        if not self.tracker.knows(execution_id) and execution_id not in self._tasks:
            raise DeploymentNotFoundError(f"Deployment {execution_id} not found")
        task = self._tasks.get(execution_id)
        if task is None or task.done():
            return False
        logger.info("Cancellation requested for deployment %s", execution_id)
        return task.cancel()

    async def decide_approval(
        self,
        execution_id: uuid.UUID,
        approver_email: str,
        approved: bool,
        reason: str | None = None,
    ) -> ApprovalRequest:
        return await self.approval_service.decide(execution_id, approver_email, approved, reason)

    def get_pending_approvals(self) -> list[ApprovalRequest]:
        return self.approval_service.get_pending()

    def get_approval(self, execution_id: uuid.UUID) -> ApprovalRequest:
        approval = self.approval_service.get_by_id(execution_id)
        if approval is None:
            raise ApprovalNotFoundError(f"Approval request not found for deployment {execution_id}")
        return approval


def build_default_orchestrator(
    settings: Settings,
    *,
    audit_sink: AuditSink | None = None,
    approval_notifier: ApprovalNotifier | None = None,
    deployment_notifier: DeploymentNotifier | None = None,
) -> DeploymentOrchestrationService:
    """Wire the orchestrator with the built-in simulated collaborators."""
    delay = settings.simulated_stage_delay_seconds
    tracker = InMemoryDeploymentTracker()
    approval_service = ApprovalService(
        timeout=timedelta(hours=settings.approval_timeout_hours),
        notifier=approval_notifier,
        audit_sink=audit_sink,
    )
    config = PipelineConfig.from_settings(settings)
    stabilization_service = StabilizationService(StaticMetricsProvider()) if config.stabilization else None
    pipeline = DeploymentPipeline(
        build_executor=SimulatedStageExecutor("build", delay),
        test_executor=SimulatedStageExecutor("test", delay),
        validation_executor=SimulatedStageExecutor("validation", delay),
        module_verifier=DescriptorModuleVerifier(),
        cluster_registry=StaticClusterRegistry.with_generated_nodes(),
        strategies={env: DirectDeploymentStrategy(DEFAULT_STRATEGY_NAMES[env]) for env in Environment},
        config=config,
        approval_service=approval_service,
        stabilization_service=stabilization_service,
        audit_sink=audit_sink,
        tracker=tracker,
        notifier=deployment_notifier or LoggingDeploymentNotifier(),
    )
    return DeploymentOrchestrationService(
        pipeline,
        tracker,
        approval_service,
        max_concurrent_pipelines=settings.max_concurrent_pipelines,
        sweeper=ApprovalSweeper(approval_service, settings.approval_sweep_interval_seconds),
    )
