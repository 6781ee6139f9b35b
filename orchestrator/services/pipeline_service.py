"""
Deployment Pipeline — gated promotion of a module through every environment.

Stages run strictly in order and the pipeline halts at the first failure:

    [Approval] → Build → Test → Security Scan
        → Deploy to Development → QA → Staging → Production → Validation

Approval is requested either once up front or right before each sensitive
environment. Progress is pushed to the audit log, tracker and notifier on a
best-effort basis; those observers never change the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from functools import partial

from pydantic import BaseModel, ConfigDict, Field

from orchestrator.config import Settings
from orchestrator.metrics import NODES_DEPLOYED, PIPELINE_DURATION, PIPELINES_COMPLETED, PIPELINES_STARTED
from orchestrator.models.audit_event import AuditCategory
from orchestrator.schemas.approvals import ApprovalStatus
from orchestrator.schemas.deployments import (
    DeploymentRequest,
    Environment,
    PipelineExecutionResult,
    PipelineExecutionState,
    PipelineStageResult,
    PipelineStageStatus,
    PipelineStatus,
    utcnow,
)
from orchestrator.schemas.stabilization import ClusterMetricsSnapshot, StabilizationConfig
from orchestrator.services.approval_service import ApprovalService
from orchestrator.services.audit_service import AuditRecord, AuditSink, NullAuditSink
from orchestrator.services.collaborators import (
    ClusterRegistry,
    DeploymentStrategy,
    ModuleVerifier,
    StageExecutor,
)
from orchestrator.services.notifiers import DeploymentNotifier, NullDeploymentNotifier
from orchestrator.services.stabilization_service import StabilizationService
from orchestrator.services.tracker import DeploymentTracker, NullDeploymentTracker

logger = logging.getLogger(__name__)

APPROVAL_STAGE = "Approval"
BUILD_STAGE = "Build"
TEST_STAGE = "Test"
SECURITY_STAGE = "Security Scan"
VALIDATION_STAGE = "Validation"


def deploy_stage_name(environment: Environment) -> str:
    return f"Deploy to {environment.label}"


class PipelineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    upfront_approval: bool = True
    approvers: dict[Environment, tuple[str, ...]] = Field(default_factory=dict)
    # Environments listed here wait for resource stabilization after deploying
    stabilization: dict[Environment, StabilizationConfig] = Field(default_factory=dict)
    max_concurrent_pipelines: int = Field(default=5, ge=1)

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        stabilization_config = StabilizationConfig(
            cpu_delta_threshold=settings.stabilization_cpu_delta_threshold,
            memory_delta_threshold=settings.stabilization_memory_delta_threshold,
            latency_delta_threshold=settings.stabilization_latency_delta_threshold,
            polling_interval=timedelta(seconds=settings.stabilization_polling_interval_seconds),
            consecutive_stable_checks=settings.stabilization_consecutive_checks,
            minimum_wait=timedelta(seconds=settings.stabilization_min_wait_seconds),
            maximum_wait=timedelta(seconds=settings.stabilization_max_wait_seconds),
        )
        return cls(
            upfront_approval=settings.upfront_approval,
            approvers={
                Environment.staging: settings.approvers_staging,
                Environment.production: settings.approvers_production,
            },
            stabilization={Environment.parse(name): stabilization_config for name in settings.stabilization_environments},
            max_concurrent_pipelines=settings.max_concurrent_pipelines,
        )


@dataclass
class _PipelineRun:
    request: DeploymentRequest
    result: PipelineExecutionResult
    planned_stages: int
    upfront_approval: bool
    current: PipelineStageResult | None = None
    artifact: bytes | None = None


StageBody = Callable[[PipelineStageResult], Awaitable[None]]


class DeploymentPipeline:
    def __init__(
        self,
        *,
        build_executor: StageExecutor,
        test_executor: StageExecutor,
        validation_executor: StageExecutor,
        module_verifier: ModuleVerifier,
        cluster_registry: ClusterRegistry,
        strategies: Mapping[Environment, DeploymentStrategy],
        config: PipelineConfig | None = None,
        approval_service: ApprovalService | None = None,
        stabilization_service: StabilizationService | None = None,
        audit_sink: AuditSink | None = None,
        tracker: DeploymentTracker | None = None,
        notifier: DeploymentNotifier | None = None,
    ):
        self.config = config or PipelineConfig()
        if self.config.stabilization and stabilization_service is None:
            raise ValueError("Stabilization is configured but no stabilization service was provided")
        self.build_executor = build_executor
        self.test_executor = test_executor
        self.validation_executor = validation_executor
        self.module_verifier = module_verifier
        self.cluster_registry = cluster_registry
        self.strategies = dict(strategies)
        self.approval_service = approval_service
        self.stabilization_service = stabilization_service
        self.audit_sink = audit_sink or NullAuditSink()
        self.tracker = tracker or NullDeploymentTracker()
        self.notifier = notifier or NullDeploymentNotifier()

    # ──────────────────────────── Entry point ────────────────────────────

    async def execute(self, request: DeploymentRequest) -> PipelineExecutionResult:
        """Run the pipeline to completion. Stage failures never raise."""
        result = PipelineExecutionResult(
            execution_id=request.execution_id,
            module_name=request.module.name,
            module_version=request.module.version,
            target_environment=request.target_environment,
            trace_id=uuid.uuid4().hex,
        )
        upfront = self.requires_upfront_approval(request)
        run = _PipelineRun(
            request=request,
            result=result,
            planned_stages=self._planned_stage_count(request, upfront),
            upfront_approval=upfront,
        )
        environment = request.target_environment.value
        PIPELINES_STARTED.labels(environment=environment).inc()
        logger.info(
            "Starting deployment pipeline for %s v%s to %s (execution %s)",
            request.module.name,
            request.module.version,
            request.target_environment.label,
            request.execution_id,
        )
        error: str | None = None
        try:
            await self._audit(run, "PipelineStarted", result="Running", stage="Pipeline", stage_status="running")
            await self._publish(run, PipelineStatus.running, None)
            success, message = await self._run_stages(run)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            stage_name = self._abort_current_stage(run, "cancelled", "cancelled")
            logger.warning("Deployment pipeline %s cancelled during %s", request.execution_id, stage_name or "setup")
            message = f"Pipeline cancelled during {stage_name} stage" if stage_name else "Pipeline cancelled"
            success, error = False, "cancelled"
        except Exception as exc:
            logger.exception("Deployment pipeline failed with exception for %s", request.module.name)
            self._abort_current_stage(run, "aborted", str(exc))
            success, message, error = False, f"Pipeline failed with exception: {exc}", str(exc)

        result.finish(success, message)
        status = PipelineStatus.succeeded if success else PipelineStatus.failed
        PIPELINES_COMPLETED.labels(environment=environment, status=status.value).inc()
        PIPELINE_DURATION.labels(environment=environment, status=status.value).observe(
            result.duration.total_seconds()
        )
        try:
            # The result is final; a late cancel must not discard it
            await asyncio.shield(self._report_completion(run, status, error))
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None:
                task.uncancel()
            logger.warning(
                "Deployment pipeline %s cancelled after it finished; keeping the final result",
                request.execution_id,
            )
        logger.info(
            "Deployment pipeline completed for %s v%s: %s",
            request.module.name,
            request.module.version,
            "SUCCESS" if success else "FAILED",
        )
        return result

    async def _report_completion(self, run: _PipelineRun, status: PipelineStatus, error: str | None) -> None:
        result = run.result
        await self._publish(run, status, "Completed")
        await self._audit(
            run,
            "PipelineCompleted" if error is None else "PipelineFailed",
            result="Success" if result.success else "Failure",
            stage="Pipeline",
            stage_status=status.value,
            duration_ms=int(result.duration.total_seconds() * 1000),
            error_message=error,
        )

    def requires_upfront_approval(self, request: DeploymentRequest) -> bool:
        return (
            self.approval_service is not None
            and self.config.upfront_approval
            and request.require_approval
            and request.target_environment.requires_approval
        )

    def requires_environment_approval(self, request: DeploymentRequest, environment: Environment) -> bool:
        if self.requires_upfront_approval(request):
            return False
        return self.approval_service is not None and request.require_approval and environment.requires_approval

    # ──────────────────────────── Stage sequencing ────────────────────────────

    async def _run_stages(self, run: _PipelineRun) -> tuple[bool, str]:
        request = run.request

        if run.upfront_approval:
            logger.info("Deployment %s requires approval before any stage runs", request.execution_id)
            stage = await self._approval_stage(run, request.target_environment)
            if stage.status != PipelineStageStatus.succeeded:
                return False, f"Pipeline failed at {APPROVAL_STAGE} stage"

        for name, body in (
            (BUILD_STAGE, partial(self._executor_stage, run, self.build_executor)),
            (TEST_STAGE, partial(self._executor_stage, run, self.test_executor)),
            (SECURITY_STAGE, partial(self._security_stage, run)),
        ):
            stage = await self._run_stage(run, name, body)
            if stage.status != PipelineStageStatus.succeeded:
                return False, f"Pipeline failed at {name} stage"

        for environment in request.target_environment.promotion_chain():
            if not run.upfront_approval and self.requires_environment_approval(request, environment):
                stage = await self._approval_stage(run, environment)
                if stage.status != PipelineStageStatus.succeeded:
                    return False, f"Pipeline failed at {APPROVAL_STAGE} stage ({environment.label})"

            stage = await self._run_stage(
                run, deploy_stage_name(environment), partial(self._deploy_stage, run, environment)
            )
            if stage.status != PipelineStageStatus.succeeded:
                return False, f"Pipeline failed at {stage.name}"

        stage = await self._run_stage(run, VALIDATION_STAGE, partial(self._executor_stage, run, self.validation_executor))
        if stage.status != PipelineStageStatus.succeeded:
            return False, f"Pipeline failed at {VALIDATION_STAGE} stage"
        return True, "Pipeline completed successfully"

    async def _run_stage(
        self,
        run: _PipelineRun,
        name: str,
        body: StageBody,
        *,
        initial_status: PipelineStageStatus = PipelineStageStatus.running,
    ) -> PipelineStageResult:
        stage = PipelineStageResult(name=name, status=initial_status)
        run.current = stage
        await self._publish(run, PipelineStatus.running, name)
        logger.info("Executing %s stage for %s", name, run.request.module.name)

        try:
            await body(stage)
        except Exception as exc:
            logger.exception("%s stage failed", name)
            if not stage.is_terminal:
                stage.complete(PipelineStageStatus.failed, f"{name} failed: {exc}", error=str(exc))
        if not stage.is_terminal:
            stage.complete(PipelineStageStatus.failed, f"{name} finished without a verdict")

        run.current = None
        run.result.add_stage(stage)
        logger.info(
            "%s stage %s in %dms",
            name,
            stage.status.value,
            int(stage.duration.total_seconds() * 1000),
        )
        await self._publish(run, PipelineStatus.running, name)
        await self._audit(
            run,
            "StageCompleted",
            result="Success" if stage.status == PipelineStageStatus.succeeded else "Failure",
            stage=name,
            stage_status=stage.status.value,
            strategy=stage.strategy,
            nodes_deployed=stage.nodes_deployed,
            nodes_failed=stage.nodes_failed,
            duration_ms=int(stage.duration.total_seconds() * 1000),
            error_message=stage.error,
        )
        return stage

    def _abort_current_stage(self, run: _PipelineRun, verb: str, error: str) -> str | None:
        stage = run.current
        if stage is None:
            return None
        if not stage.is_terminal:
            stage.complete(PipelineStageStatus.failed, f"{stage.name} {verb}", error=error)
        run.result.add_stage(stage)
        run.current = None
        return stage.name

    # ──────────────────────────── Stage bodies ────────────────────────────

    async def _executor_stage(self, run: _PipelineRun, executor: StageExecutor, stage: PipelineStageResult) -> None:
        outcome = await executor.run(run.request)
        if stage.name == BUILD_STAGE:
            run.artifact = outcome.artifact
        status = PipelineStageStatus.succeeded if outcome.succeeded else PipelineStageStatus.failed
        stage.complete(status, outcome.message)

    async def _security_stage(self, run: _PipelineRun, stage: PipelineStageResult) -> None:
        validation = await self.module_verifier.validate(run.request.module, run.artifact or b"")
        if not validation.is_valid:
            stage.complete(
                PipelineStageStatus.failed,
                f"Security validation failed: {', '.join(validation.messages)}",
            )
            return
        stage.complete(PipelineStageStatus.succeeded, "Security scan passed")

    async def _approval_stage(self, run: _PipelineRun, environment: Environment) -> PipelineStageResult:
        return await self._run_stage(
            run,
            APPROVAL_STAGE,
            partial(self._await_approval, run, environment),
            initial_status=PipelineStageStatus.pending,
        )

    async def _await_approval(self, run: _PipelineRun, environment: Environment, stage: PipelineStageResult) -> None:
        request = run.request
        logger.info(
            "Requesting approval for deployment to %s for %s v%s",
            environment.label,
            request.module.name,
            request.module.version,
        )
        approval = await self.approval_service.create_request(
            request,
            environment,
            approver_emails=self.config.approvers.get(environment, ()),
        )
        await self._publish(run, PipelineStatus.pending_approval, APPROVAL_STAGE)

        decision = await self.approval_service.wait_for_decision(request.execution_id)
        reason = decision.response_reason or ""
        if decision.status == ApprovalStatus.approved:
            stage.complete(PipelineStageStatus.succeeded, f"Approved by {decision.responded_by_email}. {reason}".strip())
        elif decision.status == ApprovalStatus.rejected:
            stage.complete(PipelineStageStatus.failed, f"Rejected by {decision.responded_by_email}. {reason}".strip())
        else:
            hours = self.approval_service.timeout.total_seconds() / 3600
            stage.complete(
                PipelineStageStatus.failed,
                f"Approval request {approval.approval_id} expired after {hours:g} hours",
            )

    async def _deploy_stage(self, run: _PipelineRun, environment: Environment, stage: PipelineStageResult) -> None:
        request = run.request
        cluster = await self.cluster_registry.get_cluster(environment)
        strategy = self.strategies.get(environment)
        if strategy is None:
            raise LookupError(f"No deployment strategy configured for {environment.label}")
        stage.strategy = strategy.name

        stabilization = self.config.stabilization.get(environment)
        baseline: ClusterMetricsSnapshot | None = None
        if stabilization is not None and self.stabilization_service is not None:
            samples = await self.stabilization_service.metrics_provider.get_node_metrics(cluster.node_ids)
            baseline = ClusterMetricsSnapshot.from_node_metrics(environment.value, samples)

        outcome = await strategy.deploy(request, cluster)
        stage.nodes_deployed = outcome.nodes_deployed
        stage.nodes_failed = outcome.nodes_failed
        NODES_DEPLOYED.labels(environment=environment.value, status="success").inc(outcome.nodes_deployed)
        NODES_DEPLOYED.labels(environment=environment.value, status="failed").inc(outcome.nodes_failed)

        if not outcome.success:
            stage.complete(PipelineStageStatus.failed, outcome.message, error=outcome.error)
            return

        message = outcome.message
        if baseline is not None and stabilization is not None and self.stabilization_service is not None:
            nodes = [r.node_id for r in outcome.node_results if r.success] or list(cluster.node_ids)
            verdict = await self.stabilization_service.wait_for_stabilization(nodes, baseline, stabilization)
            if not verdict.is_stable:
                stage.complete(
                    PipelineStageStatus.failed,
                    f"{message}; resources did not stabilize: {verdict.message}",
                )
                return
            message = f"{message}; {verdict.message}"
        stage.complete(PipelineStageStatus.succeeded, message)

    # ──────────────────────────── Observers ────────────────────────────

    def _planned_stage_count(self, request: DeploymentRequest, upfront: bool) -> int:
        chain = request.target_environment.promotion_chain()
        approvals = 1 if upfront else sum(1 for env in chain if self.requires_environment_approval(request, env))
        # build, test, security scan and validation
        return approvals + 4 + len(chain)

    def _progress(self, run: _PipelineRun, status: PipelineStatus) -> int:
        if status in (PipelineStatus.succeeded, PipelineStatus.failed):
            return 100
        completed = sum(1 for s in run.result.stage_results if s.is_terminal)
        return min(100, completed * 100 // run.planned_stages)

    async def _publish(self, run: _PipelineRun, status: PipelineStatus, current_stage: str | None) -> None:
        stages = [s.model_copy() for s in run.result.stage_results]
        if run.current is not None:
            stages.append(run.current.model_copy())
        state = PipelineExecutionState(
            execution_id=run.request.execution_id,
            request=run.request,
            status=status,
            current_stage=current_stage,
            stages=stages,
            started_at=run.result.started_at,
            last_updated=utcnow(),
        )
        execution_id = run.request.execution_id
        try:
            await self.tracker.update_state(execution_id, state)
        except Exception:
            logger.exception("Failed to update pipeline state for execution %s", execution_id)
        try:
            await self.notifier.notify_status_changed(str(execution_id), state)
            if current_stage is not None:
                await self.notifier.notify_progress(str(execution_id), current_stage, self._progress(run, status))
        except Exception:
            logger.exception("Failed to notify deployment status for execution %s", execution_id)

    async def _audit(
        self,
        run: _PipelineRun,
        event_type: str,
        *,
        result: str,
        stage: str,
        stage_status: str,
        strategy: str | None = None,
        nodes_deployed: int | None = None,
        nodes_failed: int | None = None,
        duration_ms: int | None = None,
        error_message: str | None = None,
    ) -> None:
        request = run.request
        try:
            await self.audit_sink.record(
                AuditRecord(
                    category=AuditCategory.deployment,
                    event_type=event_type,
                    execution_id=request.execution_id,
                    module_name=request.module.name,
                    module_version=request.module.version,
                    target_environment=request.target_environment.value,
                    result=result,
                    pipeline_stage=stage,
                    stage_status=stage_status,
                    strategy=strategy,
                    nodes_deployed=nodes_deployed,
                    nodes_failed=nodes_failed,
                    duration_ms=duration_ms,
                    error_message=error_message,
                    actor_email=request.requester_email,
                    trace_id=run.result.trace_id,
                )
            )
        except Exception:
            logger.exception("Failed to write audit log for deployment event %s", event_type)
