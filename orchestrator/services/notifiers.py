"""Observer contracts for approval and pipeline progress notifications."""

from __future__ import annotations

import logging
from typing import Protocol

from orchestrator.schemas.approvals import ApprovalRequest
from orchestrator.schemas.deployments import PipelineExecutionState

logger = logging.getLogger(__name__)


class ApprovalNotifier(Protocol):
    async def approval_requested(self, approval: ApprovalRequest) -> None: ...

    async def approval_granted(self, approval: ApprovalRequest) -> None: ...

    async def approval_rejected(self, approval: ApprovalRequest) -> None: ...

    async def approval_expired(self, approval: ApprovalRequest) -> None: ...


class LoggingApprovalNotifier:
    async def approval_requested(self, approval: ApprovalRequest) -> None:
        logger.info(
            "Approval needed for %s v%s to %s (deployment %s, approvers: %s, timeout %s)",
            approval.module_name,
            approval.module_version,
            approval.target_environment.label,
            approval.deployment_execution_id,
            ", ".join(approval.approver_emails) or "any",
            approval.timeout_at.isoformat(),
        )

    async def approval_granted(self, approval: ApprovalRequest) -> None:
        logger.info(
            "Deployment %s approved by %s",
            approval.deployment_execution_id,
            approval.responded_by_email,
        )

    async def approval_rejected(self, approval: ApprovalRequest) -> None:
        logger.info(
            "Deployment %s rejected by %s: %s",
            approval.deployment_execution_id,
            approval.responded_by_email,
            approval.response_reason or "no reason given",
        )

    async def approval_expired(self, approval: ApprovalRequest) -> None:
        logger.info("Approval for deployment %s expired", approval.deployment_execution_id)


class DeploymentNotifier(Protocol):
    async def notify_status_changed(self, execution_id: str, state: PipelineExecutionState) -> None: ...

    async def notify_progress(self, execution_id: str, stage: str, percent: int) -> None: ...


class NullDeploymentNotifier:
    async def notify_status_changed(self, execution_id: str, state: PipelineExecutionState) -> None:
        return None

    async def notify_progress(self, execution_id: str, stage: str, percent: int) -> None:
        return None


class LoggingDeploymentNotifier:
    async def notify_status_changed(self, execution_id: str, state: PipelineExecutionState) -> None:
        logger.debug("Deployment %s is %s (stage: %s)", execution_id, state.status.value, state.current_stage)

    async def notify_progress(self, execution_id: str, stage: str, percent: int) -> None:
        logger.info("Deployment %s at %s: %d%%", execution_id, stage, percent)
