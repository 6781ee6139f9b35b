"""Approval Service — human approval gate for sensitive environments."""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta

from orchestrator.errors import (
    ApprovalAuthorizationError,
    ApprovalNotFoundError,
    ApprovalStateError,
    DuplicateApprovalError,
)
from orchestrator.metrics import APPROVAL_DECISIONS, APPROVAL_REQUESTS
from orchestrator.models.audit_event import AuditCategory
from orchestrator.schemas.approvals import ApprovalRequest, ApprovalStatus
from orchestrator.schemas.deployments import DeploymentRequest, Environment, utcnow
from orchestrator.services.audit_service import AuditRecord, AuditSink, NullAuditSink
from orchestrator.services.notifiers import ApprovalNotifier, LoggingApprovalNotifier
from orchestrator.services.store import KeyedStore

logger = logging.getLogger(__name__)

ApprovalKey = tuple[uuid.UUID, Environment]


def _resolve_future(future: asyncio.Future, approval: ApprovalRequest) -> None:
    if not future.done():
        future.set_result(approval)


class ApprovalService:
    def __init__(
        self,
        *,
        timeout: timedelta = timedelta(hours=24),
        notifier: ApprovalNotifier | None = None,
        audit_sink: AuditSink | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.timeout = timeout
        self.notifier = notifier or LoggingApprovalNotifier()
        self.audit_sink = audit_sink or NullAuditSink()
        self._clock = clock
        self._requests: KeyedStore[ApprovalKey, ApprovalRequest] = KeyedStore()
        self._latest: KeyedStore[uuid.UUID, ApprovalKey] = KeyedStore()
        self._waiters: dict[ApprovalKey, list[asyncio.Future]] = {}
        self._waiters_lock = threading.Lock()

    async def create_request(
        self,
        deployment: DeploymentRequest,
        environment: Environment | None = None,
        *,
        approver_emails: Iterable[str] = (),
    ) -> ApprovalRequest:
        environment = environment or deployment.target_environment
        now = self._clock()
        approval = ApprovalRequest(
            deployment_execution_id=deployment.execution_id,
            module_name=deployment.module.name,
            module_version=deployment.module.version,
            target_environment=environment,
            requester_email=deployment.requester_email,
            approver_emails=tuple(approver_emails),
            requested_at=now,
            timeout_at=now + self.timeout,
            metadata=dict(deployment.metadata),
        )
        key = (deployment.execution_id, environment)

        def open_request(latest_key: ApprovalKey | None) -> ApprovalKey:
            # At most one pending request per deployment at a time
            latest = self._requests.get(latest_key) if latest_key else None
            if latest is not None and latest.status == ApprovalStatus.pending:
                raise DuplicateApprovalError(
                    f"Deployment {deployment.execution_id} already has a pending approval request "
                    f"for {latest.target_environment.label}"
                )
            if not self._requests.insert_if_absent(key, approval):
                raise DuplicateApprovalError(
                    f"Approval request already exists for deployment {deployment.execution_id} "
                    f"to {environment.label}"
                )
            return key

        self._latest.apply(deployment.execution_id, open_request)
        APPROVAL_REQUESTS.labels(environment=environment.value).inc()

        logger.info(
            "Approval request %s created for deployment %s to %s, timeout at %s",
            approval.approval_id,
            deployment.execution_id,
            environment.label,
            approval.timeout_at.isoformat(),
        )
        await self._notify("approval_requested", approval)
        await self._audit("ApprovalRequested", approval, result="Pending", actor=approval.requester_email)
        return approval

    async def decide(
        self,
        execution_id: uuid.UUID,
        approver_email: str,
        approved: bool,
        reason: str | None = None,
    ) -> ApprovalRequest:
        key = self._latest.get(execution_id)
        current = self._requests.get(key) if key else None
        if key is None or current is None:
            raise ApprovalNotFoundError(f"Approval request not found for deployment {execution_id}")
        if current.is_resolved:
            raise ApprovalStateError(f"Approval request is already {current.status.value}")
        now = self._clock()
        if current.is_timed_out(now):
            raise ApprovalStateError(f"Approval request expired at {current.timeout_at.isoformat()}")
        if not current.is_authorized(approver_email):
            raise ApprovalAuthorizationError(
                f"User {approver_email} is not authorized to decide on deployment {execution_id}"
            )

        status = ApprovalStatus.approved if approved else ApprovalStatus.rejected
        swapped, updated = self._requests.compare_and_swap(
            key,
            lambda r: r.status == ApprovalStatus.pending,
            lambda r: r.model_copy(
                update={
                    "status": status,
                    "responded_at": now,
                    "responded_by_email": approver_email,
                    "response_reason": reason,
                }
            ),
        )
        if not swapped or updated is None:
            resolved = updated.status.value if updated else "missing"
            raise ApprovalStateError(f"Approval request is already {resolved}")

        APPROVAL_DECISIONS.labels(status=status.value).inc()
        if approved:
            logger.info("Deployment %s approved by %s", execution_id, approver_email)
            await self._notify("approval_granted", updated)
        else:
            logger.warning(
                "Deployment %s rejected by %s. Reason: %s",
                execution_id,
                approver_email,
                reason or "None",
            )
            await self._notify("approval_rejected", updated)
        await self._audit(
            "ApprovalGranted" if approved else "ApprovalRejected",
            updated,
            result="Approved" if approved else "Rejected",
            actor=approver_email,
        )
        self._resolve_waiters(key, updated)
        return updated

    async def approve(self, execution_id: uuid.UUID, approver_email: str, reason: str | None = None) -> ApprovalRequest:
        return await self.decide(execution_id, approver_email, True, reason)

    async def reject(self, execution_id: uuid.UUID, approver_email: str, reason: str | None = None) -> ApprovalRequest:
        return await self.decide(execution_id, approver_email, False, reason)

    async def wait_for_decision(self, execution_id: uuid.UUID) -> ApprovalRequest:
        """Suspend until the latest request for the deployment is resolved.

        The wait holds no thread: the caller parks on a future that ``decide``
        or ``sweep_expired`` completes.
        """
        key = self._latest.get(execution_id)
        current = self._requests.get(key) if key else None
        if key is None or current is None:
            raise ApprovalNotFoundError(f"Approval request not found for deployment {execution_id}")
        if current.is_resolved:
            return current

        future = asyncio.get_running_loop().create_future()
        with self._waiters_lock:
            self._waiters.setdefault(key, []).append(future)
        try:
            # Resolution may have landed between the first read and registration
            latest = self._requests.get(key)
            if latest is not None and latest.is_resolved:
                return latest
            logger.info("Waiting for approval decision for deployment %s", execution_id)
            return await future
        finally:
            with self._waiters_lock:
                waiters = self._waiters.get(key)
                if waiters and future in waiters:
                    waiters.remove(future)
                if not waiters:
                    self._waiters.pop(key, None)

    async def sweep_expired(self) -> int:
        now = self._clock()
        expired: list[tuple[ApprovalKey, ApprovalRequest]] = []
        for key in self._requests.keys():
            swapped, updated = self._requests.compare_and_swap(
                key,
                lambda r: r.is_timed_out(now),
                lambda r: r.model_copy(
                    update={
                        "status": ApprovalStatus.expired,
                        "responded_at": now,
                        "response_reason": "Approval request automatically expired due to timeout",
                    }
                ),
            )
            if swapped and updated is not None:
                expired.append((key, updated))

        for key, approval in expired:
            logger.warning(
                "Expired approval request %s for deployment %s",
                approval.approval_id,
                approval.deployment_execution_id,
            )
            APPROVAL_DECISIONS.labels(status=ApprovalStatus.expired.value).inc()
            await self._notify("approval_expired", approval)
            await self._audit("ApprovalExpired", approval, result="Expired", actor=None)
            self._resolve_waiters(key, approval)

        if expired:
            logger.info("Expired %d approval request(s)", len(expired))
        return len(expired)

    def get_pending(self) -> list[ApprovalRequest]:
        now = self._clock()
        pending = [
            r for r in self._requests.values() if r.status == ApprovalStatus.pending and not r.is_timed_out(now)
        ]
        return sorted(pending, key=lambda r: r.requested_at)

    def get_by_id(self, execution_id: uuid.UUID) -> ApprovalRequest | None:
        key = self._latest.get(execution_id)
        return self._requests.get(key) if key else None

    def get_history(self, execution_id: uuid.UUID) -> list[ApprovalRequest]:
        requests = [r for r in self._requests.values() if r.deployment_execution_id == execution_id]
        return sorted(requests, key=lambda r: r.target_environment.rank)

    def _resolve_waiters(self, key: ApprovalKey, approval: ApprovalRequest) -> None:
        with self._waiters_lock:
            waiters = list(self._waiters.get(key, []))
        for future in waiters:
            future.get_loop().call_soon_threadsafe(_resolve_future, future, approval)

    async def _notify(self, event: str, approval: ApprovalRequest) -> None:
        try:
            await getattr(self.notifier, event)(approval)
        except Exception:
            logger.exception("Approval notification %s failed for deployment %s", event, approval.deployment_execution_id)

    async def _audit(self, event_type: str, approval: ApprovalRequest, *, result: str, actor: str | None) -> None:
        try:
            await self.audit_sink.record(
                AuditRecord(
                    category=AuditCategory.approval,
                    event_type=event_type,
                    execution_id=approval.deployment_execution_id,
                    module_name=approval.module_name,
                    module_version=approval.module_version,
                    target_environment=approval.target_environment.value,
                    pipeline_stage="Approval",
                    stage_status=approval.status.value,
                    result=result,
                    error_message=approval.response_reason if approval.status == ApprovalStatus.expired else None,
                    actor_email=actor,
                )
            )
        except Exception:
            logger.exception("Failed to write approval audit event %s", event_type)


class ApprovalSweeper:
    """Periodically expires approval requests whose timeout has passed."""

    def __init__(self, approval_service: ApprovalService, interval_seconds: float = 300.0):
        self.approval_service = approval_service
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        logger.info("Approval sweeper starting, checking every %.0fs", self.interval_seconds)
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Approval sweeper stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.approval_service.sweep_expired()
            except Exception:
                logger.exception("Failed to process expired approvals")
