"""Tests for the approval gate."""

import asyncio
import threading
import uuid
from datetime import timedelta

import pytest

from orchestrator.errors import (
    ApprovalAuthorizationError,
    ApprovalNotFoundError,
    ApprovalStateError,
    DuplicateApprovalError,
)
from orchestrator.models.audit_event import AuditCategory
from orchestrator.schemas.approvals import ApprovalStatus
from orchestrator.schemas.deployments import Environment
from orchestrator.services.approval_service import ApprovalService, ApprovalSweeper
from tests.conftest import (
    FailingApprovalNotifier,
    FailingAuditSink,
    MutableClock,
    RecordingApprovalNotifier,
    RecordingAuditSink,
    make_request,
)


def _service(**kwargs) -> ApprovalService:
    kwargs.setdefault("notifier", RecordingApprovalNotifier())
    return ApprovalService(**kwargs)


class TestCreateRequest:
    def test_creates_pending_request_with_timeout(self):
        clock = MutableClock()
        svc = _service(timeout=timedelta(hours=24), clock=clock)
        request = make_request(require_approval=True)

        approval = asyncio.run(svc.create_request(request))

        assert approval.status == ApprovalStatus.pending
        assert approval.deployment_execution_id == request.execution_id
        assert approval.target_environment == Environment.production
        assert approval.timeout_at == clock.now + timedelta(hours=24)
        assert svc.notifier.events[0][0] == "requested"

    def test_duplicate_request_fails_and_keeps_first(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            first = await svc.create_request(request, approver_emails=["lead@example.com"])
            with pytest.raises(DuplicateApprovalError):
                await svc.create_request(request)
            return first

        first = asyncio.run(scenario())
        stored = svc.get_by_id(request.execution_id)
        assert stored == first
        assert stored.approver_emails == ("lead@example.com",)

    def test_duplicate_fails_even_after_decision(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            await svc.approve(request.execution_id, "lead@example.com")
            with pytest.raises(DuplicateApprovalError):
                await svc.create_request(request)

        asyncio.run(scenario())

    def test_separate_environments_are_separate_requests(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request, Environment.staging)
            await svc.approve(request.execution_id, "lead@example.com")
            await svc.create_request(request, Environment.production)

        asyncio.run(scenario())
        history = svc.get_history(request.execution_id)
        assert [a.target_environment for a in history] == [Environment.staging, Environment.production]
        assert svc.get_by_id(request.execution_id).target_environment == Environment.production

    def test_second_environment_refused_while_first_is_pending(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request, Environment.staging)
            with pytest.raises(DuplicateApprovalError, match="pending approval request for Staging"):
                await svc.create_request(request, Environment.production)

        asyncio.run(scenario())
        pending = [a for a in svc.get_pending() if a.deployment_execution_id == request.execution_id]
        assert [a.target_environment for a in pending] == [Environment.staging]
        assert svc.get_by_id(request.execution_id).target_environment == Environment.staging
        assert [a.target_environment for a in svc.get_history(request.execution_id)] == [Environment.staging]

    def test_concurrent_creates_leave_one_pending_request(self):
        svc = _service()
        request = make_request(require_approval=True)
        environments = [Environment.staging, Environment.production] * 4
        barrier = threading.Barrier(len(environments))
        created, refused = [], []

        def create(environment: Environment):
            barrier.wait()
            try:
                created.append(asyncio.run(svc.create_request(request, environment)))
            except DuplicateApprovalError:
                refused.append(environment)

        threads = [threading.Thread(target=create, args=(env,)) for env in environments]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(created) == 1
        assert len(refused) == len(environments) - 1
        pending = [a for a in svc.get_pending() if a.deployment_execution_id == request.execution_id]
        assert pending == created
        assert svc.get_by_id(request.execution_id) == created[0]


class TestDecide:
    def test_approve_records_responder(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            return await svc.approve(request.execution_id, "lead@example.com", "looks good")

        approval = asyncio.run(scenario())
        assert approval.status == ApprovalStatus.approved
        assert approval.responded_by_email == "lead@example.com"
        assert approval.response_reason == "looks good"
        assert approval.responded_at is not None

    def test_unauthorized_approver_is_rejected_and_status_stays_pending(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request, approver_emails=["lead@example.com"])
            with pytest.raises(ApprovalAuthorizationError):
                await svc.approve(request.execution_id, "intruder@example.com")

        asyncio.run(scenario())
        assert svc.get_by_id(request.execution_id).status == ApprovalStatus.pending

    def test_approver_match_is_case_insensitive(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request, approver_emails=["Lead@Example.com"])
            return await svc.reject(request.execution_id, "lead@example.com", "not now")

        assert asyncio.run(scenario()).status == ApprovalStatus.rejected

    def test_second_decision_fails(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            await svc.approve(request.execution_id, "a@example.com")
            with pytest.raises(ApprovalStateError):
                await svc.reject(request.execution_id, "b@example.com")

        asyncio.run(scenario())
        assert svc.get_by_id(request.execution_id).status == ApprovalStatus.approved

    def test_decision_after_timeout_fails(self):
        clock = MutableClock()
        svc = _service(timeout=timedelta(hours=1), clock=clock)
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            clock.advance(timedelta(hours=2))
            with pytest.raises(ApprovalStateError, match="expired"):
                await svc.approve(request.execution_id, "lead@example.com")

        asyncio.run(scenario())

    def test_unknown_execution_fails(self):
        svc = _service()
        with pytest.raises(ApprovalNotFoundError):
            asyncio.run(svc.approve(uuid.uuid4(), "lead@example.com"))


class TestSweepExpired:
    def test_sweep_expires_exactly_once(self):
        clock = MutableClock()
        notifier = RecordingApprovalNotifier()
        svc = _service(timeout=timedelta(hours=1), clock=clock, notifier=notifier)
        stale = make_request(require_approval=True)
        fresh = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(stale)
            clock.advance(timedelta(minutes=90))
            await svc.create_request(fresh)
            first = await svc.sweep_expired()
            second = await svc.sweep_expired()
            return first, second

        first, second = asyncio.run(scenario())
        assert (first, second) == (1, 0)
        expired = svc.get_by_id(stale.execution_id)
        assert expired.status == ApprovalStatus.expired
        assert "timeout" in expired.response_reason
        assert svc.get_by_id(fresh.execution_id).status == ApprovalStatus.pending
        assert [name for name, _ in notifier.events].count("expired") == 1

    def test_timed_out_requests_are_not_listed_as_pending(self):
        clock = MutableClock()
        svc = _service(timeout=timedelta(hours=1), clock=clock)
        request = make_request(require_approval=True)

        asyncio.run(svc.create_request(request))
        assert len(svc.get_pending()) == 1
        clock.advance(timedelta(hours=1))
        assert svc.get_pending() == []


class TestWaitForDecision:
    def test_waiter_resumes_on_approval(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            waiter = asyncio.create_task(svc.wait_for_decision(request.execution_id))
            await asyncio.sleep(0)
            assert not waiter.done()
            await svc.approve(request.execution_id, "lead@example.com")
            return await asyncio.wait_for(waiter, 1)

        decision = asyncio.run(scenario())
        assert decision.status == ApprovalStatus.approved

    def test_waiter_resumes_on_expiry(self):
        clock = MutableClock()
        svc = _service(timeout=timedelta(hours=1), clock=clock)
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            waiter = asyncio.create_task(svc.wait_for_decision(request.execution_id))
            await asyncio.sleep(0)
            clock.advance(timedelta(hours=2))
            await svc.sweep_expired()
            return await asyncio.wait_for(waiter, 1)

        assert asyncio.run(scenario()).status == ApprovalStatus.expired

    def test_already_resolved_returns_immediately(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            await svc.reject(request.execution_id, "lead@example.com", "freeze")
            return await svc.wait_for_decision(request.execution_id)

        assert asyncio.run(scenario()).status == ApprovalStatus.rejected

    def test_many_waiters_all_resume(self):
        svc = _service()
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            waiters = [asyncio.create_task(svc.wait_for_decision(request.execution_id)) for _ in range(3)]
            await asyncio.sleep(0)
            await svc.approve(request.execution_id, "lead@example.com")
            return await asyncio.wait_for(asyncio.gather(*waiters), 1)

        assert {d.status for d in asyncio.run(scenario())} == {ApprovalStatus.approved}


class TestObserverContainment:
    def test_failing_notifier_and_audit_do_not_break_decisions(self):
        svc = ApprovalService(notifier=FailingApprovalNotifier(), audit_sink=FailingAuditSink())
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            return await svc.approve(request.execution_id, "lead@example.com")

        assert asyncio.run(scenario()).status == ApprovalStatus.approved

    def test_audit_records_lifecycle(self):
        sink = RecordingAuditSink()
        svc = _service(audit_sink=sink)
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            await svc.reject(request.execution_id, "lead@example.com", "freeze")

        asyncio.run(scenario())
        assert [e.event_type for e in sink.events] == ["ApprovalRequested", "ApprovalRejected"]
        assert all(e.category == AuditCategory.approval for e in sink.events)
        assert sink.events[1].actor_email == "lead@example.com"


class TestApprovalSweeper:
    def test_sweeper_expires_in_background(self):
        clock = MutableClock()
        svc = _service(timeout=timedelta(hours=1), clock=clock)
        request = make_request(require_approval=True)

        async def scenario():
            await svc.create_request(request)
            clock.advance(timedelta(hours=2))
            sweeper = ApprovalSweeper(svc, interval_seconds=0.01)
            sweeper.start()
            assert sweeper.running
            for _ in range(100):
                if svc.get_by_id(request.execution_id).status == ApprovalStatus.expired:
                    break
                await asyncio.sleep(0.01)
            await sweeper.stop()
            assert not sweeper.running

        asyncio.run(scenario())
        assert svc.get_by_id(request.execution_id).status == ApprovalStatus.expired
