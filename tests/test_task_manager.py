"""Tests for the task lifecycle manager and its persistence adapters."""

import asyncio
import json

import httpx
import pytest

from conftest import until_waiting
from taskpilot.agent.events import AgentEvent, AgentEventType
from taskpilot.tasks.manager import RecoveryPendingError, TaskLifecycleManager, is_retryable_failure
from taskpilot.tasks.models import (
    AutonomyLevel,
    Task,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskType,
    can_transition,
)
from taskpilot.tasks.persistence import HttpPersistenceAdapter, InMemoryPersistenceAdapter
from taskpilot.utils.errors import (
    APIError,
    BudgetExceededError,
    CrashRecoveryError,
    InvalidTransitionError,
    RateLimitError,
    TaskNotFoundError,
    ValidationError,
)


async def running_task(manager: TaskLifecycleManager, **kwargs) -> Task:
    task = await manager.create_task(TaskType.REFACTOR, "Split utils module", **kwargs)
    await manager.update_status(task.id, TaskStatus.QUEUED)
    return await manager.update_status(task.id, TaskStatus.RUNNING)


class TestCreate:
    async def test_requires_recovery_first(self):
        manager = TaskLifecycleManager(InMemoryPersistenceAdapter())

        with pytest.raises(RecoveryPendingError):
            await manager.create_task(TaskType.QA, "Run QA")

        await manager.recover_interrupted()
        task = await manager.create_task(TaskType.QA, "Run QA")
        assert task.status == TaskStatus.PENDING

    async def test_defaults(self, manager):
        task = await manager.create_task("qa", "  Lint the CLI  ")

        assert task.title == "Lint the CLI"
        assert task.retry_count == 0
        assert task.max_retries == 3
        assert task.autonomy_level == AutonomyLevel.FULL
        assert (await manager.get_task(task.id)).to_dict() == task.to_dict()

    async def test_autonomy_defaults_by_type(self, manager):
        refactor = await manager.create_task(TaskType.REFACTOR, "Tidy")
        explicit = await manager.create_task(TaskType.REFACTOR, "Tidy", autonomy_level="manual")

        assert refactor.autonomy_level == AutonomyLevel.SUPERVISED
        assert explicit.autonomy_level == AutonomyLevel.MANUAL

    @pytest.mark.parametrize("kwargs", [
        {"type": "deploy", "title": "Ship it"},
        {"type": "qa", "title": "   "},
        {"type": "qa", "title": "QA", "priority": "urgent"},
        {"type": "qa", "title": "QA", "max_retries": -1},
    ])
    async def test_invalid_input(self, manager, kwargs):
        with pytest.raises(ValidationError):
            await manager.create_task(**kwargs)

    async def test_parent_and_child(self, manager):
        parent = await manager.create_task(TaskType.FEATURE, "Add export")
        child = await manager.create_task(TaskType.TEST, "Test export", parent_task_id=parent.id)

        stored_parent = await manager.get_task(parent.id)
        assert stored_parent.child_task_ids == [child.id]
        assert child.parent_task_id == parent.id
        assert child.created_at > parent.created_at

    async def test_child_is_created_after_a_parent_from_the_future(self, manager):
        parent = await manager.create_task(TaskType.FEATURE, "Add export")
        parent_created = parent.created_at + 60_000
        await manager.adapter.update_status(parent.id, parent.status, {"created_at": parent_created})

        child = await manager.create_task(TaskType.TEST, "Test export", parent_task_id=parent.id)

        assert child.created_at == parent_created + 1

    async def test_unknown_parent(self, manager):
        with pytest.raises(TaskNotFoundError):
            await manager.create_task(TaskType.TEST, "Orphan", parent_task_id="missing")

    async def test_next_pending_prefers_priority_then_age(self, manager):
        first_normal = await manager.create_task(TaskType.QA, "normal 1")
        await manager.create_task(TaskType.QA, "normal 2")
        await manager.create_task(TaskType.QA, "low", priority=TaskPriority.LOW)
        high = await manager.create_task(TaskType.QA, "high", priority="high")

        assert (await manager.next_pending()).id == high.id
        await manager.update_status(high.id, TaskStatus.CANCELLED)
        assert (await manager.next_pending()).id == first_normal.id


class TestTransitions:
    @pytest.mark.parametrize("current, target, allowed", [
        (TaskStatus.PENDING, TaskStatus.QUEUED, True),
        (TaskStatus.PENDING, TaskStatus.RUNNING, False),
        (TaskStatus.QUEUED, TaskStatus.RUNNING, True),
        (TaskStatus.PENDING, TaskStatus.COMPLETED, False),
        (TaskStatus.RUNNING, TaskStatus.AWAITING_APPROVAL, True),
        (TaskStatus.AWAITING_APPROVAL, TaskStatus.RUNNING, False),
        (TaskStatus.APPROVED, TaskStatus.RUNNING, True),
        (TaskStatus.COMPLETED, TaskStatus.RUNNING, False),
        (TaskStatus.FAILED, TaskStatus.PENDING, False),
    ])
    def test_state_machine(self, current, target, allowed):
        assert can_transition(current, target) is allowed

    async def test_timestamps(self, manager):
        task = await running_task(manager)
        assert task.started_at is not None
        assert task.completed_at is None

        done = await manager.update_status(task.id, TaskStatus.COMPLETED)
        assert done.completed_at >= done.started_at

    async def test_illegal_transition_is_rejected(self, manager):
        task = await manager.create_task(TaskType.QA, "QA")

        with pytest.raises(InvalidTransitionError):
            await manager.update_status(task.id, TaskStatus.COMPLETED)
        assert (await manager.get_task(task.id)).status == TaskStatus.PENDING

    async def test_terminal_states_are_final(self, manager):
        task = await running_task(manager)
        await manager.update_status(task.id, TaskStatus.FAILED)

        for target in TaskStatus:
            with pytest.raises(InvalidTransitionError):
                await manager.update_status(task.id, target)

    async def test_unknown_task(self, manager):
        with pytest.raises(TaskNotFoundError):
            await manager.update_status("missing", TaskStatus.QUEUED)


class TestResultsAndEvents:
    async def test_result_only_once_and_only_when_terminal(self, manager):
        task = await running_task(manager)
        result = TaskResult(success=True, summary="Done")

        with pytest.raises(InvalidTransitionError):
            await manager.record_result(task.id, result)

        await manager.update_status(task.id, TaskStatus.COMPLETED)
        await manager.record_result(task.id, result)
        with pytest.raises(InvalidTransitionError):
            await manager.record_result(task.id, result)

        assert (await manager.get_task(task.id)).result == result

    async def test_events_only_while_live(self, manager):
        task = await manager.create_task(TaskType.QA, "QA")
        event = AgentEvent(AgentEventType.STARTED, task_id=task.id)

        with pytest.raises(InvalidTransitionError):
            await manager.record_event(task.id, event)

        await manager.update_status(task.id, TaskStatus.QUEUED)
        await manager.update_status(task.id, TaskStatus.RUNNING)
        await manager.record_event(task.id, event)
        await manager.update_status(task.id, TaskStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            await manager.record_event(task.id, AgentEvent(AgentEventType.THINKING, task_id=task.id))
        assert await manager.get_task_events(task.id) == [event]

    async def test_complete_trivial_passes_through_running(self, manager):
        task = await manager.create_task(TaskType.QA, "Nothing to lint")

        done = await manager.complete_trivial(task.id, TaskResult(success=True, summary="No files"))

        assert done.status == TaskStatus.COMPLETED
        assert done.started_at is not None
        assert (await manager.get_task(task.id)).result.summary == "No files"

    async def test_pending_task_cannot_skip_the_queue(self, manager):
        task = await manager.create_task(TaskType.QA, "Lint")

        with pytest.raises(InvalidTransitionError):
            await manager.update_status(task.id, TaskStatus.RUNNING)
        assert (await manager.get_task(task.id)).status == TaskStatus.PENDING

    async def test_complete_trivial_records_every_step(self, manager):
        task = await manager.create_task(TaskType.QA, "Nothing to lint")
        seen = []
        update_status = manager.adapter.update_status

        async def recording(task_id, status, changes=None):
            seen.append(status)
            return await update_status(task_id, status, changes)

        manager.adapter.update_status = recording
        await manager.complete_trivial(task.id, TaskResult(success=True, summary="No files"))

        assert seen == [TaskStatus.QUEUED, TaskStatus.RUNNING, TaskStatus.COMPLETED]


class TestRetryPolicy:
    def test_classification(self):
        assert is_retryable_failure(RateLimitError("model", 1.0)) is True
        assert is_retryable_failure(APIError("bad gateway", status_code=502)) is True
        assert is_retryable_failure(APIError("bad request", status_code=400)) is False
        assert is_retryable_failure(BudgetExceededError(10)) is False
        assert is_retryable_failure(CrashRecoveryError("t1")) is False
        assert is_retryable_failure(None) is False

    async def test_retryable_failure_goes_back_to_pending(self, manager):
        task = await running_task(manager, max_retries=1)

        retried = await manager.handle_failure(task.id, APIError("bad gateway", status_code=502))

        assert retried.status == TaskStatus.PENDING
        assert retried.retry_count == 1
        assert retried.started_at is None
        assert retried.result is None

    async def test_retry_budget_is_respected(self, manager):
        task = await running_task(manager, max_retries=1)
        await manager.handle_failure(task.id, APIError("bad gateway", status_code=502))
        await manager.update_status(task.id, TaskStatus.QUEUED)
        await manager.update_status(task.id, TaskStatus.RUNNING)

        failed = await manager.handle_failure(task.id, APIError("bad gateway", status_code=502))

        assert failed.status == TaskStatus.FAILED
        assert failed.retry_count == 1
        assert failed.result.error == "bad gateway"
        assert failed.result.error_code == "API_ERROR"

    async def test_budget_exhaustion_is_final(self, manager):
        task = await running_task(manager)
        result = TaskResult(success=False, summary="Maximum iterations reached without completion")

        failed = await manager.handle_failure(task.id, BudgetExceededError(10), result)

        assert failed.status == TaskStatus.FAILED
        assert failed.retry_count == 0
        assert (await manager.get_task(task.id)).result == result


class TestCrashRecovery:
    async def test_interrupted_tasks_are_failed(self):
        adapter = InMemoryPersistenceAdapter()
        running = Task(type=TaskType.QA, title="was running", status=TaskStatus.RUNNING)
        waiting = Task(type=TaskType.REFACTOR, title="was waiting", status=TaskStatus.AWAITING_APPROVAL)
        pending = Task(type=TaskType.QA, title="still pending")
        for task in (running, waiting, pending):
            await adapter.create_task(task)

        manager = TaskLifecycleManager(adapter)
        recovered = await manager.recover_interrupted()

        assert sorted(recovered) == sorted([running.id, waiting.id])
        for task_id in recovered:
            task = await manager.get_task(task_id)
            assert task.status == TaskStatus.FAILED
            assert task.completed_at is not None
            assert task.result.error == "Task was interrupted due to application restart"
            assert task.result.error_code == "INTERRUPTED"
        assert (await manager.get_task(pending.id)).status == TaskStatus.PENDING
        assert manager.recovered is True

    async def test_sweep_is_idempotent(self, manager):
        assert await manager.recover_interrupted() == []


class TestApprovalGate:
    async def test_approve_resumes_the_waiter(self, manager):
        task = await running_task(manager)
        waiter = asyncio.create_task(manager.request_approval(task.id, {"tools": ["writeFile"]}))
        await until_waiting(manager, task.id)

        assert (await manager.get_task(task.id)).status == TaskStatus.AWAITING_APPROVAL
        await manager.approve(task.id)

        assert await waiter is True
        assert (await manager.get_task(task.id)).status == TaskStatus.RUNNING
        assert manager.pending_approvals() == []

    async def test_reject_with_a_waiter(self, manager):
        task = await running_task(manager)
        waiter = asyncio.create_task(manager.request_approval(task.id))
        await until_waiting(manager, task.id)

        await manager.reject(task.id, "not today")

        assert await waiter is False
        assert (await manager.get_task(task.id)).status == TaskStatus.AWAITING_APPROVAL
        await manager.update_status(task.id, TaskStatus.CANCELLED)

    async def test_reject_without_a_waiter_cancels(self, manager):
        task = await running_task(manager)
        await manager.adapter.update_status(task.id, TaskStatus.AWAITING_APPROVAL)

        rejected = await manager.reject(task.id)

        assert rejected.status == TaskStatus.CANCELLED

    async def test_approve_requires_a_waiting_task(self, manager):
        task = await running_task(manager)
        with pytest.raises(InvalidTransitionError):
            await manager.approve(task.id)
        with pytest.raises(InvalidTransitionError):
            await manager.reject(task.id)


class TestCancel:
    async def test_pending_is_cancelled_immediately(self, manager):
        task = await manager.create_task(TaskType.QA, "QA")
        assert (await manager.cancel(task.id)).status == TaskStatus.CANCELLED

    async def test_running_gets_a_request(self, manager):
        task = await running_task(manager)

        cancelled = await manager.cancel(task.id)

        assert cancelled.status == TaskStatus.RUNNING
        assert manager.is_cancel_requested(task.id) is True
        await manager.update_status(task.id, TaskStatus.CANCELLED)
        assert manager.is_cancel_requested(task.id) is False

    async def test_waiting_task_is_released(self, manager):
        task = await running_task(manager)
        waiter = asyncio.create_task(manager.request_approval(task.id))
        await until_waiting(manager, task.id)

        await manager.cancel(task.id)

        assert await waiter is False
        assert manager.is_cancel_requested(task.id) is True

    async def test_terminal_cannot_be_cancelled(self, manager):
        task = await running_task(manager)
        await manager.update_status(task.id, TaskStatus.COMPLETED)

        with pytest.raises(InvalidTransitionError):
            await manager.cancel(task.id)


class FakeTaskService:
    """Just enough of the REST task service for the HTTP adapter."""

    def __init__(self):
        self.tasks: dict[str, dict] = {}
        self.events: dict[str, list[dict]] = {}
        self.requests: list[tuple[str, str]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        parts = request.url.path.strip("/").split("/")[3:]
        body = json.loads(request.content) if request.content else None

        if request.method == "POST" and not parts:
            self.tasks[body["id"]] = body
            self.events[body["id"]] = []
            return httpx.Response(201, json=body)

        if request.method == "GET" and not parts:
            statuses = request.url.params.get("status")
            tasks = list(self.tasks.values())
            if statuses:
                tasks = [t for t in tasks if t["status"] in statuses.split(",")]
            return httpx.Response(200, json=tasks)

        task = self.tasks.get(parts[0])
        if task is None:
            return httpx.Response(404, json={"error": "Task not found"})

        if request.method == "PATCH" and parts[1:] == ["status"]:
            task.update(body)
            return httpx.Response(200, json=task)
        if request.method == "POST" and parts[1:] == ["result"]:
            task["result"] = body
            return httpx.Response(200, json=task)
        if parts[1:] == ["events"]:
            if request.method == "POST":
                self.events[parts[0]].append(body)
                return httpx.Response(201)
            return httpx.Response(200, json=self.events[parts[0]])
        return httpx.Response(200, json=task)


class TestHttpPersistence:
    @pytest.fixture
    def service(self):
        return FakeTaskService()

    @pytest.fixture
    async def adapter(self, service):
        adapter = HttpPersistenceAdapter("http://tasks.test/", api_key="secret", transport=httpx.MockTransport(service))
        yield adapter
        await adapter.close()

    async def test_lifecycle_over_http(self, service, adapter):
        manager = TaskLifecycleManager(adapter)
        await manager.recover_interrupted()

        task = await running_task(manager)
        await manager.record_event(task.id, AgentEvent(AgentEventType.STARTED, task_id=task.id))
        await manager.update_status(task.id, TaskStatus.COMPLETED)
        await manager.record_result(task.id, TaskResult(success=True, summary="Split into 3 modules"))

        stored = await manager.get_task(task.id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.result.summary == "Split into 3 modules"
        assert [e.type for e in await manager.get_task_events(task.id)] == [AgentEventType.STARTED]
        assert ("PATCH", f"/api/agent/tasks/{task.id}/status") in service.requests

    async def test_missing_task_is_none(self, adapter):
        assert await adapter.get_task("missing") is None

    async def test_server_errors_propagate(self):
        def broken(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, json={"message": "maintenance"})

        adapter = HttpPersistenceAdapter("http://tasks.test", transport=httpx.MockTransport(broken))
        with pytest.raises(APIError) as exc_info:
            await adapter.get_recent_tasks()
        await adapter.close()

        assert exc_info.value.status_code == 503
        assert "maintenance" in exc_info.value.message
