"""
Task Lifecycle Manager
======================

Owns every status change of every task.

Responsibilities:
1. Validate transitions against the state machine before writing them
2. Stamp started_at / completed_at as tasks enter running / terminal states
3. Apply the retry policy when a run fails
4. Run the crash-recovery sweep before any new task is accepted
5. Hold the approval gate the agent loop waits on under supervised autonomy
6. Record cancellation requests the agent loop checks between iterations

Retry policy:
    failure is retryable and retry_count < max_retries
        -> pending, retry_count + 1
    otherwise
        -> failed, with the error recorded as the task result

Approval flow (in-process):
    loop calls request_approval()     running -> awaiting_approval, waits
    someone calls approve()           awaiting_approval -> approved -> running
                                      the waiting loop resumes
    or reject()                       the waiting loop gets False and stops;
                                      the orchestrator marks the task cancelled
"""

import asyncio
from typing import Any

from taskpilot.tasks.models import (
    AutonomyLevel,
    Task,
    TaskMetrics,
    TaskOptions,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskTarget,
    TaskType,
    can_transition,
    now_ms,
)
from taskpilot.tasks.persistence import TaskPersistenceAdapter
from taskpilot.agent.events import AgentEvent
from taskpilot.utils.config import AutonomyConfig
from taskpilot.utils.errors import (
    BudgetExceededError,
    CrashRecoveryError,
    InvalidTransitionError,
    TaskNotFoundError,
    TaskPilotError,
    ValidationError,
)
from taskpilot.utils.logger import Logger
from taskpilot.utils.retry import is_retryable

logger = Logger("TaskManager")

# Statuses during which agent events may be appended to a task's log
EVENT_STATUSES = frozenset({TaskStatus.RUNNING, TaskStatus.AWAITING_APPROVAL, TaskStatus.APPROVED})

# Statuses a live process owns; found at startup they mean a crash
INTERRUPTED_STATUSES = [TaskStatus.RUNNING, TaskStatus.AWAITING_APPROVAL]


def is_retryable_failure(error: BaseException | None) -> bool:
    """
    Whether a failed run is worth another attempt.

    Budget exhaustion and crash recovery are final; otherwise the transient
    classes the retry helper knows about (rate limits, 5xx, network) are
    retryable.
    """
    if error is None:
        return False
    if isinstance(error, (BudgetExceededError, CrashRecoveryError)):
        return False
    return is_retryable(error)


class RecoveryPendingError(TaskPilotError):
    """New work was submitted before the crash-recovery sweep ran."""

    code = "RECOVERY_PENDING"

    def __init__(self):
        super().__init__("Crash recovery must run before new tasks are accepted")


class TaskLifecycleManager:
    """
    Persists and transitions tasks through their state machine.

    Example:
        manager = TaskLifecycleManager(InMemoryPersistenceAdapter())
        await manager.recover_interrupted()

        task = await manager.create_task(TaskType.REFACTOR, "Split utils module")
        await manager.update_status(task.id, TaskStatus.QUEUED)
    """

    def __init__(
        self,
        adapter: TaskPersistenceAdapter,
        autonomy: AutonomyConfig | None = None,
        max_retries: int = 3
    ):
        """
        Initialize the manager.

        Args:
            adapter: Where tasks and events are stored
            autonomy: Default autonomy level per task type
            max_retries: Default retry budget for new tasks
        """
        self.adapter = adapter
        self.autonomy = autonomy or AutonomyConfig()
        self.max_retries = max_retries

        self._recovered = False
        self._lock = asyncio.Lock()
        self._approvals: dict[str, asyncio.Future] = {}
        self._cancel_requested: set[str] = set()

    # ==========================================================================
    # Creation and lookup
    # ==========================================================================

    async def create_task(
        self,
        type: TaskType | str,
        title: str,
        description: str = "",
        target: TaskTarget | None = None,
        options: TaskOptions | None = None,
        priority: TaskPriority | str = TaskPriority.NORMAL,
        autonomy_level: AutonomyLevel | str | None = None,
        parent_task_id: str | None = None,
        max_retries: int | None = None
    ) -> Task:
        """
        Create a task in the pending state.

        Raises:
            RecoveryPendingError: If recover_interrupted() has not run yet
            ValidationError: On an empty title or unknown enum value
            TaskNotFoundError: If parent_task_id does not exist
        """
        if not self._recovered:
            raise RecoveryPendingError()

        if not title or not title.strip():
            raise ValidationError("Task title is required", ["title: must not be empty"])

        try:
            task_type = TaskType(type)
            task_priority = TaskPriority(priority)
            level = AutonomyLevel(autonomy_level or self.autonomy.level_for(task_type.value))
        except ValueError as e:
            raise ValidationError(f"Invalid task input: {e}", [str(e)]) from e

        retries = self.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValidationError("max_retries must not be negative", ["max_retries: < 0"])

        async with self._lock:
            parent = None
            if parent_task_id:
                parent = await self._require(parent_task_id)

            task = Task(
                type=task_type,
                title=title.strip(),
                description=description,
                priority=task_priority,
                autonomy_level=level,
                target=target or TaskTarget(),
                options=options or TaskOptions(),
                max_retries=retries,
                parent_task_id=parent_task_id,
            )
            if parent is not None and task.created_at <= parent.created_at:
                task.created_at = parent.created_at + 1

            await self.adapter.create_task(task)

            if parent is not None:
                parent.child_task_ids.append(task.id)
                await self.adapter.update_status(
                    parent.id, parent.status, {"child_task_ids": parent.child_task_ids}
                )

        logger.info(f"Created {task.type.value} task {task.id}: {task.title}")
        return task

    async def _require(self, task_id: str) -> Task:
        task = await self.adapter.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def get_task(self, task_id: str) -> Task | None:
        return await self.adapter.get_task(task_id)

    async def get_task_events(self, task_id: str) -> list[AgentEvent]:
        return await self.adapter.get_task_events(task_id)

    async def get_recent_tasks(self, limit: int = 10) -> list[Task]:
        return await self.adapter.get_recent_tasks(limit)

    async def next_pending(self) -> Task | None:
        """The pending task to run next: highest priority, then oldest."""
        pending = await self.adapter.get_tasks_by_status([TaskStatus.PENDING])
        if not pending:
            return None
        return min(pending, key=lambda t: (-t.priority.rank, t.created_at))

    # ==========================================================================
    # Transitions
    # ==========================================================================

    async def _transition(
        self,
        task: Task,
        status: TaskStatus,
        changes: dict[str, Any] | None = None
    ) -> Task:
        if not can_transition(task.status, status):
            raise InvalidTransitionError(task.id, task.status.value, status.value)

        changes = dict(changes or {})
        if status == TaskStatus.RUNNING and task.started_at is None:
            changes["started_at"] = now_ms()
        if status.is_terminal:
            changes["completed_at"] = now_ms()

        await self.adapter.update_status(task.id, status, changes)

        logger.debug(f"Task {task.id}: {task.status.value} -> {status.value}")
        for key, value in changes.items():
            setattr(task, key, value)
        task.status = status

        if status.is_terminal:
            self._cancel_requested.discard(task.id)
        return task

    async def update_status(self, task_id: str, status: TaskStatus | str) -> Task:
        """
        Move a task to a new status.

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidTransitionError: If the state machine forbids the move
        """
        async with self._lock:
            task = await self._require(task_id)
            return await self._transition(task, TaskStatus(status))

    async def record_result(self, task_id: str, result: TaskResult) -> Task:
        """
        Attach the final result. Only terminal tasks take a result, once.

        Raises:
            InvalidTransitionError: If the task is not terminal or already has one
        """
        async with self._lock:
            task = await self._require(task_id)
            if not task.is_terminal:
                raise InvalidTransitionError(task_id, task.status.value, "result")
            if task.result is not None:
                raise InvalidTransitionError(task_id, task.status.value, "second result")

            await self.adapter.record_result(task_id, result)
            task.result = result
            return task

    async def record_event(self, task_id: str, event: AgentEvent) -> None:
        """
        Append an agent event. Only live (running / approval) tasks take events.

        Raises:
            InvalidTransitionError: If the task is not live
        """
        task = await self._require(task_id)
        if task.status not in EVENT_STATUSES:
            raise InvalidTransitionError(task_id, task.status.value, f"event:{event.type.value}")
        await self.adapter.record_event(task_id, event)

    async def complete_trivial(self, task_id: str, result: TaskResult) -> Task:
        """
        Fast path for work that needs no agent run.

        Still walks the state machine: a pending task is queued and started
        before it completes, so every step is recorded.
        """
        async with self._lock:
            task = await self._require(task_id)
            if task.status == TaskStatus.PENDING:
                await self._transition(task, TaskStatus.QUEUED)
            if task.status != TaskStatus.RUNNING:
                await self._transition(task, TaskStatus.RUNNING)
            await self._transition(task, TaskStatus.COMPLETED)
            await self.adapter.record_result(task_id, result)
            task.result = result
        return task

    # ==========================================================================
    # Failure handling
    # ==========================================================================

    async def fail(self, task_id: str, result: TaskResult) -> Task:
        """Terminal failure with a recorded result."""
        async with self._lock:
            task = await self._require(task_id)
            await self._transition(task, TaskStatus.FAILED)
            await self.adapter.record_result(task_id, result)
            task.result = result
        logger.warning(f"Task {task_id} failed: {result.error}")
        return task

    async def handle_failure(
        self,
        task_id: str,
        error: BaseException | None,
        result: TaskResult | None = None,
        retryable: bool | None = None
    ) -> Task:
        """
        Apply the retry policy to a failed run.

        Args:
            task_id: The running task that failed
            error: What went wrong
            result: Result to record if the failure is terminal
            retryable: Override the error classification

        Returns:
            The task, now pending (retry scheduled) or failed
        """
        message = str(error) if error is not None else "Unknown error"
        if retryable is None:
            retryable = is_retryable_failure(error)

        async with self._lock:
            task = await self._require(task_id)

            if retryable and task.retry_count < task.max_retries:
                attempt = task.retry_count + 1
                await self._transition(
                    task,
                    TaskStatus.PENDING,
                    {"retry_count": attempt, "started_at": None},
                )
                logger.warning(
                    f"Task {task_id} failed with a retryable error, "
                    f"retry {attempt}/{task.max_retries}: {message}"
                )
                return task

        final = result or TaskResult(
            success=False,
            summary=f"Agent failed: {message}",
            output=message,
            error=message,
            error_code=getattr(error, "code", None),
        )
        return await self.fail(task_id, final)

    async def recover_interrupted(self) -> list[str]:
        """
        Crash-recovery sweep. Must run once before tasks are accepted.

        Every task a previous process left running (or waiting for an
        approval that can no longer arrive) is marked failed with
        CrashRecoveryError.

        Returns:
            Ids of the tasks that were force-failed
        """
        recovered = []
        async with self._lock:
            for task in await self.adapter.get_tasks_by_status(INTERRUPTED_STATUSES):
                error = CrashRecoveryError(task.id)
                await self._transition(task, TaskStatus.FAILED)
                await self.adapter.record_result(task.id, TaskResult(
                    success=False,
                    summary=error.message,
                    output=error.message,
                    error=error.message,
                    error_code=error.code,
                    metrics=TaskMetrics(),
                ))
                recovered.append(task.id)

            self._recovered = True

        if recovered:
            logger.warning(f"Marked {len(recovered)} interrupted task(s) as failed")
        else:
            logger.debug("No interrupted tasks found")
        return recovered

    @property
    def recovered(self) -> bool:
        return self._recovered

    # ==========================================================================
    # Approval gate
    # ==========================================================================

    async def request_approval(self, task_id: str, details: dict[str, Any] | None = None) -> bool:
        """
        Pause a running task until a human approves or rejects.

        Args:
            task_id: The running task
            details: What is being approved (logged)

        Returns:
            True once approved (task is running again), False if rejected
        """
        async with self._lock:
            task = await self._require(task_id)
            await self._transition(task, TaskStatus.AWAITING_APPROVAL)
            future = asyncio.get_running_loop().create_future()
            self._approvals[task_id] = future

        logger.info(f"Task {task_id} awaiting approval: {details or {}}")
        try:
            return await future
        finally:
            self._approvals.pop(task_id, None)

    async def approve(self, task_id: str) -> Task:
        """
        Approve a waiting task: awaiting_approval -> approved -> running.

        Raises:
            InvalidTransitionError: If the task is not awaiting approval
        """
        async with self._lock:
            task = await self._require(task_id)
            await self._transition(task, TaskStatus.APPROVED)
            await self._transition(task, TaskStatus.RUNNING)

            future = self._approvals.get(task_id)
            if future is not None and not future.done():
                future.set_result(True)

        logger.info(f"Task {task_id} approved")
        return task

    async def reject(self, task_id: str, reason: str = "Rejected") -> Task:
        """
        Reject a waiting task.

        With a live waiter the agent loop stops and the orchestrator cancels
        the task; without one the task is cancelled right away.
        """
        async with self._lock:
            task = await self._require(task_id)
            if task.status != TaskStatus.AWAITING_APPROVAL:
                raise InvalidTransitionError(task_id, task.status.value, "rejected")

            future = self._approvals.get(task_id)
            if future is not None and not future.done():
                future.set_result(False)
            else:
                await self._transition(task, TaskStatus.CANCELLED)

        logger.info(f"Task {task_id} rejected: {reason}")
        return task

    def pending_approvals(self) -> list[str]:
        return [task_id for task_id, f in self._approvals.items() if not f.done()]

    # ==========================================================================
    # Cancellation
    # ==========================================================================

    async def cancel(self, task_id: str) -> Task:
        """
        Cancel a task.

        Pending and queued tasks are cancelled immediately. A running task
        gets a cancellation request that the agent loop honors at its next
        iteration boundary; a task waiting for approval is rejected.
        """
        async with self._lock:
            task = await self._require(task_id)

            if task.status in (TaskStatus.PENDING, TaskStatus.QUEUED, TaskStatus.APPROVED):
                return await self._transition(task, TaskStatus.CANCELLED)

            if task.status == TaskStatus.RUNNING:
                self._cancel_requested.add(task_id)
                logger.info(f"Cancellation requested for task {task_id}")
                return task

            if task.status == TaskStatus.AWAITING_APPROVAL:
                self._cancel_requested.add(task_id)
                future = self._approvals.get(task_id)
                if future is not None and not future.done():
                    future.set_result(False)
                    return task
                return await self._transition(task, TaskStatus.CANCELLED)

            raise InvalidTransitionError(task_id, task.status.value, TaskStatus.CANCELLED.value)

    def is_cancel_requested(self, task_id: str) -> bool:
        return task_id in self._cancel_requested
