"""
Orchestrator
============

Wires the pieces together and drives tasks through an agent run.

Task Run:
    pending ──► queued ──► running
                              │
                              ▼
                          AgentLoop.run()
                   (approval gate = manager.request_approval,
                    cancellation  = manager.is_cancel_requested)
                              │
                              ▼
                    drain agent events into persistence
                              │
             ┌────────────────┼─────────────────┐
             ▼                ▼                 ▼
         completed        cancelled      handle_failure()
                                        (pending again or failed)

Every agent event goes through the EventBus to the manager, which
stores it with the task. The bus is drained before any terminal
transition, because a terminal task takes no more events.
"""

import time
from pathlib import Path

from taskpilot.agent.backend import ModelBackend, OpenAIBackend
from taskpilot.agent.context import AgentContext, PromptBuilder, get_profile
from taskpilot.agent.core import AgentLoop, AgentResult
from taskpilot.agent.events import AgentEvent, EventBus
from taskpilot.tasks.manager import TaskLifecycleManager
from taskpilot.tasks.models import Task, TaskMetrics, TaskResult, TaskStatus, TaskType
from taskpilot.tasks.persistence import create_persistence_adapter
from taskpilot.tools import ToolRegistry, create_tool_registry
from taskpilot.utils.config import AgentConfig, Config, get_config
from taskpilot.utils.errors import InvalidTransitionError, TaskNotFoundError
from taskpilot.utils.logger import Logger
from taskpilot.utils.rate_limit import RateLimitStore

logger = Logger("Orchestrator")


class Orchestrator:
    """
    Runs tasks end to end.

    Example:
        orchestrator = Orchestrator.from_config()
        await orchestrator.start()

        task = await orchestrator.submit(TaskType.QA, "Check the utils package")
        task = await orchestrator.run_task(task.id)

        await orchestrator.close()
    """

    def __init__(
        self,
        manager: TaskLifecycleManager,
        backend: ModelBackend,
        registry: ToolRegistry,
        agent_config: AgentConfig | None = None,
        event_bus: EventBus | None = None,
        rate_limiter: RateLimitStore | None = None
    ):
        """
        Initialize the orchestrator.

        Args:
            manager: Task lifecycle manager
            backend: Model backend for the agent loop
            registry: Every tool available; each profile picks its subset
            agent_config: Iteration budget, fan-out, working directory
            event_bus: Where agent events go (a new bus if omitted)
            rate_limiter: Started and closed with the orchestrator
        """
        self.manager = manager
        self.backend = backend
        self.registry = registry
        self.agent_config = agent_config or get_config().agent
        self.events = event_bus or EventBus()
        self.rate_limiter = rate_limiter
        self.prompts = PromptBuilder()
        self.loop = AgentLoop(backend, event_bus=self.events, tool_timeout=self.agent_config.tool_timeout)

        self._unsubscribe = None

    @classmethod
    def from_config(cls, config: Config | None = None, backend: ModelBackend | None = None) -> "Orchestrator":
        """Build every component from the configuration."""
        config = config or get_config()

        rate_limiter = RateLimitStore.from_config(config.rate_limit)
        manager = TaskLifecycleManager(
            create_persistence_adapter(config.persistence),
            autonomy=config.autonomy,
            max_retries=config.agent.max_retries,
        )
        backend = backend or OpenAIBackend(config.model, rate_limiter=rate_limiter)

        return cls(
            manager=manager,
            backend=backend,
            registry=create_tool_registry(config.agent.working_directory),
            agent_config=config.agent,
            rate_limiter=rate_limiter,
        )

    @property
    def working_directory(self) -> Path:
        return self.agent_config.working_directory

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def start(self) -> list[str]:
        """
        Run the crash-recovery sweep and start listening for agent events.

        Returns:
            Ids of tasks force-failed by the sweep
        """
        recovered = await self.manager.recover_interrupted()
        if self._unsubscribe is None:
            self._unsubscribe = self.events.subscribe(self._record_event)
        if self.rate_limiter is not None:
            self.rate_limiter.start()
        logger.info(f"Orchestrator ready ({len(self.registry)} tools, {self.working_directory})")
        return recovered

    async def close(self) -> None:
        await self.events.aclose()
        self._unsubscribe = None
        if self.rate_limiter is not None:
            self.rate_limiter.close()
        await self.manager.adapter.close()

    async def _record_event(self, event: AgentEvent) -> None:
        try:
            await self.manager.record_event(event.task_id, event)
        except (InvalidTransitionError, TaskNotFoundError) as e:
            logger.warning(f"Dropped {event.type.value} event: {e}")

    # ==========================================================================
    # Tasks
    # ==========================================================================

    async def submit(self, type: TaskType | str, title: str, **kwargs) -> Task:
        """Create a pending task (see TaskLifecycleManager.create_task)."""
        return await self.manager.create_task(type, title, **kwargs)

    def build_context(self, task: Task) -> AgentContext:
        """Tools, prompts and gates for one run of a task."""
        profile = get_profile(task.type)
        tools = profile.select_tools(self.registry, enable_commit=task.options.enable_commit)

        return AgentContext(
            task=task,
            tools=tools,
            working_directory=self.working_directory,
            max_iterations=self.agent_config.max_iterations,
            system_prompt=self.prompts.build_system_prompt(profile, task, tools, self.working_directory),
            initial_prompt=self.prompts.build_initial_prompt(task),
            parallel_tools=self.agent_config.parallel_tools,
            max_parallel_tools=self.agent_config.max_parallel_tools,
            approval_gate=lambda calls: self.manager.request_approval(
                task.id, {"tools": [c.name for c in calls]}
            ),
            is_cancelled=lambda: self.manager.is_cancel_requested(task.id),
        )

    async def run_task(self, task_id: str) -> Task:
        """
        Run one pending (or queued) task through the agent loop.

        Returns:
            The task after the run: completed, cancelled, failed, or
            pending again when a retry was scheduled

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidTransitionError: If the task is not pending or queued
        """
        task = await self.manager.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        if task.status == TaskStatus.PENDING:
            await self.manager.update_status(task_id, TaskStatus.QUEUED)
        task = await self.manager.update_status(task_id, TaskStatus.RUNNING)

        started = time.perf_counter()
        result = await self.loop.run(self.build_context(task))
        duration_ms = int((time.perf_counter() - started) * 1000)

        await self.events.drain()
        task_result = self._task_result(result, duration_ms)

        current = await self.manager.get_task(task_id)
        if current is not None and current.is_terminal:
            logger.warning(f"Task {task_id} ended as {current.status.value} during the run")
            return current

        if result.success:
            await self.manager.update_status(task_id, TaskStatus.COMPLETED)
            await self.manager.record_result(task_id, task_result)
        elif result.cancelled:
            await self.manager.update_status(task_id, TaskStatus.CANCELLED)
            await self.manager.record_result(task_id, task_result)
        else:
            await self.manager.handle_failure(task_id, result.exception, task_result)

        return await self.manager.get_task(task_id)

    async def run_queue(self, limit: int | None = None) -> list[Task]:
        """
        Run pending tasks (priority first, then oldest) until none are left.

        Retried tasks go back to pending and are picked up again.

        Args:
            limit: Stop after this many runs

        Returns:
            The task after each run, in run order
        """
        runs = []
        while limit is None or len(runs) < limit:
            task = await self.manager.next_pending()
            if task is None:
                break
            runs.append(await self.run_task(task.id))
        return runs

    @staticmethod
    def _task_result(result: AgentResult, duration_ms: int) -> TaskResult:
        return TaskResult(
            success=result.success,
            summary=result.summary,
            output=result.summary,
            error=result.error,
            error_code=getattr(result.exception, "code", None),
            metrics=TaskMetrics(
                duration_ms=duration_ms,
                iterations_used=result.iterations,
                tool_call_count=len(result.tools_used),
                files_modified=len({c.path for c in result.changes}),
                tokens_used=result.usage.get("total"),
            ),
            changes=[c.to_dict() for c in result.changes],
        )
