"""
Agent Loop
==========

Drives the model through iterative tool use until the task is done.

Agent Loop:
    Initial prompt
         │
         ▼
    ┌─► Cancelled? ── yes ──► cancelled result
    │    │
    │    ▼
    │   Model request (system + conversation + tools)
    │    │
    │    ▼
    │   ┌─── Has tool calls? ───┐
    │   │                       │
    │   Yes                     No ── end_turn ──► completed result
    │   │
    │   ▼
    │   Needs approval? ── rejected ──► cancelled result
    │   │
    │   ▼
    │   Execute tools (sequential or bounded parallel)
    │   │
    │   ▼
    │   Append assistant message + tool results
    │   │
    └───┘  (at most max_iterations times, then a budget failure)

The conversation is an explicit list that only grows; a run that pauses
for approval resumes with the same list, so nothing already executed is
sent to the tools again.

Events (started, iteration_start, tool_call, tool_result, thinking,
awaiting_approval, approved, rejected, completed, failed) go to the
EventBus and never block the loop.

The loop never retries: an exception inside an iteration ends the run as
a failed AgentResult carrying the exception. Retrying is the task
manager's call.
"""

from dataclasses import dataclass, field
from typing import Any

from taskpilot.agent.backend import ModelBackend, StopReason
from taskpilot.agent.context import AgentContext
from taskpilot.agent.events import AgentEvent, AgentEventType, EventBus
from taskpilot.agent.tools_executor import ToolCall, ToolExecutionRecord, ToolExecutor, utcnow
from taskpilot.tools import FileChange, ToolResult
from taskpilot.utils.errors import BudgetExceededError
from taskpilot.utils.logger import Logger

logger = Logger("Agent")

DEFAULT_SUMMARY = "Task completed"
BUDGET_SUMMARY = "Maximum iterations reached without completion"


@dataclass
class AgentResult:
    """
    Outcome of one agent run.

    Attributes:
        success: True when the model finished on its own
        summary: Human-readable summary
        changes: File change manifest
        tools_used: Names of the tools called, in order
        iterations: Model calls made
        error: Raw error string on failure
        cancelled: True when stopped by cancellation or rejection
        records: Every tool execution, in order
        messages: The final conversation
        usage: Summed token counts
        exception: The exception that ended the run, if any
    """
    success: bool
    summary: str
    changes: list[FileChange] = field(default_factory=list)
    tools_used: list[str] = field(default_factory=list)
    iterations: int = 0
    error: str | None = None
    cancelled: bool = False
    records: list[ToolExecutionRecord] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)
    exception: BaseException | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "summary": self.summary,
            "changes": [c.to_dict() for c in self.changes],
            "tools_used": list(self.tools_used),
            "iterations": self.iterations,
            "error": self.error,
            "cancelled": self.cancelled,
        }


class _Run:
    """Mutable state of one run."""

    def __init__(self, context: AgentContext):
        self.context = context
        self.messages: list[dict[str, Any]] = [{"role": "user", "content": context.initial_prompt}]
        self.records: list[ToolExecutionRecord] = []
        self.changes: list[FileChange] = []
        self.iterations = 0
        self.usage = {"input": 0, "output": 0, "total": 0}

    def result(self, success: bool, summary: str, **kwargs) -> AgentResult:
        return AgentResult(
            success=success,
            summary=summary,
            changes=list(self.changes),
            tools_used=[r.call.name for r in self.records],
            iterations=self.iterations,
            records=list(self.records),
            messages=list(self.messages),
            usage=dict(self.usage),
            **kwargs,
        )


class AgentLoop:
    """
    The agent loop controller.

    Example:
        loop = AgentLoop(backend, event_bus=bus)
        result = await loop.run(context)

        if result.success:
            print(result.summary)
    """

    def __init__(
        self,
        backend: ModelBackend,
        event_bus: EventBus | None = None,
        tool_timeout: float | None = 120.0
    ):
        """
        Initialize the loop.

        Args:
            backend: Model backend to talk to
            event_bus: Where lifecycle events go (a private bus if omitted)
            tool_timeout: Per-call tool timeout in seconds
        """
        self.backend = backend
        self.events = event_bus or EventBus()
        self.tool_timeout = tool_timeout

    def _emit(self, context: AgentContext, type: AgentEventType, **data: Any) -> None:
        self.events.publish(AgentEvent(type=type, task_id=context.task.id, data=data))

    async def run(self, context: AgentContext) -> AgentResult:
        """
        Run the loop for one task.

        Args:
            context: Task, tools, prompts and budget

        Returns:
            AgentResult; never raises for model or tool failures
        """
        run = _Run(context)
        executor = ToolExecutor(context.tools, tool_timeout=self.tool_timeout)
        functions = context.tools.get_openai_functions()

        logger.info(
            f"Starting {context.task.type.value} task {context.task.id} "
            f"(max {context.max_iterations} iterations, {len(context.tools)} tools)"
        )
        self._emit(context, AgentEventType.STARTED, title=context.task.title, max_iterations=context.max_iterations)

        try:
            while run.iterations < context.max_iterations:
                if context.is_cancelled():
                    return self._cancelled(run, "Task cancelled")

                run.iterations += 1
                self._emit(context, AgentEventType.ITERATION_START, iteration=run.iterations)
                logger.debug(f"Iteration {run.iterations}/{context.max_iterations}")

                response = await self.backend.complete(context.system_prompt, list(run.messages), functions)
                for key, value in response.usage.items():
                    run.usage[key] = run.usage.get(key, 0) + value

                for text in response.text_blocks:
                    self._emit(context, AgentEventType.THINKING, message=text)

                run.messages.append(response.to_assistant_message())

                if not response.tool_calls:
                    if response.stop_reason == StopReason.END_TURN:
                        summary = response.text_blocks[0] if response.text_blocks else DEFAULT_SUMMARY
                        return self._completed(run, summary)
                    continue

                if not await self._approve(context, executor, response.tool_calls):
                    return self._cancelled(run, "Action rejected by reviewer", rejected=True)

                await self._execute(run, executor, response.tool_calls)

            error = BudgetExceededError(context.max_iterations)
            logger.warning(f"Task {context.task.id}: {error.message}")
            result = run.result(False, BUDGET_SUMMARY, error=error.message, exception=error)
            self._emit(context, AgentEventType.FAILED, result=result.to_dict(), error=error.message)
            return result

        except Exception as e:
            logger.error(f"Task {context.task.id} failed in iteration {run.iterations}", e)
            message = str(e) or type(e).__name__
            result = run.result(False, f"Agent failed: {message}", error=message, exception=e)
            self._emit(context, AgentEventType.FAILED, result=result.to_dict(), error=message)
            return result

    # ==========================================================================
    # Steps
    # ==========================================================================

    async def _approve(
        self,
        context: AgentContext,
        executor: ToolExecutor,
        calls: list[ToolCall]
    ) -> bool:
        """Consult the approval gate when the batch needs it. False = rejected."""
        if not context.supervised:
            return True

        gated = calls if context.needs_approval_for_all else executor.requires_approval(calls)
        if not gated or context.approval_gate is None:
            return True

        names = [c.name for c in gated]
        self._emit(
            context,
            AgentEventType.AWAITING_APPROVAL,
            tools=names,
            calls=[{"id": c.id, "name": c.name, "arguments": c.arguments} for c in gated],
        )
        logger.info(f"Waiting for approval of {', '.join(names)}")

        approved = await context.approval_gate(gated)

        self._emit(context, AgentEventType.APPROVED if approved else AgentEventType.REJECTED, tools=names)
        return approved

    async def _execute(self, run: _Run, executor: ToolExecutor, calls: list[ToolCall]) -> None:
        context = run.context
        blocked = self._blocked_calls(context, executor, calls)

        for call in calls:
            self._emit(context, AgentEventType.TOOL_CALL, tool_name=call.name, tool_input=call.arguments, id=call.id)

        runnable = [c for c in calls if c.id not in blocked]
        if context.parallel_tools and len(runnable) > 1:
            executed = await executor.execute_parallel(runnable, context.max_parallel_tools)
        else:
            executed = await executor.execute_all(runnable)

        by_id = {r.call.id: r for r in executed}
        for call in calls:
            record = by_id.get(call.id) or blocked[call.id]
            run.records.append(record)
            run.messages.append(record.to_openai_message())

            result = record.result
            if result.success and result.change is not None:
                run.changes.append(result.change)

            self._emit(
                context,
                AgentEventType.TOOL_RESULT,
                tool_name=call.name,
                id=call.id,
                tool_result=result.to_dict(),
                duration_ms=record.duration_ms,
            )

    def _blocked_calls(
        self,
        context: AgentContext,
        executor: ToolExecutor,
        calls: list[ToolCall]
    ) -> dict[str, ToolExecutionRecord]:
        """
        Approval-requiring calls in a supervised run with no approver.

        They are answered with an error result instead of being executed.
        """
        if not context.supervised or context.approval_gate is not None:
            return {}

        blocked = {}
        for call in executor.requires_approval(calls):
            record = ToolExecutionRecord(
                call=call,
                result=ToolResult.fail(f"{call.name} requires approval and no approver is available"),
                started_at=utcnow(),
                completed_at=utcnow(),
            )
            blocked[call.id] = record
        return blocked

    # ==========================================================================
    # Terminal results
    # ==========================================================================

    def _completed(self, run: _Run, summary: str) -> AgentResult:
        result = run.result(True, summary)
        logger.info(
            f"Task {run.context.task.id} completed in {run.iterations} iteration(s), "
            f"{len(result.tools_used)} tool call(s), {len(result.changes)} change(s)"
        )
        self._emit(run.context, AgentEventType.COMPLETED, result=result.to_dict())
        return result

    def _cancelled(self, run: _Run, reason: str, rejected: bool = False) -> AgentResult:
        result = run.result(False, reason, error=reason, cancelled=True)
        logger.info(f"Task {run.context.task.id}: {reason}")
        if not rejected:
            self._emit(run.context, AgentEventType.FAILED, result=result.to_dict(), error=reason, cancelled=True)
        return result
