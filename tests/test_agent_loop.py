"""Tests for the agent loop and its event bus."""

import asyncio
from pathlib import Path

from conftest import ScriptedBackend, call, final_turn, tool_turn
from taskpilot.agent.context import AgentContext
from taskpilot.agent.core import BUDGET_SUMMARY, AgentLoop
from taskpilot.agent.events import AgentEvent, AgentEventType, EventBus
from taskpilot.tasks.models import AutonomyLevel, Task, TaskType
from taskpilot.tools import ChangeKind, FileChange
from taskpilot.utils.errors import BudgetExceededError


def make_context(
    registry,
    autonomy: AutonomyLevel = AutonomyLevel.FULL,
    max_iterations: int = 5,
    **kwargs,
) -> AgentContext:
    task = Task(type=TaskType.REFACTOR, title="Tidy the parser", autonomy_level=autonomy)
    return AgentContext(
        task=task,
        tools=registry,
        working_directory=Path("."),
        max_iterations=max_iterations,
        system_prompt="You are a test agent.",
        initial_prompt="Task: Tidy the parser",
        **kwargs,
    )


class RecordingGate:
    def __init__(self, answer: bool = True):
        self.answer = answer
        self.batches: list[list[str]] = []

    async def __call__(self, calls) -> bool:
        self.batches.append([c.name for c in calls])
        return self.answer


class TestAgentLoop:
    async def test_plain_answer_completes(self, registry):
        backend = ScriptedBackend(final_turn("Refactored the parser"))

        result = await AgentLoop(backend).run(make_context(registry))

        assert result.success is True
        assert result.summary == "Refactored the parser"
        assert result.iterations == 1
        assert backend.calls[0]["system"] == "You are a test agent."
        assert backend.calls[0]["messages"] == [{"role": "user", "content": "Task: Tidy the parser"}]
        assert len(backend.calls[0]["tools"]) == 4

    async def test_tool_results_are_fed_back(self, registry, executed):
        backend = ScriptedBackend(tool_turn(call("c1", "echo", text="hi")), final_turn())

        result = await AgentLoop(backend).run(make_context(registry))

        assert result.success is True
        assert result.tools_used == ["echo"]
        assert executed == ["echo:hi"]
        second = backend.calls[1]["messages"]
        assert [m["role"] for m in second] == ["user", "assistant", "tool"]
        assert second[1]["tool_calls"][0]["id"] == "c1"
        assert second[2] == {"role": "tool", "tool_call_id": "c1", "content": "hi"}
        assert result.usage["total"] == 30

    async def test_budget_is_exact(self, registry, executed):
        backend = ScriptedBackend(tool_turn(call("c1", "echo", text="again")))

        result = await AgentLoop(backend).run(make_context(registry, max_iterations=3))

        assert len(backend.calls) == 3
        assert result.success is False
        assert result.summary == BUDGET_SUMMARY
        assert result.error == "Exceeded max iterations (3)"
        assert isinstance(result.exception, BudgetExceededError)
        assert len(executed) == 3

    async def test_unknown_tool_is_reported_to_the_model(self, registry):
        backend = ScriptedBackend(tool_turn(call("c1", "teleport")), final_turn())

        result = await AgentLoop(backend).run(make_context(registry))

        assert result.success is True
        tool_message = backend.calls[1]["messages"][-1]
        assert tool_message["content"] == 'Error: Unknown tool "teleport"'

    async def test_failing_tool_does_not_end_the_run(self, registry):
        backend = ScriptedBackend(tool_turn(call("c1", "boom")), final_turn())

        result = await AgentLoop(backend).run(make_context(registry))

        assert result.success is True
        assert result.records[0].result.success is False

    async def test_model_exception_fails_without_retry(self, registry):
        error = RuntimeError("model exploded")
        backend = ScriptedBackend(error)

        result = await AgentLoop(backend).run(make_context(registry))

        assert result.success is False
        assert result.summary == "Agent failed: model exploded"
        assert result.exception is error
        assert len(backend.calls) == 1

    async def test_cancellation_is_checked_between_iterations(self, registry, executed):
        backend = ScriptedBackend(tool_turn(call("c1", "echo", text="one")), final_turn())
        context = make_context(registry, is_cancelled=lambda: len(backend.calls) >= 1)

        result = await AgentLoop(backend).run(context)

        assert result.cancelled is True
        assert result.summary == "Task cancelled"
        assert len(backend.calls) == 1
        assert executed == ["echo:one"]

    async def test_changes_are_collected(self, registry):
        backend = ScriptedBackend(
            tool_turn(call("c1", "writeFile", path="a.py"), call("c2", "writeFile", path="b.py")),
            final_turn(),
        )

        result = await AgentLoop(backend).run(make_context(registry))

        assert result.changes == [FileChange("a.py", ChangeKind.CREATED), FileChange("b.py", ChangeKind.CREATED)]
        assert result.to_dict()["changes"] == [
            {"path": "a.py", "type": "created"},
            {"path": "b.py", "type": "created"},
        ]

    async def test_parallel_batch_keeps_call_order(self, registry):
        backend = ScriptedBackend(
            tool_turn(call("c1", "slow", seconds=0.05), call("c2", "echo", text="fast")),
            final_turn(),
        )

        result = await AgentLoop(backend).run(make_context(registry, parallel_tools=True))

        assert [r.call.id for r in result.records] == ["c1", "c2"]
        tool_messages = [m for m in backend.calls[1]["messages"] if m["role"] == "tool"]
        assert [m["tool_call_id"] for m in tool_messages] == ["c1", "c2"]


class TestApproval:
    async def test_supervised_gates_only_approval_tools(self, registry, executed):
        gate = RecordingGate(True)
        backend = ScriptedBackend(
            tool_turn(call("c1", "echo", text="look")),
            tool_turn(call("c2", "echo", text="x"), call("c3", "writeFile", path="a.py")),
            final_turn(),
        )

        result = await AgentLoop(backend).run(
            make_context(registry, AutonomyLevel.SUPERVISED, approval_gate=gate)
        )

        assert result.success is True
        assert gate.batches == [["writeFile"]]
        assert executed == ["echo:look", "echo:x", "write:a.py"]

    async def test_rejection_cancels_and_runs_nothing(self, registry, executed):
        gate = RecordingGate(False)
        backend = ScriptedBackend(
            tool_turn(call("c1", "echo", text="x"), call("c2", "writeFile", path="a.py")),
            final_turn(),
        )

        result = await AgentLoop(backend).run(
            make_context(registry, AutonomyLevel.SUPERVISED, approval_gate=gate)
        )

        assert result.success is False
        assert result.cancelled is True
        assert result.summary == "Action rejected by reviewer"
        assert executed == []
        assert len(backend.calls) == 1

    async def test_manual_gates_every_batch(self, registry):
        gate = RecordingGate(True)
        backend = ScriptedBackend(tool_turn(call("c1", "echo", text="x")), final_turn())

        await AgentLoop(backend).run(make_context(registry, AutonomyLevel.MANUAL, approval_gate=gate))

        assert gate.batches == [["echo"]]

    async def test_full_autonomy_never_asks(self, registry, executed):
        gate = RecordingGate(False)
        backend = ScriptedBackend(tool_turn(call("c1", "writeFile", path="a.py")), final_turn())

        result = await AgentLoop(backend).run(make_context(registry, AutonomyLevel.FULL, approval_gate=gate))

        assert result.success is True
        assert gate.batches == []
        assert executed == ["write:a.py"]

    async def test_supervised_without_approver_blocks_gated_calls(self, registry, executed):
        backend = ScriptedBackend(
            tool_turn(call("c1", "echo", text="x"), call("c2", "writeFile", path="a.py")),
            final_turn(),
        )

        result = await AgentLoop(backend).run(make_context(registry, AutonomyLevel.SUPERVISED))

        assert result.success is True
        assert executed == ["echo:x"]
        blocked = result.records[1].result
        assert blocked.success is False
        assert blocked.error == "writeFile requires approval and no approver is available"
        assert result.changes == []


class TestEvents:
    async def test_loop_publishes_lifecycle_events(self, registry):
        bus = EventBus()
        seen: list[AgentEvent] = []
        bus.subscribe(seen.append)
        backend = ScriptedBackend(tool_turn(call("c1", "echo", text="hi")), final_turn())

        context = make_context(registry)
        await AgentLoop(backend, event_bus=bus).run(context)
        await bus.drain()

        assert [e.type for e in seen] == [
            AgentEventType.STARTED,
            AgentEventType.ITERATION_START,
            AgentEventType.TOOL_CALL,
            AgentEventType.TOOL_RESULT,
            AgentEventType.ITERATION_START,
            AgentEventType.THINKING,
            AgentEventType.COMPLETED,
        ]
        assert all(e.task_id == context.task.id for e in seen)
        assert seen[3].data["tool_result"]["output"] == "hi"
        await bus.aclose()

    async def test_approval_events(self, registry):
        bus = EventBus()
        seen: list[AgentEventType] = []
        bus.subscribe(lambda e: seen.append(e.type))
        backend = ScriptedBackend(tool_turn(call("c1", "writeFile", path="a.py")), final_turn())

        await AgentLoop(backend, event_bus=bus).run(
            make_context(registry, AutonomyLevel.SUPERVISED, approval_gate=RecordingGate(False))
        )
        await bus.drain()

        assert seen[-2:] == [AgentEventType.AWAITING_APPROVAL, AgentEventType.REJECTED]
        await bus.aclose()

    async def test_failing_observer_does_not_stop_delivery(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise ValueError("observer bug")

        bus.subscribe(broken)
        bus.subscribe(seen.append)

        bus.publish(AgentEvent(AgentEventType.STARTED, task_id="t1"))
        bus.publish(AgentEvent(AgentEventType.COMPLETED, task_id="t1"))
        await bus.drain()

        assert [e.type for e in seen] == [AgentEventType.STARTED, AgentEventType.COMPLETED]
        await bus.aclose()

    async def test_slow_observer_does_not_block_publish(self):
        bus = EventBus()
        release = asyncio.Event()
        delivered = []

        async def slow(event):
            await release.wait()
            delivered.append(event)

        bus.subscribe(slow)
        for _ in range(5):
            bus.publish(AgentEvent(AgentEventType.THINKING))

        assert delivered == []
        release.set()
        await bus.drain()
        assert len(delivered) == 5
        await bus.aclose()

    async def test_unsubscribe_and_close(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)

        unsubscribe()
        bus.publish(AgentEvent(AgentEventType.STARTED))
        await bus.aclose()
        bus.publish(AgentEvent(AgentEventType.COMPLETED))

        assert seen == []
        assert len(bus) == 0

    def test_event_round_trip(self):
        event = AgentEvent(AgentEventType.TOOL_CALL, task_id="t1", data={"tool_name": "echo"}, timestamp=5)
        assert AgentEvent.from_dict(event.to_dict()) == event
