"""Shared fixtures: scripted model backend, small tool registries, task manager."""

import asyncio
from typing import Any

import pytest

from taskpilot.agent.backend import ModelResponse, StopReason
from taskpilot.agent.tools_executor import ToolCall
from taskpilot.tasks.manager import TaskLifecycleManager
from taskpilot.tasks.persistence import InMemoryPersistenceAdapter
from taskpilot.tools import ChangeKind, FileChange, Tool, ToolCategory, ToolRegistry, ToolResult
from taskpilot.utils.config import reset_config


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch, tmp_path):
    """Every test loads its own configuration, rooted in a temp directory."""
    monkeypatch.setenv("TASKPILOT_WORKDIR", str(tmp_path))
    monkeypatch.delenv("ENABLE_AUTO_ROUTING", raising=False)
    monkeypatch.delenv("ROUTING_CONFIDENCE_THRESHOLD", raising=False)
    monkeypatch.delenv("ROUTING_MODE", raising=False)
    reset_config()
    yield
    reset_config()


def call(id: str, name: str, **arguments: Any) -> ToolCall:
    return ToolCall(id=id, name=name, arguments=arguments)


def tool_turn(*calls: ToolCall, text: str = "") -> ModelResponse:
    return ModelResponse(
        text_blocks=[text] if text else [],
        tool_calls=list(calls),
        stop_reason=StopReason.TOOL_USE,
        usage={"input": 10, "output": 5, "total": 15},
    )


def final_turn(text: str = "All done") -> ModelResponse:
    return ModelResponse(
        text_blocks=[text],
        stop_reason=StopReason.END_TURN,
        usage={"input": 10, "output": 5, "total": 15},
    )


class ScriptedBackend:
    """
    Model backend that replays a fixed list of responses.

    Entries may be ModelResponse objects or exceptions (raised on that turn).
    When the script runs out, the last entry is repeated.
    """

    def __init__(self, *script):
        self.script = list(script)
        self.calls: list[dict[str, Any]] = []

    async def complete(self, system: str, messages: list[dict], tools: list[dict]) -> ModelResponse:
        self.calls.append({"system": system, "messages": list(messages), "tools": list(tools)})
        index = min(len(self.calls) - 1, len(self.script) - 1)
        entry = self.script[index]
        if isinstance(entry, BaseException):
            raise entry
        return entry


def make_registry(executed: list[str] | None = None) -> ToolRegistry:
    """
    A registry of small tools:

    echo (returns its text), boom (raises), write (reports a created file,
    needs approval), slow (sleeps), plus a category sample.
    """
    executed = executed if executed is not None else []
    registry = ToolRegistry()

    async def echo(params: dict) -> ToolResult:
        executed.append(f"echo:{params['text']}")
        return ToolResult(success=True, output=params["text"])

    async def boom(params: dict) -> ToolResult:
        executed.append("boom")
        raise RuntimeError("kaboom")

    async def write(params: dict) -> ToolResult:
        executed.append(f"write:{params['path']}")
        return ToolResult(
            success=True,
            output=f"wrote {params['path']}",
            change=FileChange(params["path"], ChangeKind.CREATED),
        )

    async def slow(params: dict) -> ToolResult:
        await asyncio.sleep(params.get("seconds", 0.05))
        executed.append("slow")
        return ToolResult(success=True, output="slept")

    text_schema = {
        "type": "object",
        "properties": {"text": {"type": "string"}},
        "required": ["text"],
    }
    registry.register(Tool("echo", "Echo text back", text_schema, echo))
    registry.register(Tool("boom", "Always fails", {"type": "object", "properties": {}}, boom))
    registry.register(Tool(
        "writeFile",
        "Pretend to write a file",
        {"type": "object", "properties": {"path": {"type": "string"}}, "required": ["path"]},
        write,
        category=ToolCategory.FILE,
        requires_approval=True,
    ))
    registry.register(Tool(
        "slow",
        "Sleeps for a while",
        {"type": "object", "properties": {"seconds": {"type": "number"}}},
        slow,
    ))
    return registry


@pytest.fixture
def executed() -> list[str]:
    return []


@pytest.fixture
def registry(executed) -> ToolRegistry:
    return make_registry(executed)


@pytest.fixture
async def manager() -> TaskLifecycleManager:
    manager = TaskLifecycleManager(InMemoryPersistenceAdapter())
    await manager.recover_interrupted()
    return manager


async def until_waiting(manager: TaskLifecycleManager, task_id: str) -> None:
    """Yield to the event loop until task_id is blocked on the approval gate."""
    for _ in range(200):
        if task_id in manager.pending_approvals():
            return
        await asyncio.sleep(0)
    raise AssertionError(f"{task_id} never started waiting for approval")
