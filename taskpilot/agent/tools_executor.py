"""
Tool Executor
=============

Handles the execution of tools called by the model.

The executor:
1. Parses tool calls from model responses
2. Validates arguments against each tool's schema
3. Executes tools (sequentially or with bounded parallelism)
4. Formats results for the model

Every call produces exactly one ToolExecutionRecord, even when the tool is
unknown, the arguments are invalid, the handler raises or times out. Those
failures are encoded as ToolResult(success=False) so the loop can hand
them back to the model and continue; execute_one() never raises.

Tool Execution Loop:
    1. Model responds with tool calls
    2. Executor runs each call and records start/end timestamps
    3. Records become tool messages in the conversation
    4. Model continues with the results (may call more tools)
    5. Repeat until the model produces a final answer
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from taskpilot.tools import ToolRegistry, ToolResult
from taskpilot.tools.schema import validate_arguments
from taskpilot.utils.errors import (
    TaskPilotError,
    ToolExecutionError,
    UnknownToolError,
    ValidationError,
)
from taskpilot.utils.logger import Logger

logger = Logger("ToolExecutor")


@dataclass
class ToolCall:
    """
    A parsed tool call from the model.

    Attributes:
        id: The tool call ID (for matching results)
        name: The tool name
        arguments: Parsed arguments dict
        parse_error: Set when the raw arguments were not valid JSON
    """
    id: str
    name: str
    arguments: dict[str, Any]
    parse_error: str | None = None

    def to_openai_tool_call(self) -> dict:
        """Render as an entry of an assistant message's tool_calls."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments)},
        }


@dataclass(frozen=True)
class ToolExecutionRecord:
    """
    Immutable audit entry pairing a call with its result.

    Attributes:
        call: The tool call as requested by the model
        result: What the tool returned (or the encoded failure)
        started_at: When execution began
        completed_at: When execution finished
        duration_ms: Wall time spent in the handler
    """
    call: ToolCall
    result: ToolResult
    started_at: datetime
    completed_at: datetime
    duration_ms: int = field(default=0)

    def to_openai_message(self) -> dict:
        """
        Format as a tool result message for OpenAI.

        Returns:
            Message dict in OpenAI's expected format
        """
        return {
            "role": "tool",
            "tool_call_id": self.call.id,
            "content": self.result.to_message(),
        }


def parse_tool_calls(raw_calls: list[Any]) -> list[ToolCall]:
    """
    Parse tool calls from an OpenAI-style message.

    Accepts SDK objects (tc.function.name) or plain dicts
    ({"function": {"name": ...}}). Malformed JSON arguments become an
    empty argument dict plus a parse error that surfaces as a validation
    failure when the call is executed.

    Args:
        raw_calls: message.tool_calls from the model response

    Returns:
        List of parsed ToolCall objects
    """
    tool_calls = []

    for tc in raw_calls or []:
        if isinstance(tc, dict):
            call_id = tc.get("id", "")
            function = tc.get("function") or {}
            name = function.get("name", "")
            raw_arguments = function.get("arguments") or "{}"
        else:
            call_id = tc.id
            name = tc.function.name
            raw_arguments = tc.function.arguments or "{}"

        if isinstance(raw_arguments, dict):
            tool_calls.append(ToolCall(id=call_id, name=name, arguments=raw_arguments))
            continue

        try:
            arguments = json.loads(raw_arguments)
            if not isinstance(arguments, dict):
                raise ValueError("tool arguments must be a JSON object")
            tool_calls.append(ToolCall(id=call_id, name=name, arguments=arguments))

        except ValueError as e:
            logger.warning(f"Failed to parse arguments for {name}: {e}")
            tool_calls.append(ToolCall(
                id=call_id,
                name=name,
                arguments={},
                parse_error=f"Invalid JSON arguments: {e}"
            ))

    logger.debug(f"Parsed {len(tool_calls)} tool calls")
    return tool_calls


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolExecutor:
    """
    Executes tools called by the model.

    Example:
        executor = ToolExecutor(registry, tool_timeout=60)

        records = await executor.execute_parallel(calls, max_parallel=4)

        for record in records:
            messages.append(record.to_openai_message())
    """

    def __init__(self, registry: ToolRegistry, tool_timeout: float | None = 120.0):
        """
        Initialize the tool executor.

        Args:
            registry: Where tools are looked up
            tool_timeout: Seconds before a handler is abandoned (None = no limit).
                Tools with manages_timeout set enforce their own limit instead.
        """
        self.registry = registry
        self.tool_timeout = tool_timeout

    async def _run(self, call: ToolCall) -> ToolResult:
        tool = self.registry.get(call.name)
        if tool is None:
            error = UnknownToolError(call.name)
            return ToolResult.fail(error.message, code=error.code)

        if call.parse_error:
            error = ValidationError(call.parse_error, [call.parse_error])
            return ToolResult.fail(error.message, code=error.code)

        problems = validate_arguments(tool.input_schema, call.arguments)
        if not problems and tool.validate:
            problems = tool.validate(call.arguments)
        if problems:
            error = ValidationError(
                f"Invalid arguments for {call.name}: {'; '.join(problems)}",
                problems
            )
            return ToolResult.fail(error.message, code=error.code, errors=problems)

        try:
            if self.tool_timeout and not tool.manages_timeout:
                return await asyncio.wait_for(tool.execute(call.arguments), timeout=self.tool_timeout)
            return await tool.execute(call.arguments)

        except asyncio.TimeoutError:
            error = ToolExecutionError(call.name, f"Tool {call.name} timed out after {self.tool_timeout:g}s")
            return ToolResult.fail(error.message, code=error.code)
        except TaskPilotError as e:
            return ToolResult.fail(e.message, code=e.code)
        except Exception as e:
            logger.error(f"Tool {call.name} raised", e)
            error = ToolExecutionError(call.name, f"{type(e).__name__}: {e}")
            return ToolResult.fail(error.message, code=error.code)

    async def execute_one(self, call: ToolCall) -> ToolExecutionRecord:
        """
        Execute a single tool call.

        Args:
            call: The tool call to execute

        Returns:
            ToolExecutionRecord with the execution result
        """
        logger.info(f"Executing tool: {call.name}")

        started_at = utcnow()
        started = time.perf_counter()
        result = await self._run(call)
        duration_ms = int((time.perf_counter() - started) * 1000)

        if result.success:
            logger.debug(f"Tool {call.name} succeeded in {duration_ms}ms")
        else:
            logger.warning(f"Tool {call.name} failed: {result.error}")

        return ToolExecutionRecord(
            call=call,
            result=result,
            started_at=started_at,
            completed_at=utcnow(),
            duration_ms=duration_ms,
        )

    async def execute_all(self, calls: list[ToolCall]) -> list[ToolExecutionRecord]:
        """
        Execute tool calls one after another.

        Args:
            calls: List of tool calls to execute

        Returns:
            One record per call, in the same order
        """
        records = []
        for call in calls:
            records.append(await self.execute_one(call))
        return records

    async def execute_parallel(
        self,
        calls: list[ToolCall],
        max_parallel: int = 4
    ) -> list[ToolExecutionRecord]:
        """
        Execute tool calls concurrently with bounded fan-out.

        All calls run to completion before this returns; one call failing
        does not cancel its siblings.

        Args:
            calls: List of tool calls to execute
            max_parallel: Maximum calls in flight at once

        Returns:
            One record per call, in input order
        """
        semaphore = asyncio.Semaphore(max(1, max_parallel))

        async def bounded(call: ToolCall) -> ToolExecutionRecord:
            async with semaphore:
                return await self.execute_one(call)

        return list(await asyncio.gather(*(bounded(c) for c in calls)))

    def has_tool(self, name: str) -> bool:
        """Check if a tool is available."""
        return self.registry.has(name)

    def requires_approval(self, calls: list[ToolCall]) -> list[ToolCall]:
        """The calls in a batch whose tools need human approval."""
        pending = []
        for call in calls:
            tool = self.registry.get(call.name)
            if tool is not None and tool.requires_approval:
                pending.append(call)
        return pending
