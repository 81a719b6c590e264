"""
Stream Events
=============

Typed events carried by the chat event stream, and the callbacks a
consumer registers to receive them.

Wire shape of one event:
    {"type": "delta", "data": {"delta": "Hel"}, "timestamp": 1718000000000}

Event types:
- start: the server accepted the request ({"id"})
- delta: incremental text ({"delta"}) or a tool-call fragment
  ({"tool_call_delta": {"index", "id"?, "type"?, "function": {...}}})
- done: final content, usage and metadata, plus tool_calls when the
  model asked for tools
- error: the raw error string ({"error"})
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from taskpilot.agent.tools_executor import ToolCall


class StreamEventType(str, Enum):
    START = "start"
    DELTA = "delta"
    DONE = "done"
    ERROR = "error"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class StreamEvent:
    """One decoded event."""
    type: StreamEventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "data": self.data, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "StreamEvent":
        """
        Build an event from its JSON form.

        Raises:
            ValueError: If the type is missing or unknown
        """
        data = raw.get("data")
        return cls(
            type=StreamEventType(raw.get("type")),
            data=data if isinstance(data, dict) else {},
            timestamp=int(raw.get("timestamp") or now_ms()),
        )


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"inputTokens": self.input, "outputTokens": self.output, "totalTokens": self.total}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TokenUsage":
        input_tokens = int(raw.get("inputTokens", 0))
        output_tokens = int(raw.get("outputTokens", 0))
        return cls(
            input=input_tokens,
            output=output_tokens,
            total=int(raw.get("totalTokens", input_tokens + output_tokens)),
        )


@dataclass(frozen=True)
class ResponseMetadata:
    """Which model answered and how the response ended."""
    model: str
    provider: str
    processing_time_ms: int = 0
    finish_reason: str = "stop"

    def to_dict(self) -> dict[str, Any]:
        return {
            "model": self.model,
            "provider": self.provider,
            "processingTimeMs": self.processing_time_ms,
            "finishReason": self.finish_reason,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ResponseMetadata":
        return cls(
            model=str(raw.get("model", "")),
            provider=str(raw.get("provider", "")),
            processing_time_ms=int(raw.get("processingTimeMs", 0)),
            finish_reason=str(raw.get("finishReason", "stop")),
        )


@dataclass
class StreamCompletion:
    """
    Everything a `done` event delivers, in one shot.

    Attributes:
        id: Response id from the `start` event
        content: Final assistant text
        tool_calls: Reconstructed tool calls (empty for a plain answer)
        usage: Token counts
        metadata: Model, provider, timing and finish reason
    """
    id: str
    content: str | None
    usage: TokenUsage
    metadata: ResponseMetadata
    tool_calls: list[ToolCall] = field(default_factory=list)

    def to_assistant_message(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": "assistant", "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [c.to_openai_tool_call() for c in self.tool_calls]
        return message


@dataclass
class StreamCallbacks:
    """
    Consumer hooks. Any of them may be left unset.

    on_error receives one human-readable string and is called at most
    once per stream; nothing else is called after it.
    """
    on_start: Callable[[], None] | None = None
    on_delta: Callable[[str], None] | None = None
    on_tool_call_delta: Callable[[dict[str, Any]], None] | None = None
    on_done: Callable[[StreamCompletion], None] | None = None
    on_error: Callable[[str], None] | None = None
