"""
Event Stream Encoder
====================

Produces the framing the decoder reads: one `data: <json>` line per
event, blocks separated by a blank line.

Usage:
    encoder = SSEEncoder("resp-1")

    yield encoder.start()
    yield encoder.delta("Hello")
    yield encoder.done("Hello", usage, metadata)
"""

import json
from typing import Any

from taskpilot.agent.tools_executor import ToolCall
from taskpilot.streaming.events import (
    ResponseMetadata,
    StreamEvent,
    StreamEventType,
    TokenUsage,
)

DONE_SENTINEL = b"data: [DONE]\n\n"


def encode_event(event: StreamEvent) -> bytes:
    return f"data: {json.dumps(event.to_dict())}\n\n".encode("utf-8")


class SSEEncoder:
    """Encodes the events of one response."""

    def __init__(self, id: str):
        self.id = id

    def _encode(self, type: StreamEventType, data: dict[str, Any]) -> bytes:
        return encode_event(StreamEvent(type=type, data=data))

    def start(self) -> bytes:
        return self._encode(StreamEventType.START, {"id": self.id})

    def delta(self, content: str) -> bytes:
        return self._encode(StreamEventType.DELTA, {"delta": content})

    def tool_call_delta(
        self,
        index: int,
        id: str | None = None,
        name: str | None = None,
        arguments: str | None = None
    ) -> bytes:
        """
        Encode one fragment of a streamed tool call.

        Args:
            index: Position of the call in the response
            id: Call id (usually only on the first fragment)
            name: Function name (usually only on the first fragment)
            arguments: Next piece of the JSON argument string
        """
        delta: dict[str, Any] = {"index": index}
        if id is not None:
            delta["id"] = id
            delta["type"] = "function"
        function = {}
        if name is not None:
            function["name"] = name
        if arguments is not None:
            function["arguments"] = arguments
        if function:
            delta["function"] = function
        return self._encode(StreamEventType.DELTA, {"tool_call_delta": delta})

    def done(self, content: str, usage: TokenUsage, metadata: ResponseMetadata) -> bytes:
        return self._encode(
            StreamEventType.DONE,
            {"id": self.id, "content": content, "usage": usage.to_dict(), "metadata": metadata.to_dict()},
        )

    def tool_calls_done(
        self,
        content: str | None,
        tool_calls: list[ToolCall],
        usage: TokenUsage,
        metadata: ResponseMetadata
    ) -> bytes:
        data: dict[str, Any] = {
            "id": self.id,
            "tool_calls": [c.to_openai_tool_call() for c in tool_calls],
            "usage": usage.to_dict(),
            "metadata": metadata.to_dict(),
        }
        if content is not None:
            data["content"] = content
        return self._encode(StreamEventType.DONE, data)

    def error(self, message: str) -> bytes:
        return self._encode(StreamEventType.ERROR, {"error": message})
