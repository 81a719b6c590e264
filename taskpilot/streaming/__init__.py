"""
Streaming Transport
===================

The chat event stream: encoding, decoding under timeouts, and the
streamed chat path with tool execution.

This module provides:
- SSEEncoder: produces `data: <json>` blocks
- SSEDecoder / StreamClient: parse a byte stream into events and callbacks
- ToolCallAccumulator: rebuilds tool calls streamed as fragments
- ChatStreamer: route, stream, execute tools, repeat
"""

from taskpilot.streaming.events import (
    ResponseMetadata,
    StreamCallbacks,
    StreamCompletion,
    StreamEvent,
    StreamEventType,
    TokenUsage,
)
from taskpilot.streaming.encoder import SSEEncoder, encode_event
from taskpilot.streaming.decoder import SSEDecoder, StreamClient, ToolCallAccumulator, parse_block
from taskpilot.streaming.chat import ChatResult, ChatStreamer

__all__ = [
    "ChatResult",
    "ChatStreamer",
    "ResponseMetadata",
    "SSEDecoder",
    "SSEEncoder",
    "StreamCallbacks",
    "StreamClient",
    "StreamCompletion",
    "StreamEvent",
    "StreamEventType",
    "TokenUsage",
    "ToolCallAccumulator",
    "encode_event",
    "parse_block",
]
