"""
Event Stream Decoder
====================

Turns the bytes of a chat event stream into typed events, and drives a
consumer's callbacks from them.

Pieces:
- SSEDecoder: incremental framing. Blocks end with a blank line; a block
  split across reads is held back until the rest arrives, so an event is
  never emitted half-parsed.
- ToolCallAccumulator: merges streamed tool-call fragments by index and
  rebuilds complete ToolCalls.
- StreamClient: reads a response (or any async byte iterator) under two
  timers and calls the callbacks.

Timers:
    overall timeout  - ceiling for the whole stream
    chunk timeout    - max silence between two reads, reset on every read

Either timer cancels the reader and reports exactly one named error
(StreamTimeoutError / ChunkTimeoutError) through on_error. Nothing is
emitted after an error or after `done`.

Usage:
    client = StreamClient.from_config(get_config().streaming)

    completion = await client.stream(request, StreamCallbacks(
        on_delta=lambda text: print(text, end=""),
        on_error=lambda message: print(f"\\n{message}"),
    ))
"""

import asyncio
import codecs
import json
from typing import Any, AsyncIterable

import httpx

from taskpilot.agent.tools_executor import ToolCall, parse_tool_calls
from taskpilot.streaming.events import (
    ResponseMetadata,
    StreamCallbacks,
    StreamCompletion,
    StreamEvent,
    StreamEventType,
    TokenUsage,
)
from taskpilot.utils.config import StreamingConfig
from taskpilot.utils.errors import ChunkTimeoutError, StreamTimeoutError, TransportError
from taskpilot.utils.logger import Logger
from taskpilot.utils.retry import parse_retry_after

logger = Logger("Stream")

BLOCK_SEPARATOR = "\n\n"


# ==============================================================================
# Framing
# ==============================================================================

class SSEDecoder:
    """
    Incremental decoder for `data: <json>` blocks.

    Example:
        decoder = SSEDecoder()
        for chunk in chunks:
            for event in decoder.feed(chunk):
                handle(event)
        for event in decoder.flush():
            handle(event)
    """

    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[StreamEvent]:
        """
        Add bytes and return every event completed by them.

        A multi-byte character split across reads is decoded once its
        last byte arrives.
        """
        self._buffer += self._utf8.decode(data)
        self._buffer = self._buffer.replace("\r\n", "\n")

        blocks = self._buffer.split(BLOCK_SEPARATOR)
        self._buffer = blocks.pop()
        return self._parse_blocks(blocks)

    def flush(self) -> list[StreamEvent]:
        """At end of input, parse whatever block is left in the buffer."""
        self._buffer += self._utf8.decode(b"", final=True)
        remainder, self._buffer = self._buffer, ""
        return self._parse_blocks(remainder.split(BLOCK_SEPARATOR))

    @property
    def pending(self) -> str:
        """Text held back waiting for the end of its block."""
        return self._buffer

    def _parse_blocks(self, blocks: list[str]) -> list[StreamEvent]:
        events = []
        for block in blocks:
            event = parse_block(block)
            if event is not None:
                events.append(event)
        return events


def parse_block(block: str) -> StreamEvent | None:
    """
    Parse one complete block.

    Returns None for empty blocks, comments, the [DONE] sentinel and
    malformed payloads (the last are logged and skipped).
    """
    data_lines = []
    for line in block.split("\n"):
        if line.startswith("data:"):
            value = line[5:]
            data_lines.append(value[1:] if value.startswith(" ") else value)

    if not data_lines:
        return None

    payload = "\n".join(data_lines)
    if payload.strip() == "[DONE]":
        return None

    try:
        raw = json.loads(payload)
        if not isinstance(raw, dict):
            raise ValueError("event payload must be a JSON object")
        return StreamEvent.from_dict(raw)
    except ValueError as e:
        logger.warning(f"Skipping malformed stream block: {e}")
        return None


# ==============================================================================
# Tool call reassembly
# ==============================================================================

class ToolCallAccumulator:
    """
    Collects tool_call_delta fragments per call index.

    The first fragment of a call usually carries its id and function
    name; later ones append to the argument string.
    """

    def __init__(self):
        self._calls: dict[int, dict[str, Any]] = {}

    def add(self, delta: dict[str, Any]) -> None:
        index = int(delta.get("index", 0))
        call = self._calls.setdefault(index, {"id": "", "name": "", "arguments": []})

        if delta.get("id"):
            call["id"] = delta["id"]

        function = delta.get("function") or {}
        if function.get("name"):
            call["name"] += function["name"]
        if function.get("arguments"):
            call["arguments"].append(function["arguments"])

    def build(self) -> list[ToolCall]:
        """The complete calls, ordered by index."""
        raw_calls = [
            {
                "id": call["id"] or f"call_{index}",
                "function": {"name": call["name"], "arguments": "".join(call["arguments"]) or "{}"},
            }
            for index, call in sorted(self._calls.items())
        ]
        return parse_tool_calls(raw_calls)

    def __len__(self) -> int:
        return len(self._calls)


# ==============================================================================
# Dispatch
# ==============================================================================

class _Emitter:
    """Routes events to the callbacks and closes after done or error."""

    def __init__(self, callbacks: StreamCallbacks):
        self.callbacks = callbacks
        self.accumulator = ToolCallAccumulator()
        self.response_id = ""
        self.closed = False

    def fail(self, message: str) -> None:
        if self.closed:
            return
        self.closed = True
        if self.callbacks.on_error:
            self.callbacks.on_error(message)

    def dispatch(self, event: StreamEvent) -> StreamCompletion | None:
        if self.closed:
            return None

        data = event.data
        if event.type == StreamEventType.START:
            self.response_id = str(data.get("id", ""))
            if self.callbacks.on_start:
                self.callbacks.on_start()

        elif event.type == StreamEventType.DELTA:
            if data.get("delta") and self.callbacks.on_delta:
                self.callbacks.on_delta(data["delta"])
            tool_call_delta = data.get("tool_call_delta")
            if isinstance(tool_call_delta, dict):
                try:
                    self.accumulator.add(tool_call_delta)
                except (TypeError, ValueError, AttributeError) as e:
                    self.fail(f"Malformed tool_call_delta event: {e}")
                    return None
                if self.callbacks.on_tool_call_delta:
                    self.callbacks.on_tool_call_delta(tool_call_delta)

        elif event.type == StreamEventType.DONE:
            return self._complete(data)

        elif event.type == StreamEventType.ERROR:
            self.fail(str(data.get("error") or "Unknown error"))

        return None

    def _complete(self, data: dict[str, Any]) -> StreamCompletion | None:
        usage = data.get("usage")
        metadata = data.get("metadata")
        if not isinstance(usage, dict) or not isinstance(metadata, dict):
            self.fail("Stream completed without usage metadata")
            return None

        try:
            if data.get("tool_calls"):
                tool_calls = parse_tool_calls(data["tool_calls"])
            else:
                tool_calls = self.accumulator.build()

            completion = StreamCompletion(
                id=str(data.get("id") or self.response_id),
                content=data.get("content"),
                usage=TokenUsage.from_dict(usage),
                metadata=ResponseMetadata.from_dict(metadata),
                tool_calls=tool_calls,
            )
        except (TypeError, ValueError, AttributeError) as e:
            self.fail(f"Malformed done event: {e}")
            return None

        self.closed = True
        if self.callbacks.on_done:
            self.callbacks.on_done(completion)
        return completion


# ==============================================================================
# Client
# ==============================================================================

class StreamClient:
    """
    Reads chat event streams under an overall and an inter-chunk timeout.

    Example:
        client = StreamClient("http://localhost:3000/api/chat", timeout=120, chunk_timeout=30)
        completion = await client.stream(request, callbacks)
        if completion is None:
            ...  # on_error was called with the reason
    """

    def __init__(
        self,
        url: str | None = None,
        timeout: float = 120.0,
        chunk_timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None
    ):
        """
        Initialize the client.

        Args:
            url: Chat endpoint speaking the event-stream format
            timeout: Default overall ceiling in seconds
            chunk_timeout: Default max silence between reads in seconds
            headers: Extra request headers
            transport: httpx transport (tests use httpx.MockTransport)
        """
        self.url = url
        self.timeout = timeout
        self.chunk_timeout = chunk_timeout
        self._client = httpx.AsyncClient(
            headers={"Accept": "text/event-stream", **(headers or {})},
            timeout=httpx.Timeout(None),
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: StreamingConfig, **kwargs) -> "StreamClient":
        return cls(
            url=config.chat_url,
            timeout=config.timeout,
            chunk_timeout=config.chunk_timeout,
            **kwargs,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def stream(
        self,
        request: Any,
        callbacks: StreamCallbacks,
        timeout: float | None = None,
        chunk_timeout: float | None = None
    ) -> StreamCompletion | None:
        """
        POST a chat request and consume its event stream.

        Args:
            request: A ChatRequest (or anything with to_dict()) or a dict
            callbacks: Consumer hooks
            timeout: Overall ceiling in seconds (client default if None)
            chunk_timeout: Max silence in seconds (client default if None)

        Returns:
            The completion, or None when the stream failed (on_error got why)
        """
        if not self.url:
            raise ValueError("StreamClient.stream() needs a url")

        payload = request.to_dict() if hasattr(request, "to_dict") else dict(request)
        payload["options"] = {**(payload.get("options") or {}), "stream": True}

        chunk_timeout = self.chunk_timeout if chunk_timeout is None else chunk_timeout
        emitter = _Emitter(callbacks)

        async def run() -> StreamCompletion | None:
            async with self._client.stream("POST", self.url, json=payload) as response:
                if not response.is_success:
                    await response.aread()
                    emitter.fail(_status_message(response))
                    return None
                return await self._read(response.aiter_bytes(), emitter, chunk_timeout)

        return await self._guard(run(), emitter, timeout)

    async def consume(
        self,
        chunks: AsyncIterable[bytes],
        callbacks: StreamCallbacks,
        timeout: float | None = None,
        chunk_timeout: float | None = None
    ) -> StreamCompletion | None:
        """
        Consume an already-open byte stream. Same semantics as stream().
        """
        chunk_timeout = self.chunk_timeout if chunk_timeout is None else chunk_timeout
        emitter = _Emitter(callbacks)
        return await self._guard(self._read(chunks, emitter, chunk_timeout), emitter, timeout)

    async def _guard(self, reader, emitter: _Emitter, timeout: float | None) -> StreamCompletion | None:
        timeout = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(reader, timeout=timeout or None)

        except asyncio.TimeoutError:
            error = StreamTimeoutError(timeout)
            logger.warning(error.message)
            emitter.fail(error.message)
        except TransportError as e:
            logger.warning(e.message)
            emitter.fail(e.message)
        except httpx.HTTPError as e:
            logger.error("Stream request failed", e)
            emitter.fail(str(e) or "Stream error")
        return None

    async def _read(
        self,
        chunks: AsyncIterable[bytes],
        emitter: _Emitter,
        chunk_timeout: float | None
    ) -> StreamCompletion | None:
        decoder = SSEDecoder()
        iterator = chunks.__aiter__()

        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(iterator.__anext__(), timeout=chunk_timeout or None)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError:
                    raise ChunkTimeoutError(chunk_timeout) from None

                for event in decoder.feed(chunk):
                    completion = emitter.dispatch(event)
                    if emitter.closed:
                        return completion
        finally:
            # Close the source on timeout and on early return
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        for event in decoder.flush():
            completion = emitter.dispatch(event)
            if emitter.closed:
                return completion

        emitter.fail("Stream ended before completion")
        return None


def _status_message(response: httpx.Response) -> str:
    if response.status_code == 429:
        retry_after = parse_retry_after(response.headers.get("retry-after"))
        if retry_after is not None:
            return f"Rate limit exceeded. Retry after {retry_after:g} seconds."
        return "Rate limit exceeded. Please try again later."

    try:
        body = response.json()
        if isinstance(body, dict) and (body.get("message") or body.get("error")):
            return str(body.get("message") or body.get("error"))
    except ValueError:
        pass
    return response.reason_phrase or "Stream request failed"
