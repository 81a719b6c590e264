"""
Chat Streaming
==============

The single-request chat path: route, stream, run any tools the model
asks for, and stream again until the model answers in plain text.

Chat Flow:
    Route request (classifier + preferences)
         │
         ▼
    Rate-limit check
         │
         ▼
    ┌─► Stream response
    │    │
    │    ▼
    │   ┌─── Tool calls in `done`? ───┐
    │   │                             │
    │   Yes                           No ──► final answer
    │   │
    │   ▼
    │   Execute tools in parallel
    │   │
    │   ▼
    │   Append assistant message + tool results
    │   │
    └───┘  (at most max_tool_rounds times)
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable

from taskpilot.agent.tools_executor import ToolExecutionRecord, ToolExecutor
from taskpilot.routing.classifier import IntentClassifier
from taskpilot.routing.router import ChatRequest, RouteResult, RoutingOptions, get_route_for_request
from taskpilot.streaming.decoder import StreamClient
from taskpilot.streaming.events import StreamCallbacks, StreamCompletion
from taskpilot.utils.errors import RateLimitError
from taskpilot.utils.logger import Logger
from taskpilot.utils.rate_limit import RateLimitStore

logger = Logger("Chat")


@dataclass
class ChatResult:
    """
    Outcome of one streamed chat exchange.

    Attributes:
        success: True when the model produced a final answer
        content: The final answer text
        messages: Conversation including every assistant and tool message
        tool_executions: Every tool run, in order
        route: Where the request was sent
        error: Why it failed
    """
    success: bool
    content: str | None = None
    messages: list[dict[str, Any]] = field(default_factory=list)
    tool_executions: list[ToolExecutionRecord] = field(default_factory=list)
    route: RouteResult | None = None
    error: str | None = None


class ChatStreamer:
    """
    Streams chat requests, executing tool calls between rounds.

    Example:
        streamer = ChatStreamer(StreamClient.from_config(config.streaming), executor)
        result = await streamer.stream_chat(request, StreamCallbacks(on_delta=print))
    """

    def __init__(
        self,
        client: StreamClient,
        executor: ToolExecutor | None = None,
        rate_limiter: RateLimitStore | None = None,
        routing_options: RoutingOptions | None = None,
        classifier: IntentClassifier | None = None,
        max_tool_rounds: int = 5,
        max_parallel_tools: int = 4
    ):
        """
        Initialize the streamer.

        Args:
            client: Stream client speaking to the chat endpoint
            executor: Runs tool calls (tools disabled if None)
            rate_limiter: Admission check per conversation
            routing_options: Auto-routing settings (passthrough if None)
            classifier: Intent classifier for auto-routing
            max_tool_rounds: Tool-call rounds before giving up
            max_parallel_tools: Fan-out bound per round
        """
        self.client = client
        self.executor = executor
        self.rate_limiter = rate_limiter
        self.routing_options = routing_options or RoutingOptions(auto_routing=False)
        self.classifier = classifier
        self.max_tool_rounds = max_tool_rounds
        self.max_parallel_tools = max_parallel_tools

    def _request_options(self, request: ChatRequest) -> dict[str, Any]:
        options = dict(request.options)
        if self.executor is not None and len(self.executor.registry):
            options["tools"] = self.executor.registry.list_names()
            options.setdefault("toolChoice", "auto")
        return options

    async def stream_chat(
        self,
        request: ChatRequest,
        callbacks: StreamCallbacks | None = None,
        on_tools_executing: Callable[[list], None] | None = None
    ) -> ChatResult:
        """
        Run a chat exchange to its final answer.

        Args:
            request: The chat request
            callbacks: Forwarded stream callbacks (deltas, done, errors)
            on_tools_executing: Called with each batch of tool calls

        Returns:
            ChatResult; stream and rate-limit failures are reported in it
        """
        callbacks = callbacks or StreamCallbacks()

        route = await get_route_for_request(request, self.routing_options, self.classifier)
        request = replace(request, model=route.model, provider=route.provider)

        if self.rate_limiter is not None:
            try:
                await self.rate_limiter.acquire(f"chat:{request.conversation_id or 'default'}")
            except RateLimitError as e:
                error = f"Rate limit exceeded. Retry after {e.retry_after:g} seconds."
                if callbacks.on_error:
                    callbacks.on_error(error)
                return ChatResult(success=False, messages=list(request.messages), route=route, error=error)

        messages = list(request.messages)
        executions: list[ToolExecutionRecord] = []
        options = self._request_options(request)

        for round_number in range(self.max_tool_rounds + 1):
            errors: list[str] = []
            completion = await self.client.stream(
                replace(request, messages=list(messages), options=options),
                self._forwarding(callbacks, errors),
            )

            if completion is None:
                error = errors[0] if errors else "Stream failed"
                return ChatResult(
                    success=False,
                    messages=messages,
                    tool_executions=executions,
                    route=route,
                    error=error,
                )

            messages.append(completion.to_assistant_message())

            if not completion.tool_calls or self.executor is None:
                return ChatResult(
                    success=True,
                    content=completion.content,
                    messages=messages,
                    tool_executions=executions,
                    route=route,
                )

            if round_number == self.max_tool_rounds:
                break

            logger.info(f"Round {round_number + 1}: executing {len(completion.tool_calls)} tool call(s)")
            if on_tools_executing:
                on_tools_executing(completion.tool_calls)

            records = await self.executor.execute_parallel(completion.tool_calls, self.max_parallel_tools)
            executions.extend(records)
            messages.extend(r.to_openai_message() for r in records)

        error = f"Maximum tool rounds ({self.max_tool_rounds}) reached without a final answer"
        logger.warning(error)
        return ChatResult(
            success=False,
            messages=messages,
            tool_executions=executions,
            route=route,
            error=error,
        )

    @staticmethod
    def _forwarding(callbacks: StreamCallbacks, errors: list[str]) -> StreamCallbacks:
        def on_error(message: str) -> None:
            errors.append(message)
            if callbacks.on_error:
                callbacks.on_error(message)

        def on_done(completion: StreamCompletion) -> None:
            if callbacks.on_done:
                callbacks.on_done(completion)

        return StreamCallbacks(
            on_start=callbacks.on_start,
            on_delta=callbacks.on_delta,
            on_tool_call_delta=callbacks.on_tool_call_delta,
            on_done=on_done,
            on_error=on_error,
        )
