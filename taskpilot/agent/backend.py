"""
Model Backend
=============

The vendor-agnostic contract the agent loop talks through.

Given a system prompt, the conversation so far and the tool schema, a
backend returns a ModelResponse: zero or more text blocks, zero or more
tool calls, and a stop reason.

    end_turn   -> the model considers the task done (if no tool calls)
    tool_use   -> the model wants tools run before it continues
    max_tokens -> the output was cut off

OpenAIBackend implements the contract with the OpenAI Chat Completions
API. Every request passes the shared rate limiter and is wrapped in
with_retry, so 429s and 5xx responses are retried with backoff before the
loop ever sees them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

import openai
from openai import AsyncOpenAI

from taskpilot.agent.tools_executor import ToolCall, parse_tool_calls
from taskpilot.utils.config import ModelConfig, get_config
from taskpilot.utils.errors import APIError, RateLimitError
from taskpilot.utils.logger import Logger
from taskpilot.utils.rate_limit import RateLimitStore
from taskpilot.utils.retry import RetryOptions, parse_retry_after, with_retry

logger = Logger("Backend")


class StopReason(str, Enum):
    END_TURN = "end_turn"
    TOOL_USE = "tool_use"
    MAX_TOKENS = "max_tokens"


_FINISH_REASONS = {
    "stop": StopReason.END_TURN,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "length": StopReason.MAX_TOKENS,
}


@dataclass
class ModelResponse:
    """
    One model turn.

    Attributes:
        text_blocks: Text the model produced, in order
        tool_calls: Tools the model asked to run
        stop_reason: Why the model stopped
        usage: Token counts (input, output, total)
        raw_message: The assistant message to append to the conversation
    """
    text_blocks: list[str] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: StopReason = StopReason.END_TURN
    usage: dict[str, int] = field(default_factory=dict)
    raw_message: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        return "\n".join(self.text_blocks)

    def to_assistant_message(self) -> dict[str, Any]:
        """The assistant message in OpenAI chat format."""
        if self.raw_message is not None:
            return self.raw_message

        message: dict[str, Any] = {"role": "assistant", "content": self.text or None}
        if self.tool_calls:
            message["tool_calls"] = [tc.to_openai_tool_call() for tc in self.tool_calls]
        return message


@runtime_checkable
class ModelBackend(Protocol):
    """Anything the agent loop can send a conversation to."""

    async def complete(
        self,
        system: str,
        messages: list[dict],
        tools: list[dict]
    ) -> ModelResponse:
        ...


class OpenAIBackend:
    """
    ModelBackend over the OpenAI Chat Completions API.

    Example:
        backend = OpenAIBackend(rate_limiter=store)
        response = await backend.complete(system, messages, registry.get_openai_functions())
    """

    def __init__(
        self,
        config: ModelConfig | None = None,
        rate_limiter: RateLimitStore | None = None,
        retry_options: RetryOptions | None = None,
        client: AsyncOpenAI | None = None,
        model: str | None = None
    ):
        """
        Initialize the backend.

        Args:
            config: Model section of the config (defaults to get_config().model)
            rate_limiter: Shared admission control for outbound calls
            retry_options: Backoff policy (defaults to the configured one)
            client: Pre-built client, mainly for tests
            model: Override the configured model
        """
        app_config = get_config()
        self.config = config or app_config.model
        self.model = model or self.config.model
        self.rate_limiter = rate_limiter
        self.retry_options = retry_options or RetryOptions.from_config(app_config.retry)

        self.client = client or AsyncOpenAI(
            api_key=self.config.require_api_key(),
            base_url=self.config.base_url,
            max_retries=0,
        )

        logger.info(f"OpenAI backend ready with model: {self.model}")

    async def _create(self, request: dict[str, Any]):
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire(f"model:{self.model}")

        try:
            return await self.client.chat.completions.create(**request)
        except openai.RateLimitError as e:
            retry_after = parse_retry_after(e.response.headers.get("retry-after"))
            raise RateLimitError(f"openai:{self.model}", retry_after) from e
        except openai.APIStatusError as e:
            raise APIError(f"OpenAI request failed: {e.message}", status_code=e.status_code) from e
        except (openai.APIConnectionError, openai.APITimeoutError) as e:
            raise APIError(f"OpenAI connection error: {e}", status_code=503, code="CONNECTION_ERROR") from e

    async def complete(
        self,
        system: str,
        messages: list[dict],
        tools: list[dict]
    ) -> ModelResponse:
        """
        Send one turn to the model.

        Args:
            system: System prompt
            messages: Conversation in OpenAI chat format (no system message)
            tools: Tool definitions in OpenAI function format

        Returns:
            ModelResponse for this turn
        """
        request: dict[str, Any] = {
            "model": self.model,
            "messages": [{"role": "system", "content": system}, *messages],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        if tools:
            request["tools"] = tools
            request["tool_choice"] = "auto"

        response = await with_retry(lambda: self._create(request), self.retry_options)

        choice = response.choices[0]
        message = choice.message
        tool_calls = parse_tool_calls(message.tool_calls or [])

        stop_reason = _FINISH_REASONS.get(choice.finish_reason or "stop", StopReason.END_TURN)
        if tool_calls:
            stop_reason = StopReason.TOOL_USE

        usage = {}
        if response.usage is not None:
            usage = {
                "input": response.usage.prompt_tokens,
                "output": response.usage.completion_tokens,
                "total": response.usage.total_tokens,
            }

        return ModelResponse(
            text_blocks=[message.content] if message.content else [],
            tool_calls=tool_calls,
            stop_reason=stop_reason,
            usage=usage,
            raw_message=message.model_dump(exclude_none=True),
        )
