"""
Agent System
============

The agent drives a model through tool use until a task is done. It:
1. Builds prompts for the task's role
2. Sends the conversation to the model backend
3. Executes the tools the model asks for
4. Pauses for approval where autonomy requires it
5. Reports a result with the change manifest

This module provides:
- AgentLoop: the iterative loop controller
- AgentContext / AgentProfile / PromptBuilder: what a run needs
- ToolExecutor: validated, bounded-parallel tool execution
- ModelBackend / OpenAIBackend: the model contract and its OpenAI implementation
- EventBus / AgentEvent: non-blocking lifecycle events
"""

from taskpilot.agent.backend import ModelBackend, ModelResponse, OpenAIBackend, StopReason
from taskpilot.agent.context import AgentContext, AgentProfile, PromptBuilder, get_profile
from taskpilot.agent.core import AgentLoop, AgentResult
from taskpilot.agent.events import AgentEvent, AgentEventType, EventBus
from taskpilot.agent.tools_executor import ToolCall, ToolExecutionRecord, ToolExecutor

__all__ = [
    "AgentContext",
    "AgentEvent",
    "AgentEventType",
    "AgentLoop",
    "AgentProfile",
    "AgentResult",
    "EventBus",
    "ModelBackend",
    "ModelResponse",
    "OpenAIBackend",
    "PromptBuilder",
    "StopReason",
    "ToolCall",
    "ToolExecutionRecord",
    "ToolExecutor",
    "get_profile",
]
