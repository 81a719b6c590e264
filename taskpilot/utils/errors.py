"""
Error Taxonomy
==============

Every error the runtime raises or encodes derives from TaskPilotError.

Where each error ends up:

    ValidationError      -> encoded as a failed ToolResult, the loop continues
    ToolExecutionError   -> encoded as a failed ToolResult, the loop continues
    UnknownToolError     -> encoded as an error tool result for the model
    TransportError       -> reported through the stream's on_error callback
    APIError             -> retried by with_retry when the status is transient
    RateLimitError       -> retried by with_retry, honoring retry_after
    BudgetExceededError  -> terminal task failure, shown to the user
    CrashRecoveryError   -> attached to tasks force-failed at startup
"""

from typing import Any


class TaskPilotError(Exception):
    """Base class for all runtime errors."""

    code = "TASKPILOT_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serializable form used in events and task results."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(TaskPilotError):
    """Malformed tool arguments or task input."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, errors: list[str] | None = None):
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []


class ToolExecutionError(TaskPilotError):
    """A tool handler raised or timed out."""

    code = "TOOL_EXECUTION_ERROR"

    def __init__(self, tool_name: str, message: str):
        super().__init__(message, {"tool": tool_name})
        self.tool_name = tool_name


class UnknownToolError(TaskPilotError):
    """The model asked for a tool that is not registered."""

    code = "UNKNOWN_TOOL"

    def __init__(self, tool_name: str):
        super().__init__(f'Unknown tool "{tool_name}"', {"tool": tool_name})
        self.tool_name = tool_name


class TransportError(TaskPilotError):
    """Network or timeout failure while streaming."""

    code = "TRANSPORT_ERROR"


class StreamTimeoutError(TransportError):
    """The whole stream took longer than the overall ceiling."""

    code = "STREAM_TIMEOUT"

    def __init__(self, timeout: float):
        super().__init__(
            f"Stream timeout - overall request exceeded {timeout:g} seconds",
            {"timeout": timeout},
        )
        self.timeout = timeout


class ChunkTimeoutError(TransportError):
    """No bytes arrived within the inter-chunk interval."""

    code = "STREAM_CHUNK_TIMEOUT"

    def __init__(self, chunk_timeout: float):
        super().__init__(
            f"Stream chunk timeout - no data received for {chunk_timeout:g} seconds",
            {"chunk_timeout": chunk_timeout},
        )
        self.chunk_timeout = chunk_timeout


class APIError(TaskPilotError):
    """An upstream HTTP API answered with an error status."""

    code = "API_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message, details)
        self.status_code = status_code
        if code:
            self.code = code


class RateLimitError(APIError):
    """429 from a provider, or a local rate-limit rejection."""

    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, source: str, retry_after: float | None = None):
        super().__init__(
            f"Rate limit exceeded for {source}",
            status_code=429,
            details={"source": source, "retry_after": retry_after},
        )
        self.source = source
        self.retry_after = retry_after


class BudgetExceededError(TaskPilotError):
    """The agent loop used its whole iteration budget."""

    code = "BUDGET_EXCEEDED"

    def __init__(self, max_iterations: int):
        super().__init__(
            f"Exceeded max iterations ({max_iterations})",
            {"max_iterations": max_iterations},
        )
        self.max_iterations = max_iterations


class CrashRecoveryError(TaskPilotError):
    """Synthetic error for tasks found running at process start."""

    code = "INTERRUPTED"

    def __init__(self, task_id: str):
        super().__init__(
            "Task was interrupted due to application restart",
            {"task_id": task_id},
        )
        self.task_id = task_id


class InvalidTransitionError(TaskPilotError):
    """A status change not allowed by the task state machine."""

    code = "INVALID_TRANSITION"

    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(
            f"Task {task_id} cannot move from '{current}' to '{target}'",
            {"task_id": task_id, "from": current, "to": target},
        )
        self.task_id = task_id
        self.current = current
        self.target = target


class TaskNotFoundError(TaskPilotError):
    """No task with the given id."""

    code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found", {"task_id": task_id})
        self.task_id = task_id
