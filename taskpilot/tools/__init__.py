"""
Tools System
============

Tools are the capabilities the agent may invoke: reading and editing
files, running tests and linters, inspecting git history.

Each tool is a closed capability:
- name: unique identifier the model uses to call it
- description: what it does (shown to the model)
- input_schema: JSON Schema the arguments are validated against
- category: one of ToolCategory
- requires_approval: whether supervised/manual tasks must stop for a human
- execute: async handler returning a ToolResult
- validate: optional extra check run after schema validation

How a tool call flows:
1. The model answers with one or more tool calls
2. The executor looks the tool up in the registry
3. Arguments are validated against input_schema (then validate, if any)
4. The handler runs and returns a ToolResult
5. The result goes back to the model as a tool message

Tools that mutate the working tree attach a FileChange to their result
(created / modified / deleted) so the agent can build a change manifest
without looking at the filesystem again.

This module provides:
- Tool, ToolResult, FileChange and the ToolCategory / ChangeKind enums
- ToolRegistry for managing available tools
- create_tool_registry() with every built-in tool registered
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from taskpilot.utils.logger import Logger

logger = Logger("Tools")


class ToolCategory(str, Enum):
    """What kind of capability a tool provides."""
    FILE = "file"
    TEST = "test"
    LINT = "lint"
    GIT = "git"
    ANALYSIS = "analysis"
    SHELL = "shell"
    SEARCH = "search"


class ChangeKind(str, Enum):
    """How a tool mutated a file."""
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    """A single entry of the change manifest."""
    path: str
    kind: ChangeKind

    def to_dict(self) -> dict:
        return {"path": self.path, "type": self.kind.value}


@dataclass
class ToolResult:
    """
    Standardized result from tool execution.

    Attributes:
        success: Whether the tool did what was asked
        output: Text returned to the model
        error: Error message when success is False
        metadata: Extra structured details (sizes, exit codes, ...)
        change: The file mutation performed, if any
    """
    success: bool
    output: str = ""
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    change: FileChange | None = None

    @classmethod
    def fail(cls, error: str, **metadata: Any) -> "ToolResult":
        return cls(success=False, output="", error=error, metadata=metadata)

    def to_dict(self) -> dict:
        """Convert to a dictionary for JSON serialization."""
        return {
            "success": self.success,
            "output": self.output,
            "error": self.error,
            "metadata": self.metadata,
            "change": self.change.to_dict() if self.change else None,
        }

    def to_message(self) -> str:
        """Format as content for the model's tool message."""
        if self.success:
            return self.output
        return f"Error: {self.error}"


@dataclass
class Tool:
    """
    Definition of a tool.

    Example:
        async def read_file(params: dict) -> ToolResult:
            text = Path(params["path"]).read_text()
            return ToolResult(success=True, output=text)

        tool = Tool(
            name="readFile",
            description="Read the contents of a file",
            input_schema={
                "type": "object",
                "properties": {"path": {"type": "string"}},
                "required": ["path"],
            },
            execute=read_file,
            category=ToolCategory.FILE,
        )
    """
    name: str
    description: str
    input_schema: dict
    execute: Callable[[dict], Awaitable[ToolResult]]
    category: ToolCategory = ToolCategory.ANALYSIS
    requires_approval: bool = False
    validate: Callable[[dict], list[str]] | None = None
    # Set for subprocess tools; the executor then leaves the timeout to the tool
    manages_timeout: bool = False

    def to_openai_function(self) -> dict:
        """Convert to the OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema,
            },
        }


class ToolRegistry:
    """
    Keyed collection of the tools available to an agent.

    Example:
        registry = ToolRegistry()
        registry.register(read_file_tool)

        tool = registry.get("readFile")
        functions = registry.get_openai_functions()
    """

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """
        Register a tool.

        Raises:
            ValueError: If a tool with this name already exists
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' is already registered")

        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name} ({tool.category.value})")

    def unregister(self, name: str) -> bool:
        """Remove a tool. Returns False if it was not registered."""
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_all(self) -> list[Tool]:
        return list(self._tools.values())

    def get_by_category(self, category: ToolCategory) -> list[Tool]:
        return [t for t in self._tools.values() if t.category == category]

    def list_names(self) -> list[str]:
        return list(self._tools.keys())

    def get_openai_functions(self, names: list[str] | None = None) -> list[dict]:
        """
        Get tools in OpenAI function format.

        Args:
            names: Restrict to these tools (unknown names are ignored)

        Returns:
            List of function definitions
        """
        tools = self._tools.values() if names is None else (
            self._tools[n] for n in names if n in self._tools
        )
        return [tool.to_openai_function() for tool in tools]

    def subset(self, names: list[str]) -> "ToolRegistry":
        """A new registry holding only the named tools."""
        registry = ToolRegistry()
        for name in names:
            tool = self._tools.get(name)
            if tool:
                registry.register(tool)
        return registry

    def without(self, names: list[str]) -> "ToolRegistry":
        """A new registry holding every tool except the named ones."""
        registry = ToolRegistry()
        for tool in self._tools.values():
            if tool.name not in names:
                registry.register(tool)
        return registry

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools


def create_tool_registry(working_directory: Path | str) -> ToolRegistry:
    """
    Build a registry with every built-in tool bound to a working directory.

    Args:
        working_directory: Root that file, test, lint and git tools act on

    Returns:
        A populated ToolRegistry
    """
    from taskpilot.tools.file_ops import create_file_tools
    from taskpilot.tools.git_ops import create_git_tools
    from taskpilot.tools.linter import create_linter_tools
    from taskpilot.tools.test_runner import create_test_runner_tools

    root = Path(working_directory).resolve()
    registry = ToolRegistry()

    for factory in (create_file_tools, create_test_runner_tools, create_linter_tools, create_git_tools):
        for tool in factory(root):
            registry.register(tool)

    logger.info(f"Registered {len(registry)} tools for {root}")
    return registry


__all__ = [
    "ChangeKind",
    "FileChange",
    "Tool",
    "ToolCategory",
    "ToolRegistry",
    "ToolResult",
    "create_tool_registry",
]
