"""
Agent Context
=============

Everything the agent loop needs to run one task, plus the pieces that
build it:

- AgentProfile: what each task type's agent may do (read, write, run
  commands, commit) and which tools that leaves it
- PromptBuilder: the system prompt and the first user message for a task
- AgentContext: the bundle handed to AgentLoop.run()

Tool selection by capability:
    can_write_files = False     -> no writeFile / editFile / deleteFile
    can_execute_commands = False -> no runTests / runLinter
    can_commit = False          -> no gitCommit (unless the task enables it)
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from taskpilot.agent.tools_executor import ToolCall
from taskpilot.tasks.models import AutonomyLevel, Task, TaskType
from taskpilot.tools import ToolRegistry
from taskpilot.utils.logger import Logger

logger = Logger("Context")

WRITE_TOOLS = ("writeFile", "editFile", "deleteFile")
COMMAND_TOOLS = ("runTests", "runLinter")
COMMIT_TOOLS = ("gitCommit",)

ApprovalGate = Callable[[list[ToolCall]], Awaitable[bool]]


@dataclass(frozen=True)
class AgentCapabilities:
    can_read_files: bool = True
    can_write_files: bool = False
    can_execute_commands: bool = True
    can_modify_tests: bool = False
    can_modify_source: bool = False
    can_commit: bool = False


@dataclass(frozen=True)
class AgentProfile:
    """
    Role description for one task type.

    Attributes:
        task_type: Which tasks use this profile
        name: Display name
        description: One-line role summary
        capabilities: What the agent is allowed to do
        instructions: Role-specific guidance for the system prompt
    """
    task_type: TaskType
    name: str
    description: str
    capabilities: AgentCapabilities
    instructions: tuple[str, ...] = ()

    def select_tools(self, registry: ToolRegistry, enable_commit: bool = False) -> ToolRegistry:
        """The subset of the registry this profile may use."""
        excluded: list[str] = []
        caps = self.capabilities
        if not caps.can_write_files:
            excluded += WRITE_TOOLS
        if not caps.can_execute_commands:
            excluded += COMMAND_TOOLS
        if not (caps.can_commit or enable_commit):
            excluded += COMMIT_TOOLS
        return registry.without(excluded)


PROFILES: dict[TaskType, AgentProfile] = {
    TaskType.TEST: AgentProfile(
        task_type=TaskType.TEST,
        name="Test Agent",
        description="Generates and fixes tests",
        capabilities=AgentCapabilities(can_write_files=True, can_modify_tests=True),
        instructions=(
            "Write tests next to the existing ones, following their style",
            "Do not change source code outside the tests",
            "Run the tests you wrote and fix them until they pass",
        ),
    ),
    TaskType.QA: AgentProfile(
        task_type=TaskType.QA,
        name="QA Agent",
        description="Validates code quality through linting and test execution",
        capabilities=AgentCapabilities(),
        instructions=(
            "Do not modify any files; validate and report only",
            "Run the linter, then the test suite",
            "Finish with an overall QA status (PASS/FAIL)",
        ),
    ),
    TaskType.FEATURE: AgentProfile(
        task_type=TaskType.FEATURE,
        name="Feature Agent",
        description="Implements new features from a description",
        capabilities=AgentCapabilities(
            can_write_files=True, can_modify_tests=True, can_modify_source=True
        ),
        instructions=(
            "Read the surrounding code before writing new code",
            "Add tests for the new behavior",
        ),
    ),
    TaskType.REFACTOR: AgentProfile(
        task_type=TaskType.REFACTOR,
        name="Refactor Agent",
        description="Improves code structure while preserving behavior",
        capabilities=AgentCapabilities(
            can_write_files=True, can_modify_tests=True, can_modify_source=True
        ),
        instructions=(
            "Behavior must not change; run the tests before and after",
            "Prefer small, reviewable edits",
        ),
    ),
    TaskType.DOCS: AgentProfile(
        task_type=TaskType.DOCS,
        name="Documentation Agent",
        description="Generates and maintains documentation",
        capabilities=AgentCapabilities(can_write_files=True),
        instructions=("Only touch documentation files",),
    ),
    TaskType.SECURITY: AgentProfile(
        task_type=TaskType.SECURITY,
        name="Security Agent",
        description="Audits the code for vulnerabilities and leaked secrets",
        capabilities=AgentCapabilities(can_write_files=True, can_modify_source=True),
        instructions=(
            "Report every finding with file, line and severity",
            "Only fix issues at or above the severity threshold",
        ),
    ),
}


def get_profile(task_type: TaskType | str) -> AgentProfile:
    return PROFILES[TaskType(task_type)]


class PromptBuilder:
    """
    Builds the prompts for a task.

    Example:
        builder = PromptBuilder()
        system = builder.build_system_prompt(profile, task, tools, workdir)
        first = builder.build_initial_prompt(task)
    """

    SYSTEM_PROMPT = """You are the {name} of an autonomous coding assistant. {description}.

Guidelines:
{instructions}
- Use tools to inspect the repository instead of guessing
- When the work is done, reply with a short summary and no tool calls

Available tools: {tools}

Working directory: {working_directory}

{autonomy}
{dry_run}
"""

    def build_system_prompt(
        self,
        profile: AgentProfile,
        task: Task,
        tools: ToolRegistry,
        working_directory: Path
    ) -> str:
        """Render the system prompt for a profile and task."""
        instructions = "\n".join(f"- {line}" for line in profile.instructions)

        autonomy = ""
        if task.autonomy_level != AutonomyLevel.FULL:
            autonomy = (
                f"Autonomy: {task.autonomy_level.value}. Some actions pause for human "
                "approval; if an action is rejected, stop and summarize."
            )

        dry_run = ""
        if task.options.dry_run:
            dry_run = "Dry run: describe the changes you would make but do not write files."

        prompt = self.SYSTEM_PROMPT.format(
            name=profile.name,
            description=profile.description,
            instructions=instructions,
            tools=", ".join(tools.list_names()) or "none",
            working_directory=working_directory,
            autonomy=autonomy,
            dry_run=dry_run,
        )

        # Drop the empty optional sections
        return "\n".join(line for line in prompt.split("\n") if line.strip())

    def build_initial_prompt(self, task: Task) -> str:
        """The first user message of the conversation."""
        lines = [f"Task: {task.title}"]
        if task.description:
            lines.append(task.description)
        lines.append(f"Target: {task.target.describe()}")

        options = task.options
        if options.test_filter:
            lines.append(f"Test filter: {options.test_filter}")
        if options.coverage_target is not None:
            lines.append(f"Coverage target: {options.coverage_target:g}%")
        if options.refactor_type:
            lines.append(f"Refactor type: {options.refactor_type}")
        if options.feature_spec:
            lines.append(f"Feature spec:\n{options.feature_spec}")
        if options.doc_type:
            lines.append(f"Documentation type: {options.doc_type}")
        if options.scan_type:
            lines.append(f"Scan type: {options.scan_type}")
        if options.severity_threshold:
            lines.append(f"Severity threshold: {options.severity_threshold}")

        return "\n".join(lines)


@dataclass
class AgentContext:
    """
    Input to one agent loop run.

    Attributes:
        task: The task being worked on
        tools: Tools the model may call
        working_directory: Repository root for the tools
        max_iterations: Iteration budget
        system_prompt: System prompt for every model call
        initial_prompt: First user message
        parallel_tools: Run a batch of tool calls concurrently
        max_parallel_tools: Fan-out bound when parallel
        approval_gate: Awaited before a batch that needs approval
        is_cancelled: Checked at every iteration boundary
    """
    task: Task
    tools: ToolRegistry
    working_directory: Path
    max_iterations: int
    system_prompt: str
    initial_prompt: str
    parallel_tools: bool = False
    max_parallel_tools: int = 4
    approval_gate: ApprovalGate | None = None
    is_cancelled: Callable[[], bool] = field(default=lambda: False)

    @property
    def needs_approval_for_all(self) -> bool:
        return self.task.autonomy_level == AutonomyLevel.MANUAL

    @property
    def supervised(self) -> bool:
        return self.task.autonomy_level in (AutonomyLevel.SUPERVISED, AutonomyLevel.MANUAL)
