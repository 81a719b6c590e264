"""
Task Models
===========

The Task entity and its status state machine.

Status graph:

    pending ──► queued ──► running ──► completed
       │          │          │    ├──► failed
       │          │          │    ├──► cancelled
       │          │          │    └──► pending            (retry)
       │          │          ▼
       │          │   awaiting_approval ──► approved ──► running
       │          │          │                  │
       ▼          ▼          ▼                  ▼
    cancelled  cancelled  cancelled/failed   cancelled

completed, failed and cancelled are terminal: nothing leaves them.
"""

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class TaskType(str, Enum):
    TEST = "test"
    QA = "qa"
    FEATURE = "feature"
    REFACTOR = "refactor"
    DOCS = "docs"
    SECURITY = "security"


class TaskStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


class AutonomyLevel(str, Enum):
    FULL = "full"
    SUPERVISED = "supervised"
    MANUAL = "manual"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})

PRIORITY_RANK = {
    TaskPriority.LOW: 0,
    TaskPriority.NORMAL: 1,
    TaskPriority.HIGH: 2,
    TaskPriority.CRITICAL: 3,
}

ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.QUEUED, TaskStatus.CANCELLED}),
    TaskStatus.QUEUED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.PENDING}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.AWAITING_APPROVAL,
        TaskStatus.COMPLETED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
        TaskStatus.PENDING,
    }),
    TaskStatus.AWAITING_APPROVAL: frozenset({TaskStatus.APPROVED, TaskStatus.CANCELLED, TaskStatus.FAILED}),
    TaskStatus.APPROVED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Whether the state machine allows current -> target."""
    return target in ALLOWED_TRANSITIONS[current]


def now_ms() -> int:
    return int(time.time() * 1000)


# ==============================================================================
# Value objects
# ==============================================================================

@dataclass
class TaskTarget:
    """What part of the repository the task works on."""
    files: list[str] = field(default_factory=list)
    directories: list[str] = field(default_factory=list)
    pattern: str | None = None
    scope: str = "project"      # file | directory | project

    def describe(self) -> str:
        parts = []
        if self.files:
            parts.append(f"files: {', '.join(self.files)}")
        if self.directories:
            parts.append(f"directories: {', '.join(self.directories)}")
        if self.pattern:
            parts.append(f"pattern: {self.pattern}")
        return "; ".join(parts) or f"the whole {self.scope}"


@dataclass
class TaskOptions:
    """Per-task knobs (dry run, filters, thresholds)."""
    dry_run: bool = False
    verbose: bool = False
    auto_fix: bool = False
    coverage_target: float | None = None
    test_filter: str | None = None
    feature_spec: str | None = None
    refactor_type: str | None = None
    doc_type: str | None = None
    scan_type: str | None = None
    severity_threshold: str | None = None
    enable_commit: bool = False


@dataclass
class TaskMetrics:
    duration_ms: int = 0
    iterations_used: int = 0
    tool_call_count: int = 0
    files_modified: int = 0
    tokens_used: int | None = None


@dataclass
class TaskResult:
    """
    Final outcome of a task, written once when it becomes terminal.

    Attributes:
        success: Whether the agent finished the work
        summary: Human-readable summary
        output: Longer output (defaults to the summary)
        error: Raw error string on failure
        error_code: Error taxonomy code on failure
        metrics: Run statistics
        changes: File change manifest ({"path", "type"} dicts)
    """
    success: bool
    summary: str
    output: str = ""
    error: str | None = None
    error_code: str | None = None
    metrics: TaskMetrics | None = None
    changes: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskResult":
        metrics = data.get("metrics")
        return cls(
            success=data["success"],
            summary=data.get("summary", ""),
            output=data.get("output", ""),
            error=data.get("error"),
            error_code=data.get("error_code"),
            metrics=TaskMetrics(**metrics) if metrics else None,
            changes=list(data.get("changes") or []),
        )


# ==============================================================================
# Task
# ==============================================================================

@dataclass
class Task:
    """
    A unit of autonomous agent work.

    Invariants kept by TaskLifecycleManager:
    - retry_count <= max_retries
    - child_task_ids only reference tasks created after this one
    - status only moves along ALLOWED_TRANSITIONS
    """
    type: TaskType
    title: str
    description: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.NORMAL
    autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED
    target: TaskTarget = field(default_factory=TaskTarget)
    options: TaskOptions = field(default_factory=TaskOptions)
    retry_count: int = 0
    max_retries: int = 3
    created_at: int = field(default_factory=now_ms)
    started_at: int | None = None
    completed_at: int | None = None
    parent_task_id: str | None = None
    child_task_ids: list[str] = field(default_factory=list)
    result: TaskResult | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        data["priority"] = self.priority.value
        data["autonomy_level"] = self.autonomy_level.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        result = data.get("result")
        return cls(
            id=data["id"],
            type=TaskType(data["type"]),
            title=data["title"],
            description=data.get("description", ""),
            status=TaskStatus(data.get("status", TaskStatus.PENDING.value)),
            priority=TaskPriority(data.get("priority", TaskPriority.NORMAL.value)),
            autonomy_level=AutonomyLevel(data.get("autonomy_level", AutonomyLevel.SUPERVISED.value)),
            target=TaskTarget(**(data.get("target") or {})),
            options=TaskOptions(**(data.get("options") or {})),
            retry_count=data.get("retry_count", 0),
            max_retries=data.get("max_retries", 3),
            created_at=data.get("created_at") or now_ms(),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            parent_task_id=data.get("parent_task_id"),
            child_task_ids=list(data.get("child_task_ids") or []),
            result=TaskResult.from_dict(result) if result else None,
        )
