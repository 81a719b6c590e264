"""
Task System
===========

Tasks are the persisted units of autonomous work the agent loop drives.

This module provides:
- Task and its value objects (models)
- The status state machine and transition table
- Persistence adapters (in-memory, HTTP)
- TaskLifecycleManager: transitions, retries, recovery, approvals
"""

from taskpilot.tasks.models import (
    AutonomyLevel,
    Task,
    TaskMetrics,
    TaskOptions,
    TaskPriority,
    TaskResult,
    TaskStatus,
    TaskTarget,
    TaskType,
    can_transition,
)
from taskpilot.tasks.persistence import (
    HttpPersistenceAdapter,
    InMemoryPersistenceAdapter,
    TaskPersistenceAdapter,
    create_persistence_adapter,
)
from taskpilot.tasks.manager import TaskLifecycleManager

__all__ = [
    "AutonomyLevel",
    "HttpPersistenceAdapter",
    "InMemoryPersistenceAdapter",
    "Task",
    "TaskLifecycleManager",
    "TaskMetrics",
    "TaskOptions",
    "TaskPersistenceAdapter",
    "TaskPriority",
    "TaskResult",
    "TaskStatus",
    "TaskTarget",
    "TaskType",
    "can_transition",
    "create_persistence_adapter",
]
