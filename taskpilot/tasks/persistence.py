"""
Task Persistence
================

Where tasks and their agent events are stored.

The lifecycle manager only talks to the TaskPersistenceAdapter interface;
two implementations ship with the runtime:

- InMemoryPersistenceAdapter: process-local dicts (default, used by tests)
- HttpPersistenceAdapter: a REST service under /api/agent/tasks

Adapters are dumb stores. Transition rules, retry policy and crash
recovery live in TaskLifecycleManager; adapters never validate statuses.
"""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from taskpilot.agent.events import AgentEvent
from taskpilot.tasks.models import Task, TaskResult, TaskStatus
from taskpilot.utils.config import PersistenceConfig
from taskpilot.utils.errors import APIError
from taskpilot.utils.logger import Logger
from taskpilot.utils.retry import raise_for_status

logger = Logger("Persistence")


class TaskPersistenceAdapter(ABC):
    """Storage contract consumed by TaskLifecycleManager."""

    @abstractmethod
    async def create_task(self, task: Task) -> None:
        """Store a new task."""

    @abstractmethod
    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        changes: dict[str, Any] | None = None
    ) -> None:
        """
        Write a status, plus any other fields that changed with it.

        Args:
            task_id: Task to update
            status: New status
            changes: Other serialized Task fields (started_at, retry_count, ...)
        """

    @abstractmethod
    async def record_result(self, task_id: str, result: TaskResult) -> None:
        """Attach the final result to a task."""

    @abstractmethod
    async def record_event(self, task_id: str, event: AgentEvent) -> None:
        """Append an agent event to the task's log."""

    @abstractmethod
    async def get_task(self, task_id: str) -> Task | None:
        ...

    @abstractmethod
    async def get_task_events(self, task_id: str) -> list[AgentEvent]:
        ...

    @abstractmethod
    async def get_recent_tasks(self, limit: int = 10) -> list[Task]:
        """Newest first."""

    @abstractmethod
    async def get_tasks_by_status(self, statuses: list[TaskStatus]) -> list[Task]:
        ...

    async def close(self) -> None:
        """Release resources held by the adapter."""


# ==============================================================================
# In-memory
# ==============================================================================

class InMemoryPersistenceAdapter(TaskPersistenceAdapter):
    """
    Process-local store.

    Tasks are kept serialized so callers never share mutable objects with
    the store.
    """

    def __init__(self):
        self._tasks: dict[str, dict[str, Any]] = {}
        self._events: dict[str, list[AgentEvent]] = {}

    async def create_task(self, task: Task) -> None:
        self._tasks[task.id] = task.to_dict()
        self._events[task.id] = []

    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        changes: dict[str, Any] | None = None
    ) -> None:
        data = self._tasks.get(task_id)
        if data is None:
            logger.warning(f"update_status for unknown task {task_id}")
            return
        data.update(changes or {})
        data["status"] = status.value

    async def record_result(self, task_id: str, result: TaskResult) -> None:
        data = self._tasks.get(task_id)
        if data is None:
            logger.warning(f"record_result for unknown task {task_id}")
            return
        data["result"] = result.to_dict()

    async def record_event(self, task_id: str, event: AgentEvent) -> None:
        self._events.setdefault(task_id, []).append(event)

    async def get_task(self, task_id: str) -> Task | None:
        data = self._tasks.get(task_id)
        return Task.from_dict(data) if data else None

    async def get_task_events(self, task_id: str) -> list[AgentEvent]:
        return list(self._events.get(task_id, []))

    async def get_recent_tasks(self, limit: int = 10) -> list[Task]:
        tasks = sorted(self._tasks.values(), key=lambda d: d["created_at"], reverse=True)
        return [Task.from_dict(d) for d in tasks[:limit]]

    async def get_tasks_by_status(self, statuses: list[TaskStatus]) -> list[Task]:
        wanted = {s.value for s in statuses}
        return [Task.from_dict(d) for d in self._tasks.values() if d["status"] in wanted]


# ==============================================================================
# HTTP
# ==============================================================================

class HttpPersistenceAdapter(TaskPersistenceAdapter):
    """
    REST-backed store.

    Endpoints:
        POST  /api/agent/tasks
        PATCH /api/agent/tasks/{id}/status
        POST  /api/agent/tasks/{id}/result
        POST  /api/agent/tasks/{id}/events
        GET   /api/agent/tasks/{id}
        GET   /api/agent/tasks/{id}/events
        GET   /api/agent/tasks?limit=N[&status=a,b]
    """

    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        response = await self._client.request(method, path, **kwargs)
        raise_for_status(response, source=f"persistence {method} {path}")
        if not response.content:
            return None
        return response.json()

    async def create_task(self, task: Task) -> None:
        await self._request("POST", "/api/agent/tasks", json=task.to_dict())

    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        changes: dict[str, Any] | None = None
    ) -> None:
        await self._request(
            "PATCH",
            f"/api/agent/tasks/{task_id}/status",
            json={**(changes or {}), "status": status.value},
        )

    async def record_result(self, task_id: str, result: TaskResult) -> None:
        await self._request("POST", f"/api/agent/tasks/{task_id}/result", json=result.to_dict())

    async def record_event(self, task_id: str, event: AgentEvent) -> None:
        await self._request("POST", f"/api/agent/tasks/{task_id}/events", json=event.to_dict())

    async def get_task(self, task_id: str) -> Task | None:
        try:
            data = await self._request("GET", f"/api/agent/tasks/{task_id}")
        except APIError as e:
            if e.status_code == 404:
                return None
            raise
        return Task.from_dict(data) if data else None

    async def get_task_events(self, task_id: str) -> list[AgentEvent]:
        data = await self._request("GET", f"/api/agent/tasks/{task_id}/events")
        return [AgentEvent.from_dict(e) for e in data or []]

    async def get_recent_tasks(self, limit: int = 10) -> list[Task]:
        data = await self._request("GET", "/api/agent/tasks", params={"limit": limit})
        return [Task.from_dict(t) for t in data or []]

    async def get_tasks_by_status(self, statuses: list[TaskStatus]) -> list[Task]:
        data = await self._request(
            "GET",
            "/api/agent/tasks",
            params={"status": ",".join(s.value for s in statuses)},
        )
        return [Task.from_dict(t) for t in data or []]

    async def close(self) -> None:
        await self._client.aclose()


def create_persistence_adapter(config: PersistenceConfig) -> TaskPersistenceAdapter:
    """
    Pick an adapter from the persistence config.

    Falls back to in-memory when "http" is requested without a base URL.
    """
    if config.type == "http":
        if config.base_url:
            logger.info(f"Using HTTP persistence at {config.base_url}")
            return HttpPersistenceAdapter(config.base_url, config.api_key)
        logger.warning("TASKPILOT_PERSISTENCE=http but no TASKPILOT_PERSISTENCE_URL, using memory")

    return InMemoryPersistenceAdapter()
