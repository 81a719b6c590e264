"""
Agent Events
============

Lifecycle events emitted by the agent loop, and the bus that delivers
them to observers (persistence, CLI output, tests).

Delivery model:
    AgentLoop ──publish()──► EventBus ──► queue ──► dispatcher ──► observer A
                                      └──► queue ──► dispatcher ──► observer B

Each observer owns a queue and a dispatcher task. publish() only does
put_nowait() on every queue, so the loop never waits on an observer: a
slow observer only delays its own deliveries, and an observer that raises
is logged and keeps receiving later events.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union

from taskpilot.utils.logger import Logger

logger = Logger("Events")


class AgentEventType(str, Enum):
    STARTED = "started"
    ITERATION_START = "iteration_start"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AgentEvent:
    """
    Append-only log entry produced by the agent loop.

    Attributes:
        type: What happened
        task_id: Task the event belongs to (empty for ad hoc runs)
        data: Event payload
        timestamp: Epoch milliseconds
    """
    type: AgentEventType
    task_id: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "task_id": self.task_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentEvent":
        return cls(
            type=AgentEventType(data["type"]),
            task_id=data.get("task_id", ""),
            data=data.get("data") or {},
            timestamp=data.get("timestamp") or int(time.time() * 1000),
        )


Observer = Callable[[AgentEvent], Union[Awaitable[None], None]]

_CLOSE = object()


class _Subscription:
    def __init__(self, observer: Observer):
        self.observer = observer
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task = asyncio.get_running_loop().create_task(self._dispatch())

    async def _dispatch(self) -> None:
        name = getattr(self.observer, "__qualname__", repr(self.observer))
        while True:
            event = await self.queue.get()
            try:
                if event is _CLOSE:
                    return
                result = self.observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Observer {name} failed on {event.type.value}", e)
            finally:
                self.queue.task_done()


class EventBus:
    """
    Fan-out channel from the agent loop to its observers.

    Example:
        bus = EventBus()
        bus.subscribe(lambda e: print(e.type))
        bus.publish(AgentEvent(AgentEventType.STARTED, task_id="t1"))
        await bus.aclose()
    """

    def __init__(self):
        self._subscriptions: list[_Subscription] = []
        self._closed = False

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """
        Register an observer. Must be called with a running event loop.

        Args:
            observer: Sync or async callable receiving each event

        Returns:
            A function that unsubscribes the observer
        """
        subscription = _Subscription(observer)
        self._subscriptions.append(subscription)

        def unsubscribe() -> None:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
                subscription.queue.put_nowait(_CLOSE)

        return unsubscribe

    def publish(self, event: AgentEvent) -> None:
        """Queue an event for every observer without waiting."""
        if self._closed:
            logger.debug(f"Dropping {event.type.value} published after close")
            return
        for subscription in self._subscriptions:
            subscription.queue.put_nowait(event)

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        for subscription in list(self._subscriptions):
            await subscription.queue.join()

    async def aclose(self) -> None:
        """Deliver what is queued, then stop all dispatchers."""
        self._closed = True
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription.queue.put_nowait(_CLOSE)
        if subscriptions:
            await asyncio.gather(*(s.task for s in subscriptions))

    def __len__(self) -> int:
        return len(self._subscriptions)
