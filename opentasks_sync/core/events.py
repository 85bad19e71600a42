"""Change notifications published by the sync engine.

The surrounding application subscribes to these to refresh its clients
(e.g. push a websocket message) whenever the engine writes to the store.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from opentasks_sync.core.models import LocalTask, TaskList

logger = logging.getLogger(__name__)


@dataclass
class SyncEvent:
    """Base class for published events."""

    @property
    def type(self) -> str:
        return type(self).__name__


@dataclass
class TaskUpserted(SyncEvent):
    task: LocalTask
    created: bool = False


@dataclass
class TaskDeleted(SyncEvent):
    task_id: int
    list_id: int
    uid: str | None = None


@dataclass
class CollectionCreated(SyncEvent):
    task_list: TaskList


@dataclass
class CollectionRetired(SyncEvent):
    task_list: TaskList
    tasks_deleted: int = 0


@dataclass
class SyncCompleted(SyncEvent):
    reason: str
    status: str
    stats: dict[str, int] = field(default_factory=dict)


@dataclass
class SyncFailed(SyncEvent):
    reason: str
    error: str


Subscriber = Callable[[SyncEvent], Awaitable[None]]


class EventBroadcaster:
    """Fan events out to subscribed async callbacks.

    A failing subscriber is logged and skipped; it never affects the sync pass
    or the other subscribers.
    """

    def __init__(self):
        self._subscribers: list[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback.

        Returns:
            A function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def publish(self, event: SyncEvent) -> None:
        """Deliver an event to every subscriber, in subscription order."""
        for callback in list(self._subscribers):
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.type}: {e}")
