"""
Typed event system for the commit tracker.

This module provides:
- A closed set of event types, one pydantic model per event
- Event metadata for tracing
- An in-process publish/subscribe bus
- A Redis relay that forwards events to external consumers
- JSON serialization helpers

Subscribers never couple back into the engine: a subscriber that raises is
logged and skipped, and the publisher carries on.
"""

import asyncio
import inspect
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, Field

from shared.errors import ErrorType
from shared.models import Commit, RepositoryStatus

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event types emitted by the commit tracker."""

    TRACKING_STARTED = "tracking-started"
    TRACKING_STOPPED = "tracking-stopped"
    COMMIT_DETECTED = "commit-detected"
    COMMIT_PROCESSED = "commit-processed"
    COMMIT_FAILED = "commit-failed"
    REPOSITORY_STATUS_CHANGED = "repository-status-changed"
    CACHE_INVALIDATED = "cache-invalidated"
    CONFIG_UPDATED = "config-updated"
    UNPUSHED_COMMITS_CHANGED = "unpushed-commits-changed"
    ERROR_OCCURRED = "error-occurred"

    # Requests fulfilled by external collaborators
    PUSH_REQUESTED = "push-requested"
    TERMINAL_OPERATION_REQUESTED = "terminal-operation-requested"
    SETUP_REQUESTED = "setup-requested"


class EventSource(str, Enum):
    """Components that publish events."""
    ENGINE = "engine"
    PIPELINE = "pipeline"
    WATCHER = "watcher"
    CACHE = "cache"
    SYSTEM = "system"


class EventMetadata(BaseModel):
    """Event metadata for tracing."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    source: EventSource = EventSource.ENGINE


class BaseEvent(BaseModel):
    """Common base of every tracker event."""

    metadata: EventMetadata = Field(default_factory=EventMetadata)

    def to_json(self) -> str:
        return self.model_dump_json()


class TrackingStarted(BaseEvent):
    event_type: EventType = EventType.TRACKING_STARTED
    repository_count: int = 0


class TrackingStopped(BaseEvent):
    event_type: EventType = EventType.TRACKING_STOPPED


class CommitDetected(BaseEvent):
    event_type: EventType = EventType.COMMIT_DETECTED
    repo_path: str
    commit_hash: str
    branch: Optional[str] = None


class CommitProcessed(BaseEvent):
    event_type: EventType = EventType.COMMIT_PROCESSED
    commit: Commit
    log_path: str


class CommitFailed(BaseEvent):
    event_type: EventType = EventType.COMMIT_FAILED
    repo_path: str
    commit_hash: str
    error: str
    error_type: ErrorType = ErrorType.UNKNOWN


class RepositoryStatusChanged(BaseEvent):
    event_type: EventType = EventType.REPOSITORY_STATUS_CHANGED
    previous: Optional[RepositoryStatus] = None
    current: RepositoryStatus


class CacheInvalidated(BaseEvent):
    event_type: EventType = EventType.CACHE_INVALIDATED
    region: Optional[str] = None
    key: Optional[str] = None


class ConfigUpdated(BaseEvent):
    event_type: EventType = EventType.CONFIG_UPDATED
    log_file_path: str
    log_file: str
    excluded_branches: List[str] = Field(default_factory=list)


class UnpushedCommitsChanged(BaseEvent):
    event_type: EventType = EventType.UNPUSHED_COMMITS_CHANGED
    has_unpushed: bool


class ErrorOccurred(BaseEvent):
    event_type: EventType = EventType.ERROR_OCCURRED
    error_type: ErrorType = ErrorType.UNKNOWN
    operation: str
    message: str


class PushRequested(BaseEvent):
    event_type: EventType = EventType.PUSH_REQUESTED
    log_file_path: str
    tracking_file_path: str


class TerminalOperationRequested(BaseEvent):
    event_type: EventType = EventType.TERMINAL_OPERATION_REQUESTED
    working_directory: str
    operation: str


class SetupRequested(BaseEvent):
    event_type: EventType = EventType.SETUP_REQUESTED
    reason: str


TrackerEvent = Union[
    TrackingStarted, TrackingStopped, CommitDetected, CommitProcessed,
    CommitFailed, RepositoryStatusChanged, CacheInvalidated, ConfigUpdated,
    UnpushedCommitsChanged, ErrorOccurred, PushRequested,
    TerminalOperationRequested, SetupRequested
]

EVENT_CLASSES: Dict[EventType, Type[BaseEvent]] = {
    cls.model_fields['event_type'].default: cls
    for cls in TrackerEvent.__args__
}

E = TypeVar('E', bound=BaseEvent)
EventHandler = Callable[[Any], Any]


class Subscription:
    """Handle returned by ``EventBus.subscribe``; dispose to unsubscribe."""

    def __init__(self, bus: 'EventBus', event_cls: Optional[Type[BaseEvent]], handler: EventHandler):
        self._bus = bus
        self.event_cls = event_cls
        self.handler = handler
        self.active = True

    def dispose(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    """In-process, multi-subscriber event bus with synchronous fan-out."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._tasks: set = set()

    def subscribe(self, event_cls: Type[E], handler: Callable[[E], Any]) -> Subscription:
        """Subscribe to one event class."""
        if event_cls not in EVENT_CLASSES.values():
            raise ValueError(f"Unknown event class: {event_cls!r}")
        subscription = Subscription(self, event_cls, handler)
        self._subscriptions.append(subscription)
        return subscription

    def subscribe_all(self, handler: EventHandler) -> Subscription:
        """Subscribe to every event."""
        subscription = Subscription(self, None, handler)
        self._subscriptions.append(subscription)
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        try:
            self._subscriptions.remove(subscription)
        except ValueError:
            pass

    def subscriber_count(self, event_cls: Optional[Type[BaseEvent]] = None) -> int:
        if event_cls is None:
            return len(self._subscriptions)
        return sum(
            1 for s in self._subscriptions
            if s.event_cls is None or s.event_cls is event_cls
        )

    def publish(self, event: BaseEvent) -> int:
        """Deliver an event to every matching subscriber; returns deliveries."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.event_cls is not None and not isinstance(event, subscription.event_cls):
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result, event)
                delivered += 1
            except Exception as e:
                logger.error(
                    f"Event subscriber {getattr(subscription.handler, '__name__', subscription.handler)!r} "
                    f"failed on {event.event_type.value}: {e}"
                )
        return delivered

    def _schedule(self, awaitable, event: BaseEvent) -> None:
        async def runner():
            try:
                await awaitable
            except Exception as e:
                logger.error(f"Async event subscriber failed on {event.event_type.value}: {e}")

        try:
            task = asyncio.get_running_loop().create_task(runner())
        except RuntimeError:
            logger.warning(f"No running event loop for async subscriber of {event.event_type.value}")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def drain(self) -> None:
        """Wait for pending async subscribers."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.active = False
        self._subscriptions.clear()


class EventSerializer:
    """Helper for event serialization and deserialization."""

    @staticmethod
    def serialize(event: BaseEvent) -> str:
        return event.to_json()

    @classmethod
    def deserialize(cls, json_str: str) -> BaseEvent:
        data = json.loads(json_str)
        event_cls = EVENT_CLASSES.get(EventType(data.get('event_type')))
        if event_cls is None:
            raise ValueError(f"Unknown event type: {data.get('event_type')}")
        return event_cls.model_validate(data)


class RedisEventRelay:
    """Forwards every bus event to a Redis pub/sub channel."""

    def __init__(self, redis_client, channel: str = "commit_tracker_events"):
        self.redis_client = redis_client
        self.channel = channel
        self._subscription: Optional[Subscription] = None

    def attach(self, bus: EventBus) -> Subscription:
        self._subscription = bus.subscribe_all(self.forward)
        return self._subscription

    async def forward(self, event: BaseEvent) -> None:
        try:
            await self.redis_client.publish(self.channel, EventSerializer.serialize(event))
            logger.debug(f"Relayed {event.event_type.value} to {self.channel}")
        except Exception as e:
            logger.error(f"Error relaying event to Redis: {e}")

    async def close(self) -> None:
        if self._subscription:
            self._subscription.dispose()
            self._subscription = None
        if self.redis_client:
            await self.redis_client.aclose()


__all__ = [
    'EventType', 'EventSource', 'EventMetadata', 'BaseEvent',
    'TrackingStarted', 'TrackingStopped', 'CommitDetected', 'CommitProcessed',
    'CommitFailed', 'RepositoryStatusChanged', 'CacheInvalidated', 'ConfigUpdated',
    'UnpushedCommitsChanged', 'ErrorOccurred', 'PushRequested',
    'TerminalOperationRequested', 'SetupRequested', 'TrackerEvent', 'EVENT_CLASSES',
    'Subscription', 'EventBus', 'EventSerializer', 'RedisEventRelay'
]
