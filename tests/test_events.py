"""
Unit tests for the shared events module.

Covers the typed event set, the in-process bus, serialization and the
Redis relay.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from shared.errors import ErrorType
from shared.events import (
    EVENT_CLASSES, BaseEvent, CommitFailed, CommitProcessed, ConfigUpdated, ErrorOccurred,
    EventBus, EventSerializer, EventSource, EventMetadata, EventType, PushRequested,
    RedisEventRelay, TrackingStarted, UnpushedCommitsChanged
)
from shared.models import Commit


@pytest.fixture
def commit():
    return Commit(
        hash="abc1234",
        message="fix: parse key: value",
        author="Jane Doe <jane@example.com>",
        date="2024-01-15T10:30:00.000Z",
        branch="main",
        repo_name="acme/widgets",
        repo_path="/repo"
    )


class TestEventTypes:
    """Test cases for the closed event set."""

    def test_every_type_has_a_class(self):
        assert set(EVENT_CLASSES) == set(EventType)

    def test_event_type_is_fixed_per_class(self, commit):
        event = CommitProcessed(commit=commit, log_path="/tracking/commit-tracker.log")

        assert event.event_type == EventType.COMMIT_PROCESSED
        assert event.metadata.source == EventSource.ENGINE
        assert event.metadata.event_id

    def test_metadata_ids_are_unique(self):
        assert TrackingStarted().metadata.event_id != TrackingStarted().metadata.event_id


class TestEventBus:
    """Test cases for EventBus."""

    def test_subscribe_by_class(self, bus):
        received = []
        bus.subscribe(UnpushedCommitsChanged, received.append)

        bus.publish(UnpushedCommitsChanged(has_unpushed=True))
        bus.publish(TrackingStarted(repository_count=1))

        assert len(received) == 1
        assert received[0].has_unpushed is True

    def test_subscribe_unknown_class(self, bus):
        with pytest.raises(ValueError):
            bus.subscribe(BaseEvent, lambda e: None)

    def test_fan_out_in_subscription_order(self, bus):
        order = []
        bus.subscribe(TrackingStarted, lambda e: order.append("first"))
        bus.subscribe_all(lambda e: order.append("all"))
        bus.subscribe(TrackingStarted, lambda e: order.append("second"))

        delivered = bus.publish(TrackingStarted())

        assert delivered == 3
        assert order == ["first", "all", "second"]

    def test_raising_subscriber_does_not_block_others(self, bus):
        received = []

        def broken(event):
            raise RuntimeError("subscriber bug")

        bus.subscribe(ErrorOccurred, broken)
        bus.subscribe(ErrorOccurred, received.append)

        delivered = bus.publish(ErrorOccurred(operation="test", message="boom"))

        assert delivered == 1
        assert len(received) == 1

    def test_dispose_subscription(self, bus):
        received = []
        subscription = bus.subscribe(TrackingStarted, received.append)

        subscription.dispose()
        subscription.dispose()
        bus.publish(TrackingStarted())

        assert received == []
        assert bus.subscriber_count() == 0

    def test_subscriber_count(self, bus):
        bus.subscribe(TrackingStarted, lambda e: None)
        bus.subscribe_all(lambda e: None)

        assert bus.subscriber_count() == 2
        assert bus.subscriber_count(TrackingStarted) == 2
        assert bus.subscriber_count(PushRequested) == 1

    def test_clear(self, bus):
        subscription = bus.subscribe(TrackingStarted, lambda e: None)

        bus.clear()

        assert bus.subscriber_count() == 0
        assert subscription.active is False

    @pytest.mark.asyncio
    async def test_async_subscriber(self, bus):
        received = []

        async def handler(event):
            await asyncio.sleep(0)
            received.append(event)

        bus.subscribe(TrackingStarted, handler)
        bus.publish(TrackingStarted(repository_count=2))
        await bus.drain()

        assert received[0].repository_count == 2

    @pytest.mark.asyncio
    async def test_failing_async_subscriber_is_contained(self, bus):
        async def handler(event):
            raise RuntimeError("async subscriber bug")

        bus.subscribe(TrackingStarted, handler)

        assert bus.publish(TrackingStarted()) == 1
        await bus.drain()

    def test_async_subscriber_without_loop(self, bus):
        async def handler(event):
            pass

        bus.subscribe(TrackingStarted, handler)

        assert bus.publish(TrackingStarted()) == 1


class TestEventSerializer:
    """Test cases for EventSerializer."""

    def test_round_trip(self, commit):
        event = CommitProcessed(
            metadata=EventMetadata(source=EventSource.PIPELINE, correlation_id="abc"),
            commit=commit,
            log_path="/tracking/commit-tracker.log"
        )

        restored = EventSerializer.deserialize(EventSerializer.serialize(event))

        assert isinstance(restored, CommitProcessed)
        assert restored == event

    def test_serialized_shape(self):
        event = CommitFailed(
            repo_path="/repo",
            commit_hash="abc1234",
            error="git log failed",
            error_type=ErrorType.GIT_OPERATION
        )

        data = json.loads(EventSerializer.serialize(event))

        assert data["event_type"] == "commit-failed"
        assert data["error_type"] == "git-operation"
        assert "event_id" in data["metadata"]

    def test_deserialize_unknown_type(self):
        with pytest.raises(ValueError):
            EventSerializer.deserialize(json.dumps({"event_type": "nope"}))


class TestRedisEventRelay:
    """Test cases for RedisEventRelay."""

    @pytest.mark.asyncio
    async def test_forwards_every_event(self, bus):
        redis_client = AsyncMock()
        relay = RedisEventRelay(redis_client, channel="events")
        relay.attach(bus)

        bus.publish(ConfigUpdated(log_file_path="/tracking", log_file="commit-tracker.log"))
        await bus.drain()

        redis_client.publish.assert_awaited_once()
        channel, payload = redis_client.publish.await_args.args
        assert channel == "events"
        assert json.loads(payload)["event_type"] == "config-updated"

    @pytest.mark.asyncio
    async def test_publish_failure_is_logged(self, bus):
        redis_client = AsyncMock()
        redis_client.publish.side_effect = ConnectionError("redis down")
        relay = RedisEventRelay(redis_client)
        relay.attach(bus)

        bus.publish(TrackingStarted())
        await bus.drain()

        redis_client.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_detaches(self, bus):
        redis_client = AsyncMock()
        relay = RedisEventRelay(redis_client)
        relay.attach(bus)

        await relay.close()

        assert bus.subscriber_count() == 0
        redis_client.aclose.assert_awaited_once()
