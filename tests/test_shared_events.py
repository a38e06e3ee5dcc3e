"""
Unit tests for shared events module.
"""

import json
from unittest.mock import AsyncMock

import pytest

from shared.events import (
    BaseEvent,
    EventFactory,
    EventSerializer,
    EventSource,
    EventType,
    EventValidator,
    RedisEventPublisher,
    SyncData,
)


def sync_event(event_type=EventType.SYNC_COMPLETED, **kwargs) -> BaseEvent:
    data = SyncData(repository_id=1, full_name="octocat/hello-world", **kwargs)
    return EventFactory.create_sync_event(event_type, data)


class TestEventFactory:
    """Test cases for EventFactory."""

    def test_create_sync_event(self):
        event = sync_event(pages_fetched=2, commits_inserted=150)

        assert event.event_type == EventType.SYNC_COMPLETED
        assert event.metadata.source == EventSource.SYNC_WORKER
        assert event.data["repository_id"] == 1
        assert event.data["commits_inserted"] == 150

    def test_correlation_id_defaults_to_event_id(self):
        event = sync_event()
        assert event.get_correlation_id() == event.metadata.event_id

        correlated = EventFactory.create_event(
            EventType.SYNC_REQUESTED, {"repository_id": 1}, correlation_id="req-1"
        )
        assert correlated.get_correlation_id() == "req-1"

    def test_event_data_must_be_dict(self):
        with pytest.raises(ValueError):
            BaseEvent(event_type=EventType.SYNC_STARTED, data=["not", "a", "dict"])


class TestEventSerializer:
    """Test cases for EventSerializer."""

    def test_json_round_trip(self):
        event = sync_event(EventType.SYNC_FAILED, error="rate limited", error_kind="transient")
        payload = EventSerializer.serialize(event)

        assert json.loads(payload)["event_type"] == "sync.failed"

        restored = EventSerializer.deserialize(payload)
        assert restored.event_type == EventType.SYNC_FAILED
        assert restored.data["error_kind"] == "transient"
        assert restored.metadata.event_id == event.metadata.event_id


class TestEventValidator:
    """Test cases for EventValidator."""

    def test_valid_sync_event(self):
        assert EventValidator.is_valid(sync_event()) is True

    def test_sync_event_needs_repository(self):
        event = EventFactory.create_event(EventType.SYNC_STARTED, {"full_name": "a/b"})
        assert "Sync events must carry a repository_id" in EventValidator.validate_event(event)

    def test_failed_event_needs_error(self):
        event = sync_event(EventType.SYNC_FAILED)
        assert EventValidator.is_valid(event) is False


class TestRedisEventPublisher:
    """Test cases for RedisEventPublisher."""

    @pytest.mark.asyncio
    async def test_publish(self):
        redis_client = AsyncMock()
        publisher = RedisEventPublisher(redis_client, channel="sync_events")

        assert await publisher.publish(sync_event()) is True
        channel, payload = redis_client.publish.call_args.args
        assert channel == "sync_events"
        assert json.loads(payload)["data"]["full_name"] == "octocat/hello-world"

    @pytest.mark.asyncio
    async def test_publish_failure_is_not_raised(self):
        redis_client = AsyncMock()
        redis_client.publish.side_effect = ConnectionError("redis down")
        publisher = RedisEventPublisher(redis_client)

        assert await publisher.publish(sync_event()) is False

    @pytest.mark.asyncio
    async def test_invalid_event_not_published(self):
        redis_client = AsyncMock()
        publisher = RedisEventPublisher(redis_client)

        assert await publisher.publish(sync_event(EventType.SYNC_FAILED)) is False
        redis_client.publish.assert_not_called()
