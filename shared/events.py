"""
Sync lifecycle events for the RepoPulse services.

Background syncs have no caller waiting on them, so the worker announces what
happened on a redis channel:
- Type-safe event definitions
- Event validation and serialization
- Best-effort publishing
"""

import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Event types for the sync pipeline."""

    SYNC_REQUESTED = "sync.requested"
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"


class EventSource(str, Enum):
    """Event source components."""

    API = "api"
    SYNC_WORKER = "sync_worker"
    SYSTEM = "system"


@dataclass
class EventMetadata:
    """Event metadata for tracking and auditing."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: EventSource = EventSource.SYSTEM
    version: str = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        """Convert metadata to dictionary."""
        return {
            "event_id": self.event_id,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
            "version": self.version,
        }


class SyncData(BaseModel):
    """Payload of a sync event."""

    repository_id: int = Field(..., description="Repository ID")
    full_name: str = Field(..., description="owner/name on the source")
    pages_fetched: int = Field(default=0, ge=0)
    commits_inserted: int = Field(default=0, ge=0)
    error: Optional[str] = Field(default=None, description="Failure reason")
    error_kind: Optional[str] = Field(default=None, description="transient, permanent, storage or internal")


class BaseEvent(BaseModel):
    """Base event class with common functionality."""

    metadata: EventMetadata = Field(default_factory=EventMetadata)
    event_type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("data", mode="before")
    @classmethod
    def validate_data(cls, v):
        """Event payloads are plain dictionaries on the wire."""
        if isinstance(v, BaseModel):
            v = v.model_dump(mode="json")
        if not isinstance(v, dict):
            raise ValueError("Event data must be a dictionary")
        return v

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, json_str: str) -> "BaseEvent":
        """Deserialize event from JSON."""
        return cls.model_validate(json.loads(json_str))

    def get_correlation_id(self) -> str:
        """Get correlation ID for event tracing."""
        return self.metadata.correlation_id or self.metadata.event_id


class EventFactory:
    """Factory for creating events with proper metadata."""

    @staticmethod
    def create_event(
        event_type: EventType,
        data: Dict[str, Any],
        source: EventSource = EventSource.SYSTEM,
        correlation_id: Optional[str] = None,
    ) -> BaseEvent:
        """Create an event with proper metadata."""
        metadata = EventMetadata(correlation_id=correlation_id, source=source)
        return BaseEvent(metadata=metadata, event_type=event_type, data=data)

    @staticmethod
    def create_sync_event(
        event_type: EventType,
        sync_data: SyncData,
        source: EventSource = EventSource.SYNC_WORKER,
        correlation_id: Optional[str] = None,
    ) -> BaseEvent:
        """Create a sync lifecycle event."""
        return EventFactory.create_event(
            event_type,
            sync_data.model_dump(mode="json"),
            source=source,
            correlation_id=correlation_id,
        )


class EventSerializer:
    """Helper for event serialization and deserialization."""

    @staticmethod
    def serialize(event: BaseEvent) -> str:
        return event.to_json()

    @staticmethod
    def deserialize(json_str: str) -> BaseEvent:
        return BaseEvent.from_json(json_str)


class EventValidator:
    """Validator for events."""

    @staticmethod
    def validate_event(event: BaseEvent) -> List[str]:
        """Validate an event and return list of errors."""
        errors = []

        if not event.metadata.event_id:
            errors.append("Event ID is required")

        if not event.metadata.timestamp:
            errors.append("Event timestamp is required")

        if event.event_type in (
            EventType.SYNC_STARTED,
            EventType.SYNC_COMPLETED,
            EventType.SYNC_FAILED,
        ) and "repository_id" not in event.data:
            errors.append("Sync events must carry a repository_id")

        if event.event_type == EventType.SYNC_FAILED and not event.data.get("error"):
            errors.append("Failed sync events must carry an error")

        return errors

    @staticmethod
    def is_valid(event: BaseEvent) -> bool:
        return len(EventValidator.validate_event(event)) == 0


class RedisEventPublisher:
    """Publishes events to a redis channel. Publishing never fails the caller."""

    def __init__(self, redis_client, channel: str = "sync_events"):
        self.redis_client = redis_client
        self.channel = channel

    async def publish(self, event: BaseEvent) -> bool:
        try:
            if not EventValidator.is_valid(event):
                raise ValueError(f"Invalid event: {EventValidator.validate_event(event)}")

            await self.redis_client.publish(self.channel, EventSerializer.serialize(event))
            logger.debug(f"Published {event.event_type.value} event {event.metadata.event_id}")
            return True

        except Exception as e:
            logger.error(f"Error publishing {event.event_type.value} event: {e}")
            return False


__all__ = [
    "EventType", "EventSource", "EventMetadata",
    "SyncData", "BaseEvent",
    "EventFactory", "EventSerializer", "EventValidator",
    "RedisEventPublisher",
]
