"""
Message types carried on the engine's message bus.

Messages are how the engine hands segment, membership, cluster and alert
events to external consumers (notification sinks, persistence hooks).
"""

from datetime import UTC, datetime
from enum import Enum, auto
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from ulid import ULID


class MessageType(Enum):
    """Types of messages on the message bus."""

    EVENT = auto()  # Something happened inside the engine
    COMMAND = auto()  # Request for the engine to act


class MessagePriority(Enum):
    """Delivery priority hint for subscribers."""

    LOW = 0
    NORMAL = 50
    HIGH = 75
    CRITICAL = 100


class Message(BaseModel):
    """Carrier for payloads on the pub/sub message bus."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(default_factory=lambda: str(ULID()))
    type: MessageType
    topic: str
    payload: Any
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    # Routing
    source: str  # Publishing component
    correlation_id: str | None = None

    # Delivery
    ttl_seconds: int | None = None
    priority: MessagePriority = MessagePriority.NORMAL

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_expired(self) -> bool:
        """Check if message has exceeded its TTL."""
        if self.ttl_seconds is None:
            return False
        age = (datetime.now(UTC) - self.created_at).total_seconds()
        return age > self.ttl_seconds

    @classmethod
    def event(
        cls,
        topic: str,
        source: str,
        payload: Any,
        *,
        priority: MessagePriority = MessagePriority.NORMAL,
        correlation_id: str | None = None,
    ) -> "Message":
        """Create an event message."""
        return cls(
            type=MessageType.EVENT,
            topic=topic,
            payload=payload,
            source=source,
            priority=priority,
            correlation_id=correlation_id,
        )

    @classmethod
    def command(cls, topic: str, source: str, payload: Any) -> "Message":
        """Create a command message."""
        return cls(
            type=MessageType.COMMAND,
            topic=topic,
            payload=payload,
            source=source,
        )
