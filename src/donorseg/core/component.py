"""
Component base class with lifecycle, messaging and statistics.

Components are the long-lived pieces of the engine (alert emitter, update
scheduler). They share a message bus for handing events to external
consumers and follow a common start/stop lifecycle owned by the engine.
"""

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum, auto
from typing import TYPE_CHECKING, Any

import structlog

from donorseg.core.signals import Message, MessagePriority

if TYPE_CHECKING:
    from donorseg.bus.message_bus import MessageBus

logger = structlog.get_logger()


class ComponentState(Enum):
    """Lifecycle states for a component."""

    CREATED = auto()
    STARTING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


@dataclass
class ComponentStats:
    """Runtime statistics for a component."""

    started_at: datetime | None = None
    stopped_at: datetime | None = None
    total_messages_sent: int = 0
    total_errors: int = 0
    last_activity_at: datetime | None = None


class Component:
    """
    Base class for engine components.

    Provides:
    - start/stop lifecycle with on_start/on_stop hooks
    - Optional message bus integration
    - Statistics tracking
    """

    def __init__(self, name: str, message_bus: "MessageBus | None" = None) -> None:
        self._name = name
        self._message_bus = message_bus
        self._state = ComponentState.CREATED
        self._stats = ComponentStats()
        self._log = logger.bind(component=name)

    # --- Properties ---

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> ComponentState:
        return self._state

    @property
    def stats(self) -> ComponentStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ComponentState.RUNNING

    # --- Lifecycle management ---

    async def start(self) -> None:
        """Start the component."""
        if self._state not in (ComponentState.CREATED, ComponentState.STOPPED):
            raise RuntimeError(f"Cannot start component in state {self._state}")

        self._state = ComponentState.STARTING
        self._log.info("component_starting")

        try:
            await self.on_start()
            self._state = ComponentState.RUNNING
            self._stats.started_at = datetime.now(UTC)
            self._log.info("component_started")
        except Exception:
            self._state = ComponentState.FAILED
            self._log.exception("component_start_failed")
            raise

    async def stop(self) -> None:
        """Stop the component. No-op unless running."""
        if self._state != ComponentState.RUNNING:
            return

        self._state = ComponentState.STOPPING
        self._log.info("component_stopping")

        try:
            await self.on_stop()
            self._state = ComponentState.STOPPED
            self._stats.stopped_at = datetime.now(UTC)
            self._log.info("component_stopped")
        except Exception:
            self._state = ComponentState.FAILED
            self._log.exception("component_stop_failed")
            raise

    async def on_start(self) -> None:
        """Called during startup. Override for custom initialization."""

    async def on_stop(self) -> None:
        """Called during shutdown. Override for custom cleanup."""

    # --- Message bus integration ---

    def set_message_bus(self, bus: "MessageBus") -> None:
        self._message_bus = bus

    async def emit_event(
        self,
        topic: str,
        payload: Any,
        *,
        priority: MessagePriority = MessagePriority.NORMAL,
    ) -> None:
        """Emit an event to the message bus, if one is configured."""
        if self._message_bus is None:
            return

        message = Message.event(topic, self._name, payload, priority=priority)
        await self._message_bus.publish(message)
        self._stats.total_messages_sent += 1
        self._stats.last_activity_at = datetime.now(UTC)
        self._log.debug("published", topic=topic, message_id=message.id)
