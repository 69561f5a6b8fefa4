"""
AlertEmitter: raises alerts when reconciliation churn crosses thresholds.

Alerts are queued for external consumers (peek or drain) and published on
the message bus; the engine never delivers them itself.
"""

import threading
from collections import deque
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from donorseg.bus.topics import SegmentationTopics
from donorseg.core.component import Component
from donorseg.core.models import (
    AlertSeverity,
    AlertType,
    ChangeType,
    SegmentAlert,
    SegmentUpdate,
)
from donorseg.core.signals import MessagePriority

if TYPE_CHECKING:
    from donorseg.bus.message_bus import MessageBus

MEDIUM_CHANGE_THRESHOLD = 0.2
HIGH_CHANGE_THRESHOLD = 0.5


def change_percent(updates: Sequence[SegmentUpdate], previous_size: int) -> float:
    """Changed memberships relative to the size before the pass."""
    changed = sum(len(u.donor_ids) for u in updates)
    return changed / max(previous_size, 1)


def _count(updates: Sequence[SegmentUpdate], change_type: ChangeType) -> int:
    return sum(len(u.donor_ids) for u in updates if u.change_type == change_type)


class AlertEmitter(Component):
    """
    Inspects reconciliation diffs and queues size-change and failure alerts.

    A change above the medium threshold raises a medium ``size_change``
    alert; above the high threshold it is high severity and requires action.
    """

    def __init__(
        self,
        message_bus: "MessageBus | None" = None,
        medium_threshold: float = MEDIUM_CHANGE_THRESHOLD,
        high_threshold: float = HIGH_CHANGE_THRESHOLD,
        max_queue: int = 1000,
    ) -> None:
        super().__init__("alert_emitter", message_bus)
        self._medium = medium_threshold
        self._high = high_threshold
        self._queue: deque[SegmentAlert] = deque(maxlen=max_queue)
        self._lock = threading.Lock()
        self._total_raised = 0

    @property
    def total_raised(self) -> int:
        return self._total_raised

    def evaluate(
        self,
        segment_id: str,
        updates: Sequence[SegmentUpdate],
        previous_size: int,
    ) -> SegmentAlert | None:
        """Build the size-change alert for a diff, if any, without queueing it."""
        percent = change_percent(updates, previous_size)
        if percent <= self._medium:
            return None

        high = percent > self._high
        return SegmentAlert(
            segment_id=segment_id,
            type=AlertType.SIZE_CHANGE,
            severity=AlertSeverity.HIGH if high else AlertSeverity.MEDIUM,
            message=f"Segment size changed by {percent * 100:.1f}%",
            details={
                "change_percent": percent,
                "previous_size": previous_size,
                "added": _count(updates, ChangeType.ADDED),
                "removed": _count(updates, ChangeType.REMOVED),
            },
            action_required=high,
        )

    async def inspect(
        self,
        segment_id: str,
        updates: Sequence[SegmentUpdate],
        previous_size: int,
    ) -> SegmentAlert | None:
        """Raise a size-change alert for a reconciliation diff when warranted."""
        alert = self.evaluate(segment_id, updates, previous_size)
        if alert is not None:
            await self.raise_alert(alert)
        return alert

    async def report_failure(self, segment_id: str, error: BaseException) -> SegmentAlert:
        """Raise an alert for a reconciliation pass that failed."""
        alert = SegmentAlert(
            segment_id=segment_id,
            type=AlertType.UPDATE_FAILED,
            severity=AlertSeverity.HIGH,
            message=f"Segment reconciliation failed: {error}",
            details={"error_type": type(error).__name__},
            action_required=True,
        )
        await self.raise_alert(alert)
        return alert

    async def raise_alert(self, alert: SegmentAlert) -> None:
        with self._lock:
            self._queue.append(alert)
            self._total_raised += 1

        self._log.warning(
            "alert_raised",
            segment_id=alert.segment_id,
            type=alert.type.value,
            severity=alert.severity.value,
            action_required=alert.action_required,
        )

        priority = (
            MessagePriority.HIGH if alert.severity == AlertSeverity.HIGH else MessagePriority.NORMAL
        )
        await self.emit_event(
            str(SegmentationTopics.ALERT_RAISED),
            alert.model_dump(mode="json"),
            priority=priority,
        )

    # --- Queue access ---

    def peek(self, segment_id: str | None = None) -> list[SegmentAlert]:
        with self._lock:
            alerts = list(self._queue)
        if segment_id is None:
            return alerts
        return [a for a in alerts if a.segment_id == segment_id]

    def drain(self) -> list[SegmentAlert]:
        with self._lock:
            alerts = list(self._queue)
            self._queue.clear()
        return alerts

    def restore(self, alerts: Sequence[SegmentAlert]) -> None:
        with self._lock:
            self._queue = deque(alerts, maxlen=self._queue.maxlen)

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            queued = len(self._queue)
        return {"total_raised": self._total_raised, "queued": queued}
