"""Tests for size-change and failure alerts."""

import pytest

from donorseg.bus import MessageBus, SegmentationTopics
from donorseg.core.models import AlertSeverity, AlertType, ChangeType, SegmentUpdate
from donorseg.core.signals import Message
from donorseg.subsystems.alerts import AlertEmitter, change_percent


def updates(added: int = 0, removed: int = 0) -> list[SegmentUpdate]:
    result = [
        SegmentUpdate(segment_id="s1", change_type=ChangeType.ADDED, donor_ids=(f"a{i}",))
        for i in range(added)
    ]
    result += [
        SegmentUpdate(segment_id="s1", change_type=ChangeType.REMOVED, donor_ids=(f"r{i}",))
        for i in range(removed)
    ]
    return result


class TestChangePercent:
    def test_counts_both_directions(self) -> None:
        assert change_percent(updates(added=2, removed=1), 10) == pytest.approx(0.3)

    def test_empty_previous_segment(self) -> None:
        assert change_percent(updates(added=5), 0) == pytest.approx(5.0)
        assert change_percent([], 0) == 0.0


class TestAlertEmitter:
    def test_small_change_raises_nothing(self) -> None:
        assert AlertEmitter().evaluate("s1", updates(added=1), 10) is None

    def test_threshold_is_exclusive(self) -> None:
        assert AlertEmitter().evaluate("s1", updates(added=2), 10) is None

    def test_medium_change(self) -> None:
        alert = AlertEmitter().evaluate("s1", updates(added=2, removed=1), 10)
        assert alert is not None
        assert alert.type == AlertType.SIZE_CHANGE
        assert alert.severity == AlertSeverity.MEDIUM
        assert not alert.action_required
        assert alert.details["added"] == 2
        assert alert.details["removed"] == 1

    def test_high_change(self) -> None:
        alert = AlertEmitter().evaluate("s1", updates(removed=6), 10)
        assert alert is not None
        assert alert.severity == AlertSeverity.HIGH
        assert alert.action_required
        assert alert.message == "Segment size changed by 60.0%"

    def test_custom_thresholds(self) -> None:
        emitter = AlertEmitter(medium_threshold=0.05, high_threshold=0.1)
        alert = emitter.evaluate("s1", updates(added=1), 10)
        assert alert is not None
        assert alert.severity == AlertSeverity.MEDIUM

    @pytest.mark.asyncio
    async def test_inspect_queues_and_publishes(self) -> None:
        bus = MessageBus()
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        await bus.subscribe(SegmentationTopics.ALERTS, handler)
        emitter = AlertEmitter(bus)

        alert = await emitter.inspect("s1", updates(added=6), 10)

        assert alert is not None
        assert emitter.peek() == [alert]
        assert len(received) == 1
        assert received[0].payload["severity"] == "high"
        assert received[0].payload["segment_id"] == "s1"

    @pytest.mark.asyncio
    async def test_report_failure(self) -> None:
        emitter = AlertEmitter()
        alert = await emitter.report_failure("s1", RuntimeError("boom"))
        assert alert.type == AlertType.UPDATE_FAILED
        assert alert.severity == AlertSeverity.HIGH
        assert alert.action_required
        assert "boom" in alert.message
        assert alert.details["error_type"] == "RuntimeError"

    @pytest.mark.asyncio
    async def test_drain_empties_queue(self) -> None:
        emitter = AlertEmitter()
        await emitter.inspect("s1", updates(added=6), 10)
        await emitter.inspect("s2", updates(added=6), 10)

        assert [a.segment_id for a in emitter.peek("s2")] == ["s2"]
        assert len(emitter.drain()) == 2
        assert emitter.peek() == []
        assert emitter.get_stats() == {"total_raised": 2, "queued": 0}

    @pytest.mark.asyncio
    async def test_queue_is_bounded(self) -> None:
        emitter = AlertEmitter(max_queue=2)
        for _ in range(3):
            await emitter.report_failure("s1", RuntimeError("x"))
        assert len(emitter.peek()) == 2
        assert emitter.total_raised == 3
