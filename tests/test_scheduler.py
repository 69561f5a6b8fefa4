"""Tests for the update scheduler: drain, refresh, failure isolation, tickers."""

from collections.abc import Callable, Mapping
from datetime import datetime

import anyio
import pytest

from donorseg.bus import MessageBus, SegmentationTopics
from donorseg.core.models import AlertType, AudienceSegment, Donor
from donorseg.core.registry import SegmentRegistry
from donorseg.core.signals import Message
from donorseg.runtime.repository import InMemoryDonorRepository
from donorseg.subsystems.alerts import AlertEmitter
from donorseg.subsystems.behavior import BehavioralAnalyzer
from donorseg.subsystems.clustering import ClusteringEngine
from donorseg.subsystems.membership import MembershipStore, Qualification, SegmentQualifier
from donorseg.subsystems.rules import RuleEvaluator
from donorseg.subsystems.scheduling import UpdateScheduler

MAJOR = {
    "name": "Major",
    "include_criteria": {
        "rules": [{"field": "total_donated", "operator": "greater_than", "value": 1000}]
    },
}


class HookedQualifier(SegmentQualifier):
    """Runs a per-segment-name hook before qualifying."""

    def __init__(self, clock: Callable[[], datetime]) -> None:
        super().__init__(
            RuleEvaluator(clock), ClusteringEngine(clock=clock), BehavioralAnalyzer(clock=clock)
        )
        self.hooks: dict[str, Callable[[AudienceSegment], None]] = {}

    def qualify(
        self,
        segment: AudienceSegment,
        donor: Donor,
        now: datetime,
        cluster_members: Mapping[str, float] | None = None,
    ) -> Qualification | None:
        hook = self.hooks.get(segment.name)
        if hook is not None:
            hook(segment)
        return super().qualify(segment, donor, now, cluster_members)


class Harness:
    def __init__(self, clock: Callable[[], datetime], donors: list[Donor]) -> None:
        self.bus = MessageBus()
        self.registry = SegmentRegistry()
        self.qualifier = HookedQualifier(clock)
        self.store = MembershipStore(
            self.qualifier, segment_exists=self.registry.__contains__, clock=clock
        )
        self.alerts = AlertEmitter(self.bus)
        self.repository = InMemoryDonorRepository(donors)
        self.scheduler = UpdateScheduler(
            self.registry,
            self.store,
            self.alerts,
            self.repository,
            message_bus=self.bus,
            max_workers=2,
            drain_interval=0.02,
            refresh_interval=3600,
        )


@pytest.fixture
def harness(clock: Callable[[], datetime], make_donor) -> Harness:
    donors = [make_donor("d1", [700, 500]), make_donor("d2", [100]), make_donor("d3", [5000])]
    return Harness(clock, donors)


class TestDrain:
    @pytest.mark.asyncio
    async def test_drain_reconciles_dirty_segments(self, harness: Harness) -> None:
        segment = harness.registry.create(MAJOR)

        result = await harness.scheduler.drain_once()

        assert result.processed == [segment.id]
        assert result.total_updates == 2
        assert harness.store.get_segment_members(segment.id) == ["d1", "d3"]
        stored = harness.registry.get(segment.id)
        assert stored is not None
        assert stored.metadata.size == 2
        assert stored.metadata.last_updated is not None
        assert not harness.registry.is_dirty(segment.id)

    @pytest.mark.asyncio
    async def test_nothing_pending(self, harness: Harness) -> None:
        result = await harness.scheduler.drain_once()
        assert result.processed == [] and result.failed == [] and result.skipped == []
        assert harness.scheduler.scheduler_stats.total_drains == 1

    @pytest.mark.asyncio
    async def test_second_drain_sees_repository_changes(
        self, harness: Harness, make_donor
    ) -> None:
        segment = harness.registry.create(MAJOR)
        await harness.scheduler.drain_once()

        harness.repository.upsert(make_donor("d2", [100, 2000]))
        harness.registry.mark_dirty(segment.id)
        result = await harness.scheduler.drain_once()

        assert result.total_updates == 1
        assert harness.store.get_segment_members(segment.id) == ["d1", "d2", "d3"]

    @pytest.mark.asyncio
    async def test_inactive_segments_are_skipped(self, harness: Harness) -> None:
        paused = harness.registry.create({**MAJOR, "name": "Paused", "status": "paused"})
        manual = harness.registry.create(
            {**MAJOR, "name": "Manual", "config": {"auto_update": False}}
        )

        result = await harness.scheduler.drain_once()

        assert sorted(result.skipped) == sorted([paused.id, manual.id])
        assert harness.store.size(paused.id) == 0
        assert harness.registry.dirty_snapshot() == {}

    @pytest.mark.asyncio
    async def test_membership_event_published(self, harness: Harness) -> None:
        received: list[Message] = []

        async def handler(msg: Message) -> None:
            received.append(msg)

        await harness.bus.subscribe(SegmentationTopics.MEMBERSHIP_UPDATED, handler)
        segment = harness.registry.create(MAJOR)
        await harness.scheduler.drain_once()

        assert len(received) == 1
        assert received[0].payload["segment_id"] == segment.id
        assert received[0].payload["size"] == 2
        assert len(received[0].payload["updates"]) == 2

    @pytest.mark.asyncio
    async def test_alert_on_large_change(self, harness: Harness) -> None:
        harness.registry.create(MAJOR)
        await harness.scheduler.drain_once()
        alerts = harness.alerts.peek()
        assert [a.type for a in alerts] == [AlertType.SIZE_CHANGE]


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failing_segment_does_not_block_others(self, harness: Harness) -> None:
        def explode(segment: AudienceSegment) -> None:
            raise RuntimeError("qualifier exploded")

        harness.qualifier.hooks["Broken"] = explode
        broken = harness.registry.create({**MAJOR, "name": "Broken"})
        good = harness.registry.create(MAJOR)
        failures: list[Message] = []

        async def handler(msg: Message) -> None:
            failures.append(msg)

        await harness.bus.subscribe(SegmentationTopics.RECONCILIATION_FAILED, handler)

        result = await harness.scheduler.drain_once()

        assert result.failed == [broken.id]
        assert result.processed == [good.id]
        assert harness.registry.is_dirty(broken.id)
        assert not harness.registry.is_dirty(good.id)
        assert harness.store.size(good.id) == 2
        failed_alerts = [a for a in harness.alerts.peek() if a.type == AlertType.UPDATE_FAILED]
        assert [a.segment_id for a in failed_alerts] == [broken.id]
        assert failures[0].payload["segment_id"] == broken.id

    @pytest.mark.asyncio
    async def test_failed_segment_retried_next_tick(self, harness: Harness) -> None:
        calls = {"n": 0}

        def flaky(segment: AudienceSegment) -> None:
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("transient")

        harness.qualifier.hooks["Major"] = flaky
        segment = harness.registry.create(MAJOR)

        first = await harness.scheduler.drain_once()
        second = await harness.scheduler.drain_once()

        assert first.failed == [segment.id]
        assert second.processed == [segment.id]
        assert harness.store.size(segment.id) == 2

    @pytest.mark.asyncio
    async def test_edit_during_pass_stays_dirty(self, harness: Harness) -> None:
        """A definition change while a pass is running queues another pass."""
        edited = {"done": False}

        def edit(segment: AudienceSegment) -> None:
            if not edited["done"]:
                edited["done"] = True
                harness.registry.mark_dirty(segment.id)

        harness.qualifier.hooks["Major"] = edit
        segment = harness.registry.create(MAJOR)

        result = await harness.scheduler.drain_once()

        assert result.processed == [segment.id]
        assert harness.registry.is_dirty(segment.id)

    @pytest.mark.asyncio
    async def test_delete_during_pass_discards_results(self, harness: Harness) -> None:
        def delete(segment: AudienceSegment) -> None:
            harness.registry.delete(segment.id)

        harness.qualifier.hooks["Major"] = delete
        segment = harness.registry.create(MAJOR)

        result = await harness.scheduler.drain_once()

        assert result.failed == []
        assert harness.store.size(segment.id) == 0
        assert harness.store.stats.total_races == 1
        assert harness.alerts.peek() == []
        assert harness.scheduler.tracked_segments == 0

    @pytest.mark.asyncio
    async def test_lock_kept_for_live_segments(self, harness: Harness) -> None:
        segment = harness.registry.create(MAJOR)
        await harness.scheduler.drain_once()

        assert harness.scheduler.tracked_segments == 1
        harness.registry.delete(segment.id)
        harness.scheduler.forget(segment.id)
        assert harness.scheduler.tracked_segments == 0


class TestRefreshAndTickers:
    @pytest.mark.asyncio
    async def test_refresh_marks_auto_updating(self, harness: Harness) -> None:
        active = harness.registry.create(MAJOR)
        harness.registry.create({**MAJOR, "name": "Paused", "status": "paused"})
        await harness.scheduler.drain_once()

        assert await harness.scheduler.refresh_once() == 1
        assert list(harness.registry.dirty_snapshot()) == [active.id]

    @pytest.mark.asyncio
    async def test_run_drains_until_stopped(self, harness: Harness) -> None:
        segment = harness.registry.create(MAJOR)
        await harness.scheduler.start()

        async with anyio.create_task_group() as tg:
            tg.start_soon(harness.scheduler.run)
            with anyio.fail_after(5):
                while harness.registry.is_dirty(segment.id):
                    await anyio.sleep(0.01)
            await harness.scheduler.stop()

        assert harness.store.size(segment.id) == 2
        assert harness.scheduler.scheduler_stats.total_drains >= 1
        assert not harness.scheduler.is_running
