"""
UpdateScheduler: background driver for segment reconciliation.

Two independent tickers run while the scheduler is running:

- drain (short period): reconcile every dirty segment that still exists,
  is active and auto-updates, against one donor snapshot per tick
- refresh (long period): mark every active, auto-updating segment dirty

Both actions are also exposed as ``drain_once`` and ``refresh_once`` so
callers and tests can drive cycles without waiting on a clock.

Segments are reconciled concurrently on a bounded pool of worker threads.
Reconciliation of any one segment is single-writer: a per-segment lock
serialises passes for the same id. A failing segment is logged, alerted and
left dirty for the next tick; it never stops its siblings or the ticker.
"""

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import anyio
import structlog
from anyio import to_thread

from donorseg.bus.topics import SegmentationTopics
from donorseg.core.component import Component
from donorseg.core.errors import ReconciliationRaceError, SchedulerTaskError
from donorseg.core.models import AudienceSegment, Donor, SegmentUpdate
from donorseg.core.registry import SegmentRegistry
from donorseg.core.signals import MessagePriority
from donorseg.subsystems.alerts.alert_emitter import AlertEmitter
from donorseg.subsystems.membership.membership_store import MembershipStore

if TYPE_CHECKING:
    from donorseg.bus.message_bus import MessageBus
    from donorseg.runtime.repository import DonorRepository

logger = structlog.get_logger()

DEFAULT_DRAIN_INTERVAL = 60.0
DEFAULT_REFRESH_INTERVAL = 3600.0


@dataclass
class DrainResult:
    """Outcome of one drain tick."""

    processed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    total_updates: int = 0


@dataclass
class SchedulerStats:
    total_drains: int = 0
    total_refreshes: int = 0
    total_reconciled: int = 0
    total_failures: int = 0
    total_tick_errors: int = 0


class UpdateScheduler(Component):
    """Reconciles dirty segments on a bounded worker pool."""

    def __init__(
        self,
        registry: SegmentRegistry,
        store: MembershipStore,
        alerts: AlertEmitter,
        repository: "DonorRepository",
        *,
        message_bus: "MessageBus | None" = None,
        limiter: anyio.CapacityLimiter | None = None,
        max_workers: int = 4,
        drain_interval: float = DEFAULT_DRAIN_INTERVAL,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
    ) -> None:
        super().__init__("update_scheduler", message_bus)
        self._registry = registry
        self._store = store
        self._alerts = alerts
        self._repository = repository
        self._limiter = limiter
        self._max_workers = max_workers
        self._drain_interval = drain_interval
        self._refresh_interval = refresh_interval
        self._segment_locks: dict[str, anyio.Lock] = {}
        self._cancel_scope: anyio.CancelScope | None = None
        self._scheduler_stats = SchedulerStats()

    @property
    def scheduler_stats(self) -> SchedulerStats:
        return self._scheduler_stats

    @property
    def tracked_segments(self) -> int:
        """Segments currently holding a single-writer lock entry."""
        return len(self._segment_locks)

    @property
    def limiter(self) -> anyio.CapacityLimiter:
        # Created lazily so that construction does not need a running event loop
        if self._limiter is None:
            self._limiter = anyio.CapacityLimiter(self._max_workers)
        return self._limiter

    def _lock_for(self, segment_id: str) -> anyio.Lock:
        lock = self._segment_locks.get(segment_id)
        if lock is None:
            lock = self._segment_locks[segment_id] = anyio.Lock()
        return lock

    def forget(self, segment_id: str) -> None:
        """Drop per-segment state for a deleted segment."""
        lock = self._segment_locks.get(segment_id)
        if lock is not None and not lock.locked():
            del self._segment_locks[segment_id]

    # --- Reconciliation ---

    async def reconcile_segment(
        self,
        segment: AudienceSegment,
        donors: Sequence[Donor],
    ) -> list[SegmentUpdate]:
        """
        Run one reconciliation pass for a segment.

        Evaluation runs on a worker thread; commit, registry stamping and
        alerting run here. Only one pass per segment runs at a time.
        """
        discarded = False
        async with self._lock_for(segment.id):
            previous_size = self._store.size(segment.id)
            plan = await to_thread.run_sync(
                self._store.plan, segment, donors, limiter=self.limiter
            )
            try:
                updates = self._store.commit(plan)
            except ReconciliationRaceError:
                self._log.info("reconciliation_discarded", segment_id=segment.id)
                discarded = True
            else:
                size = self._store.size(segment.id)
                self._registry.record_reconciliation(segment.id, size, plan.planned_at)
                self._scheduler_stats.total_reconciled += 1

        if discarded:
            # The segment was deleted mid-pass; its lock is free again now.
            if segment.id not in self._registry:
                self.forget(segment.id)
            return []

        self._log.info(
            "segment_reconciled",
            segment_id=segment.id,
            size=size,
            previous_size=previous_size,
            changes=len(updates),
        )
        await self._alerts.inspect(segment.id, updates, previous_size)
        if updates:
            await self.emit_event(
                str(SegmentationTopics.MEMBERSHIP_UPDATED),
                {
                    "segment_id": segment.id,
                    "size": size,
                    "updates": [u.model_dump(mode="json") for u in updates],
                },
            )
        return updates

    async def drain_once(self) -> DrainResult:
        """Reconcile every pending segment against one donor snapshot."""
        result = DrainResult()
        dirty = self._registry.dirty_snapshot()
        self._scheduler_stats.total_drains += 1
        if not dirty:
            return result

        donors = tuple(self._repository.snapshot())
        self._log.debug("drain_started", dirty=len(dirty), donors=len(donors))

        async with anyio.create_task_group() as tg:
            for segment_id, generation in dirty.items():
                tg.start_soon(self._drain_segment, segment_id, generation, donors, result)

        self._log.info(
            "drain_completed",
            processed=len(result.processed),
            failed=len(result.failed),
            skipped=len(result.skipped),
            updates=result.total_updates,
        )
        return result

    async def _drain_segment(
        self,
        segment_id: str,
        generation: int,
        donors: tuple[Donor, ...],
        result: DrainResult,
    ) -> None:
        segment = self._registry.get(segment_id)
        if segment is None or not segment.is_auto_updating:
            self._registry.clear_dirty(segment_id)
            result.skipped.append(segment_id)
            return

        try:
            updates = await self.reconcile_segment(segment, donors)
        except Exception as exc:
            error = SchedulerTaskError(segment_id, exc)
            self._scheduler_stats.total_failures += 1
            self._stats.total_errors += 1
            self._log.exception("segment_reconciliation_failed", segment_id=segment_id)
            result.failed.append(segment_id)
            await self._alerts.report_failure(segment_id, error)
            await self.emit_event(
                str(SegmentationTopics.RECONCILIATION_FAILED),
                {"segment_id": segment_id, "error": str(exc)},
                priority=MessagePriority.HIGH,
            )
            return

        self._registry.clear_dirty(segment_id, generation)
        result.processed.append(segment_id)
        result.total_updates += len(updates)

    async def refresh_once(self) -> int:
        """Mark every active, auto-updating segment dirty."""
        count = self._registry.mark_all_auto_updating_dirty()
        self._scheduler_stats.total_refreshes += 1
        self._log.info("full_refresh_scheduled", segments=count)
        return count

    # --- Tickers ---

    async def _tick(
        self,
        interval: float,
        action: Callable[[], Awaitable[object]],
        name: str,
    ) -> None:
        while True:
            await anyio.sleep(interval)
            try:
                await action()
            except Exception:
                self._scheduler_stats.total_tick_errors += 1
                self._log.exception("tick_failed", ticker=name)

    async def run(self) -> None:
        """Run both tickers until ``stop()`` is called or the caller is cancelled."""
        with anyio.CancelScope() as scope:
            self._cancel_scope = scope
            self._log.info(
                "scheduler_running",
                drain_interval=self._drain_interval,
                refresh_interval=self._refresh_interval,
            )
            async with anyio.create_task_group() as tg:
                tg.start_soon(self._tick, self._drain_interval, self.drain_once, "drain")
                tg.start_soon(self._tick, self._refresh_interval, self.refresh_once, "refresh")
        self._cancel_scope = None

    async def on_stop(self) -> None:
        if self._cancel_scope is not None:
            self._cancel_scope.cancel()
