"""
SegmentationEngine: the in-process API of the segmentation engine.

The engine wires the registry, rule evaluator, clustering engine, behavioural
analyzer, membership store, alert emitter and update scheduler together and
owns their lifecycle. Construct one explicitly at process startup and pass it
to the code that needs it; there is no global instance.
"""

from collections.abc import Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from enum import Enum, auto
from typing import Any, AsyncIterator

import anyio
import pydantic
import structlog
from anyio import to_thread

from donorseg.bus.message_bus import MessageBus
from donorseg.bus.topics import SegmentationTopics, SystemTopics
from donorseg.config import EngineSettings
from donorseg.core.component import ComponentState
from donorseg.core.errors import ValidationError
from donorseg.core.models import (
    AudienceSegment,
    BehaviorAnalysisConfig,
    BehavioralPattern,
    ClusteringAlgorithm,
    ClusteringConfig,
    Donor,
    DonorCluster,
    SegmentAlert,
    SegmentDefinition,
    SegmentMembership,
    SegmentStatus,
    SegmentUpdate,
    utc_now,
)
from donorseg.core.registry import SegmentRegistry
from donorseg.core.signals import Message
from donorseg.runtime.analytics import SegmentationAnalytics, build_analytics
from donorseg.runtime.repository import DonorRepository, InMemoryDonorRepository
from donorseg.subsystems.alerts.alert_emitter import AlertEmitter
from donorseg.subsystems.behavior.behavioral_analyzer import BehavioralAnalyzer
from donorseg.subsystems.clustering.clustering_engine import ClusteringEngine
from donorseg.subsystems.clustering.features import FeatureExtractor
from donorseg.subsystems.membership.membership_store import MembershipStore, SegmentQualifier
from donorseg.subsystems.rules.rule_evaluator import RuleEvaluator
from donorseg.subsystems.scheduling.update_scheduler import DrainResult, UpdateScheduler

logger = structlog.get_logger()

STATE_VERSION = 1


class EngineState(Enum):
    """Lifecycle states for the engine."""

    CREATED = auto()
    STARTING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


def _validate(model: type[pydantic.BaseModel], data: Any) -> Any:
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        raise ValidationError(str(exc)) from exc


class SegmentationEngine:
    """
    Dynamic audience segmentation over a donor repository.

    Responsibilities:
    - Segment CRUD, with every definition change queued for reconciliation
    - Clustering runs on the shared worker pool
    - Behavioural analysis and the named pattern library
    - Alerts, analytics and state export/import
    - Background scheduling while running
    """

    def __init__(
        self,
        repository: DonorRepository | None = None,
        settings: EngineSettings | None = None,
        *,
        message_bus: MessageBus | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._repository = repository if repository is not None else InMemoryDonorRepository()
        self._message_bus = message_bus or MessageBus()
        self._clock = clock

        behavior_config = self._settings.behavior_config()
        self._rules = RuleEvaluator(clock)
        self._clustering = ClusteringEngine(FeatureExtractor(behavior_config, clock), clock)
        self._behavior = BehavioralAnalyzer(behavior_config, clock)
        self._registry = SegmentRegistry(max_history=self._settings.size_history_length)
        self._store = MembershipStore(
            SegmentQualifier(self._rules, self._clustering, self._behavior),
            segment_exists=self._registry.__contains__,
            clock=clock,
        )
        self._alerts = AlertEmitter(
            self._message_bus,
            medium_threshold=self._settings.alert_medium_threshold,
            high_threshold=self._settings.alert_high_threshold,
            max_queue=self._settings.alert_queue_size,
        )
        self._scheduler = UpdateScheduler(
            self._registry,
            self._store,
            self._alerts,
            self._repository,
            message_bus=self._message_bus,
            max_workers=self._settings.max_workers,
            drain_interval=self._settings.drain_interval_seconds,
            refresh_interval=self._settings.refresh_interval_seconds,
        )

        self._state = EngineState.CREATED
        self._started_at: datetime | None = None
        self._stopped_at: datetime | None = None
        self._log = logger.bind(component="segmentation_engine")

    # --- Properties ---

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def message_bus(self) -> MessageBus:
        return self._message_bus

    @property
    def repository(self) -> DonorRepository:
        return self._repository

    @property
    def registry(self) -> SegmentRegistry:
        return self._registry

    @property
    def store(self) -> MembershipStore:
        return self._store

    @property
    def scheduler(self) -> UpdateScheduler:
        return self._scheduler

    @property
    def clustering(self) -> ClusteringEngine:
        return self._clustering

    @property
    def behavior(self) -> BehavioralAnalyzer:
        return self._behavior

    @property
    def rules(self) -> RuleEvaluator:
        return self._rules

    @property
    def is_running(self) -> bool:
        return self._state == EngineState.RUNNING

    @property
    def uptime_seconds(self) -> float | None:
        if not self._started_at:
            return None
        end_time = self._stopped_at or utc_now()
        return (end_time - self._started_at).total_seconds()

    async def _emit(self, topic: str, payload: Any) -> None:
        await self._message_bus.publish(Message.event(topic, "segmentation_engine", payload))

    # --- Segments ---

    async def create_segment(
        self, definition: SegmentDefinition | Mapping[str, Any]
    ) -> AudienceSegment:
        """
        Create a segment; it is reconciled on the next drain.

        Raises:
            ValidationError: If the definition is malformed.
        """
        segment = self._registry.create(definition)
        await self._emit(str(SegmentationTopics.SEGMENT_CREATED), segment.model_dump(mode="json"))
        return segment

    async def update_segment(
        self, segment_id: str, patch: Mapping[str, Any]
    ) -> AudienceSegment | None:
        """
        Apply a partial update; returns None for an unknown segment.

        Raises:
            ValidationError: If the patch is malformed.
        """
        segment = self._registry.update(segment_id, patch)
        if segment is not None:
            await self._emit(
                str(SegmentationTopics.SEGMENT_UPDATED), segment.model_dump(mode="json")
            )
        return segment

    async def delete_segment(self, segment_id: str) -> bool:
        """Hard delete a segment with its memberships and pending update."""
        if not self._registry.delete(segment_id):
            return False
        removed = self._store.remove_segment(segment_id)
        self._scheduler.forget(segment_id)
        await self._emit(
            str(SegmentationTopics.SEGMENT_DELETED),
            {"segment_id": segment_id, "memberships_removed": removed},
        )
        return True

    def get_segments(self, status: SegmentStatus | None = None) -> list[AudienceSegment]:
        return self._registry.list_segments(status)

    def get_segment(self, segment_id: str) -> AudienceSegment | None:
        return self._registry.get(segment_id)

    def get_donor_segments(self, donor_id: str) -> list[SegmentMembership]:
        return self._store.get_donor_memberships(donor_id)

    def get_segment_members(self, segment_id: str) -> list[str]:
        return self._store.get_segment_members(segment_id)

    # --- Reconciliation ---

    async def reconcile_segment(
        self,
        segment_id: str,
        donors: Sequence[Donor] | None = None,
    ) -> list[SegmentUpdate]:
        """
        Reconcile one segment now, against ``donors`` or a fresh snapshot.

        Raises:
            ValidationError: If the segment does not exist.
        """
        segment = self._registry.get(segment_id)
        if segment is None:
            raise ValidationError(f"Unknown segment: {segment_id}")

        generation = self._registry.dirty_snapshot().get(segment_id)
        snapshot = tuple(donors) if donors is not None else tuple(self._repository.snapshot())
        updates = await self._scheduler.reconcile_segment(segment, snapshot)
        if generation is not None:
            self._registry.clear_dirty(segment_id, generation)
        return updates

    async def process_pending(self) -> DrainResult:
        """Run one drain tick now."""
        return await self._scheduler.drain_once()

    async def refresh_all(self) -> int:
        """Run one full-refresh tick now."""
        return await self._scheduler.refresh_once()

    # --- Clustering ---

    def _prepare_clustering(
        self,
        config: ClusteringConfig | Mapping[str, Any],
        donors: Sequence[Donor] | None,
    ) -> tuple[ClusteringConfig, tuple[Donor, ...]]:
        if not isinstance(config, ClusteringConfig):
            config = _validate(ClusteringConfig, config)
        self._clustering.validate(config)
        snapshot = tuple(donors) if donors is not None else tuple(self._repository.snapshot())
        return config, snapshot

    def _mark_cluster_segments_dirty(self, algorithm: ClusteringAlgorithm) -> int:
        # A run replaces every cluster of its algorithm, including skipped slots
        prefix = f"cluster_{algorithm.value}_"
        count = 0
        for segment in self._registry.list_segments():
            if segment.cluster_id is not None and segment.cluster_id.startswith(prefix):
                count += int(self._registry.mark_dirty(segment.id))
        return count

    async def perform_clustering(
        self,
        config: ClusteringConfig | Mapping[str, Any],
        donors: Sequence[Donor] | None = None,
    ) -> list[DonorCluster]:
        """
        Cluster donors on the shared worker pool, off the event loop.

        Segments that reference a cluster of this algorithm are queued for
        reconciliation.

        Raises:
            ValidationError: If the configuration is invalid.
            ClusteringError: If the population cannot be clustered.
        """
        config, snapshot = self._prepare_clustering(config, donors)
        clusters = await to_thread.run_sync(
            self._clustering.cluster, snapshot, config, limiter=self._scheduler.limiter
        )
        dirty = self._mark_cluster_segments_dirty(config.algorithm)
        await self._emit(
            str(SegmentationTopics.CLUSTERING_COMPLETED),
            {
                "algorithm": config.algorithm.value,
                "run_id": clusters[0].run_id,
                "cluster_ids": [c.id for c in clusters],
                "segments_queued": dirty,
            },
        )
        return clusters

    def perform_clustering_sync(
        self,
        config: ClusteringConfig | Mapping[str, Any],
        donors: Sequence[Donor] | None = None,
    ) -> list[DonorCluster]:
        """Blocking variant of perform_clustering for callers without an event loop."""
        config, snapshot = self._prepare_clustering(config, donors)
        clusters = self._clustering.cluster(snapshot, config)
        self._mark_cluster_segments_dirty(config.algorithm)
        return clusters

    def get_clusters(self, algorithm: ClusteringAlgorithm | None = None) -> list[DonorCluster]:
        return self._clustering.get_clusters(algorithm)

    def get_cluster(self, cluster_id: str) -> DonorCluster | None:
        return self._clustering.get_cluster(cluster_id)

    # --- Behaviour ---

    def analyze_donor_behavior(
        self,
        donor: Donor | str,
        config: BehaviorAnalysisConfig | None = None,
    ) -> list[BehavioralPattern]:
        """
        Compute behavioural patterns for a donor or a donor id.

        Raises:
            ValidationError: If a donor id is not in the repository.
        """
        if isinstance(donor, str):
            found = next((d for d in self._repository.snapshot() if d.id == donor), None)
            if found is None:
                raise ValidationError(f"Unknown donor: {donor}")
            donor = found
        return self._behavior.analyze(donor, config)

    def get_behavioral_patterns(self) -> list[BehavioralPattern]:
        return self._behavior.get_patterns()

    def register_pattern(self, pattern: BehavioralPattern | Mapping[str, Any]) -> BehavioralPattern:
        return self._behavior.register_pattern(pattern)

    # --- Alerts and analytics ---

    def get_alerts(self, drain: bool = False) -> list[SegmentAlert]:
        """Queued alerts; ``drain=True`` also empties the queue."""
        return self._alerts.drain() if drain else self._alerts.peek()

    def get_segmentation_analytics(self) -> SegmentationAnalytics:
        return build_analytics(
            self._registry,
            self._store,
            self._alerts.peek(),
            total_donors=len(self._repository.snapshot()),
            now=self._clock(),
            stale_after=timedelta(hours=self._settings.stale_after_hours),
        )

    # --- Persistence hooks ---

    def export_state(self) -> dict[str, Any]:
        """JSON-compatible dump of segments, clusters, memberships, patterns and alerts."""
        clusters = self._clustering.get_clusters()
        return {
            "version": STATE_VERSION,
            "exported_at": self._clock().isoformat(),
            "segments": [s.model_dump(mode="json") for s in self._registry.list_segments()],
            "clusters": [c.model_dump(mode="json") for c in clusters],
            "cluster_members": {c.id: self._clustering.get_members(c.id) for c in clusters},
            "memberships": [m.model_dump(mode="json") for m in self._store.all_memberships()],
            "patterns": [p.model_dump(mode="json") for p in self._behavior.get_patterns()],
            "alerts": [a.model_dump(mode="json") for a in self._alerts.peek()],
        }

    def import_state(self, state: Mapping[str, Any]) -> None:
        """
        Replace engine state with an export. All segments are queued for
        reconciliation.

        Raises:
            ValidationError: If the export is malformed or of another version.
        """
        if state.get("version") != STATE_VERSION:
            raise ValidationError(f"Unsupported state version: {state.get('version')}")

        segments = [_validate(AudienceSegment, s) for s in state.get("segments", [])]
        clusters = [_validate(DonorCluster, c) for c in state.get("clusters", [])]
        memberships = [_validate(SegmentMembership, m) for m in state.get("memberships", [])]
        patterns = [_validate(BehavioralPattern, p) for p in state.get("patterns", [])]
        alerts = [_validate(SegmentAlert, a) for a in state.get("alerts", [])]

        segment_ids = {s.id for s in segments}
        self._registry.restore(segments)
        self._clustering.restore(clusters, dict(state.get("cluster_members", {})))
        self._store.restore([m for m in memberships if m.segment_id in segment_ids])
        if patterns:
            self._behavior.restore(patterns)
        self._alerts.restore(alerts)

        self._log.info(
            "state_imported",
            segments=len(segments),
            clusters=len(clusters),
            memberships=len(memberships),
        )

    # --- Lifecycle ---

    async def start(self) -> None:
        """Start engine components. Use run_context to also run the tickers."""
        if self._state not in (EngineState.CREATED, EngineState.STOPPED):
            raise RuntimeError(f"Cannot start engine in state {self._state}")

        self._state = EngineState.STARTING
        self._started_at = utc_now()
        self._stopped_at = None
        self._log.info("engine_starting")

        try:
            await self._alerts.start()
            await self._scheduler.start()
            await self._emit(
                str(SystemTopics.STARTUP), {"started_at": self._started_at.isoformat()}
            )
            self._state = EngineState.RUNNING
            self._log.info("engine_started", segments=len(self._registry))
        except Exception:
            self._state = EngineState.FAILED
            self._log.exception("engine_start_failed")
            raise

    async def stop(self) -> None:
        if self._state != EngineState.RUNNING:
            return

        self._state = EngineState.STOPPING
        self._log.info("engine_stopping")

        try:
            await self._emit(
                str(SystemTopics.SHUTDOWN), {"stopping_at": utc_now().isoformat()}
            )
            await self._scheduler.stop()
            await self._alerts.stop()
            self._stopped_at = utc_now()
            self._state = EngineState.STOPPED
            self._log.info("engine_stopped", uptime_seconds=self.uptime_seconds)
        except Exception:
            self._state = EngineState.FAILED
            self._log.exception("engine_stop_failed")
            raise

    @asynccontextmanager
    async def run_context(self, run_scheduler: bool = True) -> AsyncIterator["SegmentationEngine"]:
        """Run the engine, with the drain and refresh tickers, for the block's duration."""
        await self.start()
        try:
            async with anyio.create_task_group() as tg:
                if run_scheduler:
                    tg.start_soon(self._scheduler.run)
                try:
                    yield self
                finally:
                    tg.cancel_scope.cancel()
        finally:
            await self.stop()

    def get_health(self) -> dict[str, Any]:
        stats = self._scheduler.scheduler_stats
        return {
            "state": self._state.name,
            "uptime_seconds": self.uptime_seconds,
            "components": {
                "alert_emitter": self._alerts.state.name,
                "update_scheduler": self._scheduler.state.name,
                "failed": [
                    c.name
                    for c in (self._alerts, self._scheduler)
                    if c.state == ComponentState.FAILED
                ],
            },
            "segments": {
                "total": len(self._registry),
                "dirty": len(self._registry.dirty_snapshot()),
            },
            "scheduler": {
                "drains": stats.total_drains,
                "refreshes": stats.total_refreshes,
                "reconciled": stats.total_reconciled,
                "failures": stats.total_failures,
            },
            "clustering": self._clustering.get_stats(),
            "alerts": self._alerts.get_stats(),
            "message_bus": {
                "subscriptions": self._message_bus.stats.total_subscriptions,
                "messages_published": self._message_bus.stats.total_messages_published,
                "messages_delivered": self._message_bus.stats.total_messages_delivered,
            },
        }
