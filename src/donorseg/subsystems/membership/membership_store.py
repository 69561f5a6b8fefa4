"""
MembershipStore: authoritative (donor, segment) membership and reconciliation.

Reconciliation is split in two:

- ``plan`` decides which donors qualify for a segment. It only reads its
  inputs, so it can run on a worker thread.
- ``commit`` diffs the plan against current membership and applies it. It
  first checks that the segment still exists; a segment deleted while its
  pass was in flight has its results discarded.

Memberships are stored by (donor_id, segment_id) with secondary indexes from
donor id and from segment id, so lookups in either direction are O(1).
"""

import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from donorseg.core.errors import ReconciliationRaceError
from donorseg.core.models import (
    AudienceSegment,
    BehavioralPattern,
    ChangeType,
    Donor,
    DuplicateHandling,
    MembershipSource,
    SegmentMembership,
    SegmentType,
    SegmentUpdate,
    utc_now,
)
from donorseg.subsystems.behavior.behavioral_analyzer import BehavioralAnalyzer
from donorseg.subsystems.clustering.clustering_engine import ClusteringEngine
from donorseg.subsystems.rules.rule_evaluator import RuleEvaluator

logger = structlog.get_logger()

RULE_CONFIDENCE = 0.8
PREDICTIVE_BASE, PREDICTIVE_SPAN = 0.6, 0.3
PREDICTIVE_DEFAULT_CONSISTENCY = 0.5
CLUSTER_MAX, CLUSTER_SPAN = 0.9, 0.2


@dataclass(frozen=True)
class Qualification:
    """A donor that qualifies for a segment, with provenance."""

    donor_id: str
    confidence: float
    source: MembershipSource


@dataclass
class ReconciliationPlan:
    """Which donors qualify for a segment against one donor snapshot."""

    segment_id: str
    qualified: dict[str, Qualification]
    donor_count: int
    planned_at: datetime = field(default_factory=utc_now)


@dataclass
class MembershipStats:
    total_reconciliations: int = 0
    total_added: int = 0
    total_removed: int = 0
    total_races: int = 0


def _deduplicate(donors: Sequence[Donor], handling: DuplicateHandling) -> list[Donor]:
    """Collapse repeated donor ids in a snapshot to one record."""
    chosen: dict[str, Donor] = {}
    for donor in donors:
        existing = chosen.get(donor.id)
        if existing is None:
            chosen[donor.id] = donor
        elif handling == DuplicateHandling.PRIORITIZE_NEWEST:
            if donor.date_created >= existing.date_created:
                chosen[donor.id] = donor
        elif handling == DuplicateHandling.PRIORITIZE_OLDEST:
            if donor.date_created < existing.date_created:
                chosen[donor.id] = donor
    return list(chosen.values())


class SegmentQualifier:
    """
    Decides whether a donor qualifies for a segment.

    Rules are always evaluated. A cluster id additionally requires
    membership in that cluster from the latest clustering run, and required
    behavioural patterns additionally require an intersection with the
    donor's computed patterns.

    Cluster membership and distances are read from one snapshot of the
    cluster index per plan, so a clustering run landing mid-pass cannot mix
    two runs into one plan.
    """

    def __init__(
        self,
        rules: RuleEvaluator,
        clusters: ClusteringEngine,
        behavior: BehavioralAnalyzer,
    ) -> None:
        self._rules = rules
        self._clusters = clusters
        self._behavior = behavior

    def cluster_snapshot(self, segment: AudienceSegment) -> dict[str, float] | None:
        """Donor id -> centroid distance for the segment's cluster, None without one."""
        if segment.cluster_id is None:
            return None
        return self._clusters.get_members(segment.cluster_id)

    def qualify(
        self,
        segment: AudienceSegment,
        donor: Donor,
        now: datetime,
        cluster_members: Mapping[str, float] | None = None,
    ) -> Qualification | None:
        if not self._rules.qualifies(
            donor, segment.include_criteria, segment.exclude_criteria, now
        ):
            return None

        distance: float | None = None
        if segment.cluster_id is not None:
            if cluster_members is None:
                cluster_members = self.cluster_snapshot(segment) or {}
            distance = cluster_members.get(donor.id)
            if distance is None:
                return None

        patterns: list[BehavioralPattern] = []
        if segment.behavioral_patterns or segment.type == SegmentType.PREDICTIVE:
            patterns = self._behavior.analyze(donor, now=now)
        if segment.behavioral_patterns and not self._behavior.matches_any(
            patterns, segment.behavioral_patterns
        ):
            return None

        return Qualification(
            donor_id=donor.id,
            confidence=self._confidence(segment, patterns, distance, cluster_members),
            source=self._source(segment),
        )

    def _source(self, segment: AudienceSegment) -> MembershipSource:
        if segment.cluster_id is not None:
            return MembershipSource.ML_CLUSTERING
        if segment.type == SegmentType.PREDICTIVE:
            return MembershipSource.PREDICTION
        return MembershipSource.RULES

    def _confidence(
        self,
        segment: AudienceSegment,
        patterns: list[BehavioralPattern],
        distance: float | None,
        cluster_members: Mapping[str, float] | None,
    ) -> float:
        if segment.type == SegmentType.PREDICTIVE:
            scores = [
                p.metrics.consistency for p in patterns if p.metrics.consistency is not None
            ]
            consistency = (
                sum(scores) / len(scores) if scores else PREDICTIVE_DEFAULT_CONSISTENCY
            )
            return round(PREDICTIVE_BASE + PREDICTIVE_SPAN * consistency, 2)

        if cluster_members and distance is not None:
            farthest = max(cluster_members.values())
            relative = min(max(distance / farthest, 0.0), 1.0) if farthest > 0 else 0.0
            return round(CLUSTER_MAX - CLUSTER_SPAN * relative, 2)

        return RULE_CONFIDENCE


class MembershipStore:
    """Authoritative segment membership with incremental reconciliation."""

    def __init__(
        self,
        qualifier: SegmentQualifier,
        segment_exists: Callable[[str], bool] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._qualifier = qualifier
        self._segment_exists = segment_exists or (lambda _segment_id: True)
        self._clock = clock
        self._memberships: dict[tuple[str, str], SegmentMembership] = {}
        self._by_donor: dict[str, set[str]] = {}  # donor_id -> segment ids
        self._by_segment: dict[str, set[str]] = {}  # segment_id -> donor ids
        self._lock = threading.RLock()
        self._stats = MembershipStats()
        self._log = logger.bind(component="membership_store")

    @property
    def stats(self) -> MembershipStats:
        return self._stats

    # --- Reconciliation ---

    def plan(
        self,
        segment: AudienceSegment,
        donors: Sequence[Donor],
        now: datetime | None = None,
    ) -> ReconciliationPlan:
        """Evaluate every donor in the snapshot against the segment."""
        now = now or self._clock()
        population = _deduplicate(donors, segment.config.duplicate_handling)

        cluster_members = self._qualifier.cluster_snapshot(segment)

        qualified: dict[str, Qualification] = {}
        for donor in population:
            result = self._qualifier.qualify(segment, donor, now, cluster_members)
            if result is not None:
                qualified[donor.id] = result

        return ReconciliationPlan(
            segment_id=segment.id,
            qualified=qualified,
            donor_count=len(population),
            planned_at=now,
        )

    def commit(self, plan: ReconciliationPlan) -> list[SegmentUpdate]:
        """
        Apply a plan and return one update per membership transition.

        Raises:
            ReconciliationRaceError: If the segment no longer exists.
        """
        segment_id = plan.segment_id
        updates: list[SegmentUpdate] = []

        with self._lock:
            if not self._segment_exists(segment_id):
                self._stats.total_races += 1
                raise ReconciliationRaceError(segment_id)

            now = self._clock()
            current = self._by_segment.get(segment_id, set())

            # Build every record before touching the indexes.
            joined = [
                SegmentMembership(
                    donor_id=donor_id,
                    segment_id=segment_id,
                    joined_at=now,
                    confidence=qualification.confidence,
                    source=qualification.source,
                )
                for donor_id, qualification in plan.qualified.items()
                if donor_id not in current
            ]
            left = sorted(current - plan.qualified.keys())

            for membership in joined:
                self._add(membership)
                updates.append(
                    SegmentUpdate(
                        segment_id=segment_id,
                        change_type=ChangeType.ADDED,
                        donor_ids=(membership.donor_id,),
                        reason="Donor now meets segment criteria",
                        timestamp=now,
                    )
                )

            for donor_id in left:
                self._remove(donor_id, segment_id)
                updates.append(
                    SegmentUpdate(
                        segment_id=segment_id,
                        change_type=ChangeType.REMOVED,
                        donor_ids=(donor_id,),
                        reason="Donor no longer meets segment criteria",
                        timestamp=now,
                    )
                )

            self._stats.total_reconciliations += 1
            self._stats.total_added += sum(
                1 for u in updates if u.change_type == ChangeType.ADDED
            )
            self._stats.total_removed += sum(
                1 for u in updates if u.change_type == ChangeType.REMOVED
            )
            size = len(self._by_segment.get(segment_id, ()))

        self._log.debug(
            "reconciliation_committed",
            segment_id=segment_id,
            donors=plan.donor_count,
            changes=len(updates),
            size=size,
        )
        return updates

    def reconcile(
        self,
        segment: AudienceSegment,
        donors: Sequence[Donor],
        now: datetime | None = None,
    ) -> list[SegmentUpdate]:
        """Plan and commit in one step. A race discards the pass and yields no updates."""
        plan = self.plan(segment, donors, now)
        try:
            return self.commit(plan)
        except ReconciliationRaceError:
            self._log.info("reconciliation_discarded", segment_id=segment.id)
            return []

    def _add(self, membership: SegmentMembership) -> None:
        self._memberships[membership.key] = membership
        self._by_donor.setdefault(membership.donor_id, set()).add(membership.segment_id)
        self._by_segment.setdefault(membership.segment_id, set()).add(membership.donor_id)

    def _remove(self, donor_id: str, segment_id: str) -> None:
        self._memberships.pop((donor_id, segment_id), None)
        segments = self._by_donor.get(donor_id)
        if segments is not None:
            segments.discard(segment_id)
            if not segments:
                del self._by_donor[donor_id]
        donors = self._by_segment.get(segment_id)
        if donors is not None:
            donors.discard(donor_id)

    # --- Queries ---

    def size(self, segment_id: str) -> int:
        with self._lock:
            return len(self._by_segment.get(segment_id, ()))

    def get(self, donor_id: str, segment_id: str) -> SegmentMembership | None:
        with self._lock:
            return self._memberships.get((donor_id, segment_id))

    def is_member(self, donor_id: str, segment_id: str) -> bool:
        with self._lock:
            return (donor_id, segment_id) in self._memberships

    def get_donor_memberships(self, donor_id: str) -> list[SegmentMembership]:
        with self._lock:
            return [
                self._memberships[(donor_id, sid)]
                for sid in sorted(self._by_donor.get(donor_id, ()))
            ]

    def get_segment_members(self, segment_id: str) -> list[str]:
        with self._lock:
            return sorted(self._by_segment.get(segment_id, ()))

    def segmented_donor_count(self) -> int:
        with self._lock:
            return len(self._by_donor)

    def all_memberships(self) -> list[SegmentMembership]:
        with self._lock:
            return list(self._memberships.values())

    # --- Maintenance ---

    def remove_segment(self, segment_id: str) -> int:
        """Drop every membership of a deleted segment."""
        with self._lock:
            donors = self._by_segment.pop(segment_id, set())
            for donor_id in donors:
                self._memberships.pop((donor_id, segment_id), None)
                segments = self._by_donor.get(donor_id)
                if segments is not None:
                    segments.discard(segment_id)
                    if not segments:
                        del self._by_donor[donor_id]

        if donors:
            self._log.info("segment_memberships_removed", segment_id=segment_id, count=len(donors))
        return len(donors)

    def restore(self, memberships: Sequence[SegmentMembership]) -> None:
        with self._lock:
            self._memberships.clear()
            self._by_donor.clear()
            self._by_segment.clear()
            for membership in memberships:
                self._add(membership)
        self._log.info("memberships_restored", count=len(memberships))

    def clear(self) -> None:
        with self._lock:
            self._memberships.clear()
            self._by_donor.clear()
            self._by_segment.clear()
