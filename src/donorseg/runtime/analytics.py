"""
Segmentation analytics: overview, top segments, health, trends, predictions.

Everything here is derived from engine state; nothing is random. Growth
predictions fit a line through a segment's size history.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

import numpy as np

from donorseg.core.models import (
    SECONDS_PER_DAY,
    AlertSeverity,
    AlertType,
    AudienceSegment,
    SegmentAlert,
    SegmentStatus,
)
from donorseg.core.registry import SegmentRegistry
from donorseg.subsystems.membership.membership_store import MembershipStore

TOP_SEGMENTS = 5
PREDICTION_HORIZON_DAYS = 30
INTERVAL_Z = 1.96

EMPTY_PENALTY = 30
NEVER_RECONCILED_PENALTY = 20
STALE_PENALTY = 20
SIZE_ALERT_PENALTY, SIZE_ALERT_CAP = 15, 30
FAILURE_PENALTY, FAILURE_CAP = 20, 40


@dataclass
class AnalyticsOverview:
    total_segments: int
    active_segments: int
    total_memberships: int
    segmented_donors: int
    total_donors: int
    coverage: float
    average_segment_size: float


@dataclass
class SegmentRanking:
    segment_id: str
    name: str
    size: int
    conversion_rate: float
    revenue_per_member: float


@dataclass
class SegmentHealth:
    segment_id: str
    name: str
    score: int
    issues: list[str] = field(default_factory=list)


@dataclass
class SegmentTrend:
    segment_id: str
    name: str
    history: list[tuple[datetime, int]]
    growth_rate: float


@dataclass
class SegmentPrediction:
    segment_id: str
    name: str
    current_size: int
    predicted_size: float
    lower_bound: float
    upper_bound: float
    slope_per_day: float
    horizon_days: int = PREDICTION_HORIZON_DAYS


@dataclass
class SegmentationAnalytics:
    overview: AnalyticsOverview
    top_performing_segments: list[SegmentRanking]
    segment_health: list[SegmentHealth]
    trends: list[SegmentTrend]
    predictions: list[SegmentPrediction]
    generated_at: datetime


def segment_health(
    segment: AudienceSegment,
    alerts: Sequence[SegmentAlert],
    now: datetime,
    stale_after: timedelta,
) -> SegmentHealth:
    """Score a segment from 100 down, one deduction per problem found."""
    score = 100
    issues: list[str] = []

    last_updated = segment.metadata.last_updated
    if last_updated is None:
        score -= NEVER_RECONCILED_PENALTY
        issues.append("Segment has not been reconciled yet")
    else:
        if segment.metadata.size == 0:
            score -= EMPTY_PENALTY
            issues.append("Segment has no members")
        if segment.is_auto_updating and now - last_updated > stale_after:
            score -= STALE_PENALTY
            issues.append("Segment membership is stale")

    size_alerts = sum(
        1
        for a in alerts
        if a.type == AlertType.SIZE_CHANGE and a.severity == AlertSeverity.HIGH
    )
    if size_alerts:
        score -= min(SIZE_ALERT_CAP, SIZE_ALERT_PENALTY * size_alerts)
        issues.append(f"{size_alerts} high-severity size change alert(s)")

    failures = sum(1 for a in alerts if a.type == AlertType.UPDATE_FAILED)
    if failures:
        score -= min(FAILURE_CAP, FAILURE_PENALTY * failures)
        issues.append(f"{failures} failed reconciliation(s)")

    return SegmentHealth(
        segment_id=segment.id,
        name=segment.name,
        score=max(0, score),
        issues=issues,
    )


def size_trend(segment: AudienceSegment, history: list[tuple[datetime, int]]) -> SegmentTrend:
    growth = 0.0
    if len(history) >= 2:
        first, last = history[0][1], history[-1][1]
        growth = (last - first) / max(first, 1)
    return SegmentTrend(
        segment_id=segment.id, name=segment.name, history=history, growth_rate=growth
    )


def predict_growth(
    segment: AudienceSegment,
    history: list[tuple[datetime, int]],
    horizon_days: int = PREDICTION_HORIZON_DAYS,
) -> SegmentPrediction:
    """Least-squares line through the size history, extrapolated ``horizon_days``."""
    current = segment.metadata.size
    if len(history) < 2:
        return SegmentPrediction(
            segment_id=segment.id,
            name=segment.name,
            current_size=current,
            predicted_size=float(current),
            lower_bound=float(current),
            upper_bound=float(current),
            slope_per_day=0.0,
            horizon_days=horizon_days,
        )

    origin = history[0][0]
    days = np.array([(t - origin).total_seconds() / SECONDS_PER_DAY for t, _ in history])
    sizes = np.array([s for _, s in history], dtype=float)

    if np.ptp(days) == 0:
        slope, intercept = 0.0, float(sizes.mean())
    else:
        slope, intercept = (float(v) for v in np.polyfit(days, sizes, 1))

    residuals = sizes - (slope * days + intercept)
    spread = INTERVAL_Z * float(residuals.std())
    predicted = max(0.0, slope * (days[-1] + horizon_days) + intercept)

    return SegmentPrediction(
        segment_id=segment.id,
        name=segment.name,
        current_size=current,
        predicted_size=predicted,
        lower_bound=max(0.0, predicted - spread),
        upper_bound=predicted + spread,
        slope_per_day=slope,
        horizon_days=horizon_days,
    )


def build_analytics(
    registry: SegmentRegistry,
    store: MembershipStore,
    alerts: Sequence[SegmentAlert],
    total_donors: int,
    now: datetime,
    stale_after: timedelta,
) -> SegmentationAnalytics:
    segments = registry.list_segments()
    active = [s for s in segments if s.status == SegmentStatus.ACTIVE]
    sizes = [store.size(s.id) for s in segments]
    segmented = store.segmented_donor_count()

    overview = AnalyticsOverview(
        total_segments=len(segments),
        active_segments=len(active),
        total_memberships=sum(sizes),
        segmented_donors=segmented,
        total_donors=total_donors,
        coverage=segmented / total_donors if total_donors else 0.0,
        average_segment_size=sum(sizes) / len(segments) if segments else 0.0,
    )

    ranked = sorted(
        segments,
        key=lambda s: (s.performance.conversion_rate, s.metadata.size),
        reverse=True,
    )[:TOP_SEGMENTS]
    top = [
        SegmentRanking(
            segment_id=s.id,
            name=s.name,
            size=s.metadata.size,
            conversion_rate=s.performance.conversion_rate,
            revenue_per_member=s.performance.revenue_per_member,
        )
        for s in ranked
    ]

    by_segment: dict[str, list[SegmentAlert]] = {}
    for alert in alerts:
        by_segment.setdefault(alert.segment_id, []).append(alert)

    health = [segment_health(s, by_segment.get(s.id, []), now, stale_after) for s in segments]
    trends = [size_trend(s, registry.get_size_history(s.id)) for s in segments]
    predictions = [predict_growth(s, registry.get_size_history(s.id)) for s in segments]

    return SegmentationAnalytics(
        overview=overview,
        top_performing_segments=top,
        segment_health=health,
        trends=trends,
        predictions=predictions,
        generated_at=now,
    )
