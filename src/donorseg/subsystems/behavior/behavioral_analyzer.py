"""
BehavioralAnalyzer: time-windowed statistics over a donor's history.

Five patterns are computed per donor, each from real signals and only when
the donor has at least ``minimum_activity`` qualifying events:

- donation behaviour (cadence of gifts, the reference pattern)
- donation amount (typical gift size)
- engagement (donor-initiated interactions)
- channel preference (where the donor gives and interacts)
- campaign response (responses and gifts relative to solicitations)

The analyzer also keeps a library of named patterns (High-Value Donors,
Frequent Givers, Highly Engaged, plus any registered ones) that segments
may require by id.
"""

from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from datetime import datetime, timedelta
from typing import Any

import numpy as np
import pydantic
import structlog

from donorseg.core.errors import ValidationError
from donorseg.core.models import (
    BehaviorAnalysisConfig,
    BehavioralPattern,
    BehaviorType,
    Donation,
    Donor,
    InteractionKind,
    PatternMetrics,
    PatternThresholds,
    PatternTimeframe,
    Trend,
    days_between,
    utc_now,
)
from donorseg.subsystems.clustering.features import engagement_score

logger = structlog.get_logger()

TREND_UP = 1.10
TREND_DOWN = 0.90
DAYS_PER_MONTH = 30.0

DONATION_KEY = "donation_behavior"
AMOUNT_KEY = "donation_amount"
ENGAGEMENT_KEY = "engagement_behavior"
CHANNEL_KEY = "channel_behavior"
CAMPAIGN_KEY = "campaign_behavior"


def _trend(recent: float, older: float) -> Trend:
    if older <= 0:
        return Trend.INCREASING if recent > 0 else Trend.STABLE
    if recent > older * TREND_UP:
        return Trend.INCREASING
    if recent < older * TREND_DOWN:
        return Trend.DECREASING
    return Trend.STABLE


def _amount_trend(amounts: Sequence[float]) -> Trend:
    """Mean of the recent half against the older half, most recent first."""
    half = len(amounts) // 2
    if half == 0:
        return Trend.STABLE
    return _trend(float(np.mean(amounts[:half])), float(np.mean(amounts[half:])))


def _consistency(values: Sequence[float]) -> float:
    """``max(0, 1 - std/mean)``; 0 for a zero mean."""
    if not values:
        return 0.0
    arr = np.asarray(values, dtype=float)
    mean = float(arr.mean())
    if mean <= 0:
        return 0.0
    return max(0.0, 1.0 - float(arr.std()) / mean)


def _within(dates: Iterable[datetime], now: datetime, window_days: int) -> list[datetime]:
    return [d for d in dates if 0 <= days_between(d, now) <= window_days]


def primary_signal(pattern: BehavioralPattern) -> float | None:
    """The metric a library pattern's thresholds are measured against."""
    match pattern.type:
        case BehaviorType.DONATION_AMOUNT:
            return pattern.metrics.monetary
        case BehaviorType.ENGAGEMENT_LEVEL:
            score = pattern.details.get("engagement_score")
            return float(score) if score is not None else None
        case _:
            return pattern.metrics.frequency


def default_library(now: datetime | None = None) -> list[BehavioralPattern]:
    """
    The built-in named patterns.

    Frequent Givers thresholds are in gifts per 30 days, the unit of the
    donation behaviour frequency metric (6, 3 and 1 gifts a year).
    """
    now = now or utc_now()
    timeframe = PatternTimeframe(start=now - timedelta(days=365), end=now, window_days=365)
    return [
        BehavioralPattern(
            id="default_pattern_0",
            key="high_value_donors",
            name="High-Value Donors",
            description="Donors who consistently give large amounts",
            type=BehaviorType.DONATION_AMOUNT,
            timeframe=timeframe,
            thresholds=PatternThresholds(high=1000, medium=500, low=100),
            weight=0.9,
            created_at=now,
        ),
        BehavioralPattern(
            id="default_pattern_1",
            key="frequent_givers",
            name="Frequent Givers",
            description="Donors who give frequently throughout the year",
            type=BehaviorType.DONATION_FREQUENCY,
            timeframe=timeframe,
            thresholds=PatternThresholds(high=0.5, medium=0.25, low=1 / 12),
            weight=0.8,
            created_at=now,
        ),
        BehavioralPattern(
            id="default_pattern_2",
            key="highly_engaged",
            name="Highly Engaged",
            description="Donors with high engagement across all channels",
            type=BehaviorType.ENGAGEMENT_LEVEL,
            timeframe=timeframe,
            thresholds=PatternThresholds(high=80, medium=50, low=20),
            weight=0.7,
            created_at=now,
        ),
    ]


class BehavioralAnalyzer:
    """Computes behavioural patterns per donor and matches them to requirements."""

    def __init__(
        self,
        config: BehaviorAnalysisConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config or BehaviorAnalysisConfig()
        self._clock = clock
        self._library: dict[str, BehavioralPattern] = {
            p.id: p for p in default_library(clock())
        }
        self._log = logger.bind(component="behavioral_analyzer")

    @property
    def config(self) -> BehaviorAnalysisConfig:
        return self._config

    # --- Analysis ---

    def analyze(
        self,
        donor: Donor,
        config: BehaviorAnalysisConfig | None = None,
        now: datetime | None = None,
    ) -> list[BehavioralPattern]:
        """All patterns the donor has enough activity for."""
        config = config or self._config
        now = now or self._clock()

        analyzers = (
            self._donation_behavior,
            self._donation_amount,
            self._engagement_behavior,
            self._channel_behavior,
            self._campaign_behavior,
        )
        patterns = [p for analyze in analyzers if (p := analyze(donor, config, now)) is not None]

        self._log.debug("donor_analyzed", donor_id=donor.id, patterns=len(patterns))
        return patterns

    def _recent_donations(
        self, donor: Donor, config: BehaviorAnalysisConfig, now: datetime
    ) -> list[Donation]:
        window = config.time_windows.long
        recent = [d for d in donor.donations if 0 <= days_between(d.date, now) <= window]
        return sorted(recent, key=lambda d: d.date, reverse=True)

    def _donation_behavior(
        self, donor: Donor, config: BehaviorAnalysisConfig, now: datetime
    ) -> BehavioralPattern | None:
        recent = self._recent_donations(donor, config, now)
        if len(recent) < config.minimum_activity:
            return None

        amounts = [d.amount for d in recent]
        oldest = recent[-1].date
        days_since_oldest = max(days_between(oldest, now), 1.0)
        frequency = len(recent) / days_since_oldest * DAYS_PER_MONTH

        trend = _amount_trend(amounts)

        return BehavioralPattern(
            id=f"{donor.id}_{DONATION_KEY}",
            key=DONATION_KEY,
            name="Donation Behavior Pattern",
            description=f"Donation frequency and amount patterns for donor {donor.id}",
            type=BehaviorType.DONATION_FREQUENCY,
            timeframe=PatternTimeframe(
                start=oldest, end=now, window_days=int(days_since_oldest)
            ),
            metrics=PatternMetrics(
                frequency=frequency,
                recency=days_between(recent[0].date, now),
                monetary=float(sum(amounts)),
                trend=trend,
                consistency=_consistency(amounts),
            ),
            thresholds=PatternThresholds(
                high=frequency * 0.8 if frequency > 2 else 1.5,
                medium=frequency * 0.5 if frequency > 1 else 0.8,
                low=0.3,
            ),
            weight=0.8,
            created_at=now,
        )

    def _donation_amount(
        self, donor: Donor, config: BehaviorAnalysisConfig, now: datetime
    ) -> BehavioralPattern | None:
        recent = self._recent_donations(donor, config, now)
        if len(recent) < config.minimum_activity:
            return None

        amounts = [d.amount for d in recent]
        trend = _amount_trend(amounts)

        return BehavioralPattern(
            id=f"{donor.id}_{AMOUNT_KEY}",
            key=AMOUNT_KEY,
            name="Donation Amount Pattern",
            description=f"Typical gift size for donor {donor.id}",
            type=BehaviorType.DONATION_AMOUNT,
            timeframe=PatternTimeframe(
                start=now - timedelta(days=config.time_windows.long),
                end=now,
                window_days=config.time_windows.long,
            ),
            metrics=PatternMetrics(
                recency=days_between(recent[0].date, now),
                monetary=float(np.mean(amounts)),
                trend=trend,
                consistency=_consistency(amounts),
            ),
            thresholds=PatternThresholds(
                high=float(max(amounts)),
                medium=float(np.median(amounts)),
                low=float(min(amounts)),
            ),
            weight=0.9,
            details={"largest_gift": float(max(amounts)), "gift_count": len(amounts)},
            created_at=now,
        )

    def _engagement_behavior(
        self, donor: Donor, config: BehaviorAnalysisConfig, now: datetime
    ) -> BehavioralPattern | None:
        window = config.time_windows.medium
        dates = sorted(
            _within((i.date for i in donor.interactions if i.is_activity), now, window),
            reverse=True,
        )
        if len(dates) < config.minimum_activity:
            return None

        midpoint = now - timedelta(days=window / 2)
        recent_count = sum(1 for d in dates if d >= midpoint)
        older_count = len(dates) - recent_count

        gaps = [days_between(earlier, later) for earlier, later in zip(dates[1:], dates)]
        consistency = _consistency(gaps) if len(gaps) > 1 else 1.0

        return BehavioralPattern(
            id=f"{donor.id}_{ENGAGEMENT_KEY}",
            key=ENGAGEMENT_KEY,
            name="Engagement Behavior Pattern",
            description=f"Communication and engagement patterns for donor {donor.id}",
            type=BehaviorType.ENGAGEMENT_LEVEL,
            timeframe=PatternTimeframe(
                start=now - timedelta(days=window), end=now, window_days=window
            ),
            metrics=PatternMetrics(
                frequency=len(dates) / window * DAYS_PER_MONTH,
                recency=days_between(dates[0], now),
                trend=_trend(recent_count, older_count),
                consistency=consistency,
            ),
            thresholds=PatternThresholds(high=75, medium=50, low=25),
            weight=0.6,
            details={
                "engagement_score": engagement_score(donor, now, config),
                "activity_count": len(dates),
            },
            created_at=now,
        )

    def _channel_behavior(
        self, donor: Donor, config: BehaviorAnalysisConfig, now: datetime
    ) -> BehavioralPattern | None:
        window = config.time_windows.long
        events = [
            (i.channel.value, i.date)
            for i in donor.interactions
            if i.is_activity and 0 <= days_between(i.date, now) <= window
        ]
        events.extend(
            (d.source.value, d.date)
            for d in donor.donations
            if 0 <= days_between(d.date, now) <= window
        )
        if len(events) < config.minimum_activity:
            return None

        counts = Counter(channel for channel, _ in events)
        preferred, preferred_count = min(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        last_on_preferred = max(date for channel, date in events if channel == preferred)

        return BehavioralPattern(
            id=f"{donor.id}_{CHANNEL_KEY}",
            key=CHANNEL_KEY,
            name="Channel Preference Pattern",
            description=f"Communication channel preferences for donor {donor.id}",
            type=BehaviorType.CHANNEL_PREFERENCE,
            timeframe=PatternTimeframe(
                start=now - timedelta(days=window), end=now, window_days=window
            ),
            metrics=PatternMetrics(
                frequency=float(preferred_count),
                recency=days_between(last_on_preferred, now),
                consistency=preferred_count / len(events),
            ),
            thresholds=PatternThresholds(high=15, medium=10, low=5),
            weight=0.4,
            details={"preferred_channel": preferred, "channel_counts": dict(counts)},
            created_at=now,
        )

    def _campaign_behavior(
        self, donor: Donor, config: BehaviorAnalysisConfig, now: datetime
    ) -> BehavioralPattern | None:
        window = config.time_windows.long
        solicitations = _within(
            (i.date for i in donor.interactions if i.kind == InteractionKind.SOLICITATION),
            now,
            window,
        )
        if len(solicitations) < config.minimum_activity:
            return None

        responses = _within(
            (i.date for i in donor.interactions if i.kind == InteractionKind.RESPONSE),
            now,
            window,
        )
        responses.extend(
            _within((d.date for d in donor.donations if d.campaign_id), now, window)
        )

        def rate(asks: int, answers: int) -> float:
            return min(1.0, answers / asks) if asks else 0.0

        midpoint = now - timedelta(days=window / 2)
        recent_rate = rate(
            sum(1 for d in solicitations if d >= midpoint),
            sum(1 for d in responses if d >= midpoint),
        )
        older_rate = rate(
            sum(1 for d in solicitations if d < midpoint),
            sum(1 for d in responses if d < midpoint),
        )
        response_rate = rate(len(solicitations), len(responses))

        return BehavioralPattern(
            id=f"{donor.id}_{CAMPAIGN_KEY}",
            key=CAMPAIGN_KEY,
            name="Campaign Response Pattern",
            description=f"Campaign response patterns for donor {donor.id}",
            type=BehaviorType.CAMPAIGN_RESPONSE,
            timeframe=PatternTimeframe(
                start=now - timedelta(days=window), end=now, window_days=window
            ),
            metrics=PatternMetrics(
                frequency=response_rate,
                recency=days_between(max(responses), now) if responses else None,
                trend=_trend(recent_rate, older_rate),
                consistency=1.0 - abs(recent_rate - older_rate),
            ),
            thresholds=PatternThresholds(high=0.3, medium=0.2, low=0.1),
            weight=0.7,
            details={"solicitations": len(solicitations), "responses": len(responses)},
            created_at=now,
        )

    # --- Matching ---

    def satisfies(self, pattern: BehavioralPattern, required_id: str) -> bool:
        """
        Whether a computed pattern satisfies a required pattern id.

        A required id matches the computed pattern's own id, its generic key,
        or a library pattern of the same type whose medium threshold the
        computed pattern reaches.
        """
        if required_id in (pattern.id, pattern.key):
            return True
        named = self._library.get(required_id)
        if named is None or named.type != pattern.type:
            return False
        signal = primary_signal(pattern)
        return signal is not None and signal >= named.thresholds.medium

    def matches_any(self, patterns: Sequence[BehavioralPattern], required: Iterable[str]) -> bool:
        """Whether the donor's patterns intersect the required id set."""
        return any(self.satisfies(p, rid) for rid in required for p in patterns)

    # --- Pattern library ---

    def register_pattern(self, pattern: BehavioralPattern | Mapping[str, Any]) -> BehavioralPattern:
        """
        Add or replace a named library pattern.

        Raises:
            ValidationError: If the pattern is malformed.
        """
        if not isinstance(pattern, BehavioralPattern):
            try:
                pattern = BehavioralPattern.model_validate(pattern)
            except pydantic.ValidationError as exc:
                raise ValidationError(str(exc)) from exc

        library = dict(self._library)
        library[pattern.id] = pattern
        self._library = library
        self._log.info("pattern_registered", pattern_id=pattern.id, name=pattern.name)
        return pattern

    def get_patterns(self) -> list[BehavioralPattern]:
        return list(self._library.values())

    def get_pattern(self, pattern_id: str) -> BehavioralPattern | None:
        return self._library.get(pattern_id)

    def restore(self, patterns: Sequence[BehavioralPattern]) -> None:
        self._library = {p.id: p for p in patterns}
