"""Tests for segment health, trends and growth predictions."""

from datetime import datetime, timedelta

import pytest

from donorseg.core.models import (
    AlertSeverity,
    AlertType,
    AudienceSegment,
    SegmentAlert,
    SegmentMetadata,
)
from donorseg.runtime.analytics import predict_growth, segment_health, size_trend

STALE = timedelta(hours=48)


def reconciled(size: int, at: datetime) -> AudienceSegment:
    return AudienceSegment(name="S", metadata=SegmentMetadata(size=size, last_updated=at))


def alert(alert_type: AlertType, severity: AlertSeverity) -> SegmentAlert:
    return SegmentAlert(segment_id="s", type=alert_type, severity=severity, message="m")


class TestSegmentHealth:
    def test_healthy_segment(self, now: datetime) -> None:
        health = segment_health(reconciled(10, now), [], now, STALE)
        assert health.score == 100
        assert health.issues == []

    def test_never_reconciled(self, now: datetime) -> None:
        health = segment_health(AudienceSegment(name="S"), [], now, STALE)
        assert health.score == 80

    def test_empty_and_stale(self, now: datetime) -> None:
        health = segment_health(reconciled(0, now - timedelta(days=5)), [], now, STALE)
        assert health.score == 50
        assert len(health.issues) == 2

    def test_alert_deductions_are_capped(self, now: datetime) -> None:
        alerts = [alert(AlertType.SIZE_CHANGE, AlertSeverity.HIGH)] * 4
        alerts += [alert(AlertType.UPDATE_FAILED, AlertSeverity.HIGH)] * 5
        health = segment_health(reconciled(10, now), alerts, now, STALE)
        assert health.score == 30

    def test_medium_size_alerts_ignored(self, now: datetime) -> None:
        alerts = [alert(AlertType.SIZE_CHANGE, AlertSeverity.MEDIUM)]
        assert segment_health(reconciled(10, now), alerts, now, STALE).score == 100


class TestTrendsAndPredictions:
    def test_growth_rate(self, now: datetime) -> None:
        history = [(now - timedelta(days=2), 10), (now - timedelta(days=1), 12), (now, 15)]
        trend = size_trend(reconciled(15, now), history)
        assert trend.growth_rate == pytest.approx(0.5)

    def test_linear_growth(self, now: datetime) -> None:
        history = [(now - timedelta(days=3 - d), 100 + 10 * d) for d in range(4)]
        prediction = predict_growth(reconciled(130, now), history)

        assert prediction.slope_per_day == pytest.approx(10.0)
        assert prediction.predicted_size == pytest.approx(430.0)
        assert prediction.lower_bound == pytest.approx(430.0)
        assert prediction.upper_bound == pytest.approx(430.0)

    def test_noisy_history_widens_interval(self, now: datetime) -> None:
        sizes = [100, 130, 95, 140, 120]
        history = [(now - timedelta(days=4 - d), s) for d, s in enumerate(sizes)]
        prediction = predict_growth(reconciled(120, now), history)
        assert prediction.lower_bound < prediction.predicted_size < prediction.upper_bound

    def test_single_point_is_flat(self, now: datetime) -> None:
        prediction = predict_growth(reconciled(7, now), [(now, 7)])
        assert prediction.predicted_size == 7.0
        assert prediction.slope_per_day == 0.0

    def test_prediction_never_negative(self, now: datetime) -> None:
        history = [(now - timedelta(days=2 - d), 20 - 10 * d) for d in range(3)]
        prediction = predict_growth(reconciled(0, now), history)
        assert prediction.predicted_size == 0.0
        assert prediction.lower_bound == 0.0
