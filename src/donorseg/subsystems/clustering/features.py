"""
Feature extraction and normalization for clustering.

Each feature is a plain function of (donor, now). Feature vectors are
numpy float arrays, one row per donor and one column per requested feature.
"""

from collections import Counter
from collections.abc import Callable, Sequence
from datetime import datetime

import numpy as np
import structlog

from donorseg.core.errors import ValidationError
from donorseg.core.models import (
    BehaviorAnalysisConfig,
    Donor,
    days_between,
    utc_now,
)

logger = structlog.get_logger()

DEFAULT_AGE = 45.0
ENGAGEMENT_DECAY_PERIOD_DAYS = 30.0
ENGAGEMENT_POINTS_PER_EVENT = 10.0
MAX_ENGAGEMENT_SCORE = 100.0

FeatureFunction = Callable[[Donor, datetime], float]


def engagement_score(
    donor: Donor,
    now: datetime,
    config: BehaviorAnalysisConfig | None = None,
) -> float:
    """
    Engagement score in [0, 100].

    A donor-supplied score wins. Otherwise donor activity (interactions and
    gifts) within the long window is weighted by
    ``weight_decay ** (age_days / 30)`` and each weighted event is worth 10
    points.
    """
    if donor.engagement_score is not None:
        return float(donor.engagement_score)

    config = config or BehaviorAnalysisConfig()
    window = config.time_windows.long
    dates = [i.date for i in donor.interactions if i.is_activity]
    dates.extend(d.date for d in donor.donations)

    weighted = 0.0
    for date in dates:
        age_days = days_between(date, now)
        if 0 <= age_days <= window:
            weighted += config.weight_decay ** (age_days / ENGAGEMENT_DECAY_PERIOD_DAYS)
    return min(MAX_ENGAGEMENT_SCORE, ENGAGEMENT_POINTS_PER_EVENT * weighted)


def _age(donor: Donor, now: datetime) -> float:
    return float(donor.age) if donor.age is not None else DEFAULT_AGE


class FeatureExtractor:
    """Converts donors into numeric feature vectors from a fixed registry."""

    def __init__(
        self,
        behavior_config: BehaviorAnalysisConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._behavior_config = behavior_config or BehaviorAnalysisConfig()
        self._clock = clock
        self._features: dict[str, FeatureFunction] = {
            "total_donated": lambda d, now: d.total_donated,
            "donation_count": lambda d, now: float(d.donation_count),
            "avg_donation_amount": lambda d, now: d.average_donation,
            "days_since_first_donation": lambda d, now: float(d.days_since_first_donation(now)),
            "days_since_last_donation": lambda d, now: float(d.days_since_last_donation(now)),
            "engagement_score": lambda d, now: engagement_score(d, now, self._behavior_config),
            "age": _age,
        }

    @property
    def behavior_config(self) -> BehaviorAnalysisConfig:
        return self._behavior_config

    @property
    def feature_names(self) -> list[str]:
        return list(self._features)

    def validate(self, features: Sequence[str]) -> None:
        """
        Raises:
            ValidationError: If the list is empty, repeats a name or names an
                unknown feature.
        """
        if not features:
            raise ValidationError("At least one feature is required")
        repeated = sorted(f for f, n in Counter(features).items() if n > 1)
        if repeated:
            raise ValidationError(f"Duplicate features: {', '.join(repeated)}")
        unknown = [f for f in features if f not in self._features]
        if unknown:
            raise ValidationError(
                f"Unknown features: {', '.join(unknown)}; "
                f"available: {', '.join(self._features)}"
            )

    def extract(
        self,
        donor: Donor,
        features: Sequence[str],
        now: datetime | None = None,
    ) -> np.ndarray:
        self.validate(features)
        now = now or self._clock()
        return np.array([self._features[f](donor, now) for f in features], dtype=float)

    def extract_batch(
        self,
        donors: Sequence[Donor],
        features: Sequence[str],
        now: datetime | None = None,
    ) -> np.ndarray:
        """Feature matrix of shape (len(donors), len(features))."""
        self.validate(features)
        now = now or self._clock()
        rows = [[self._features[f](donor, now) for f in features] for donor in donors]
        return np.array(rows, dtype=float).reshape(len(donors), len(features))


class Normalizer:
    """
    Per-feature min-max scaling to [0, 1] over one population snapshot.

    A feature with zero range is held constant at 0.
    """

    def __init__(self) -> None:
        self.mins: np.ndarray | None = None
        self.ranges: np.ndarray | None = None

    def fit(self, matrix: np.ndarray) -> "Normalizer":
        self.mins = matrix.min(axis=0)
        self.ranges = matrix.max(axis=0) - self.mins
        return self

    def transform(self, matrix: np.ndarray) -> np.ndarray:
        if self.mins is None or self.ranges is None:
            raise RuntimeError("Normalizer not fitted")
        safe = np.where(self.ranges > 0, self.ranges, 1.0)
        scaled = (matrix - self.mins) / safe
        return np.where(self.ranges > 0, scaled, 0.0)

    def fit_transform(self, matrix: np.ndarray) -> np.ndarray:
        return self.fit(matrix).transform(matrix)

    def inverse_transform(self, matrix: np.ndarray) -> np.ndarray:
        """Map normalized points back to raw feature units."""
        if self.mins is None or self.ranges is None:
            raise RuntimeError("Normalizer not fitted")
        return matrix * self.ranges + self.mins
