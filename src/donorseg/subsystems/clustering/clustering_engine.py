"""
ClusteringEngine: partitions donors into k groups in feature space.

Only k-means is implemented. Hierarchical and density-based algorithms are
declared in ClusteringAlgorithm but raise UnsupportedAlgorithmError until a
real algorithm is designed for them.

A run replaces the previous clusters of the same algorithm. Cluster ids are
stable per slot (``cluster_k_means_0``, ...) so segments that reference a
cluster follow it across runs; each run carries its own ULID ``run_id``.
"""

import threading
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

import numpy as np
import structlog
from ulid import ULID

from donorseg.core.errors import ClusteringError, UnsupportedAlgorithmError, ValidationError
from donorseg.core.models import (
    ClusterCharacteristics,
    ClusteringAlgorithm,
    ClusteringConfig,
    Donor,
    DonorCluster,
    utc_now,
)
from donorseg.subsystems.clustering.features import (
    FeatureExtractor,
    Normalizer,
    engagement_score,
)

logger = structlog.get_logger()

LOW_ENGAGEMENT_SCORE = 30.0
LAPSED_DAYS = 365
TOP_CHANNELS = 3


@dataclass
class KMeansResult:
    """Outcome of a single k-means run."""

    assignments: np.ndarray  # (n,) cluster index per vector
    centroids: np.ndarray  # (k, d)
    distances: np.ndarray  # (n,) distance to assigned centroid
    iterations: int
    converged: bool


def _distances(vectors: np.ndarray, centroids: np.ndarray) -> np.ndarray:
    return np.linalg.norm(vectors[:, None, :] - centroids[None, :, :], axis=2)


def _reseed_empty(
    vectors: np.ndarray, centroids: np.ndarray, assignments: np.ndarray, empty: np.ndarray
) -> None:
    """Move each empty centroid onto the point farthest from its own centroid."""
    spread = np.linalg.norm(vectors - centroids[assignments], axis=1)
    for j in empty:
        i = int(spread.argmax())
        centroids[j] = vectors[i]
        spread[i] = -1.0


def kmeans(
    vectors: np.ndarray,
    k: int,
    *,
    max_iterations: int = 100,
    tolerance: float = 0.001,
    seed: int | None = None,
    bounds: tuple[np.ndarray, np.ndarray] | None = None,
) -> KMeansResult:
    """
    Lloyd's k-means with uniform random initialisation.

    Centroids start as uniform random points inside ``bounds`` (the data's
    bounding box when omitted). A centroid that receives no members is moved
    onto the point farthest from its current centroid and the run keeps
    iterating. Iteration stops once every centroid moves less than
    ``tolerance`` with no empty slot, or the budget is spent.

    Raises:
        ClusteringError: If a slot is still empty when the budget runs out.
    """
    n, d = vectors.shape
    if k <= 0:
        raise ValidationError(f"num_clusters must be positive, got {k}")
    if n < k:
        raise ClusteringError(f"Cannot form {k} clusters from {n} vectors")

    rng = np.random.default_rng(seed)
    low, high = bounds if bounds is not None else (vectors.min(axis=0), vectors.max(axis=0))
    centroids = rng.uniform(low, high, size=(k, d))

    converged = False
    iterations = 0
    for iterations in range(1, max_iterations + 1):
        assignments = _distances(vectors, centroids).argmin(axis=1)
        counts = np.bincount(assignments, minlength=k)

        updated = centroids.copy()
        for j in np.flatnonzero(counts):
            updated[j] = vectors[assignments == j].mean(axis=0)
        empty = np.flatnonzero(counts == 0)
        if len(empty):
            _reseed_empty(vectors, updated, assignments, empty)

        movement = np.linalg.norm(updated - centroids, axis=1)
        centroids = updated
        if not len(empty) and np.all(movement < tolerance):
            converged = True
            break

    assignments = _distances(vectors, centroids).argmin(axis=1)
    counts = np.bincount(assignments, minlength=k)
    if np.any(counts == 0):
        raise ClusteringError(
            f"{int(np.sum(counts == 0))} of {k} clusters empty after {iterations} iterations"
        )
    for j in range(k):
        centroids[j] = vectors[assignments == j].mean(axis=0)
    distances = np.linalg.norm(vectors - centroids[assignments], axis=1)

    return KMeansResult(
        assignments=assignments,
        centroids=centroids,
        distances=distances,
        iterations=iterations,
        converged=converged,
    )


class ClusteringEngine:
    """
    Runs clustering over donor snapshots and indexes the latest result.

    The index maps each cluster id to its members and their distance to the
    centroid; reconciliation reads it to decide cluster membership and
    confidence. Runs may execute on worker threads, so the index is guarded
    by a lock.
    """

    def __init__(
        self,
        extractor: FeatureExtractor | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._extractor = extractor or FeatureExtractor(clock=clock)
        self._clock = clock
        self._clusters: dict[str, DonorCluster] = {}
        self._members: dict[str, dict[str, float]] = {}  # cluster_id -> donor_id -> distance
        self._lock = threading.RLock()
        self._total_runs = 0
        self._log = logger.bind(component="clustering_engine")

    @property
    def extractor(self) -> FeatureExtractor:
        return self._extractor

    # --- Running ---

    def validate(self, config: ClusteringConfig) -> None:
        """
        Raises:
            UnsupportedAlgorithmError: For declared but unimplemented algorithms.
            ValidationError: For a non-positive cluster count or bad features.
        """
        if config.algorithm != ClusteringAlgorithm.K_MEANS:
            raise UnsupportedAlgorithmError(config.algorithm.value)
        if config.num_clusters <= 0:
            raise ValidationError(f"num_clusters must be positive, got {config.num_clusters}")
        self._extractor.validate(config.features)

    def cluster(self, donors: Sequence[Donor], config: ClusteringConfig) -> list[DonorCluster]:
        """
        Partition donors and replace the clusters of ``config.algorithm``.

        Raises:
            ValidationError: If the configuration is invalid.
            ClusteringError: If the population cannot be split into
                ``num_clusters`` meaningful groups.
        """
        self.validate(config)
        k = config.num_clusters
        if not donors:
            raise ClusteringError("Cannot cluster an empty donor population")
        if len(donors) < k:
            raise ClusteringError(f"Cannot form {k} clusters from {len(donors)} donors")

        now = self._clock()
        raw = self._extractor.extract_batch(donors, config.features, now)
        distinct = len(np.unique(raw, axis=0))
        if distinct < k:
            raise ClusteringError(
                f"Only {distinct} distinct feature vectors for {k} clusters"
            )

        if config.normalize_features:
            vectors = Normalizer().fit_transform(raw)
            bounds = (np.zeros(raw.shape[1]), np.ones(raw.shape[1]))
        else:
            vectors = raw
            bounds = (raw.min(axis=0), raw.max(axis=0))

        result = kmeans(
            vectors,
            k,
            max_iterations=config.max_iterations,
            tolerance=config.tolerance,
            seed=config.random_seed,
            bounds=bounds,
        )

        run_id = str(ULID())
        clusters: list[DonorCluster] = []
        members: dict[str, dict[str, float]] = {}
        for j in range(k):
            idx = np.flatnonzero(result.assignments == j)
            cluster_id = f"cluster_{config.algorithm.value}_{j}"
            cluster_donors = [donors[i] for i in idx]
            clusters.append(
                self._build_cluster(
                    cluster_id=cluster_id,
                    slot=j,
                    run_id=run_id,
                    config=config,
                    centroid=result.centroids[j],
                    cluster_donors=cluster_donors,
                    population=len(donors),
                    now=now,
                )
            )
            members[cluster_id] = {
                donors[i].id: float(result.distances[i]) for i in idx
            }

        self._replace(config.algorithm, clusters, members)

        self._log.info(
            "clustering_completed",
            algorithm=config.algorithm.value,
            run_id=run_id,
            clusters=len(clusters),
            donors=len(donors),
            iterations=result.iterations,
            converged=result.converged,
        )
        return clusters

    def _replace(
        self,
        algorithm: ClusteringAlgorithm,
        clusters: list[DonorCluster],
        members: dict[str, dict[str, float]],
    ) -> None:
        with self._lock:
            stale = [cid for cid, c in self._clusters.items() if c.algorithm == algorithm]
            for cluster_id in stale:
                del self._clusters[cluster_id]
                self._members.pop(cluster_id, None)
            for cluster in clusters:
                self._clusters[cluster.id] = cluster
            self._members.update(members)
            self._total_runs += 1

    def _build_cluster(
        self,
        *,
        cluster_id: str,
        slot: int,
        run_id: str,
        config: ClusteringConfig,
        centroid: np.ndarray,
        cluster_donors: list[Donor],
        population: int,
        now: datetime,
    ) -> DonorCluster:
        size = len(cluster_donors)
        avg_gift = float(np.mean([d.average_donation for d in cluster_donors]))
        avg_frequency = float(np.mean([d.donation_count for d in cluster_donors]))
        avg_lifetime = float(np.mean([d.total_donated for d in cluster_donors]))
        behavior = self._extractor.behavior_config
        avg_engagement = float(
            np.mean([engagement_score(d, now, behavior) for d in cluster_donors])
        )
        ages = [d.age for d in cluster_donors if d.age is not None]
        avg_recency = float(
            np.mean([d.days_since_last_donation(now) for d in cluster_donors])
        )

        channels: Counter[str] = Counter()
        for donor in cluster_donors:
            channels.update(d.source.value for d in donor.donations)
            channels.update(i.channel.value for i in donor.interactions if i.is_activity)

        characteristics = ClusterCharacteristics(
            avg_donation_amount=avg_gift,
            avg_donation_frequency=avg_frequency,
            avg_engagement_score=avg_engagement,
            avg_lifetime_value=avg_lifetime,
            avg_age=float(np.mean(ages)) if ages else None,
            primary_channels=tuple(c for c, _ in channels.most_common(TOP_CHANNELS)),
        )

        insights = (
            f"This cluster represents {size / population * 100:.1f}% of your donor base",
            f"Average gift size is ${avg_gift:.2f}",
            f"Donors in this cluster give an average of {avg_frequency:.1f} gifts each",
        )

        actions = ["Develop targeted messaging for this segment"]
        if avg_recency > LAPSED_DAYS:
            actions.append("Run a reactivation appeal for lapsed donors")
        if avg_engagement < LOW_ENGAGEMENT_SCORE:
            actions.append("Add a low-cost engagement touchpoint before the next ask")
        if characteristics.primary_channels:
            actions.append(f"Lead with {characteristics.primary_channels[0]} outreach")
        actions.append("Create personalized donation asks")

        return DonorCluster(
            id=cluster_id,
            name=f"{config.algorithm.value.upper()} Cluster {slot + 1}",
            description=(
                f"Donor cluster {slot + 1} created using {config.algorithm.value} "
                f"over {', '.join(config.features)}"
            ),
            algorithm=config.algorithm,
            run_id=run_id,
            features=tuple(config.features),
            centroid={f: float(v) for f, v in zip(config.features, centroid, strict=True)},
            size=size,
            characteristics=characteristics,
            insights=insights,
            recommended_actions=tuple(actions),
            created_at=now,
        )

    # --- Queries ---

    def get_clusters(self, algorithm: ClusteringAlgorithm | None = None) -> list[DonorCluster]:
        with self._lock:
            clusters = list(self._clusters.values())
        if algorithm is None:
            return clusters
        return [c for c in clusters if c.algorithm == algorithm]

    def get_cluster(self, cluster_id: str) -> DonorCluster | None:
        with self._lock:
            return self._clusters.get(cluster_id)

    def member_distance(self, cluster_id: str, donor_id: str) -> float | None:
        """Distance of a donor to its cluster's centroid, None if not a member."""
        with self._lock:
            return self._members.get(cluster_id, {}).get(donor_id)

    def max_distance(self, cluster_id: str) -> float:
        with self._lock:
            distances = self._members.get(cluster_id)
            return max(distances.values()) if distances else 0.0

    def get_members(self, cluster_id: str) -> dict[str, float]:
        with self._lock:
            return dict(self._members.get(cluster_id, {}))

    def get_stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "total_runs": self._total_runs,
                "total_clusters": len(self._clusters),
                "total_assignments": sum(len(m) for m in self._members.values()),
            }

    # --- Persistence hooks ---

    def restore(
        self,
        clusters: list[DonorCluster],
        members: dict[str, dict[str, float]],
    ) -> None:
        with self._lock:
            self._clusters = {c.id: c for c in clusters}
            self._members = {
                cid: dict(m) for cid, m in members.items() if cid in self._clusters
            }
        self._log.info("clusters_restored", count=len(clusters))

    def clear(self) -> None:
        with self._lock:
            self._clusters.clear()
            self._members.clear()
