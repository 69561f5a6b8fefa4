"""Tests for feature extraction and k-means clustering."""

from collections.abc import Callable
from datetime import datetime

import numpy as np
import pytest

from donorseg.core.errors import ClusteringError, UnsupportedAlgorithmError, ValidationError
from donorseg.core.models import ClusteringAlgorithm, ClusteringConfig, Donor, DonorCluster
from donorseg.subsystems.clustering import (
    ClusteringEngine,
    FeatureExtractor,
    Normalizer,
    engagement_score,
    kmeans,
)

FEATURES = ("total_donated", "donation_count")


@pytest.fixture
def engine(clock: Callable[[], datetime]) -> ClusteringEngine:
    return ClusteringEngine(FeatureExtractor(clock=clock), clock)


@pytest.fixture
def population(make_donor) -> list[Donor]:
    small = [make_donor(f"s{i}", [10, 10]) for i in range(3)]
    large = [make_donor(f"l{i}", [5000, 5000]) for i in range(3)]
    return small + large


def config(k: int = 2, **overrides: object) -> ClusteringConfig:
    return ClusteringConfig(num_clusters=k, features=FEATURES, **overrides)


class TestKMeans:
    @pytest.mark.parametrize("seed", range(10))
    def test_separates_two_blobs(self, seed: int) -> None:
        """Two well-separated groups always end up in different clusters."""
        vectors = np.array([[0, 0], [0, 0], [0, 0], [10, 10], [10, 10], [10, 10]], dtype=float)
        result = kmeans(vectors, 2, seed=seed)

        assert len(set(result.assignments[:3])) == 1
        assert len(set(result.assignments[3:])) == 1
        assert result.assignments[0] != result.assignments[3]
        assert result.converged
        np.testing.assert_allclose(result.distances, 0.0, atol=1e-9)

    def test_same_seed_same_result(self) -> None:
        rng = np.random.default_rng(1)
        vectors = rng.normal(size=(40, 3))
        first = kmeans(vectors, 4, seed=11)
        second = kmeans(vectors, 4, seed=11)
        np.testing.assert_array_equal(first.assignments, second.assignments)
        np.testing.assert_allclose(first.centroids, second.centroids)

    def test_rejects_more_clusters_than_points(self) -> None:
        with pytest.raises(ClusteringError):
            kmeans(np.zeros((2, 2)), 3)

    def test_empty_slot_is_reseeded_onto_a_point(self) -> None:
        """Both starting centroids sit far right of the data, so one slot starts empty."""
        vectors = np.array([[0.0], [1.0], [2.0], [10.0]])
        far = (np.array([100.0]), np.array([101.0]))

        result = kmeans(vectors, 2, max_iterations=1, seed=0, bounds=far)

        assert sorted(np.bincount(result.assignments, minlength=2).tolist()) == [1, 3]
        assert result.assignments[3] != result.assignments[0]
        assert not result.converged

    def test_slot_still_empty_when_budget_runs_out(self) -> None:
        vectors = np.array([[0.0], [1.0], [2.0], [10.0]])
        far = (np.array([100.0]), np.array([101.0]))
        with pytest.raises(ClusteringError, match="empty"):
            kmeans(vectors, 2, max_iterations=0, seed=0, bounds=far)


class TestFeatures:
    def test_extract_batch_shape(self, make_donor, now: datetime) -> None:
        extractor = FeatureExtractor()
        donors = [make_donor("a", [10, 20]), make_donor("b")]
        matrix = extractor.extract_batch(donors, ["total_donated", "donation_count", "age"], now)
        assert matrix.shape == (2, 3)
        assert matrix[0].tolist() == [30.0, 2.0, 45.0]
        assert matrix[1].tolist() == [0.0, 0.0, 45.0]

    def test_unknown_feature(self) -> None:
        with pytest.raises(ValidationError, match="Unknown features"):
            FeatureExtractor().validate(["shoe_size"])

    def test_empty_feature_list(self) -> None:
        with pytest.raises(ValidationError):
            FeatureExtractor().validate([])

    def test_duplicate_feature_names(self) -> None:
        with pytest.raises(ValidationError, match="Duplicate features: total_donated"):
            FeatureExtractor().validate(["age", "total_donated", "total_donated"])

    def test_normalizer_zero_range(self) -> None:
        matrix = np.array([[1.0, 5.0], [3.0, 5.0]])
        normalizer = Normalizer()
        scaled = normalizer.fit_transform(matrix)
        assert scaled.tolist() == [[0.0, 0.0], [1.0, 0.0]]
        np.testing.assert_allclose(normalizer.inverse_transform(np.array([[0.5, 0.0]])), [[2.0, 5.0]])

    def test_supplied_engagement_score_wins(self, make_donor, now: datetime) -> None:
        donor = make_donor("a", engagement_score=42.0, opens=30)
        assert engagement_score(donor, now) == 42.0

    def test_engagement_score_is_capped(self, make_donor, now: datetime) -> None:
        donor = make_donor("a", opens=40, open_every_days=1)
        assert engagement_score(donor, now) == 100.0

    def test_engagement_score_without_activity(self, make_donor, now: datetime) -> None:
        assert engagement_score(make_donor("a"), now) == 0.0


class TestClusteringEngine:
    def test_clusters_cover_population(
        self, engine: ClusteringEngine, population: list[Donor]
    ) -> None:
        clusters = engine.cluster(population, config(random_seed=3))

        assert {c.id for c in clusters} == {"cluster_k_means_0", "cluster_k_means_1"}
        assert sum(c.size for c in clusters) == len(population)
        assert len({c.run_id for c in clusters}) == 1
        for cluster in clusters:
            assert set(cluster.centroid) == set(FEATURES)
            members = engine.get_members(cluster.id)
            assert len(members) == cluster.size
            prefixes = {donor_id[0] for donor_id in members}
            assert len(prefixes) == 1

    def test_insights_and_actions(
        self, engine: ClusteringEngine, population: list[Donor]
    ) -> None:
        clusters = engine.cluster(population, config(random_seed=3))
        for cluster in clusters:
            assert cluster.insights[0] == "This cluster represents 50.0% of your donor base"
            assert cluster.recommended_actions[0] == "Develop targeted messaging for this segment"
            assert cluster.characteristics.primary_channels == ("website",)

    def test_member_distance(self, engine: ClusteringEngine, population: list[Donor]) -> None:
        clusters = engine.cluster(population, config(random_seed=3))
        cluster = next(c for c in clusters if "s0" in engine.get_members(c.id))
        assert engine.member_distance(cluster.id, "s0") == pytest.approx(0.0)
        assert engine.member_distance(cluster.id, "l0") is None
        assert engine.max_distance(cluster.id) == pytest.approx(0.0)

    def test_rerun_replaces_clusters(
        self, engine: ClusteringEngine, population: list[Donor]
    ) -> None:
        first = engine.cluster(population, config(random_seed=1))
        second = engine.cluster(population, config(random_seed=2))

        assert len(engine.get_clusters()) == 2
        assert first[0].run_id != second[0].run_id
        assert engine.get_stats()["total_runs"] == 2
        assert engine.get_clusters(ClusteringAlgorithm.K_MEANS) == engine.get_clusters()

    def test_empty_population(self, engine: ClusteringEngine) -> None:
        with pytest.raises(ClusteringError, match="empty"):
            engine.cluster([], config())

    def test_fewer_donors_than_clusters(
        self, engine: ClusteringEngine, population: list[Donor]
    ) -> None:
        with pytest.raises(ClusteringError):
            engine.cluster(population[:2], config(k=3))

    def test_identical_donors(self, engine: ClusteringEngine, make_donor) -> None:
        donors = [make_donor(f"d{i}", [10]) for i in range(5)]
        with pytest.raises(ClusteringError, match="distinct"):
            engine.cluster(donors, config())

    @pytest.mark.parametrize(
        "algorithm", [ClusteringAlgorithm.HIERARCHICAL, ClusteringAlgorithm.DBSCAN]
    )
    def test_unsupported_algorithms(
        self, engine: ClusteringEngine, population: list[Donor], algorithm: ClusteringAlgorithm
    ) -> None:
        with pytest.raises(UnsupportedAlgorithmError):
            engine.cluster(population, config(algorithm=algorithm))

    def test_non_positive_cluster_count(
        self, engine: ClusteringEngine, population: list[Donor]
    ) -> None:
        with pytest.raises(ValidationError):
            engine.cluster(population, config(k=0))

    def test_duplicate_features_rejected_before_running(
        self, engine: ClusteringEngine, population: list[Donor]
    ) -> None:
        duplicated = ClusteringConfig(
            num_clusters=2, features=("age", "total_donated", "total_donated")
        )
        with pytest.raises(ValidationError, match="Duplicate"):
            engine.cluster(population, duplicated)
        assert engine.get_stats()["total_runs"] == 0

    @pytest.mark.parametrize("max_iterations", [1, 5])
    def test_never_returns_fewer_clusters_than_requested(
        self, engine: ClusteringEngine, make_donor, max_iterations: int
    ) -> None:
        donors = [make_donor(f"d{i}", [10.0 * (i + 1)] * (i + 1)) for i in range(6)]
        for seed in range(40):
            cfg = config(k=5, max_iterations=max_iterations, random_seed=seed)
            try:
                clusters = engine.cluster(donors, cfg)
            except ClusteringError:
                continue
            assert len(clusters) == 5
            assert all(c.size >= 1 for c in clusters)
            assert sum(c.size for c in clusters) == 6

    def test_failed_run_keeps_previous_clusters(
        self, engine: ClusteringEngine, population: list[Donor]
    ) -> None:
        engine.cluster(population, config(random_seed=3))
        with pytest.raises(ClusteringError):
            engine.cluster(population[:1], config())
        assert len(engine.get_clusters()) == 2


class TestDonorCluster:
    def test_centroid_must_match_features(self) -> None:
        with pytest.raises(ValueError, match="Centroid"):
            DonorCluster(
                id="c",
                name="C",
                algorithm=ClusteringAlgorithm.K_MEANS,
                run_id="r",
                features=("total_donated", "age"),
                centroid={"total_donated": 1.0},
                size=1,
            )
