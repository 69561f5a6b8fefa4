"""Feature extraction and donor clustering."""

from donorseg.subsystems.clustering.clustering_engine import ClusteringEngine, KMeansResult, kmeans
from donorseg.subsystems.clustering.features import FeatureExtractor, Normalizer, engagement_score

__all__ = [
    "ClusteringEngine",
    "FeatureExtractor",
    "KMeansResult",
    "Normalizer",
    "engagement_score",
    "kmeans",
]
