"""
donorseg

Dynamic audience segmentation for donor records.

Segments are defined by rules, clusters and behavioural patterns and are
kept in sync with a changing donor population by a background scheduler.

- SegmentationEngine → the in-process API
- SegmentRegistry → segment definitions and the pending-update queue
- MembershipStore → who belongs to which segment, and the diffs
"""

__version__ = "0.1.0"

from donorseg.config import EngineSettings
from donorseg.core.errors import (
    ClusteringError,
    SegmentationError,
    UnsupportedAlgorithmError,
    ValidationError,
)
from donorseg.core.models import (
    AudienceSegment,
    BehavioralPattern,
    ClusteringConfig,
    Donor,
    DonorCluster,
    SegmentAlert,
    SegmentDefinition,
    SegmentMembership,
    SegmentUpdate,
)
from donorseg.runtime.engine import SegmentationEngine
from donorseg.runtime.repository import DonorRepository, InMemoryDonorRepository

__all__ = [
    "__version__",
    "AudienceSegment",
    "BehavioralPattern",
    "ClusteringConfig",
    "ClusteringError",
    "Donor",
    "DonorCluster",
    "DonorRepository",
    "EngineSettings",
    "InMemoryDonorRepository",
    "SegmentAlert",
    "SegmentDefinition",
    "SegmentMembership",
    "SegmentUpdate",
    "SegmentationEngine",
    "SegmentationError",
    "UnsupportedAlgorithmError",
    "ValidationError",
]
