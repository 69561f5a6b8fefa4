"""
Error taxonomy for the segmentation engine.

Validation and clustering errors surface synchronously to callers.
Evaluation and reconciliation-race errors are recovered inside the engine,
and scheduler task errors never leave the task that raised them.
"""


class SegmentationError(Exception):
    """Base class for all engine errors."""


class ValidationError(SegmentationError, ValueError):
    """Malformed segment definition, rule, feature or clustering request."""


class UnsupportedAlgorithmError(ValidationError):
    """Clustering algorithm is declared but has no implementation."""

    def __init__(self, algorithm: str) -> None:
        super().__init__(f"Clustering algorithm not yet specified: {algorithm}")
        self.algorithm = algorithm


class EvaluationError(SegmentationError):
    """A rule could not be evaluated against a donor field."""


class ClusteringError(SegmentationError):
    """Clustering cannot produce a meaningful partition of the population."""


class ReconciliationRaceError(SegmentationError):
    """Segment disappeared while its reconciliation pass was in flight."""

    def __init__(self, segment_id: str) -> None:
        super().__init__(f"Segment deleted during reconciliation: {segment_id}")
        self.segment_id = segment_id


class SchedulerTaskError(SegmentationError):
    """A single segment's scheduled reconciliation failed."""

    def __init__(self, segment_id: str, cause: BaseException) -> None:
        super().__init__(f"Reconciliation failed for segment {segment_id}: {cause}")
        self.segment_id = segment_id
        self.cause = cause
