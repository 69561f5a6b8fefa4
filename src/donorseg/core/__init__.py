"""Core records, errors and infrastructure for the segmentation engine."""

from donorseg.core.component import Component, ComponentState
from donorseg.core.errors import (
    ClusteringError,
    EvaluationError,
    ReconciliationRaceError,
    SchedulerTaskError,
    SegmentationError,
    UnsupportedAlgorithmError,
    ValidationError,
)
from donorseg.core.registry import SegmentRegistry
from donorseg.core.signals import Message, MessagePriority, MessageType

__all__ = [
    "ClusteringError",
    "Component",
    "ComponentState",
    "EvaluationError",
    "Message",
    "MessagePriority",
    "MessageType",
    "ReconciliationRaceError",
    "SchedulerTaskError",
    "SegmentRegistry",
    "SegmentationError",
    "UnsupportedAlgorithmError",
    "ValidationError",
]
