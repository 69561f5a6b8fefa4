"""
Topic definitions for the message bus.

Topics use a hierarchical naming convention:
  <category>.<entity>.<event_type>

Wildcards are supported:
  * - matches any single segment
  # - matches zero or more segments
"""

from dataclasses import dataclass
from typing import ClassVar


@dataclass(frozen=True)
class Topic:
    """A hierarchical message bus topic with wildcard matching."""

    path: str

    WILDCARD_SINGLE: ClassVar[str] = "*"
    WILDCARD_MULTI: ClassVar[str] = "#"

    @property
    def segments(self) -> list[str]:
        return self.path.split(".")

    @property
    def category(self) -> str:
        return self.segments[0] if self.segments else ""

    def matches(self, pattern: str) -> bool:
        """Check if this topic matches a pattern."""
        return self._match_parts(self.segments, pattern.split("."))

    def _match_parts(self, topic: list[str], pattern: list[str]) -> bool:
        if not pattern:
            return not topic

        if pattern[0] == self.WILDCARD_MULTI:
            if len(pattern) == 1:
                return True
            return any(
                self._match_parts(topic[i:], pattern[1:]) for i in range(len(topic) + 1)
            )

        if not topic:
            return False

        if pattern[0] == self.WILDCARD_SINGLE or pattern[0] == topic[0]:
            return self._match_parts(topic[1:], pattern[1:])

        return False

    def __str__(self) -> str:
        return self.path


class SystemTopics:
    """Engine lifecycle topics."""

    STARTUP = Topic("system.startup")
    SHUTDOWN = Topic("system.shutdown")
    ALL = Topic("system.#")


class SegmentationTopics:
    """Segment, membership, cluster and alert topics."""

    SEGMENT_CREATED = Topic("segmentation.segment.created")
    SEGMENT_UPDATED = Topic("segmentation.segment.updated")
    SEGMENT_DELETED = Topic("segmentation.segment.deleted")

    MEMBERSHIP_UPDATED = Topic("segmentation.membership.updated")
    RECONCILIATION_FAILED = Topic("segmentation.membership.failed")

    CLUSTERING_COMPLETED = Topic("segmentation.cluster.completed")

    ALERT_RAISED = Topic("segmentation.alert.raised")
    ALERTS = Topic("segmentation.alert.#")

    ALL = Topic("segmentation.#")
