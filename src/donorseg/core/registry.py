"""
Segment registry: CRUD for segment definitions and the dirty queue.

Every mutation of a segment definition enqueues the segment id. The dirty
queue is a set, so repeated enqueues collapse into one pending pass. Each
enqueue bumps a per-id generation so that a pass which started before a
later mutation does not clear the newer entry.
"""

from collections import deque
from collections.abc import Iterator, Mapping
from datetime import datetime
from typing import Any

import pydantic
import structlog

from donorseg.core.errors import ValidationError
from donorseg.core.models import (
    AudienceSegment,
    SegmentDefinition,
    SegmentStatus,
    utc_now,
)

logger = structlog.get_logger()

# Fields a caller may change through update(); tags and priority live in metadata
PATCHABLE_FIELDS = frozenset({
    "name",
    "description",
    "type",
    "status",
    "include_criteria",
    "exclude_criteria",
    "cluster_id",
    "behavioral_patterns",
    "config",
    "performance",
    "personalization",
})
PATCHABLE_METADATA = frozenset({"tags", "priority", "created_by"})


def _validation_message(exc: pydantic.ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "<root>"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


class SegmentRegistry:
    """
    Registry for segment definitions.

    Owns the deduplicated dirty set consumed by the update scheduler and a
    bounded size history per segment used by analytics.
    """

    def __init__(self, max_history: int = 100) -> None:
        self._segments: dict[str, AudienceSegment] = {}
        self._dirty: dict[str, int] = {}  # segment_id -> generation when marked
        self._generation: dict[str, int] = {}
        self._size_history: dict[str, deque[tuple[datetime, int]]] = {}
        self._max_history = max_history
        self._log = logger.bind(component="segment_registry")

    # --- CRUD ---

    def create(self, definition: SegmentDefinition | Mapping[str, Any]) -> AudienceSegment:
        """
        Create a segment from a definition.

        Raises:
            ValidationError: If the definition is malformed.
        """
        if not isinstance(definition, SegmentDefinition):
            try:
                definition = SegmentDefinition.model_validate(definition)
            except pydantic.ValidationError as exc:
                raise ValidationError(_validation_message(exc)) from exc

        segment = AudienceSegment.from_definition(definition)
        self._segments[segment.id] = segment
        self._size_history[segment.id] = deque(maxlen=self._max_history)
        self.mark_dirty(segment.id)

        self._log.info(
            "segment_created",
            segment_id=segment.id,
            name=segment.name,
            type=segment.type.value,
        )
        return segment

    def update(self, segment_id: str, patch: Mapping[str, Any]) -> AudienceSegment | None:
        """
        Apply a partial update to a segment definition.

        Returns the updated segment, or None if the segment does not exist.

        Raises:
            ValidationError: If the patch names unknown or read-only fields,
                or produces an invalid segment.
        """
        current = self._segments.get(segment_id)
        if current is None:
            return None

        unknown = set(patch) - PATCHABLE_FIELDS - PATCHABLE_METADATA
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        data = current.model_dump()
        for key, value in patch.items():
            if key in PATCHABLE_METADATA:
                data["metadata"][key] = value
            else:
                data[key] = value
        data["updated_at"] = utc_now()

        try:
            updated = AudienceSegment.model_validate(data)
        except pydantic.ValidationError as exc:
            raise ValidationError(_validation_message(exc)) from exc

        self._segments[segment_id] = updated
        self.mark_dirty(segment_id)

        self._log.info("segment_updated", segment_id=segment_id, fields=sorted(patch))
        return updated

    def delete(self, segment_id: str) -> bool:
        """Hard delete a segment and any pending dirty entry."""
        if self._segments.pop(segment_id, None) is None:
            return False

        self._dirty.pop(segment_id, None)
        self._generation.pop(segment_id, None)
        self._size_history.pop(segment_id, None)

        self._log.info("segment_deleted", segment_id=segment_id)
        return True

    def get(self, segment_id: str) -> AudienceSegment | None:
        return self._segments.get(segment_id)

    def list_segments(self, status: SegmentStatus | None = None) -> list[AudienceSegment]:
        if status is None:
            return list(self._segments.values())
        return [s for s in self._segments.values() if s.status == status]

    def list_auto_updating(self) -> list[AudienceSegment]:
        return [s for s in self._segments.values() if s.is_auto_updating]

    # --- Reconciliation bookkeeping ---

    def record_reconciliation(
        self,
        segment_id: str,
        size: int,
        at: datetime | None = None,
    ) -> AudienceSegment | None:
        """
        Stamp the live membership count and reconciliation time.

        This is bookkeeping, not a definition change, so it does not mark
        the segment dirty.
        """
        current = self._segments.get(segment_id)
        if current is None:
            return None

        at = at or utc_now()
        metadata = current.metadata.model_copy(update={"size": size, "last_updated": at})
        updated = current.model_copy(update={"metadata": metadata})
        self._segments[segment_id] = updated
        self._size_history.setdefault(segment_id, deque(maxlen=self._max_history)).append(
            (at, size)
        )
        return updated

    def get_size_history(self, segment_id: str) -> list[tuple[datetime, int]]:
        return list(self._size_history.get(segment_id, ()))

    # --- Dirty queue ---

    def mark_dirty(self, segment_id: str) -> bool:
        """Enqueue a segment for reconciliation. Returns False if it does not exist."""
        if segment_id not in self._segments:
            return False
        generation = self._generation.get(segment_id, 0) + 1
        self._generation[segment_id] = generation
        self._dirty[segment_id] = generation
        return True

    def mark_all_auto_updating_dirty(self) -> int:
        count = 0
        for segment in self.list_auto_updating():
            if self.mark_dirty(segment.id):
                count += 1
        return count

    def dirty_snapshot(self) -> dict[str, int]:
        """Pending segment ids with the generation at which each was marked."""
        return dict(self._dirty)

    def clear_dirty(self, segment_id: str, generation: int | None = None) -> bool:
        """
        Remove a segment from the dirty set.

        When a generation is given, the entry is only removed if it was not
        re-marked since that generation was observed.
        """
        current = self._dirty.get(segment_id)
        if current is None:
            return False
        if generation is not None and current != generation:
            return False
        del self._dirty[segment_id]
        return True

    def is_dirty(self, segment_id: str) -> bool:
        return segment_id in self._dirty

    # --- Persistence hooks ---

    def restore(self, segments: list[AudienceSegment]) -> None:
        """Replace all segments, e.g. when rehydrating exported state."""
        self._segments = {s.id: s for s in segments}
        self._dirty.clear()
        self._generation.clear()
        self._size_history = {s.id: deque(maxlen=self._max_history) for s in segments}
        for segment in segments:
            self.mark_dirty(segment.id)
        self._log.info("segments_restored", count=len(segments))

    def clear(self) -> int:
        count = len(self._segments)
        self._segments.clear()
        self._dirty.clear()
        self._generation.clear()
        self._size_history.clear()
        return count

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self) -> Iterator[AudienceSegment]:
        return iter(list(self._segments.values()))

    def __contains__(self, segment_id: str) -> bool:
        return segment_id in self._segments
