"""
Donor repository interface.

The engine reads donors through ``snapshot()`` and never mutates them. A
snapshot must be internally consistent, so implementations hand back an
immutable batch.
"""

import threading
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

import pydantic
import structlog

from donorseg.core.errors import ValidationError
from donorseg.core.models import Donor

logger = structlog.get_logger()


@runtime_checkable
class DonorRepository(Protocol):
    """Supplies consistent, read-only donor snapshots."""

    def snapshot(self) -> Sequence[Donor]: ...


class InMemoryDonorRepository:
    """
    Donor repository backed by a dict.

    Writes replace whole donor records; each ``snapshot()`` returns a tuple
    taken under a lock, so readers never observe a half-applied batch.
    """

    def __init__(self, donors: Iterable[Donor | Mapping[str, Any]] = ()) -> None:
        self._donors: dict[str, Donor] = {}
        self._lock = threading.Lock()
        self._log = logger.bind(component="donor_repository")
        self.upsert_many(donors)

    @staticmethod
    def _coerce(donor: Donor | Mapping[str, Any]) -> Donor:
        if isinstance(donor, Donor):
            return donor
        try:
            return Donor.model_validate(donor)
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc)) from exc

    def upsert(self, donor: Donor | Mapping[str, Any]) -> Donor:
        record = self._coerce(donor)
        with self._lock:
            self._donors[record.id] = record
        return record

    def upsert_many(self, donors: Iterable[Donor | Mapping[str, Any]]) -> int:
        records = [self._coerce(d) for d in donors]
        with self._lock:
            for record in records:
                self._donors[record.id] = record
        if records:
            self._log.debug("donors_upserted", count=len(records))
        return len(records)

    def remove(self, donor_id: str) -> bool:
        with self._lock:
            return self._donors.pop(donor_id, None) is not None

    def get(self, donor_id: str) -> Donor | None:
        with self._lock:
            return self._donors.get(donor_id)

    def snapshot(self) -> tuple[Donor, ...]:
        with self._lock:
            return tuple(self._donors.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._donors)
