"""Shared fixtures: a fixed clock and a donor factory."""

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from donorseg.core.models import Channel, Donation, Donor, Interaction, InteractionKind

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)

DonorFactory = Callable[..., Donor]


def _make_donor(
    donor_id: str,
    amounts: Sequence[float] = (),
    *,
    every_days: int = 30,
    source: Channel = Channel.WEBSITE,
    campaign_id: str | None = None,
    opens: int = 0,
    open_every_days: int = 3,
    interactions: Sequence[Interaction] = (),
    **fields: Any,
) -> Donor:
    """Donations are spaced ``every_days`` apart, most recent ``every_days`` ago."""
    donations = tuple(
        Donation(
            amount=amount,
            date=NOW - timedelta(days=every_days * (i + 1)),
            source=source,
            campaign_id=campaign_id,
        )
        for i, amount in enumerate(amounts)
    )
    activity = tuple(
        Interaction(
            date=NOW - timedelta(days=open_every_days * (i + 1)),
            kind=InteractionKind.OPEN,
        )
        for i in range(opens)
    )
    return Donor(
        id=donor_id,
        donations=donations,
        interactions=activity + tuple(interactions),
        **fields,
    )


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def make_donor() -> DonorFactory:
    return _make_donor
