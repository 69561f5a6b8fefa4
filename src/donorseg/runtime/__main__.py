"""
Entry point for running the segmentation engine.

Usage:
    python -m donorseg.runtime

Starts an engine over a small demonstration donor population, creates a few
segments, clusters the donors and keeps the background scheduler running
until interrupted.
"""

import asyncio
import signal
import sys
from datetime import timedelta
from typing import NoReturn

import structlog

from donorseg.config import EngineSettings
from donorseg.core.models import Channel, Donation, Donor, Interaction, InteractionKind, utc_now
from donorseg.logging_config import setup_logging
from donorseg.runtime.engine import SegmentationEngine
from donorseg.runtime.repository import InMemoryDonorRepository

logger = structlog.get_logger()


def demo_donors() -> list[Donor]:
    """A handful of donors spanning small, regular and major givers."""
    now = utc_now()

    def gifts(amounts: list[float], every_days: int, source: Channel) -> tuple[Donation, ...]:
        return tuple(
            Donation(amount=a, date=now - timedelta(days=every_days * (i + 1)), source=source)
            for i, a in enumerate(amounts)
        )

    def opens(count: int) -> tuple[Interaction, ...]:
        return tuple(
            Interaction(date=now - timedelta(days=3 * (i + 1)), kind=InteractionKind.OPEN)
            for i in range(count)
        )

    return [
        Donor(id="d-1", first_name="Ada", donations=gifts([25, 30, 20], 40, Channel.EMAIL)),
        Donor(id="d-2", first_name="Sam", donations=gifts([50] * 12, 30, Channel.WEBSITE),
              interactions=opens(8)),
        Donor(id="d-3", first_name="Ola", donations=gifts([1500, 2000], 120, Channel.EVENT),
              age=61),
        Donor(id="d-4", first_name="Kit", donations=gifts([10], 400, Channel.DIRECT_MAIL)),
        Donor(id="d-5", first_name="Rui", donations=gifts([800, 1200, 900], 60, Channel.PHONE),
              interactions=opens(3)),
        Donor(id="d-6", first_name="Lee"),
    ]


async def seed(engine: SegmentationEngine) -> None:
    await engine.create_segment(
        {
            "name": "Major Donors",
            "include_criteria": {
                "rules": [{"field": "total_donated", "operator": "greater_than", "value": 1000}]
            },
        }
    )
    await engine.create_segment(
        {
            "name": "Lapsed",
            "include_criteria": {
                "rules": [
                    {"field": "days_since_last_donation", "operator": "greater_than", "value": 365},
                ]
            },
        }
    )
    await engine.perform_clustering(
        {
            "num_clusters": 2,
            "features": ["total_donated", "donation_count"],
            "random_seed": 7,
        }
    )
    await engine.process_pending()


async def run_engine(settings: EngineSettings) -> None:
    """Run the engine until a shutdown signal arrives."""
    logger.info("donorseg_initializing")

    engine = SegmentationEngine(InMemoryDonorRepository(demo_donors()), settings)

    # Set up signal handlers for graceful shutdown
    shutdown_event = asyncio.Event()

    def handle_signal(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        async with engine.run_context():
            await seed(engine)
            for segment in engine.get_segments():
                logger.info(
                    "segment_ready",
                    name=segment.name,
                    members=engine.get_segment_members(segment.id),
                )
            logger.info("engine_health", **engine.get_health())

            await shutdown_event.wait()

    except Exception:
        logger.exception("donorseg_error")
        raise

    logger.info("donorseg_stopped")


def main() -> NoReturn:
    """Main entry point."""
    settings = EngineSettings.from_env()
    setup_logging(settings.log_level, settings.json_logs)
    try:
        asyncio.run(run_engine(settings))
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("interrupted")
        sys.exit(130)
    except Exception:
        logger.exception("fatal_error")
        sys.exit(1)


if __name__ == "__main__":
    main()
