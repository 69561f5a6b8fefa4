"""Background reconciliation scheduling."""

from donorseg.subsystems.scheduling.update_scheduler import (
    DrainResult,
    SchedulerStats,
    UpdateScheduler,
)

__all__ = ["DrainResult", "SchedulerStats", "UpdateScheduler"]
