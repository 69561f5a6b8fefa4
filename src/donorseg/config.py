"""
Engine settings.

Settings are an immutable pydantic model passed explicitly to the engine.
``EngineSettings.from_env`` reads ``DONORSEG_<FIELD>`` environment variables,
e.g. ``DONORSEG_DRAIN_INTERVAL_SECONDS=30``.
"""

import os
from collections.abc import Mapping

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator

from donorseg.core.errors import ValidationError
from donorseg.core.models import BehaviorAnalysisConfig, TimeWindows

ENV_PREFIX = "DONORSEG_"


class EngineSettings(BaseModel):
    """Tunables for the segmentation engine."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Scheduling
    drain_interval_seconds: float = Field(default=60.0, gt=0)
    refresh_interval_seconds: float = Field(default=3600.0, gt=0)
    max_workers: int = Field(default=4, ge=1)

    # Alerts
    alert_medium_threshold: float = Field(default=0.2, ge=0)
    alert_high_threshold: float = Field(default=0.5, ge=0)
    alert_queue_size: int = Field(default=1000, ge=1)

    # Analytics
    size_history_length: int = Field(default=100, ge=1)
    stale_after_hours: float = Field(default=48.0, gt=0)

    # Behaviour analysis
    short_window_days: int = Field(default=30, gt=0)
    medium_window_days: int = Field(default=90, gt=0)
    long_window_days: int = Field(default=365, gt=0)
    minimum_activity: int = Field(default=2, ge=1)
    weight_decay: float = Field(default=0.95, gt=0, le=1)

    # Logging
    log_level: str = "INFO"
    json_logs: bool = False

    @model_validator(mode="after")
    def check_thresholds(self) -> "EngineSettings":
        if self.alert_high_threshold < self.alert_medium_threshold:
            raise ValueError("alert_high_threshold must not be below alert_medium_threshold")
        return self

    def behavior_config(self) -> BehaviorAnalysisConfig:
        return BehaviorAnalysisConfig(
            time_windows=TimeWindows(
                short=self.short_window_days,
                medium=self.medium_window_days,
                long=self.long_window_days,
            ),
            minimum_activity=self.minimum_activity,
            weight_decay=self.weight_decay,
        )

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "EngineSettings":
        """
        Build settings from ``DONORSEG_*`` variables, defaults for the rest.

        Raises:
            ValidationError: If a variable has an invalid value.
        """
        environ = os.environ if environ is None else environ
        values = {
            name: environ[f"{ENV_PREFIX}{name.upper()}"]
            for name in cls.model_fields
            if f"{ENV_PREFIX}{name.upper()}" in environ
        }
        try:
            return cls.model_validate(values)
        except pydantic.ValidationError as exc:
            raise ValidationError(str(exc)) from exc
