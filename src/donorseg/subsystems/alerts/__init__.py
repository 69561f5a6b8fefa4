"""Segment alerts."""

from donorseg.subsystems.alerts.alert_emitter import AlertEmitter, change_percent

__all__ = ["AlertEmitter", "change_percent"]
