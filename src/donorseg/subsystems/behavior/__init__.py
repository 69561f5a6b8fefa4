"""Behavioral pattern analysis."""

from donorseg.subsystems.behavior.behavioral_analyzer import (
    BehavioralAnalyzer,
    default_library,
    primary_signal,
)

__all__ = ["BehavioralAnalyzer", "default_library", "primary_signal"]
