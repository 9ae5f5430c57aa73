"""Test helpers shipped with sermonsync."""

from .clock import ManualClock, ManualTimerHandle

__all__ = ["ManualClock", "ManualTimerHandle"]
