"""Resolution monitor package."""

from .models import MonitorAction, MonitorCycleReport
from .resolution_monitor import ResolutionMonitor, preliminary_outcome_for

__all__ = [
    "MonitorAction",
    "MonitorCycleReport",
    "ResolutionMonitor",
    "preliminary_outcome_for",
]
