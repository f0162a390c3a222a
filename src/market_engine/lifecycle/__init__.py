"""Market lifecycle models."""

from .models import LifecycleEvent, ResolutionRecord

__all__ = ["LifecycleEvent", "ResolutionRecord"]
