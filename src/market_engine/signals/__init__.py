"""External confidence-signal providers."""

from .base import ExternalSignalProvider, StaticSignalProvider
from .http import HttpSignalProvider
from .models import ExternalSignal

__all__ = [
    "ExternalSignal",
    "ExternalSignalProvider",
    "HttpSignalProvider",
    "StaticSignalProvider",
]
