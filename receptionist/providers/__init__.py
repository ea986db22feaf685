"""Scheduling providers the engine can book against."""

from .base import Appointment, SchedulingProvider, TimeWindow
from .memory import InMemorySchedulingProvider

__all__ = [
    "Appointment",
    "InMemorySchedulingProvider",
    "SchedulingProvider",
    "TimeWindow",
]
