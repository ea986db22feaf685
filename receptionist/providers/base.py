"""Abstract base class for scheduling providers.

Defines the capability the engine books against. Any scheduling backend
(Google Calendar, a practice-management system, an in-memory test
double) implements this ABC.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class TimeWindow:
    """A search window for availability."""

    start: datetime
    end: datetime
    target: Optional[datetime] = None  # requested clock time, if any


@dataclass
class Appointment:
    """An appointment as reported back by the provider."""

    id: str
    start: datetime
    resource_id: str
    patient_ref: Optional[str] = None
    party_name: str = ""


class SchedulingProvider(ABC):
    """Abstract scheduling backend.

    Every method is an I/O boundary. Implementations raise on transport or
    backend failure; the engine decides how failures surface to the caller.
    """

    @abstractmethod
    async def list_slots(
        self,
        window: TimeWindow,
        appointment_type_id: str,
        resource_id: str,
    ) -> list[datetime]:
        """Return free appointment start times for one resource.

        Args:
            window: Search window (timezone-aware).
            appointment_type_id: Appointment type the slot must fit.
            resource_id: Practitioner / calendar to query.

        Returns:
            Start times inside ``window``, in any order.
        """

    @abstractmethod
    async def create_appointment(
        self,
        resource_id: str,
        appointment_type_id: str,
        start: datetime,
        party_name: str,
        caller_id: str,
        notes: str = "",
    ) -> Appointment:
        """Create an appointment.

        Returns:
            The created Appointment. A missing or empty ``id`` is treated
            as a failed booking by the caller.
        """

    @abstractmethod
    async def reschedule(self, appointment_id: str, new_start: datetime) -> Appointment:
        """Move an existing appointment to ``new_start``."""

    @abstractmethod
    async def cancel(self, appointment_id: str) -> bool:
        """Cancel an appointment. Returns True if it was cancelled."""

    @abstractmethod
    async def find_patient(self, caller_id: str) -> Optional[str]:
        """Look up an existing patient reference for a caller phone number."""

    @abstractmethod
    async def find_upcoming(self, patient_ref: str) -> Optional[Appointment]:
        """Return the patient's next upcoming appointment, if any."""
