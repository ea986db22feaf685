"""Bookable slots and references to booked appointments."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class Slot(BaseModel):
    """A candidate bookable time with its resource and appointment type."""

    start: datetime
    short_label: str  # "4:00pm"
    speakable: str  # "tomorrow at 4:00pm"
    resource_id: str
    practitioner_name: str = ""
    appointment_type_id: str = ""

    @property
    def speakable_with_practitioner(self) -> str:
        if not self.practitioner_name:
            return self.speakable
        return f"{self.speakable} with {self.practitioner_name}"


class AppointmentRef(BaseModel):
    """Cached reference to an existing appointment for reschedule/cancel."""

    id: str
    start: datetime
    speakable: str
    resource_id: str = ""
    patient_ref: Optional[str] = None
