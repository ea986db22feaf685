"""In-memory scheduling provider for local runs without a calendar backend."""

from __future__ import annotations

import itertools
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .base import Appointment, SchedulingProvider, TimeWindow

log = logging.getLogger("receptionist.providers.memory")


class InMemorySchedulingProvider(SchedulingProvider):
    """Holds open start times per resource and books against them."""

    def __init__(
        self,
        open_times: dict[str, list[datetime]] | None = None,
        patients: dict[str, str] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.open_times: dict[str, list[datetime]] = {
            resource: sorted(times) for resource, times in (open_times or {}).items()
        }
        self.patients: dict[str, str] = dict(patients or {})
        self.appointments: dict[str, Appointment] = {}
        self._ids = itertools.count(1)

    async def list_slots(
        self, window: TimeWindow, appointment_type_id: str, resource_id: str,
    ) -> list[datetime]:
        return [
            t for t in self.open_times.get(resource_id, [])
            if window.start <= t < window.end
        ]

    async def create_appointment(
        self,
        resource_id: str,
        appointment_type_id: str,
        start: datetime,
        party_name: str,
        caller_id: str,
        notes: str = "",
    ) -> Appointment:
        appointment = Appointment(
            id=f"appt-{next(self._ids)}",
            start=start,
            resource_id=resource_id,
            patient_ref=self.patients.setdefault(caller_id, f"patient-{caller_id}"),
            party_name=party_name,
        )
        self.appointments[appointment.id] = appointment
        times = self.open_times.get(resource_id, [])
        if start in times:
            times.remove(start)
        log.info("Created %s for %s at %s", appointment.id, party_name, start)
        return appointment

    async def reschedule(self, appointment_id: str, new_start: datetime) -> Appointment:
        appointment = self.appointments[appointment_id]
        appointment.start = new_start
        return appointment

    async def cancel(self, appointment_id: str) -> bool:
        return self.appointments.pop(appointment_id, None) is not None

    async def find_patient(self, caller_id: str) -> Optional[str]:
        return self.patients.get(caller_id)

    async def find_upcoming(self, patient_ref: str) -> Optional[Appointment]:
        now = self._clock()
        upcoming = [
            a for a in self.appointments.values()
            if a.patient_ref == patient_ref and a.start >= now
        ]
        return min(upcoming, key=lambda a: a.start) if upcoming else None
