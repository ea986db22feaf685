"""Google Calendar scheduling provider.

Uses a Google Cloud service account to interact with the Calendar API v3.
Each practitioner is a calendar; the resource id is the calendar id.
Appointment ids handed back to the engine are ``"<calendar_id>/<event_id>"``
so reschedule and cancel know which calendar owns the event.

The caller's phone number is stored as a private extended property on
every event, which is how existing patients and their upcoming
appointments are found again.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Optional

from google.oauth2.service_account import Credentials
from googleapiclient.discovery import build

from .base import Appointment, SchedulingProvider, TimeWindow

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/calendar"]

_CALLER_PROPERTY = "receptionist_caller_id"
_TYPE_PROPERTY = "receptionist_appointment_type"


class GoogleCalendarProvider(SchedulingProvider):
    """SchedulingProvider backed by Google Calendar API v3."""

    def __init__(
        self,
        service_account_path: str | None = None,
        calendar_ids: list[str] | None = None,
        appointment_minutes: int = 30,
        patient_lookback_days: int = 365,
    ) -> None:
        sa_path = service_account_path or os.environ.get(
            "GOOGLE_SERVICE_ACCOUNT_JSON", ""
        )
        if not sa_path:
            raise ValueError(
                "Google service account JSON path must be provided via "
                "constructor argument or GOOGLE_SERVICE_ACCOUNT_JSON env var."
            )
        self._credentials = Credentials.from_service_account_file(
            sa_path, scopes=SCOPES
        )
        self._service = build(
            "calendar", "v3", credentials=self._credentials
        )
        self._calendar_ids = calendar_ids or ["primary"]
        self._duration = timedelta(minutes=appointment_minutes)
        self._lookback = timedelta(days=patient_lookback_days)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _run_in_executor(self, func, *args, **kwargs) -> Any:
        """Run a synchronous Google API call in the default thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, partial(func, *args, **kwargs)
        )

    @staticmethod
    def _to_rfc3339(dt: datetime) -> str:
        """Convert a datetime to an RFC 3339 string with timezone."""
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.isoformat()

    @staticmethod
    def _split_id(appointment_id: str) -> tuple[str, str]:
        calendar_id, _, event_id = appointment_id.rpartition("/")
        if not calendar_id or not event_id:
            raise ValueError(f"Not a calendar appointment id: {appointment_id!r}")
        return calendar_id, event_id

    def _to_appointment(self, calendar_id: str, event: dict) -> Appointment:
        private = event.get("extendedProperties", {}).get("private", {})
        return Appointment(
            id=f"{calendar_id}/{event['id']}",
            start=datetime.fromisoformat(event["start"]["dateTime"]),
            resource_id=calendar_id,
            patient_ref=private.get(_CALLER_PROPERTY),
            party_name=event.get("summary", ""),
        )

    # ------------------------------------------------------------------
    # SchedulingProvider interface
    # ------------------------------------------------------------------

    async def list_slots(
        self,
        window: TimeWindow,
        appointment_type_id: str,
        resource_id: str,
    ) -> list[datetime]:
        """Query the freebusy API and cut free gaps into appointment starts.

        The freebusy response returns *busy* intervals. We invert those
        within the window and step through each gap in appointment-length
        increments.
        """
        body = {
            "timeMin": self._to_rfc3339(window.start),
            "timeMax": self._to_rfc3339(window.end),
            "items": [{"id": resource_id}],
        }

        response = await self._run_in_executor(
            self._service.freebusy().query(body=body).execute
        )

        busy_intervals: list[dict] = (
            response.get("calendars", {})
            .get(resource_id, {})
            .get("busy", [])
        )
        busy = sorted(
            (datetime.fromisoformat(b["start"]), datetime.fromisoformat(b["end"]))
            for b in busy_intervals
        )

        starts: list[datetime] = []
        cursor = window.start if window.start.tzinfo else window.start.replace(tzinfo=timezone.utc)
        end = window.end if window.end.tzinfo else window.end.replace(tzinfo=timezone.utc)

        for b_start, b_end in busy + [(end, end)]:
            while cursor + self._duration <= min(b_start, end):
                starts.append(cursor)
                cursor += self._duration
            cursor = max(cursor, b_end)

        return starts

    async def create_appointment(
        self,
        resource_id: str,
        appointment_type_id: str,
        start: datetime,
        party_name: str,
        caller_id: str,
        notes: str = "",
    ) -> Appointment:
        """Insert an event for the appointment on the practitioner's calendar."""
        body: dict[str, Any] = {
            "summary": party_name,
            "start": {"dateTime": self._to_rfc3339(start)},
            "end": {"dateTime": self._to_rfc3339(start + self._duration)},
            "extendedProperties": {
                "private": {
                    _CALLER_PROPERTY: caller_id,
                    _TYPE_PROPERTY: appointment_type_id,
                }
            },
        }
        if notes:
            body["description"] = notes

        result = await self._run_in_executor(
            self._service.events()
            .insert(calendarId=resource_id, body=body, sendUpdates="none")
            .execute
        )

        event_id = result.get("id", "")
        logger.info("Created event %s on calendar %s", event_id, resource_id)

        return Appointment(
            id=f"{resource_id}/{event_id}" if event_id else "",
            start=start,
            resource_id=resource_id,
            patient_ref=caller_id,
            party_name=party_name,
        )

    async def reschedule(self, appointment_id: str, new_start: datetime) -> Appointment:
        calendar_id, event_id = self._split_id(appointment_id)
        body = {
            "start": {"dateTime": self._to_rfc3339(new_start)},
            "end": {"dateTime": self._to_rfc3339(new_start + self._duration)},
        }
        result = await self._run_in_executor(
            self._service.events()
            .patch(calendarId=calendar_id, eventId=event_id, body=body)
            .execute
        )
        logger.info("Moved event %s on calendar %s", event_id, calendar_id)
        return self._to_appointment(calendar_id, result)

    async def cancel(self, appointment_id: str) -> bool:
        """Delete an event from Google Calendar."""
        try:
            calendar_id, event_id = self._split_id(appointment_id)
            await self._run_in_executor(
                self._service.events()
                .delete(calendarId=calendar_id, eventId=event_id)
                .execute
            )
            logger.info("Cancelled event %s on calendar %s", event_id, calendar_id)
            return True
        except Exception:
            logger.exception("Failed to cancel appointment %s", appointment_id)
            return False

    async def _search(self, caller_id: str, time_min: datetime, limit: int) -> list[Appointment]:
        found: list[Appointment] = []
        for calendar_id in self._calendar_ids:
            response = await self._run_in_executor(
                self._service.events()
                .list(
                    calendarId=calendar_id,
                    timeMin=self._to_rfc3339(time_min),
                    privateExtendedProperty=f"{_CALLER_PROPERTY}={caller_id}",
                    singleEvents=True,
                    orderBy="startTime",
                    maxResults=limit,
                )
                .execute
            )
            for event in response.get("items", []):
                if "dateTime" in event.get("start", {}):
                    found.append(self._to_appointment(calendar_id, event))
        return sorted(found, key=lambda a: a.start)

    async def find_patient(self, caller_id: str) -> Optional[str]:
        since = datetime.now(timezone.utc) - self._lookback
        return caller_id if await self._search(caller_id, since, 1) else None

    async def find_upcoming(self, patient_ref: str) -> Optional[Appointment]:
        upcoming = await self._search(patient_ref, datetime.now(timezone.utc), 1)
        return upcoming[0] if upcoming else None
