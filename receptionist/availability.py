"""Availability resolution: time preference in, ranked bookable slots out."""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from receptionist.errors import SchedulingCapabilityError
from receptionist.extractors.time_preference import WEEKDAYS
from receptionist.models import Practitioner, Slot, TenantContext
from receptionist.providers.base import SchedulingProvider, TimeWindow

log = logging.getLogger("receptionist.availability")

_CLOCK_RE = re.compile(r"(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?)")

# Time-of-day ranges as (start hour, end hour)
_DAY_PARTS = {
    "morning": (8, 12),
    "afternoon": (12, 17),
    "evening": (17, 20),
}
_BUSINESS_HOURS = (8, 18)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clock_label(dt: datetime) -> str:
    """Render a time as "4:00pm"."""
    hour = dt.hour % 12 or 12
    return f"{hour}:{dt.minute:02d}{'am' if dt.hour < 12 else 'pm'}"


def speakable_label(dt: datetime, now: datetime) -> str:
    """Render a slot start the way the receptionist says it out loud."""
    days_ahead = (dt.date() - now.date()).days
    clock = clock_label(dt)
    if days_ahead == 0:
        return f"today at {clock}"
    if days_ahead == 1:
        return f"tomorrow at {clock}"
    if 1 < days_ahead < 7:
        return f"{dt.strftime('%A')} at {clock}"
    return f"{dt.strftime('%A')} {dt.day} {dt.strftime('%B')} at {clock}"


class AvailabilityResolver:
    """Turns a canonical time preference into at most N ranked slots.

    Args:
        provider: Scheduling capability to query.
        max_slots: Slots offered for a single booking.
        concurrency: Max in-flight provider queries per resolution.
        lead_minutes: Slots must start at least this far in the future.
        clock: Returns the current (timezone-aware) time.
    """

    def __init__(
        self,
        provider: SchedulingProvider,
        max_slots: int = 3,
        concurrency: int = 3,
        lead_minutes: int = 15,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._provider = provider
        self._max_slots = max_slots
        self._concurrency = concurrency
        self._lead = timedelta(minutes=lead_minutes)
        self._clock = clock

    # ── Window resolution ───────────────────────────────────────

    def resolve_window(self, time_preference: str, tz_name: str) -> TimeWindow:
        tz = ZoneInfo(tz_name)
        now = self._clock().astimezone(tz)
        lower = time_preference.lower()

        base = now
        if "today" in lower:
            base = now
        elif "tomorrow" in lower:
            base = now + timedelta(days=1)
        elif "next week" in lower:
            base = now + timedelta(days=7)
        else:
            for index, day in enumerate(WEEKDAYS):
                if day in lower:
                    days_to_add = index - now.weekday()
                    if days_to_add <= 0:
                        days_to_add += 7
                    base = now + timedelta(days=days_to_add)
                    break

        def at(hour: int, minute: int = 0) -> datetime:
            return datetime(base.year, base.month, base.day, hour, minute, tzinfo=tz)

        target: Optional[datetime] = None
        clock = _CLOCK_RE.search(lower)
        if clock:
            hour = int(clock.group(1)) % 12
            if clock.group(3).startswith("p"):
                hour += 12
            target = at(hour, int(clock.group(2) or 0))
            start, end = target - timedelta(hours=1), target + timedelta(hours=2)
        else:
            hours = _BUSINESS_HOURS
            for part, part_hours in _DAY_PARTS.items():
                if part in lower:
                    hours = part_hours
                    break
            start, end = at(hours[0]), at(hours[1])

        if end <= now:
            start += timedelta(days=1)
            end += timedelta(days=1)
            if target is not None:
                target += timedelta(days=1)
        if start < now:
            start = now

        return TimeWindow(start=start, end=end, target=target)

    # ── Slot search ─────────────────────────────────────────────

    async def _query(
        self,
        semaphore: asyncio.Semaphore,
        window: TimeWindow,
        appointment_type_id: str,
        practitioner: Practitioner,
    ) -> tuple[Practitioner, list[datetime]]:
        async with semaphore:
            starts = await self._provider.list_slots(window, appointment_type_id, practitioner.id)
        return practitioner, starts

    async def _query_all(
        self,
        window: TimeWindow,
        appointment_type_id: str,
        practitioners: list[Practitioner],
    ) -> tuple[list[tuple[Practitioner, datetime]], int]:
        semaphore = asyncio.Semaphore(self._concurrency)
        results = await asyncio.gather(
            *(self._query(semaphore, window, appointment_type_id, p) for p in practitioners),
            return_exceptions=True,
        )
        found: list[tuple[Practitioner, datetime]] = []
        failures = 0
        for practitioner, result in zip(practitioners, results):
            if isinstance(result, BaseException):
                failures += 1
                log.warning("Availability query failed for %s: %s", practitioner.id, result)
                continue
            found.extend((practitioner, start) for start in result[1])
        return found, failures

    async def find_slots(
        self,
        time_preference: str,
        tenant: TenantContext,
        is_new_patient: Optional[bool] = None,
        party_count: int = 1,
    ) -> list[Slot]:
        """Return ranked slots for the preference, or [] if nothing is free.

        Raises:
            SchedulingCapabilityError: every provider query failed.
        """
        window = self.resolve_window(time_preference, tenant.timezone)
        appointment_type_id = tenant.appointment_type_for(is_new_patient)
        practitioners = list(tenant.practitioners)
        if not practitioners:
            default = tenant.default_practitioner()
            practitioners = [default] if default else []
        if not practitioners:
            raise SchedulingCapabilityError("Tenant has no bookable practitioners")

        found, failures = await self._query_all(window, appointment_type_id, practitioners)

        fallback = tenant.default_practitioner()
        if not found and len(practitioners) > 1 and fallback is not None:
            log.info("No multi-practitioner availability, retrying default %s", fallback.id)
            found, fallback_failures = await self._query_all(window, appointment_type_id, [fallback])
            if fallback_failures:
                failures = len(practitioners)

        if not found and failures >= len(practitioners):
            raise SchedulingCapabilityError(
                f"All {failures} availability queries failed for {time_preference!r}"
            )

        tz = ZoneInfo(tenant.timezone)
        now = self._clock().astimezone(tz)
        earliest = now + self._lead

        by_start: dict[datetime, tuple[Practitioner, datetime]] = {}
        for practitioner, start in found:
            local = start.astimezone(tz)
            if local <= earliest or not window.start <= local < window.end:
                continue
            by_start.setdefault(local, (practitioner, local))

        candidates = list(by_start.values())
        if window.target is not None:
            candidates.sort(key=lambda c: (abs((c[1] - window.target).total_seconds()), c[1]))
        else:
            candidates.sort(key=lambda c: c[1])

        limit = self._max_slots if party_count < 2 else max(self._max_slots, party_count * 2)
        slots = [
            Slot(
                start=start,
                short_label=clock_label(start),
                speakable=speakable_label(start, now),
                resource_id=practitioner.id,
                practitioner_name=practitioner.name,
                appointment_type_id=appointment_type_id,
            )
            for practitioner, start in candidates[:limit]
        ]
        log.info(
            "Resolved %r to %d slot(s): %s",
            time_preference, len(slots), ", ".join(s.short_label for s in slots),
        )
        return slots
