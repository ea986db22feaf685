"""Time-preference extraction and the specificity merge rule.

Canonical form is ``"<day> <time-of-day-or-clock>"``, e.g. ``"tomorrow
4:00pm"``, ``"friday morning"``, ``"today afternoon"``, or just a day
reference (``"tomorrow"``, ``"monday"``, ``"next week"``).
"""

from __future__ import annotations

import logging
import re

log = logging.getLogger("receptionist.extractors.time")

WEEKDAYS = (
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
)

_CLOCK_RE = re.compile(
    r"\b(?:at|around|about)?\s*(\d{1,2})(?::(\d{2}))?\s*(a\.?\s?m\.?|p\.?\s?m\.?)(?![a-z])"
)
_TIME_OF_DAY_RE = re.compile(r"\b(morning|afternoon|evening|arvo|tonight)\b")
_WEEKDAY_RE = re.compile(r"\b(" + "|".join(WEEKDAYS) + r")\b")

# Canonical clock values inside an already-extracted preference
_CANONICAL_CLOCK_RE = re.compile(r"\d{1,2}:\d{2}(am|pm)")


def extract_day_reference(text: str) -> str | None:
    """Return the day the utterance talks about, if any."""
    lower = text.lower()
    if re.search(r"\btomorrow\b", lower):
        return "tomorrow"
    weekday = _WEEKDAY_RE.search(lower)
    if weekday:
        return weekday.group(1)
    if re.search(r"\bnext\s+week\b", lower):
        return "next week"
    if re.search(r"\b(today|tonight|this\s+(morning|afternoon|evening|arvo|week))\b", lower):
        return "today"
    return None


def _clock_time(lower: str) -> str | None:
    match = _CLOCK_RE.search(lower)
    if not match:
        return None
    hour = int(match.group(1))
    minute = match.group(2) or "00"
    if not 1 <= hour <= 12 or int(minute) > 59:
        return None
    meridiem = re.sub(r"[^ap]", "", match.group(3)) + "m"
    return f"{hour}:{minute}{meridiem}"


def extract_time_preference(text: str, previous_day: str | None = None) -> str | None:
    """Parse an utterance into a canonical time preference.

    Day detection runs first so a bare time ("at 4pm") inherits the day
    from the same utterance, then from ``previous_day``, then "today".
    """
    if not text:
        return None
    lower = text.lower().strip()
    day = extract_day_reference(lower)

    clock = _clock_time(lower)
    if clock:
        return f"{day or previous_day or 'today'} {clock}"

    part = _TIME_OF_DAY_RE.search(lower)
    if part:
        word = part.group(1)
        if word == "arvo":
            word = "afternoon"
        elif word == "tonight":
            word = "evening"
        return f"{day or previous_day or 'today'} {word}"

    if day is not None:
        return day
    return None


def specificity_score(time_preference: str | None) -> int:
    """Score how specific a canonical time preference is."""
    if not time_preference:
        return 0
    tp = time_preference.lower()
    if _CANONICAL_CLOCK_RE.search(tp):
        return 100
    if re.search(r"(morning|afternoon|evening|arvo)", tp):
        return 50
    if _WEEKDAY_RE.search(tp):
        return 30
    if "tomorrow" in tp:
        return 20
    if "today" in tp:
        return 15
    if re.search(r"(this|next)\s+week", tp):
        return 10
    return 0


def merge_time_preference(current: str | None, proposed: str | None) -> str | None:
    """Keep ``proposed`` only if it is strictly more specific than ``current``."""
    if not proposed:
        return current
    if not current:
        return proposed
    if specificity_score(proposed) > specificity_score(current):
        return proposed
    if proposed != current:
        log.debug("Discarded less specific time preference %r (keeping %r)", proposed, current)
    return current
