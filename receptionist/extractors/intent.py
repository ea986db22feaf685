"""Keyword detectors for intent, patient type, group bookings and call control."""

from __future__ import annotations

import re
from enum import Enum

from .yes_no import normalize_answer


class HangupIntent(str, Enum):
    NONE = "none"
    COMMAND = "command"
    QUESTION = "question"


_INTENT_PATTERNS: list[tuple[str, re.Pattern]] = [
    ("cancel", re.compile(r"\bcancel")),
    ("change", re.compile(
        r"\b(reschedule|change (my|the) (appointment|booking|time)"
        r"|move (my|the) (appointment|booking)|different time for my)\b"
    )),
    ("book", re.compile(
        r"\b(book|booking|make an appointment|an appointment|get in|come in"
        r"|see (a|the|someone|somebody)|come and see|come see|available|availability)\b"
    )),
    ("faq", re.compile(
        r"\b(how much|price|prices|cost|fee|fees|where are you|address|parking"
        r"|open|opening hours|hours|bulk bill|medicare|insurance)\b"
    )),
]

_NEW_PATIENT = re.compile(
    r"\b(first time|new patient|never been|havent been|not been (there|here|before)"
    r"|first visit|first appointment|new here)\b"
)
_EXISTING_PATIENT = re.compile(
    r"\b(been (there|here|in|to see you)? ?before|existing patient|returning"
    r"|seen (you|there|him|her) before|im a patient|regular|been coming)\b"
)

_GROUP_WITH_RELATION = [
    re.compile(r"\b(?:myself|me) and my (\w+)\b"),
    re.compile(r"\bmy (\w+) and (?:me|myself|i)\b"),
    re.compile(r"\bfor (?:me|myself) (?:and|plus) my (\w+)\b"),
    re.compile(r"\bmy (\w+) as well\b"),
]
_GROUP_PHRASES = re.compile(
    r"\b(both of us|two of us|for both|us both|for myself and|for me and"
    r"|two appointments|back to back|appointments for (two|2))\b"
)

_FOLLOWUP_BOOKING = re.compile(
    r"\b(book for my|also book|another appointment|same time for|someone else"
    r"|second appointment|book another|one more appointment|book one for"
    r"|also like to book|book my (\w+) in)\b"
)
_SAME_TIME = re.compile(r"\bsame time\b")

_GOODBYE = re.compile(
    r"\b(bye|goodbye|good bye|thats all|thats everything"
    r"|nothing else|no thats it|thats it thanks|have a (good|nice|great) (day|one))\b"
)
# "see you" counts only as the closing words of an utterance
_GOODBYE_TAIL = re.compile(r"\bsee (you|ya)( later| soon)?$")

_HANGUP_COMMAND = re.compile(
    r"\b(hang up|end the call|end call|close the call|disconnect)\b"
)
_HANGUP_QUESTION = re.compile(r"\b(are you going to|will you|can you|should i)\b")

_MAP_REQUEST = re.compile(
    r"\b(map|directions|how do i get there|how to get there|where exactly)\b"
)


def detect_intent(text: str) -> str | None:
    normalized = normalize_answer(text)
    for intent, pattern in _INTENT_PATTERNS:
        if pattern.search(normalized):
            return intent
    return None


def detect_new_patient(text: str) -> bool | None:
    """True for a new patient, False for an existing one, None if unsaid."""
    normalized = normalize_answer(text)
    if _NEW_PATIENT.search(normalized):
        return True
    if _EXISTING_PATIENT.search(normalized):
        return False
    return None


def detect_group_booking(text: str) -> str | None:
    """Return the second party's relation if the caller wants a group booking."""
    normalized = normalize_answer(text)
    for pattern in _GROUP_WITH_RELATION:
        match = pattern.search(normalized)
        if match:
            return match.group(1)
    if _GROUP_PHRASES.search(normalized):
        return "family"
    return None


def detect_followup_booking(text: str) -> bool:
    return bool(_FOLLOWUP_BOOKING.search(normalize_answer(text)))


def wants_same_time(text: str) -> bool:
    return bool(_SAME_TIME.search(normalize_answer(text)))


def detect_goodbye(text: str) -> bool:
    normalized = normalize_answer(text)
    return bool(_GOODBYE.search(normalized) or _GOODBYE_TAIL.search(normalized))


def detect_map_request(text: str) -> bool:
    return bool(_MAP_REQUEST.search(normalize_answer(text)))


def detect_hangup_intent(text: str) -> HangupIntent:
    """Tell "hang up" commands apart from questions about hanging up."""
    normalized = normalize_answer(text)
    if not _HANGUP_COMMAND.search(normalized):
        return HangupIntent.NONE
    if _HANGUP_QUESTION.search(normalized):
        return HangupIntent.QUESTION
    return HangupIntent.COMMAND
