"""Affirmative / negative classification of short caller answers."""

from __future__ import annotations

import re
from enum import Enum


class YesNo(str, Enum):
    YES = "yes"
    NO = "no"
    UNCLEAR = "unclear"


_RELATIONS = (
    "wife|husband|partner|son|daughter|child|kid|kids|children|baby|mother|father"
    "|mom|mum|dad|brother|sister|friend|boyfriend|girlfriend|spouse|grandmother"
    "|grandfather|nan|nana|grandma|grandpa|aunt|uncle|niece|nephew"
)

# Phrases meaning "this is for somebody else"
_THIRD_PARTY = [
    re.compile(r"\bnot me\b"),
    re.compile(r"\bnot for me\b"),
    re.compile(r"\bsome(one|body) else\b"),
    re.compile(r"\bon behalf of\b"),
    re.compile(r"\bfor my (" + _RELATIONS + r")\b"),
    re.compile(r"\bcalling for\b"),
]

_NEGATIVE_PHRASES = _THIRD_PARTY + [
    re.compile(r"\bim not\b"),
    re.compile(r"\bdont think so\b"),
    re.compile(r"\bnot really\b"),
]

_NEGATIVE_TOKENS = {"no", "nope", "nah", "negative", "wrong", "incorrect", "not"}

# Negative words used as a yes: "no worries", "not a problem"
_AFFIRMATIVE_IDIOMS = re.compile(
    r"\b(no worries|no problem|not a problem|no dramas|no trouble|why not)\b"
)

_AFFIRMATIVE = re.compile(
    r"\b(yes|yeah|yep|yup|yea|correct|thats me|its me|i am|im|sure|absolutely"
    r"|ok|okay|thats right|sounds good|that works|go ahead|please do|perfect"
    r"|definitely|lets do (it|that))\b"
)


def normalize_answer(text: str) -> str:
    """Lower-case, drop apostrophes entirely, and collapse punctuation."""
    lowered = text.lower().replace("'", "").replace("’", "")
    lowered = re.sub(r"[^a-z0-9\s]", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def is_third_party(text: str) -> bool:
    """True when the caller says the booking is for someone else."""
    normalized = normalize_answer(text)
    return any(p.search(normalized) for p in _THIRD_PARTY)


def classify_yes_no(text: str) -> YesNo:
    """Classify an answer; negative signals always win over affirmative.

    Affirmative idioms are removed before the negative checks, so
    "yep, no worries" is a yes while "no worries, but not that one" is a no.
    """
    if not text:
        return YesNo.UNCLEAR
    normalized = normalize_answer(text)
    idiom = bool(_AFFIRMATIVE_IDIOMS.search(normalized))
    if idiom:
        normalized = _AFFIRMATIVE_IDIOMS.sub(" ", normalized)

    if any(p.search(normalized) for p in _NEGATIVE_PHRASES):
        return YesNo.NO
    if _NEGATIVE_TOKENS & set(normalized.split()):
        return YesNo.NO
    if idiom or _AFFIRMATIVE.search(normalized):
        return YesNo.YES
    return YesNo.UNCLEAR
