"""Person-name extraction and the name validity filter.

No name becomes a bookable party, or the patient name on an appointment,
unless it passes ``is_valid_person_name``. That applies to names proposed
by the inference service as much as to names extracted here.
"""

from __future__ import annotations

import logging
import re

log = logging.getLogger("receptionist.extractors.names")

PRONOUNS = frozenset({
    "myself", "yourself", "himself", "herself", "itself", "ourselves", "themselves",
    "me", "you", "him", "her", "us", "them", "i", "we", "they",
    "my", "your", "his", "its", "our", "their",
})

RELATION_WORDS = frozenset({
    "son", "daughter", "wife", "husband", "partner", "child", "kid", "kids",
    "children", "baby", "mother", "father", "mom", "dad", "mum", "brother",
    "sister", "friend", "boyfriend", "girlfriend", "spouse", "fiance", "fiancee",
    "family", "relative",
})

NON_NAME_WORDS = frozenset({
    "for", "and", "the", "a", "an", "this", "that", "here", "there",
    "when", "what", "where", "which", "who", "whom", "whose",
    "today", "tomorrow", "both", "all", "some", "any", "each",
    "appointment", "booking", "please", "thanks", "thank", "can", "make",
    "yes", "yeah", "yep", "no", "nope", "hi", "hello", "hey", "ok", "okay",
    "is", "are", "am", "was", "be", "names", "name", "called", "just",
    "morning", "afternoon", "evening", "arvo", "week", "next", "at", "on",
    "with", "too", "also", "as", "well", "new", "patient", "patients",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "book", "booked", "like", "want", "need", "would", "could", "sure", "of",
    "great", "good", "fine", "calling", "looking", "wondering", "still", "not",
    "first", "time", "thats", "im", "ive", "id", "hes", "shes", "were", "theyre",
    "theres", "whats", "dont", "cant", "wont", "lets", "so", "um", "uh",
})

PLACEHOLDERS = frozenset({"primary", "secondary", "caller", "patient1", "patient2"})

_SPEECH_ARTIFACTS = (
    "message", "text", "sms", "link", "email", "please", "thanks", "thank you",
    "okay", "ok", "appointment", "booking", "book",
)

_CALLER_NAME_PATTERNS = [
    re.compile(r"\b(?:my name is|my names|name is|names)\s+(.+)$"),
    re.compile(r"\b(?:this is|it is|its)\s+(.+)$"),
]


def is_valid_person_name(name: str | None) -> bool:
    """Reject pronouns, relations, placeholders and other non-names."""
    if not name or not name.strip():
        return False
    lower = re.sub(r"\s+", " ", name.lower().strip())
    tokens = [_bare(token) for token in lower.split(" ")]

    if lower in PLACEHOLDERS:
        log.debug("Rejected placeholder name %r", name)
        return False
    if len(lower) < 2:
        return False
    if re.search(r"\d", lower):
        return False
    if lower.startswith(("my ", "your ", "his ", "her ", "the ", "for ")):
        return False
    if any(token in PRONOUNS for token in tokens):
        log.debug("Rejected pronoun reference %r", name)
        return False
    if lower in RELATION_WORDS or tokens[0] in RELATION_WORDS:
        return False
    if tokens[0] in NON_NAME_WORDS:
        return False
    if not all(re.fullmatch(r"[a-z][a-z'\-]*", token) for token in tokens):
        return False
    return True


def sanitize_name(name: str | None) -> str | None:
    """Strip trailing speech artefacts and punctuation, then title-case."""
    if not name:
        return None
    cleaned = re.sub(r"[.,!?;:]+$", "", name.strip()).strip()
    for artifact in _SPEECH_ARTIFACTS:
        cleaned = re.sub(rf"\s+{re.escape(artifact)}\s*$", "", cleaned, flags=re.IGNORECASE)
    cleaned = re.sub(r"[.,!?;:]+$", "", cleaned).strip()
    cleaned = re.sub(r"\s+", " ", cleaned)
    cleaned = " ".join(word[:1].upper() + word[1:] for word in cleaned.split(" "))
    return cleaned or None


def _bare(token: str) -> str:
    return token.lower().replace("'", "").replace("’", "")


def _is_name_word(token: str) -> bool:
    lower = _bare(token)
    return (
        bool(re.fullmatch(r"[a-z][a-z\-]+", lower))
        and lower not in PRONOUNS
        and lower not in RELATION_WORDS
        and lower not in NON_NAME_WORDS
        and lower not in PLACEHOLDERS
    )


def _leading_name(tokens: list[str]) -> str | None:
    words: list[str] = []
    for token in tokens:
        if not _is_name_word(token) or len(words) == 2:
            break
        words.append(token)
    return " ".join(words) or None


def _trailing_name(tokens: list[str]) -> str | None:
    words: list[str] = []
    for token in reversed(tokens):
        if not _is_name_word(token) or len(words) == 2:
            break
        words.insert(0, token)
    return " ".join(words) or None


def _tokens(text: str) -> list[str]:
    return re.sub(r"[^\w\s'\-]", " ", text).split()


def extract_party_names(text: str) -> list[tuple[str, str]] | None:
    """Find two names joined by "and" in one utterance.

    Handles "Michael Bishop and Scott Bishop", "Michael and Scott Bishop"
    and "Emma and Jack". Returns ``[(name, "caller"), (name, "family")]``
    or None when no valid pair is present.
    """
    if not text or len(text.strip()) < 5:
        return None
    parts = re.split(r"\s+(?:and|&)\s+", text.strip(), maxsplit=1, flags=re.IGNORECASE)
    if len(parts) != 2:
        return None

    first = _trailing_name(_tokens(parts[0]))
    second = _leading_name(_tokens(parts[1]))
    if not first or not second:
        return None
    if not is_valid_person_name(first) or not is_valid_person_name(second):
        log.debug("Rejected party names %r and %r", first, second)
        return None
    return [(sanitize_name(first), "caller"), (sanitize_name(second), "family")]


def extract_caller_name(text: str) -> str | None:
    """Pick up "my name is X" / "this is X" style self-introductions."""
    if not text:
        return None
    lowered = re.sub(r"[^\w\s\-]", " ", _bare(text))
    for pattern in _CALLER_NAME_PATTERNS:
        for match in pattern.finditer(lowered):
            candidate = _leading_name(match.group(1).split())
            if candidate and is_valid_person_name(candidate):
                return sanitize_name(candidate)
    return None


_ANSWER_NAME_RE = re.compile(
    r"^(?:(?:his|her|their|the) name is|(?:hes|shes|thats|its) called|hes|shes|thats|its)\s+(.+)$"
)


def extract_answered_name(text: str) -> str | None:
    """Name given as a bare answer to "what's their name?"."""
    if not text:
        return None
    introduced = extract_caller_name(text)
    if introduced:
        return introduced
    lowered = re.sub(r"[^\w\s\-]", " ", _bare(text)).strip()
    lowered = re.sub(r"^(?:oh|um|uh|yeah|yes|ok|okay|sure)\s+", "", lowered)
    match = _ANSWER_NAME_RE.match(lowered)
    tokens = (match.group(1) if match else lowered).split()
    if not tokens or len(tokens) > 3:
        return None
    candidate = _leading_name(tokens)
    if not candidate or len(candidate.split()) != min(len(tokens), 2):
        return None
    return sanitize_name(candidate) if is_valid_person_name(candidate) else None
