"""Deterministic extractors: plain functions from utterance text to signals."""

from .intent import (
    HangupIntent,
    detect_followup_booking,
    detect_goodbye,
    detect_group_booking,
    detect_hangup_intent,
    detect_intent,
    detect_map_request,
    detect_new_patient,
    wants_same_time,
)
from .names import (
    extract_answered_name,
    extract_caller_name,
    extract_party_names,
    is_valid_person_name,
    sanitize_name,
)
from .time_preference import (
    extract_day_reference,
    extract_time_preference,
    merge_time_preference,
    specificity_score,
)
from .yes_no import YesNo, classify_yes_no, is_third_party, normalize_answer

__all__ = [
    "HangupIntent",
    "YesNo",
    "classify_yes_no",
    "detect_followup_booking",
    "detect_goodbye",
    "detect_group_booking",
    "detect_hangup_intent",
    "detect_intent",
    "detect_map_request",
    "detect_new_patient",
    "extract_answered_name",
    "extract_caller_name",
    "extract_day_reference",
    "extract_party_names",
    "extract_time_preference",
    "is_third_party",
    "is_valid_person_name",
    "merge_time_preference",
    "normalize_answer",
    "sanitize_name",
    "specificity_score",
    "wants_same_time",
]
