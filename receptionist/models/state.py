"""Compact per-call state and the field ownership table.

``CompactState`` is the single source of truth for what the engine knows
about a call. Every field has exactly one owner:

  backend   : written only by the engine (booking executor, turn
               processor, escalation detector)
  extractor : written only by the deterministic extractors
  inference : may be proposed by the inference service (extractors may
               also fill these in)

The guard layer uses ``INFERENCE_FIELDS`` to strip everything else from
an inference delta before it is merged.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class CallStage(str, Enum):
    COLLECTING_INTENT = "collecting_intent"
    COLLECTING_TIME = "collecting_time"
    OFFERING_SLOTS = "offering_slots"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    BOOKING_IN_PROGRESS = "booking_in_progress"
    TERMINAL = "terminal"
    ESCALATED = "escalated"
    COLLECTING_NAMES = "collecting_names"
    PROPOSING_GROUP = "proposing_group"
    ENDED = "ended"


class CompactState(BaseModel):
    """Flat record of typed optional fields for one call."""

    # Proposed by inference or extractors
    intent: Optional[str] = None  # book | change | cancel | faq
    time_preference: Optional[str] = None
    is_new_patient: Optional[bool] = None
    name: Optional[str] = None
    symptom: Optional[str] = None
    selected_slot_index: Optional[int] = None
    booking_confirmed: Optional[bool] = None
    request_slots: Optional[bool] = None
    map_link_requested: Optional[bool] = None
    reschedule_confirmed: Optional[bool] = None
    cancel_confirmed: Optional[bool] = None
    faq_topics: list[str] = Field(default_factory=list)
    group_booking: Optional[bool] = None

    # Extractor-owned
    previous_day: Optional[str] = None
    booking_for: Optional[str] = None  # self | other

    # Backend-owned
    turn_count: int = 0
    call_stage: CallStage = CallStage.COLLECTING_INTENT
    booking_lock_until: Optional[float] = None
    terminal_lock: bool = False
    appointment_created: bool = False
    group_booking_complete: int = 0
    sms_confirm_sent: bool = False
    sms_intake_sent: bool = False
    sms_map_sent: bool = False
    slots_offered_turn: Optional[int] = None
    booking_failed: bool = False
    booking_error: Optional[str] = None
    last_appointment_id: Optional[str] = None
    booked_slot_label: Optional[str] = None
    reschedule_done: bool = False
    cancel_done: bool = False
    escalated: bool = False
    handoff_reason: Optional[str] = None
    terminal_followups: int = 0
    followup_bookings: int = 0
    awaiting_hangup_confirmation: bool = False
    confusion_streak: int = 0
    appointment_lookup_done: bool = False


INFERENCE_FIELDS = frozenset({
    "intent",
    "time_preference",
    "is_new_patient",
    "name",
    "symptom",
    "selected_slot_index",
    "booking_confirmed",
    "request_slots",
    "map_link_requested",
    "reschedule_confirmed",
    "cancel_confirmed",
    "faq_topics",
    "group_booking",
})

EXTRACTOR_FIELDS = frozenset({"previous_day", "booking_for"})

BACKEND_FIELDS = frozenset(
    set(CompactState.model_fields) - INFERENCE_FIELDS - EXTRACTOR_FIELDS
)

# Inference may also propose party names for a group booking. They never
# land in CompactState directly; the group guard validates them first.
GROUP_PARTIES_KEY = "group_parties"

FIELD_OWNERSHIP: dict[str, str] = {
    **{name: "inference" for name in INFERENCE_FIELDS},
    **{name: "extractor" for name in EXTRACTOR_FIELDS},
    **{name: "backend" for name in BACKEND_FIELDS},
}
