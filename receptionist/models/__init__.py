"""Data models for the conversation engine."""

from .context import (
    PRIMARY_PLACEHOLDER,
    SECONDARY_PLACEHOLDER,
    BookedParty,
    ConversationContext,
    GroupBookingState,
    Party,
    Turn,
)
from .slot import AppointmentRef, Slot
from .state import (
    BACKEND_FIELDS,
    EXTRACTOR_FIELDS,
    FIELD_OWNERSHIP,
    GROUP_PARTIES_KEY,
    INFERENCE_FIELDS,
    CallStage,
    CompactState,
)
from .tenant import Practitioner, TenantContext

__all__ = [
    "AppointmentRef",
    "BACKEND_FIELDS",
    "BookedParty",
    "CallStage",
    "CompactState",
    "ConversationContext",
    "EXTRACTOR_FIELDS",
    "FIELD_OWNERSHIP",
    "GROUP_PARTIES_KEY",
    "GroupBookingState",
    "INFERENCE_FIELDS",
    "PRIMARY_PLACEHOLDER",
    "Party",
    "Practitioner",
    "SECONDARY_PLACEHOLDER",
    "Slot",
    "TenantContext",
    "Turn",
]
