"""Per-call conversation context: the document the context store persists."""

from __future__ import annotations

import time
from typing import Literal, Optional

from pydantic import BaseModel, Field

from .slot import AppointmentRef, Slot
from .state import CompactState
from .tenant import TenantContext

PRIMARY_PLACEHOLDER = "PRIMARY"
SECONDARY_PLACEHOLDER = "SECONDARY"


class Turn(BaseModel):
    role: Literal["caller", "assistant"]
    text: str


class Party(BaseModel):
    """One person in a group booking."""

    name: str
    relation: Optional[str] = None


class BookedParty(BaseModel):
    name: str
    appointment_id: str
    speakable: str


class GroupBookingState(BaseModel):
    parties: list[Party] = Field(default_factory=list)
    proposed: bool = False
    proposed_turn: Optional[int] = None
    assignments: list[int] = Field(default_factory=list)  # slot index per party
    booked: list[BookedParty] = Field(default_factory=list)

    @property
    def completed_count(self) -> int:
        return len(self.booked)

    def is_booked(self, name: str) -> bool:
        return any(b.name == name for b in self.booked)

    def clear_proposal(self) -> None:
        self.proposed = False
        self.proposed_turn = None
        self.assignments = []


class ConversationContext(BaseModel):
    """Everything the engine knows about one call.

    Created on the first turn, mutated on every turn, and logically
    immutable once the call ends.
    """

    call_id: str
    caller_id: str
    tenant_info: TenantContext
    history: list[Turn] = Field(default_factory=list)
    current_state: CompactState = Field(default_factory=CompactState)
    available_slots: list[Slot] = Field(default_factory=list)
    upcoming_appointment: Optional[AppointmentRef] = None
    group_booking_state: GroupBookingState = Field(default_factory=GroupBookingState)
    created_at: float = Field(default_factory=time.time)

    def add_turn(self, role: str, text: str) -> None:
        self.history.append(Turn(role=role, text=text))

    def invalidate_slots(self) -> None:
        """Drop offered slots and any selection made against them."""
        self.available_slots = []
        state = self.current_state
        state.slots_offered_turn = None
        state.selected_slot_index = None
        state.booking_confirmed = None
        self.group_booking_state.clear_proposal()

    def selected_slot(self) -> Optional[Slot]:
        index = self.current_state.selected_slot_index
        if index is None or not 0 <= index < len(self.available_slots):
            return None
        return self.available_slots[index]

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ConversationContext":
        return cls.model_validate_json(raw)
