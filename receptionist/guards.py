"""Guard layer: invariant-enforcing passes around each inference call.

Every guard is a plain function over the proposed delta and the current
context. Guards never call out to the network and never mark a booking
terminal; they only remove, rewrite or re-prompt.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from receptionist.extractors.names import is_valid_person_name, sanitize_name
from receptionist.models import (
    FIELD_OWNERSHIP,
    GROUP_PARTIES_KEY,
    PRIMARY_PLACEHOLDER,
    SECONDARY_PLACEHOLDER,
    ConversationContext,
    GroupBookingState,
    Party,
)

log = logging.getLogger("receptionist.guards")

CLOSING_PROMPT = "Is there anything else I can help you with today?"

# Replies that would restart a finished booking
_BOOKING_PROMPTS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"would you like to (make|book|schedule|arrange) (an|another|a new) (appointment|booking)",
        r"shall i (book|schedule|make|lock)",
        r"(do you|would you) want (me )?to book",
        r"when would you like to come in",
        r"what (day|time)s? (works|suits|would suit|would work)( best| for you)?",
        r"let me (check|find|look for) (some )?(available )?(times|slots|availability)",
        r"i have (the following|these|a few) (times|slots)",
        r"which (time|slot|one) would you (like|prefer)",
    )
]

# Fields that would restart the booking flow once the call is terminal
_RESTART_FIELDS = frozenset({
    "time_preference",
    "selected_slot_index",
    "booking_confirmed",
    "request_slots",
    "reschedule_confirmed",
    "cancel_confirmed",
    "group_booking",
    GROUP_PARTIES_KEY,
})


# ── Backend-field protection ─────────────────────────────────────

def strip_protected_fields(delta: dict[str, Any]) -> dict[str, Any]:
    """Keep only fields inference owns, plus proposed group party names.

    Keys missing from the ownership table are dropped along with extractor
    and backend fields.
    """
    kept: dict[str, Any] = {}
    dropped: list[str] = []
    for key, value in delta.items():
        if key == GROUP_PARTIES_KEY or FIELD_OWNERSHIP.get(key) == "inference":
            kept[key] = value
        else:
            dropped.append(f"{key} ({FIELD_OWNERSHIP.get(key, 'unknown')})")
    if dropped:
        log.warning("Discarded non-inference fields from delta: %s", ", ".join(sorted(dropped)))
    return kept


# ── Slot confirmation timing ─────────────────────────────────────

def enforce_slot_confirmation(delta: dict[str, Any], context: ConversationContext) -> bool:
    """Drop a slot selection unless the slot was offered on an earlier turn.

    Applies to ``selected_slot_index`` / ``booking_confirmed`` and the
    reschedule confirmation. Mutates ``delta`` (and resets the stored
    selection) and returns True when something was rejected.
    """
    state = context.current_state
    touches_selection = (
        "selected_slot_index" in delta
        or delta.get("booking_confirmed")
        or delta.get("reschedule_confirmed")
    )
    if not touches_selection:
        return False

    index = delta.get("selected_slot_index", state.selected_slot_index)
    offered_earlier = (
        state.slots_offered_turn is not None
        and state.slots_offered_turn < state.turn_count
    )
    in_range = isinstance(index, int) and 0 <= index < len(context.available_slots)
    if index is None and not delta.get("booking_confirmed") and not delta.get("reschedule_confirmed"):
        return False
    if offered_earlier and in_range:
        return False

    log.info(
        "Rejected slot selection %r for call %s (offered_turn=%s, turn=%s, slots=%d)",
        index, context.call_id, state.slots_offered_turn, state.turn_count,
        len(context.available_slots),
    )
    for key in ("selected_slot_index", "booking_confirmed", "reschedule_confirmed"):
        delta.pop(key, None)
    state.selected_slot_index = None
    state.booking_confirmed = None
    return True


# ── Terminal-state guard ─────────────────────────────────────────

@dataclass
class TerminalGuardResult:
    reply: str
    end_call: bool = False


def is_booking_prompt(reply: str) -> bool:
    return any(p.search(reply) for p in _BOOKING_PROMPTS)


def enforce_terminal(
    reply: str,
    delta: dict[str, Any],
    context: ConversationContext,
    max_followups: int = 2,
) -> TerminalGuardResult:
    """Keep a finished transaction finished.

    Strips restart fields from ``delta`` and rewrites replies that try to
    start a new booking. Informational answers pass through untouched.
    Repeated closing prompts are counted; past ``max_followups`` the call
    is wrapped up instead.
    """
    state = context.current_state
    if not state.terminal_lock:
        return TerminalGuardResult(reply=reply)

    stripped = sorted(k for k in delta if k in _RESTART_FIELDS)
    for key in stripped:
        delta.pop(key)
    if stripped:
        log.info("Terminal guard stripped %s for call %s", stripped, context.call_id)

    if not reply or is_booking_prompt(reply):
        reply = CLOSING_PROMPT

    if "anything else" in reply.lower():
        state.terminal_followups += 1
        if state.terminal_followups > max_followups:
            clinic = context.tenant_info.clinic_name
            return TerminalGuardResult(
                reply=f"Thanks for calling {clinic}. Have a lovely day. Goodbye!",
                end_call=True,
            )
    return TerminalGuardResult(reply=reply)


# ── Group booking ownership ──────────────────────────────────────

def _is_real_party(party: Party) -> bool:
    return is_valid_person_name(party.name)


def seed_group(group: GroupBookingState, relation: str) -> None:
    """Start a two-party booking with placeholders until real names arrive."""
    if group.parties:
        return
    group.parties = [
        Party(name=PRIMARY_PLACEHOLDER, relation="caller"),
        Party(name=SECONDARY_PLACEHOLDER, relation=relation),
    ]


def apply_party_names(group: GroupBookingState, names: list[tuple[str, Optional[str]]]) -> bool:
    """Fill party slots with validated names, in order.

    A validated party is never overwritten, and an invalid name never
    replaces anything. Returns True if any party changed.
    """
    changed = False
    pending = []
    for raw, relation in names:
        name = sanitize_name(raw)
        if name and is_valid_person_name(name):
            pending.append((name, relation))
        else:
            log.info("Ignored invalid party name %r", raw)

    for name, relation in pending:
        if any(p.name == name for p in group.parties):
            continue
        target = next((p for p in group.parties if not _is_real_party(p)), None)
        if target is None:
            if len(group.parties) >= 2 and all(_is_real_party(p) for p in group.parties):
                continue
            group.parties.append(Party(name=name, relation=relation))
        else:
            target.name = name
            if target.relation in (None, "family") and relation not in (None, "caller", "family"):
                target.relation = relation
        changed = True
    if changed:
        group.clear_proposal()
    return changed


def missing_party_prompt(group: GroupBookingState) -> Optional[str]:
    """Targeted re-prompt for the first party still lacking a real name."""
    if not group.parties:
        return None
    known = [p for p in group.parties if _is_real_party(p)]
    missing = [p for p in group.parties if not _is_real_party(p)]
    if not missing:
        return None
    relation = next(
        (p.relation for p in missing if p.relation not in (None, "caller")), None,
    ) or "family member"

    if not known:
        return f"Sure. Can I get both names please? Yours first, then your {relation}'s."
    first = known[0].name.split()[0]
    if missing[0].relation == "caller":
        return "Thanks. And can I get your name as well please?"
    return f"Thanks {first}. And what's your {relation}'s name?"


def enforce_group_ownership(delta: dict[str, Any], context: ConversationContext) -> Optional[str]:
    """Protect the group booking from inference.

    Inference may never switch the group flag off once it is on, and its
    proposed party names only land if they pass the name filter. Returns
    a targeted re-prompt when a party is still missing a real name.
    """
    state = context.current_state
    group = context.group_booking_state

    if state.group_booking and delta.get("group_booking") is False:
        log.info("Ignored attempt to clear group booking for call %s", context.call_id)
        delta.pop("group_booking")

    proposed = delta.pop(GROUP_PARTIES_KEY, None)
    if not (state.group_booking or delta.get("group_booking")):
        return None

    if isinstance(proposed, list):
        names = []
        for item in proposed:
            if isinstance(item, dict) and isinstance(item.get("name"), str):
                names.append((item["name"], item.get("relation")))
        if not group.parties:
            seed_group(group, "family")
        apply_party_names(group, names)

    if state.group_booking_complete:
        return None
    return missing_party_prompt(group)


# ── Prerequisites for a slot search ──────────────────────────────

def missing_prerequisite(delta: dict[str, Any], context: ConversationContext) -> Optional[str]:
    """Clarifying question when inference asks for slots too early."""
    state = context.current_state
    if not delta.get("request_slots") or context.available_slots:
        return None
    is_new = delta.get("is_new_patient", state.is_new_patient)
    if is_new is None and state.intent != "change":
        return "Have you been to see us before, or will this be your first visit?"
    if not (state.time_preference or delta.get("time_preference")):
        return "What day and time would suit you best?"
    return None
