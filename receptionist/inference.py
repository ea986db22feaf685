"""Inference adapter: the probabilistic half of each turn.

The adapter sees the conversation context and the caller's utterance and
returns a spoken reply plus a *proposed* state delta. Nothing it proposes
is trusted: the guard layer filters the delta before it is merged.

The Claude adapter asks the model to speak first and then emit a fenced
JSON signal::

    Great, I have 4pm tomorrow with Dr Lee. Does that work?
    ```json
    {"state": {"time_preference": "tomorrow 4:00pm"}, "confidence": 0.9}
    ```
"""

from __future__ import annotations

import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import anthropic

from receptionist.models import ConversationContext

log = logging.getLogger("receptionist.inference")


@dataclass
class InferenceResult:
    reply: str
    state_delta: dict[str, Any] = field(default_factory=dict)
    handoff_needed: bool = False
    handoff_category: Optional[str] = None
    expect_reply: bool = True
    confidence: float = 1.0


class InferenceAdapter(ABC):
    """Given context + utterance, propose a reply and a state delta."""

    @abstractmethod
    async def infer(self, context: ConversationContext, utterance: str) -> InferenceResult:
        """Run one inference pass. Must not mutate ``context``."""


# ── Prompt construction ──────────────────────────────────────────

_INSTRUCTIONS = """\
You are the phone receptionist for {clinic}. You help callers book, \
reschedule or cancel appointments and answer simple questions about the \
clinic. Keep every reply to one or two short spoken sentences.

Rules:
- Only offer times from AVAILABLE SLOTS. Never invent times.
- Never say an appointment is booked; the system confirms bookings.
- Ask for one missing detail at a time: new or existing patient, preferred \
day/time, then the patient's full name.
- If the caller asks something you cannot help with, set "handoff_needed".

After your spoken reply, output a fenced ```json block with:
  "state": fields you learned this turn, any of intent (book|change|cancel|faq), \
time_preference, is_new_patient, name, symptom, selected_slot_index (0-based \
index into AVAILABLE SLOTS), booking_confirmed, request_slots, \
map_link_requested, reschedule_confirmed, cancel_confirmed, faq_topics, \
group_booking, group_parties ([{{"name": ..., "relation": ...}}])
  "confidence": 0.0-1.0 how sure you are you understood the caller
  "handoff_needed": true/false, "handoff_category": optional string \
("out_of_scope", "complaint", "clinical")
  "expect_reply": false only when the conversation is over
"""


def build_system_prompt(context: ConversationContext) -> str:
    tenant = context.tenant_info
    parts = [_INSTRUCTIONS.format(clinic=tenant.clinic_name)]

    clinic = [f"Clinic: {tenant.clinic_name}"]
    if tenant.address:
        clinic.append(f"Address: {tenant.address}")
    if tenant.practitioners:
        clinic.append("Practitioners: " + ", ".join(p.name or p.id for p in tenant.practitioners))
    for question, answer in tenant.faq.items():
        clinic.append(f"Q: {question} A: {answer}")
    parts.append("\n".join(clinic))

    state = context.current_state.model_dump(
        include={
            "intent", "time_preference", "is_new_patient", "name", "symptom",
            "selected_slot_index", "booking_confirmed", "group_booking",
            "appointment_created", "terminal_lock", "call_stage", "booking_failed",
        },
        exclude_none=True,
        mode="json",
    )
    parts.append("CURRENT STATE: " + json.dumps(state))

    if context.available_slots:
        lines = [
            f"{i}. {slot.speakable_with_practitioner}"
            for i, slot in enumerate(context.available_slots)
        ]
        parts.append("AVAILABLE SLOTS:\n" + "\n".join(lines))
    else:
        parts.append("AVAILABLE SLOTS: none fetched yet")

    if context.upcoming_appointment is not None:
        parts.append(f"UPCOMING APPOINTMENT: {context.upcoming_appointment.speakable}")
    elif context.current_state.appointment_lookup_done:
        parts.append("UPCOMING APPOINTMENT: none found for this caller")

    if context.current_state.terminal_lock:
        parts.append(
            "The booking is complete. Answer questions, but do not offer or "
            "start another booking unless the caller asks for one."
        )
    return "\n\n".join(parts)


def build_messages(context: ConversationContext, max_turns: int) -> list[dict[str, str]]:
    """Map call history to alternating user/assistant messages."""
    messages: list[dict[str, str]] = []
    for turn in context.history[-max_turns:]:
        role = "user" if turn.role == "caller" else "assistant"
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"] += "\n" + turn.text
        else:
            messages.append({"role": role, "content": turn.text})
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    return messages


# ── Response parsing ─────────────────────────────────────────────

def extract_json_signal(text: str) -> dict | None:
    """Extract the JSON signal block from model output.

    Returns the parsed dict, or None if no signal found.
    """
    match = re.search(r"```(?:json)?\s*\n?({.*?})\s*\n?```", text, re.DOTALL)
    if match:
        try:
            return json.loads(match.group(1))
        except json.JSONDecodeError:
            pass

    for line in text.split("\n"):
        line = line.strip()
        if line.startswith("{") and line.endswith("}"):
            try:
                return json.loads(line)
            except json.JSONDecodeError:
                continue

    return None


def extract_text_response(text: str) -> str:
    """Remove JSON blocks from model output, keeping spoken text."""
    cleaned = re.sub(r"```(?:json)?\s*\n?{.*?}\s*\n?```", "", text, flags=re.DOTALL)
    lines = []
    for line in cleaned.split("\n"):
        stripped = line.strip()
        if stripped.startswith("{") and stripped.endswith("}"):
            try:
                json.loads(stripped)
                continue
            except json.JSONDecodeError:
                pass
        lines.append(line)
    return "\n".join(lines).strip()


def parse_model_output(text: str) -> InferenceResult:
    signal = extract_json_signal(text) or {}
    reply = extract_text_response(text)

    delta = signal.get("state", {})
    if not isinstance(delta, dict):
        delta = {}

    try:
        confidence = float(signal.get("confidence", 1.0))
    except (TypeError, ValueError):
        confidence = 1.0

    return InferenceResult(
        reply=reply,
        state_delta=delta,
        handoff_needed=bool(signal.get("handoff_needed", False)),
        handoff_category=signal.get("handoff_category"),
        expect_reply=bool(signal.get("expect_reply", True)),
        confidence=confidence,
    )


class ClaudeInferenceAdapter(InferenceAdapter):
    """Inference over the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str = "",
        model: str = "claude-sonnet-4-5",
        max_tokens: int = 400,
        history_turns: int = 20,
        client: anthropic.AsyncAnthropic | None = None,
    ) -> None:
        self._client = client or anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        self._max_tokens = max_tokens
        self._history_turns = history_turns

    async def infer(self, context: ConversationContext, utterance: str) -> InferenceResult:
        messages = build_messages(context, self._history_turns)
        if not messages:
            messages = [{"role": "user", "content": utterance or "(the caller said nothing)"}]

        try:
            response = await self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                system=build_system_prompt(context),
                messages=messages,
            )
        except anthropic.APIError as exc:
            log.error("Inference failed for call %s: %s", context.call_id, exc)
            return InferenceResult(reply="", confidence=0.0, handoff_category="inference_error")

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        result = parse_model_output(text)
        log.info(
            "Inference for call %s (confidence=%.2f): %s | delta=%s",
            context.call_id, result.confidence, result.reply[:100], result.state_delta,
        )
        return result
