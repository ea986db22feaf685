"""Turn processor: one request/response cycle of a call.

Per turn:

  1. load the call context (or create it on the first turn)
  2. short-circuit escalated / ended calls, empty utterances and hang-ups
  3. pre-inference escalation triggers
  4. deterministic extractors (time preference, names, intent, ...)
  5. deterministic flows that bypass inference: follow-up booking reset,
     group booking names/proposal/confirmation, goodbyes
  6. prerequisites: appointment lookup, proactive slot fetch
  7. inference, with one bounded "resolve prerequisite and retry" pass
  8. post-inference escalation, guards, merge
  9. side effects: booking, reschedule, cancel, map link
 10. save the context and hand the reply back to the transport; a turn
     that lost the booking lock to another delivery is not saved

A persistence failure never fails the turn: the reply is produced from
the in-memory context and the failure is logged.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

from receptionist.alerts import AlertSink
from receptionist.availability import AvailabilityResolver, speakable_label, utc_now
from receptionist.booking import BookingExecutor
from receptionist.errors import ContextStoreError, SchedulingCapabilityError
from receptionist.escalation import HANDOFF_ACKNOWLEDGEMENT, EscalationDetector
from receptionist.extractors import (
    HangupIntent,
    YesNo,
    classify_yes_no,
    detect_followup_booking,
    detect_goodbye,
    detect_group_booking,
    detect_hangup_intent,
    detect_intent,
    detect_map_request,
    detect_new_patient,
    extract_answered_name,
    extract_caller_name,
    extract_day_reference,
    extract_party_names,
    extract_time_preference,
    is_third_party,
    is_valid_person_name,
    merge_time_preference,
    sanitize_name,
    wants_same_time,
)
from receptionist.guards import (
    apply_party_names,
    enforce_group_ownership,
    enforce_slot_confirmation,
    enforce_terminal,
    missing_party_prompt,
    missing_prerequisite,
    seed_group,
    strip_protected_fields,
)
from receptionist.inference import InferenceAdapter, InferenceResult
from receptionist.models import (
    GROUP_PARTIES_KEY,
    AppointmentRef,
    CallStage,
    CompactState,
    ConversationContext,
    TenantContext,
)
from receptionist.notifications import Notifier
from receptionist.privacy import redact_pii
from receptionist.providers.base import SchedulingProvider
from receptionist.store import ContextStore

log = logging.getLogger("receptionist.processor")

NO_AVAILABILITY_REPLY = (
    "I'm sorry, we don't have any appointments available at that time. "
    "Would a different time work for you?"
)
SILENCE_REPLY = "Sorry, I didn't catch that. Are you still there?"
FALLBACK_REPLY = "Sorry, could you say that again?"
NAME_REQUEST_REPLY = "Before I lock that in, can I get the patient's full name please?"

_SLOT_STAGES = (CallStage.OFFERING_SLOTS, CallStage.AWAITING_CONFIRMATION)


@dataclass
class TurnResult:
    spoken_reply: str
    expect_reply: bool = True
    terminate: bool = False
    call_stage: str = CallStage.COLLECTING_INTENT.value
    handoff_reason: Optional[str] = None


class _Escalated(Exception):
    """Internal: a trigger fired mid-turn; carries the acknowledgement."""

    def __init__(self, reply: str) -> None:
        super().__init__(reply)
        self.reply = reply


class _Duplicate(Exception):
    """Internal: another delivery of this turn holds the booking lock."""

    def __init__(self, reply: str) -> None:
        super().__init__(reply)
        self.reply = reply


class TurnProcessor:
    """Composes store, extractors, guards, inference and side effects."""

    def __init__(
        self,
        store: ContextStore,
        inference: InferenceAdapter,
        resolver: AvailabilityResolver,
        executor: BookingExecutor,
        escalation: EscalationDetector,
        provider: SchedulingProvider,
        notifier: Notifier,
        alerts: AlertSink,
        max_terminal_followups: int = 2,
        max_followup_bookings: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._inference = inference
        self._resolver = resolver
        self._executor = executor
        self._escalation = escalation
        self._provider = provider
        self._notifier = notifier
        self._alerts = alerts
        self._max_terminal_followups = max_terminal_followups
        self._max_followup_bookings = max_followup_bookings
        self._clock = clock

    @property
    def store(self) -> ContextStore:
        return self._store

    # ── Public entry point ──────────────────────────────────────

    async def process_turn(
        self,
        call_id: str,
        caller_id: str,
        utterance: str,
        tenant: TenantContext,
    ) -> TurnResult:
        context = await self._load(call_id, caller_id, tenant)
        state = context.current_state
        text = (utterance or "").strip()

        if state.escalated:
            return self._result(context, HANDOFF_ACKNOWLEDGEMENT, terminate=True)
        if state.call_stage == CallStage.ENDED:
            return self._result(context, self._goodbye(context), terminate=True)

        state.turn_count += 1
        if text:
            context.add_turn("caller", text)
        log.info(
            "Turn %d for call %s (%s): %r",
            state.turn_count, call_id, redact_pii(caller_id), text[:120],
        )

        try:
            result = await self._run_turn(context, text)
        except _Escalated as escalated:
            result = self._result(context, escalated.reply, terminate=True)
        except _Duplicate as duplicate:
            # The other delivery owns the persisted document; this copy is stale
            log.info("Duplicate delivery on call %s; leaving persisted context untouched", call_id)
            return self._result(context, duplicate.reply)

        context.add_turn("assistant", result.spoken_reply)
        await self._save(context)
        log.info(
            "Reply for call %s (stage=%s): %s",
            call_id, result.call_stage, result.spoken_reply[:120],
        )
        return result

    # ── Turn body ───────────────────────────────────────────────

    async def _run_turn(self, context: ConversationContext, text: str) -> TurnResult:
        state = context.current_state

        if not text:
            return self._result(context, SILENCE_REPLY)

        hangup = self._handle_hangup(context, text)
        if hangup is not None:
            return hangup

        decision = self._escalation.check_utterance(text, state)
        if decision is not None:
            raise _Escalated(await self._escalation.escalate(context, decision, self._alerts))

        self._apply_extractors(context, text)

        if state.terminal_lock and detect_followup_booking(text):
            reset = self._start_followup_booking(context, text)
            if reset is not None:
                return reset

        if detect_goodbye(text) and self._goodbye_ends_call(context):
            state.call_stage = CallStage.ENDED
            return self._result(context, self._goodbye(context), terminate=True)

        if state.group_booking and not state.group_booking_complete and not state.terminal_lock:
            group_result = await self._run_group_flow(context, text)
            if group_result is not None:
                return group_result

        await self._ensure_upcoming_appointment(context)

        if self._should_fetch_slots(context):
            if not await self._fetch_slots(context):
                return self._result(context, NO_AVAILABILITY_REPLY)

        result = await self._infer_with_prerequisites(context, text)
        return await self._apply_inference(context, text, result)

    # ── Call control ────────────────────────────────────────────

    def _handle_hangup(self, context: ConversationContext, text: str) -> Optional[TurnResult]:
        state = context.current_state
        intent = detect_hangup_intent(text)

        if state.awaiting_hangup_confirmation and intent == HangupIntent.NONE:
            state.awaiting_hangup_confirmation = False
            if classify_yes_no(text) == YesNo.YES:
                state.call_stage = CallStage.ENDED
                return self._result(context, self._goodbye(context), terminate=True)
            return None

        if intent == HangupIntent.COMMAND:
            state.call_stage = CallStage.ENDED
            return self._result(context, self._goodbye(context), terminate=True)
        if intent == HangupIntent.QUESTION:
            state.awaiting_hangup_confirmation = True
            return self._result(
                context, "I'm still here. Would you like me to end the call?",
            )
        return None

    @staticmethod
    def _goodbye_ends_call(context: ConversationContext) -> bool:
        """A goodbye hangs up after a finished transaction or before one starts."""
        state = context.current_state
        if state.terminal_lock:
            return True
        return state.intent is None and not context.available_slots and not state.group_booking

    @staticmethod
    def _goodbye(context: ConversationContext) -> str:
        return f"Thanks for calling {context.tenant_info.clinic_name}. Have a lovely day. Goodbye!"

    # ── Extractors ──────────────────────────────────────────────

    def _set_time_preference(self, context: ConversationContext, proposed: Optional[str]) -> bool:
        """Apply the specificity merge rule; invalidate slots on change."""
        state = context.current_state
        merged = merge_time_preference(state.time_preference, proposed)
        if merged == state.time_preference:
            return False
        log.info("Time preference for call %s: %r -> %r", context.call_id, state.time_preference, merged)
        state.time_preference = merged
        context.invalidate_slots()
        return True

    @staticmethod
    def _match_offered_slot(
        context: ConversationContext, time_preference: Optional[str], day: Optional[str],
    ) -> Optional[int]:
        """Index of the offered slot the caller named by its clock time."""
        if not time_preference or not context.available_slots:
            return None
        clock = time_preference.split(" ")[-1]
        for index, slot in enumerate(context.available_slots):
            if slot.short_label != clock:
                continue
            if day is not None and day not in slot.speakable.lower():
                continue
            return index
        return None

    def _apply_extractors(self, context: ConversationContext, text: str) -> None:
        state = context.current_state
        answer = classify_yes_no(text)

        time_preference = extract_time_preference(text, state.previous_day)
        day = extract_day_reference(text)
        if day is not None:
            state.previous_day = day

        slots_on_offer = (
            bool(context.available_slots)
            and state.call_stage in _SLOT_STAGES
            and not state.appointment_created
        )
        if slots_on_offer and answer == YesNo.NO and state.selected_slot_index is None:
            log.info("Caller declined offered slots on call %s", context.call_id)
            state.time_preference = None
            context.invalidate_slots()
            state.call_stage = CallStage.COLLECTING_TIME

        if not state.terminal_lock:
            offered = self._match_offered_slot(context, time_preference, day)
            if offered is not None:
                # Naming an offered time picks that slot; the offer stands
                state.time_preference = merge_time_preference(state.time_preference, time_preference)
                state.selected_slot_index = offered
            else:
                self._set_time_preference(context, time_preference)

        new_patient = detect_new_patient(text)
        if new_patient is not None and state.is_new_patient is None:
            state.is_new_patient = new_patient

        intent = detect_intent(text)
        if intent is not None and (state.intent is None or intent in ("change", "cancel")):
            state.intent = intent

        if is_third_party(text):
            state.booking_for = "other"

        if detect_map_request(text):
            state.map_link_requested = True

        group = context.group_booking_state
        relation = detect_group_booking(text)
        if relation and not state.group_booking and not state.terminal_lock:
            state.group_booking = True
            state.intent = state.intent or "book"
            seed_group(group, relation)
            state.call_stage = CallStage.COLLECTING_NAMES
            log.info("Group booking started on call %s (relation=%s)", context.call_id, relation)

        if state.group_booking and not state.group_booking_complete:
            names = extract_party_names(text)
            if names:
                apply_party_names(group, names)
            elif missing_party_prompt(group) is not None:
                single = extract_answered_name(text)
                if single:
                    apply_party_names(group, [(single, None)])
        elif state.name is None:
            name = extract_caller_name(text)
            if name is None and state.call_stage == CallStage.AWAITING_CONFIRMATION:
                name = extract_answered_name(text)
            if name:
                state.name = name

    # ── Follow-up booking after a finished transaction ──────────

    def _start_followup_booking(self, context: ConversationContext, text: str) -> Optional[TurnResult]:
        state = context.current_state
        if state.followup_bookings >= self._max_followup_bookings:
            return self._result(
                context,
                "For any more bookings I'll have reception give you a call back. "
                "Is there anything else I can help with?",
            )

        keep_time = wants_same_time(text)
        previous_time = state.time_preference if keep_time else None
        log.info("Follow-up booking on call %s (same time=%s)", context.call_id, keep_time)

        fresh = CompactState(
            intent="book",
            time_preference=previous_time,
            is_new_patient=None,
            booking_for="other",
            previous_day=state.previous_day,
            turn_count=state.turn_count,
            call_stage=CallStage.COLLECTING_TIME,
            followup_bookings=state.followup_bookings + 1,
            sms_map_sent=state.sms_map_sent,
            last_appointment_id=state.last_appointment_id,
        )
        context.current_state = fresh
        context.invalidate_slots()
        context.group_booking_state.parties = []
        context.group_booking_state.booked = []
        if not keep_time:
            self._set_time_preference(context, extract_time_preference(text, fresh.previous_day))
        return self._result(
            context,
            "Of course. What's the name of the person you'd like to book for, "
            "and have they been to see us before?",
        )

    # ── Group booking flow ──────────────────────────────────────

    async def _run_group_flow(self, context: ConversationContext, text: str) -> Optional[TurnResult]:
        """Deterministic group booking; returns None to fall through to inference."""
        state = context.current_state
        group = context.group_booking_state

        if group.proposed:
            answer = classify_yes_no(text)
            if answer == YesNo.YES:
                outcome = await self._executor.execute_group(context)
                if outcome.status == "duplicate":
                    raise _Duplicate(outcome.reply)
                if outcome.reply:
                    return self._result(context, outcome.reply)
                return None
            if answer == YesNo.NO:
                return self._result(context, self._executor.decline_group(context))
            return None

        prompt = missing_party_prompt(group)
        if prompt is not None:
            state.call_stage = CallStage.COLLECTING_NAMES
            return self._result(context, prompt)

        if state.time_preference is None:
            state.call_stage = CallStage.COLLECTING_TIME
            return self._result(context, "What day and time would suit you both?")

        if not context.available_slots:
            if not await self._fetch_slots(context, party_count=len(group.parties)):
                return self._result(context, NO_AVAILABILITY_REPLY)

        proposal = self._executor.propose_group(context)
        if proposal is None:
            state.time_preference = None
            context.invalidate_slots()
            return self._result(context, NO_AVAILABILITY_REPLY)
        state.slots_offered_turn = state.turn_count
        return self._result(context, proposal)

    # ── Prerequisites ───────────────────────────────────────────

    async def _ensure_upcoming_appointment(self, context: ConversationContext) -> None:
        state = context.current_state
        if state.intent not in ("change", "cancel") or state.appointment_lookup_done:
            return
        if context.upcoming_appointment is not None or state.terminal_lock:
            return

        state.appointment_lookup_done = True
        try:
            patient_ref = await self._provider.find_patient(context.caller_id)
            appointment = await self._provider.find_upcoming(patient_ref) if patient_ref else None
        except Exception as exc:
            log.error("Appointment lookup failed for call %s: %s", context.call_id, exc)
            raise _Escalated(
                await self._escalation.escalate(
                    context, self._escalation.scheduling_error(exc), self._alerts,
                )
            ) from exc

        if appointment is None:
            log.info("No upcoming appointment for call %s", context.call_id)
            return
        tz = ZoneInfo(context.tenant_info.timezone)
        start = appointment.start.astimezone(tz)
        context.upcoming_appointment = AppointmentRef(
            id=appointment.id,
            start=appointment.start,
            speakable=speakable_label(start, self._clock().astimezone(tz)),
            resource_id=appointment.resource_id,
            patient_ref=appointment.patient_ref,
        )
        if state.intent == "change":
            state.is_new_patient = False

    def _should_fetch_slots(self, context: ConversationContext) -> bool:
        state = context.current_state
        if state.terminal_lock or context.available_slots or not state.time_preference:
            return False
        if state.intent == "cancel" or state.group_booking:
            return False
        if state.intent == "change":
            return context.upcoming_appointment is not None
        return state.is_new_patient is not None

    async def _fetch_slots(self, context: ConversationContext, party_count: int = 1) -> bool:
        """Fetch slots for the current preference. False when none are free."""
        state = context.current_state
        try:
            slots = await self._resolver.find_slots(
                state.time_preference,
                context.tenant_info,
                is_new_patient=state.is_new_patient,
                party_count=party_count,
            )
        except SchedulingCapabilityError as exc:
            log.error("Availability failed for call %s: %s", context.call_id, exc)
            raise _Escalated(
                await self._escalation.escalate(
                    context, self._escalation.scheduling_error(exc), self._alerts,
                )
            ) from exc

        if not slots:
            log.info("No availability for %r on call %s", state.time_preference, context.call_id)
            state.time_preference = None
            context.invalidate_slots()
            state.call_stage = CallStage.COLLECTING_TIME
            return False
        context.available_slots = slots
        state.slots_offered_turn = None
        state.call_stage = CallStage.OFFERING_SLOTS
        return True

    # ── Inference ───────────────────────────────────────────────

    async def _infer(self, context: ConversationContext, text: str) -> InferenceResult:
        result = await self._inference.infer(context, text)
        decision = self._escalation.check_inference(result)
        if decision is not None:
            raise _Escalated(await self._escalation.escalate(context, decision, self._alerts))
        result.state_delta = strip_protected_fields(result.state_delta)
        return result

    async def _infer_with_prerequisites(self, context: ConversationContext, text: str) -> InferenceResult:
        """Infer; if the model needs data we can fetch, fetch it and retry once."""
        state = context.current_state
        result = await self._infer(context, text)
        delta = result.state_delta

        if state.terminal_lock:
            return result

        if delta.get("request_slots") and not context.available_slots:
            question = missing_prerequisite(delta, context)
            if question is not None:
                result.reply = question
                return result
            self._merge_scalar_fields(context, delta, ("is_new_patient", "time_preference"))
            if not state.time_preference:
                result.reply = "What day and time would suit you best?"
                return result
            if not await self._fetch_slots(context):
                result.reply = NO_AVAILABILITY_REPLY
                result.state_delta = {}
                return result
            return await self._infer(context, text)

        wants_lookup = delta.get("intent") in ("change", "cancel") and not state.appointment_lookup_done
        if wants_lookup:
            state.intent = delta["intent"]
            await self._ensure_upcoming_appointment(context)
            if state.appointment_lookup_done:
                return await self._infer(context, text)
        return result

    def _merge_scalar_fields(self, context: ConversationContext, delta: dict[str, Any], keys: tuple[str, ...]) -> None:
        state = context.current_state
        for key in keys:
            if key not in delta or delta[key] is None:
                continue
            value = delta.pop(key)
            if key == "time_preference":
                self._set_time_preference(context, str(value))
            elif key == "is_new_patient":
                if state.is_new_patient is None:
                    state.is_new_patient = bool(value)

    def _merge_delta(self, context: ConversationContext, delta: dict[str, Any]) -> None:
        state = context.current_state
        self._merge_scalar_fields(context, delta, ("time_preference", "is_new_patient"))
        for key, value in delta.items():
            if value is None or key == GROUP_PARTIES_KEY:
                continue
            if key == "name":
                name = sanitize_name(str(value))
                if state.group_booking or not is_valid_person_name(name):
                    continue
                state.name = name
            elif key == "group_booking":
                if value and not state.group_booking:
                    state.group_booking = True
                    seed_group(context.group_booking_state, "family")
            elif key == "faq_topics":
                if isinstance(value, list):
                    state.faq_topics = sorted(set(state.faq_topics) | {str(v) for v in value})
            elif key in CompactState.model_fields:
                try:
                    setattr(state, key, value)
                except (TypeError, ValueError):
                    log.warning("Ignored malformed %s=%r on call %s", key, value, context.call_id)

    async def _apply_inference(
        self, context: ConversationContext, text: str, result: InferenceResult,
    ) -> TurnResult:
        state = context.current_state
        delta = result.state_delta
        reply = result.reply or FALLBACK_REPLY

        enforce_slot_confirmation(delta, context)

        terminal = enforce_terminal(reply, delta, context, self._max_terminal_followups)
        reply = terminal.reply
        if terminal.end_call:
            state.call_stage = CallStage.ENDED
            return self._result(context, reply, terminate=True)

        reprompt = enforce_group_ownership(delta, context)
        if reprompt is not None:
            reply = reprompt

        self._merge_delta(context, delta)

        side_effect_reply = await self._run_side_effects(context)
        if side_effect_reply is not None:
            reply = side_effect_reply

        if context.available_slots and state.slots_offered_turn is None and not state.terminal_lock:
            state.slots_offered_turn = state.turn_count

        self._update_stage(context)
        terminate = state.call_stage == CallStage.ENDED
        return self._result(context, reply, expect_reply=result.expect_reply, terminate=terminate)

    # ── Side effects ────────────────────────────────────────────

    async def _run_side_effects(self, context: ConversationContext) -> Optional[str]:
        state = context.current_state
        reply: Optional[str] = None

        if state.map_link_requested and not state.sms_map_sent and context.tenant_info.has_map:
            tenant = context.tenant_info
            await self._notifier.send_map_link(context.caller_id, tenant.clinic_name, tenant.address)
            state.sms_map_sent = True

        if state.terminal_lock:
            return reply

        try:
            if state.intent == "cancel" and state.cancel_confirmed:
                outcome = await self._executor.cancel(context)
                return outcome.reply
            if state.intent == "change" and state.reschedule_confirmed:
                outcome = await self._executor.reschedule(context)
                if outcome.status == "duplicate":
                    raise _Duplicate(outcome.reply)
                return outcome.reply
        except SchedulingCapabilityError as exc:
            raise _Escalated(
                await self._escalation.escalate(
                    context, self._escalation.scheduling_error(exc), self._alerts,
                )
            ) from exc

        if state.booking_confirmed and context.selected_slot() is not None and not state.group_booking:
            if not state.name:
                return NAME_REQUEST_REPLY
            outcome = await self._executor.book_single(context)
            if outcome.status == "duplicate":
                raise _Duplicate(outcome.reply)
            return outcome.reply
        return reply

    # ── Stage bookkeeping ───────────────────────────────────────

    @staticmethod
    def _update_stage(context: ConversationContext) -> None:
        state = context.current_state
        if state.call_stage in (
            CallStage.TERMINAL, CallStage.ESCALATED, CallStage.ENDED, CallStage.PROPOSING_GROUP,
        ) or state.terminal_lock:
            return
        if state.group_booking and missing_party_prompt(context.group_booking_state):
            state.call_stage = CallStage.COLLECTING_NAMES
        elif context.available_slots and state.selected_slot_index is not None:
            state.call_stage = CallStage.AWAITING_CONFIRMATION
        elif context.available_slots:
            state.call_stage = CallStage.OFFERING_SLOTS
        elif state.intent is None:
            state.call_stage = CallStage.COLLECTING_INTENT
        else:
            state.call_stage = CallStage.COLLECTING_TIME

    @staticmethod
    def _result(
        context: ConversationContext,
        reply: str,
        expect_reply: bool = True,
        terminate: bool = False,
    ) -> TurnResult:
        state = context.current_state
        return TurnResult(
            spoken_reply=reply,
            expect_reply=expect_reply and not terminate,
            terminate=terminate,
            call_stage=CallStage(state.call_stage).value,
            handoff_reason=state.handoff_reason,
        )

    # ── Persistence ─────────────────────────────────────────────

    async def _load(self, call_id: str, caller_id: str, tenant: TenantContext) -> ConversationContext:
        try:
            return await self._store.load_or_create(call_id, caller_id, tenant)
        except ContextStoreError:
            log.exception("Context load failed for call %s; starting fresh", call_id)
            return ConversationContext(call_id=call_id, caller_id=caller_id, tenant_info=tenant)

    async def _save(self, context: ConversationContext) -> None:
        try:
            await self._store.save(context)
        except ContextStoreError:
            log.exception("Context save failed for call %s; continuing in memory", context.call_id)
