"""Booking executor: the only component that creates, moves or cancels.

Duplicate prevention is a soft, time-bounded lock stored in the call's
own persisted document (``booking_lock_until``). Before calling the
scheduling capability the executor re-reads the persisted document, and
if another delivery of the same turn already holds an unexpired lock the
attempt is reported as a duplicate. The caller of a duplicate outcome must
not save its copy of the context, which is stale by definition. The lock is written and saved *before* the create
call, so a redelivered turn that arrives while the first is still in
flight sees it.

The executor is also the only place that marks a call terminal.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from receptionist.alerts import AlertSink
from receptionist.availability import utc_now
from receptionist.errors import BookingError, ContextStoreError, SchedulingCapabilityError
from receptionist.models import (
    AppointmentRef,
    BookedParty,
    CallStage,
    ConversationContext,
    Slot,
)
from receptionist.notifications import Notifier
from receptionist.privacy import redact_pii
from receptionist.providers.base import Appointment, SchedulingProvider
from receptionist.store import ContextStore

log = logging.getLogger("receptionist.booking")

BOOKING_FAILURE_REPLY = (
    "I couldn't complete the booking just now. I'll have reception confirm "
    "your appointment by text in a moment. Is there anything else I can help with?"
)
DUPLICATE_REPLY = "Just a moment, I'm locking that in for you now."


@dataclass
class BookingOutcome:
    status: str  # booked | skipped | duplicate | failed | partial
    reply: Optional[str] = None


class BookingExecutor:
    """Transactional single and group booking with idempotency locking."""

    def __init__(
        self,
        provider: SchedulingProvider,
        notifier: Notifier,
        alerts: AlertSink,
        store: ContextStore,
        lock_seconds: int = 10,
        group_lock_seconds: int = 20,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._provider = provider
        self._notifier = notifier
        self._alerts = alerts
        self._store = store
        self._lock_seconds = lock_seconds
        self._group_lock_seconds = group_lock_seconds
        self._clock = clock

    # ── Locking ─────────────────────────────────────────────────

    def _now(self) -> float:
        return self._clock().timestamp()

    async def _lock_held(self, context: ConversationContext) -> bool:
        """True if an unexpired lock exists here or in the persisted copy."""
        state = context.current_state
        locks = [state.booking_lock_until]
        try:
            persisted = await self._store.load(context.call_id)
        except ContextStoreError as exc:
            log.warning("Lock check could not read persisted context: %s", exc)
            persisted = None
        if persisted is not None:
            if persisted.current_state.appointment_created:
                return True
            locks.append(persisted.current_state.booking_lock_until)

        now = self._now()
        return any(lock is not None and lock > now for lock in locks)

    async def _acquire(self, context: ConversationContext, seconds: int) -> bool:
        state = context.current_state
        if await self._lock_held(context):
            log.info(
                "Booking lock active for call %s; skipping duplicate attempt",
                context.call_id,
            )
            return False
        state.booking_lock_until = self._now() + seconds
        state.call_stage = CallStage.BOOKING_IN_PROGRESS
        try:
            await self._store.save(context)
        except ContextStoreError as exc:
            log.error("Could not persist booking lock for call %s: %s", context.call_id, exc)
        return True

    # ── Shared helpers ──────────────────────────────────────────

    async def _create(self, context: ConversationContext, slot: Slot, party_name: str) -> Appointment:
        state = context.current_state
        notes = []
        if state.symptom:
            notes.append(f"Reason: {state.symptom}")
        if state.booking_for == "other":
            notes.append("Booked by a family member or carer")
        notes.append(f"Booked by phone receptionist (call {context.call_id})")

        appointment = await self._provider.create_appointment(
            resource_id=slot.resource_id,
            appointment_type_id=slot.appointment_type_id,
            start=slot.start,
            party_name=party_name,
            caller_id=context.caller_id,
            notes="\n".join(notes),
        )
        if appointment is None or not appointment.id:
            raise BookingError("Scheduling capability returned no appointment id")
        return appointment

    def _mark_terminal(self, context: ConversationContext) -> None:
        state = context.current_state
        state.terminal_lock = True
        state.call_stage = CallStage.TERMINAL
        state.booking_failed = False
        state.booking_error = None
        state.terminal_followups = 0

    async def _send_confirmation(self, context: ConversationContext, when: str, practitioner: str) -> None:
        state = context.current_state
        tenant = context.tenant_info
        if not state.sms_confirm_sent:
            await self._notifier.send_confirmation(
                context.caller_id, tenant.clinic_name, when, practitioner, tenant.address,
            )
            state.sms_confirm_sent = True

    async def _send_intake(self, context: ConversationContext) -> bool:
        state = context.current_state
        tenant = context.tenant_info
        if state.is_new_patient and not state.sms_intake_sent and tenant.intake_form_url:
            await self._notifier.send_intake_form(
                context.caller_id, tenant.clinic_name, tenant.intake_form_url,
            )
            state.sms_intake_sent = True
            return True
        return False

    async def _report_failure(
        self, context: ConversationContext, error: Exception, requested: list[str],
    ) -> None:
        state = context.current_state
        state.appointment_created = False
        state.booking_failed = True
        state.booking_error = str(error)[:200] or type(error).__name__
        state.booking_lock_until = None
        state.booking_confirmed = None
        state.call_stage = CallStage.AWAITING_CONFIRMATION
        try:
            await self._store.save(context)
        except ContextStoreError as exc:
            log.error("Could not release booking lock for call %s: %s", context.call_id, exc)

        log.error(
            "Booking failed for call %s (%s): %s",
            context.call_id, redact_pii(context.caller_id), state.booking_error,
        )
        await self._alerts.create_alert(
            "booking_failed",
            {
                "call_id": context.call_id,
                "caller_id": context.caller_id,
                "requested": requested,
                "error": state.booking_error,
            },
        )
        await self._notifier.send_fallback(
            context.caller_id, context.tenant_info.clinic_name, "; ".join(requested),
        )

    # ── Single booking ──────────────────────────────────────────

    async def book_single(self, context: ConversationContext) -> BookingOutcome:
        state = context.current_state
        if state.appointment_created or state.terminal_lock:
            return BookingOutcome("skipped")
        slot = context.selected_slot()
        if slot is None:
            return BookingOutcome("skipped")

        if not await self._acquire(context, self._lock_seconds):
            state.booking_confirmed = None
            return BookingOutcome("duplicate", DUPLICATE_REPLY)

        party_name = state.name or "New patient"
        try:
            appointment = await self._create(context, slot, party_name)
        except Exception as exc:  # any capability failure is compensated, never raised
            await self._report_failure(context, exc, [f"{party_name} - {slot.speakable_with_practitioner}"])
            return BookingOutcome("failed", BOOKING_FAILURE_REPLY)

        state.appointment_created = True
        state.last_appointment_id = appointment.id
        state.booked_slot_label = slot.speakable
        self._mark_terminal(context)
        log.info("Booked %s for call %s at %s", appointment.id, context.call_id, slot.speakable)

        await self._send_confirmation(context, slot.speakable, slot.practitioner_name)
        intake_sent = await self._send_intake(context)

        reply = f"You're all booked for {slot.speakable_with_practitioner}. I've sent you a confirmation text"
        if intake_sent:
            reply += " and a short new patient form to fill in"
        reply += ". Is there anything else I can help with?"
        return BookingOutcome("booked", reply)

    # ── Group booking ───────────────────────────────────────────

    def propose_group(self, context: ConversationContext) -> Optional[str]:
        """Assign one offered slot per party and ask the caller to confirm.

        Returns None if there are not enough slots for every party.
        """
        group = context.group_booking_state
        state = context.current_state
        parties = group.parties
        if len(parties) < 2 or len(context.available_slots) < len(parties):
            return None

        # Earliest slots first so the party books back to back
        order = sorted(range(len(context.available_slots)), key=lambda i: context.available_slots[i].start)
        group.assignments = order[: len(parties)]
        group.proposed = True
        group.proposed_turn = state.turn_count
        state.call_stage = CallStage.PROPOSING_GROUP

        offers = [
            f"{party.name.split()[0]} {context.available_slots[i].speakable}"
            for party, i in zip(parties, group.assignments)
        ]
        practitioner = context.available_slots[group.assignments[0]].practitioner_name
        with_whom = f" with {practitioner}" if practitioner else ""
        return f"I can book {' and '.join(offers)}{with_whom}. Shall I book those for you?"

    def decline_group(self, context: ConversationContext) -> str:
        state = context.current_state
        state.time_preference = None
        context.invalidate_slots()
        state.call_stage = CallStage.COLLECTING_TIME
        return "No problem. What other day or time would suit you both?"

    async def execute_group(self, context: ConversationContext) -> BookingOutcome:
        state = context.current_state
        group = context.group_booking_state
        if state.group_booking_complete or state.terminal_lock:
            return BookingOutcome("skipped")
        if not group.proposed or group.proposed_turn is None or group.proposed_turn >= state.turn_count:
            return BookingOutcome("skipped")

        if not await self._acquire(context, self._group_lock_seconds):
            return BookingOutcome("duplicate", DUPLICATE_REPLY)

        for party, index in zip(group.parties, group.assignments):
            if group.is_booked(party.name):
                continue
            slot = context.available_slots[index]
            try:
                appointment = await self._create(context, slot, party.name)
            except Exception as exc:  # partial bookings are kept, the rest reported
                remaining = [
                    f"{p.name} - {context.available_slots[i].speakable_with_practitioner}"
                    for p, i in zip(group.parties, group.assignments)
                    if not group.is_booked(p.name)
                ]
                await self._report_failure(context, exc, remaining)
                state.group_booking_complete = group.completed_count
                if group.booked:
                    done = " and ".join(b.name.split()[0] for b in group.booked)
                    reply = (
                        f"I've booked {done}, but I couldn't complete the rest just now. "
                        "Reception will text you to confirm shortly. Is there anything else I can help with?"
                    )
                    return BookingOutcome("partial", reply)
                return BookingOutcome("failed", BOOKING_FAILURE_REPLY)

            group.booked.append(
                BookedParty(name=party.name, appointment_id=appointment.id, speakable=slot.speakable)
            )
            state.last_appointment_id = appointment.id
            log.info("Group booking %s for %s on call %s", appointment.id, party.name, context.call_id)

        state.group_booking_complete = group.completed_count
        state.appointment_created = True
        state.booked_slot_label = "; ".join(f"{b.name} {b.speakable}" for b in group.booked)
        self._mark_terminal(context)

        first_slot = context.available_slots[group.assignments[0]]
        await self._send_confirmation(context, state.booked_slot_label, first_slot.practitioner_name)
        intake_sent = await self._send_intake(context)

        reply = "You're all booked. I've sent a confirmation text with both appointments"
        if intake_sent:
            reply += " and a new patient form"
        reply += ". Is there anything else I can help with?"
        return BookingOutcome("booked", reply)

    # ── Reschedule / cancel ─────────────────────────────────────

    async def reschedule(self, context: ConversationContext) -> BookingOutcome:
        """Move the cached upcoming appointment to the selected slot.

        Raises:
            SchedulingCapabilityError: the capability refused or failed.
        """
        state = context.current_state
        upcoming = context.upcoming_appointment
        slot = context.selected_slot()
        if state.reschedule_done or upcoming is None or slot is None:
            return BookingOutcome("skipped")

        if not await self._acquire(context, self._lock_seconds):
            state.reschedule_confirmed = None
            return BookingOutcome("duplicate", DUPLICATE_REPLY)
        try:
            moved = await self._provider.reschedule(upcoming.id, slot.start)
        except Exception as exc:
            state.booking_lock_until = None
            raise SchedulingCapabilityError(f"Reschedule of {upcoming.id} failed: {exc}") from exc

        context.upcoming_appointment = AppointmentRef(
            id=moved.id or upcoming.id,
            start=slot.start,
            speakable=slot.speakable,
            resource_id=slot.resource_id,
            patient_ref=upcoming.patient_ref,
        )
        state.reschedule_done = True
        state.last_appointment_id = context.upcoming_appointment.id
        state.booked_slot_label = slot.speakable
        self._mark_terminal(context)
        await self._send_confirmation(context, slot.speakable, slot.practitioner_name)
        return BookingOutcome(
            "booked",
            f"Done. Your appointment has been moved to {slot.speakable_with_practitioner}. "
            "I've sent you a text with the new time. Is there anything else I can help with?",
        )

    async def cancel(self, context: ConversationContext) -> BookingOutcome:
        """Cancel the cached upcoming appointment.

        Raises:
            SchedulingCapabilityError: the capability refused or failed.
        """
        state = context.current_state
        upcoming = context.upcoming_appointment
        if state.cancel_done or upcoming is None:
            return BookingOutcome("skipped")

        try:
            cancelled = await self._provider.cancel(upcoming.id)
        except Exception as exc:
            raise SchedulingCapabilityError(f"Cancel of {upcoming.id} failed: {exc}") from exc
        if not cancelled:
            raise SchedulingCapabilityError(f"Cancel of {upcoming.id} was refused")

        state.cancel_done = True
        self._mark_terminal(context)
        log.info("Cancelled %s for call %s", upcoming.id, context.call_id)
        return BookingOutcome(
            "booked",
            f"All done, your appointment {upcoming.speakable} has been cancelled. "
            "Is there anything else I can help with?",
        )
