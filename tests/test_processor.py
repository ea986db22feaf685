"""Tests for TurnProcessor: full multi-turn calls against in-memory backends."""

import asyncio
import os
import sys
from unittest.mock import AsyncMock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from conftest import at
from receptionist.availability import AvailabilityResolver
from receptionist.booking import BOOKING_FAILURE_REPLY, DUPLICATE_REPLY
from receptionist.errors import ContextStoreError
from receptionist.escalation import HANDOFF_ACKNOWLEDGEMENT, EscalationDetector
from receptionist.guards import CLOSING_PROMPT
from receptionist.inference import InferenceResult
from receptionist.processor import NO_AVAILABILITY_REPLY, SILENCE_REPLY, TurnProcessor
from receptionist.providers.base import Appointment
from receptionist.store import InMemoryContextStore

GOODBYE = "Thanks for calling Harbour Physio. Have a lovely day. Goodbye!"


async def _book_today_at_four(engine):
    """Caller asks for 4pm today as a new patient, then confirms the first slot."""
    engine.inference.script("I have today at 4:00pm or 4:30pm with Dr Lee. Which would you like?")
    first = await engine.say("I'd like to book today at 4pm, I'm a new patient")
    engine.inference.script("Great, locking that in.", selected_slot_index=0, booking_confirmed=True)
    second = await engine.say("Yes please, book it. My name is Jane Smith")
    return first, second


class TestSingleBooking:
    @pytest.mark.asyncio
    async def test_offer_then_confirm(self, engine):
        first, second = await _book_today_at_four(engine)

        assert first.call_stage == "offering_slots"
        assert second.spoken_reply == (
            "You're all booked for today at 4:00pm with Dr Lee. I've sent you a "
            "confirmation text and a short new patient form to fill in. "
            "Is there anything else I can help with?"
        )
        assert second.call_stage == "terminal"
        assert second.expect_reply is True

        ctx = await engine.context()
        state = ctx.current_state
        assert state.appointment_created is True
        assert state.terminal_lock is True
        assert state.name == "Jane Smith"
        assert state.is_new_patient is True
        assert state.sms_confirm_sent and state.sms_intake_sent

        assert len(engine.provider.appointments) == 1
        booked = next(iter(engine.provider.appointments.values()))
        assert booked.start == at(19, 16, 0)
        assert booked.party_name == "Jane Smith"
        assert len(engine.notifier.sent) == 2

    @pytest.mark.asyncio
    async def test_first_turn_fetches_slots(self, engine):
        await engine.say("I'd like to book today at 4pm, I'm a new patient")

        ctx = await engine.context()
        assert [s.short_label for s in ctx.available_slots] == ["4:00pm", "4:30pm"]
        assert ctx.available_slots[0].appointment_type_id == "new-patient"
        assert ctx.current_state.time_preference == "today 4:00pm"
        assert ctx.current_state.slots_offered_turn == 1

    @pytest.mark.asyncio
    async def test_same_turn_confirmation_rejected(self, engine):
        engine.inference.script("Booked!", selected_slot_index=0, booking_confirmed=True)

        await engine.say("I'd like to book today at 4pm, I'm a new patient")

        ctx = await engine.context()
        assert engine.provider.appointments == {}
        assert ctx.current_state.selected_slot_index is None
        assert ctx.current_state.booking_confirmed is None
        assert ctx.current_state.appointment_created is False

    @pytest.mark.asyncio
    async def test_naming_offered_time_selects_slot(self, engine):
        await engine.say("I'd like to book tomorrow afternoon, I've been before")
        ctx = await engine.context()
        assert [s.short_label for s in ctx.available_slots] == ["2:30pm", "3:00pm", "3:30pm"]

        result = await engine.say("The 3pm please")

        ctx = await engine.context()
        assert len(ctx.available_slots) == 3
        assert ctx.current_state.selected_slot_index == 1
        assert ctx.current_state.time_preference == "tomorrow 3:00pm"
        assert result.call_stage == "awaiting_confirmation"

        engine.inference.script("Lovely.", booking_confirmed=True)
        booked = await engine.say("Yes book it, my name is Jane Smith")
        assert booked.spoken_reply.startswith("You're all booked for tomorrow at 3:00pm with Dr Lee.")
        # Existing patient: confirmation only, no intake form
        assert len(engine.notifier.sent) == 1

    @pytest.mark.asyncio
    async def test_confirmation_without_name_asks_for_it(self, engine):
        engine.inference.script("Here are the times.")
        await engine.say("I'd like to book today at 4pm, I'm a new patient")
        engine.inference.script("Booking now.", selected_slot_index=0, booking_confirmed=True)

        result = await engine.say("The first one please")

        assert "full name" in result.spoken_reply
        assert engine.provider.appointments == {}

    @pytest.mark.asyncio
    async def test_less_specific_preference_does_not_overwrite(self, engine):
        await engine.say("I'd like to book tomorrow at 4pm")
        await engine.say("tomorrow is good")

        ctx = await engine.context()
        assert ctx.current_state.time_preference == "tomorrow 4:00pm"

    @pytest.mark.asyncio
    async def test_declining_offer_clears_preference(self, engine):
        await engine.say("I'd like to book today at 4pm, I'm a new patient")

        result = await engine.say("No, none of those work")

        ctx = await engine.context()
        assert ctx.available_slots == []
        assert ctx.current_state.time_preference is None
        assert result.call_stage == "collecting_time"

    @pytest.mark.asyncio
    async def test_come_and_see_you_is_a_booking_request(self, engine):
        result = await engine.say("Could I come and see you tomorrow morning? I'm a new patient")

        assert result.terminate is False
        assert result.call_stage == "offering_slots"
        ctx = await engine.context()
        assert ctx.current_state.intent == "book"
        assert [s.short_label for s in ctx.available_slots] == ["9:00am", "9:30am", "10:00am"]

    @pytest.mark.asyncio
    async def test_see_you_while_slots_on_offer_keeps_call_open(self, engine):
        await engine.say("I'd like to book tomorrow morning, I've been before")

        result = await engine.say("Great, see you soon")

        assert result.terminate is False
        ctx = await engine.context()
        assert len(ctx.available_slots) == 3

    @pytest.mark.asyncio
    async def test_no_availability(self, engine):
        result = await engine.say("Can I book Saturday morning? I'm a new patient")

        assert result.spoken_reply == NO_AVAILABILITY_REPLY
        assert engine.inference.calls == []
        ctx = await engine.context()
        assert ctx.current_state.time_preference is None
        assert ctx.current_state.call_stage == "collecting_time"


class TestBookingFailure:
    @pytest.mark.asyncio
    async def test_failure_then_retry(self, engine):
        engine.provider.create_error = RuntimeError("calendar down")

        _, failed = await _book_today_at_four(engine)

        assert failed.spoken_reply == BOOKING_FAILURE_REPLY
        ctx = await engine.context()
        assert ctx.current_state.appointment_created is False
        assert ctx.current_state.booking_failed is True
        assert ctx.current_state.terminal_lock is False
        assert engine.alerts.alerts[0].reason == "booking_failed"
        assert "PENDING CONFIRMATION" in engine.notifier.sent[0][1]

        engine.provider.create_error = None
        engine.inference.script("Trying again.", booking_confirmed=True)
        retried = await engine.say("Yes, please try again")

        assert retried.spoken_reply.startswith("You're all booked for today at 4:00pm")
        ctx = await engine.context()
        assert ctx.current_state.appointment_created is True
        assert ctx.current_state.booking_failed is False
        assert len(engine.provider.appointments) == 1


class TestDuplicateDelivery:
    @pytest.mark.asyncio
    async def test_redelivered_confirmation_books_once(self, engine):
        engine.inference.script("I have today at 4:00pm or 4:30pm with Dr Lee. Which would you like?")
        await engine.say("I'd like to book today at 4pm, I'm a new patient")

        # The same confirming turn arrives twice; the second delivery loads
        # the context before the first one has booked.
        for _ in range(2):
            engine.inference.script("Great, locking that in.", selected_slot_index=0, booking_confirmed=True)
        first_gate, second_gate = asyncio.Event(), asyncio.Event()
        engine.inference.gates = [first_gate, second_gate]
        utterance = "Yes please, book it. My name is Jane Smith"
        first = asyncio.create_task(engine.say(utterance))
        second = asyncio.create_task(engine.say(utterance))
        while engine.inference.waiting < 2:
            await asyncio.sleep(0)

        first_gate.set()
        booked = await first
        second_gate.set()
        duplicate = await second

        assert booked.spoken_reply.startswith("You're all booked for today at 4:00pm")
        assert duplicate.spoken_reply == DUPLICATE_REPLY
        ctx = await engine.context()
        assert ctx.current_state.appointment_created is True
        assert ctx.current_state.terminal_lock is True

        await engine.say("Thanks, what's the parking like?")

        assert len(engine.provider.appointments) == 1
        ctx = await engine.context()
        assert ctx.current_state.appointment_created is True


class TestGroupBooking:
    @pytest.mark.asyncio
    async def test_two_party_booking(self, engine):
        first = await engine.say("I'd like to book for myself and my son")
        assert first.spoken_reply == "Sure. Can I get both names please? Yours first, then your son's."
        assert first.call_stage == "collecting_names"

        second = await engine.say("John Smith and Peter Smith, tomorrow morning")
        assert second.spoken_reply == (
            "I can book John tomorrow at 9:00am and Peter tomorrow at 9:30am with Dr Lee. "
            "Shall I book those for you?"
        )
        assert second.call_stage == "proposing_group"

        third = await engine.say("Yes please")
        assert third.spoken_reply.startswith("You're all booked.")
        assert third.call_stage == "terminal"

        ctx = await engine.context()
        assert ctx.current_state.group_booking_complete == 2
        assert [b.name for b in ctx.group_booking_state.booked] == ["John Smith", "Peter Smith"]
        assert sorted(a.party_name for a in engine.provider.appointments.values()) == [
            "John Smith", "Peter Smith",
        ]
        # Group flow never calls inference
        assert engine.inference.calls == []

    @pytest.mark.asyncio
    async def test_names_one_at_a_time(self, engine):
        await engine.say("I'd like to book for myself and my son")

        result = await engine.say("John Smith")

        assert result.spoken_reply == "Thanks John. And what's your son's name?"
        ctx = await engine.context()
        assert ctx.group_booking_state.parties[0].name == "John Smith"

    @pytest.mark.asyncio
    async def test_no_worries_accepts_proposal(self, engine):
        await engine.say("I'd like to book for myself and my son")
        await engine.say("John Smith and Peter Smith, tomorrow morning")

        result = await engine.say("Yep, no worries")

        assert result.spoken_reply.startswith("You're all booked.")
        assert len(engine.provider.appointments) == 2

    @pytest.mark.asyncio
    async def test_declined_proposal_asks_again(self, engine):
        await engine.say("I'd like to book for myself and my son")
        await engine.say("John Smith and Peter Smith, tomorrow morning")

        result = await engine.say("No thanks")

        assert result.spoken_reply == "No problem. What other day or time would suit you both?"
        assert engine.provider.appointments == {}


class TestTerminalState:
    @pytest.mark.asyncio
    async def test_booking_prompt_after_booking_rewritten(self, engine):
        await _book_today_at_four(engine)
        engine.inference.script("When would you like to come in?", time_preference="friday")

        result = await engine.say("Thanks, what's the parking like?")

        assert result.spoken_reply == CLOSING_PROMPT
        ctx = await engine.context()
        assert ctx.current_state.time_preference == "today 4:00pm"
        assert len(engine.provider.appointments) == 1

    @pytest.mark.asyncio
    async def test_goodbye_ends_call(self, engine):
        await _book_today_at_four(engine)

        result = await engine.say("No that's it, bye")

        assert result.spoken_reply == GOODBYE
        assert result.terminate is True
        assert result.expect_reply is False

        again = await engine.say("hello?")
        assert again.terminate is True

    @pytest.mark.asyncio
    async def test_followup_booking_same_time(self, engine):
        await _book_today_at_four(engine)

        result = await engine.say("Can I also book my son in for the same time?")

        assert "name of the person" in result.spoken_reply
        ctx = await engine.context()
        state = ctx.current_state
        assert state.terminal_lock is False
        assert state.appointment_created is False
        assert state.time_preference == "today 4:00pm"
        assert state.booking_for == "other"
        assert state.followup_bookings == 1
        assert ctx.available_slots == []


class TestPrerequisiteRetry:
    @pytest.mark.asyncio
    async def test_slot_request_fetches_then_infers_again(self, engine):
        engine.inference.script(
            "Let me check.", request_slots=True, is_new_patient=False, time_preference="tomorrow morning",
        )
        engine.inference.script("I have tomorrow at 9:00am, 9:30am or 10:00am. Which suits?")

        result = await engine.say("I'd like to book an appointment")

        assert len(engine.inference.calls) == 2
        assert result.spoken_reply == "I have tomorrow at 9:00am, 9:30am or 10:00am. Which suits?"
        assert result.call_stage == "offering_slots"
        ctx = await engine.context()
        assert ctx.current_state.is_new_patient is False
        assert ctx.current_state.time_preference == "tomorrow morning"
        assert [s.short_label for s in ctx.available_slots] == ["9:00am", "9:30am", "10:00am"]
        assert ctx.current_state.slots_offered_turn == 1

    @pytest.mark.asyncio
    async def test_slot_request_without_patient_type_asks_first(self, engine):
        engine.inference.script("Let me check.", request_slots=True, time_preference="tomorrow morning")

        result = await engine.say("I'd like to book an appointment")

        assert len(engine.inference.calls) == 1
        assert result.spoken_reply == "Have you been to see us before, or will this be your first visit?"
        ctx = await engine.context()
        assert ctx.available_slots == []

    @pytest.mark.asyncio
    async def test_change_intent_looks_up_then_infers_again(self, engine):
        engine.provider.patients[engine.caller_id] = "patient-1"
        engine.provider.appointments["appt-9"] = Appointment(
            id="appt-9", start=at(22, 10, 0), resource_id="dr-lee",
            patient_ref="patient-1", party_name="Jane Smith",
        )
        engine.inference.script("Sure.", intent="change")
        engine.inference.script("I can see Thursday at 10:00am. When would you like to move it to?")

        result = await engine.say("I need to sort out my appointment time")

        assert len(engine.inference.calls) == 2
        assert result.spoken_reply.startswith("I can see Thursday at 10:00am.")
        ctx = await engine.context()
        assert ctx.current_state.intent == "change"
        assert ctx.current_state.appointment_lookup_done is True
        assert ctx.upcoming_appointment.id == "appt-9"


class TestCallControl:
    @pytest.mark.asyncio
    async def test_silence(self, engine):
        result = await engine.say("")
        assert result.spoken_reply == SILENCE_REPLY
        assert result.expect_reply is True
        assert engine.inference.calls == []

    @pytest.mark.asyncio
    async def test_hangup_command(self, engine):
        result = await engine.say("Please end the call")
        assert result.spoken_reply == GOODBYE
        assert result.terminate is True

    @pytest.mark.asyncio
    async def test_hangup_question_then_confirm(self, engine):
        first = await engine.say("Are you going to hang up?")
        assert first.spoken_reply == "I'm still here. Would you like me to end the call?"
        assert first.terminate is False

        second = await engine.say("Yes")
        assert second.terminate is True


class TestEscalation:
    @pytest.mark.asyncio
    async def test_explicit_request_is_absorbing(self, engine):
        result = await engine.say("Can I speak to a real person?")

        assert result.spoken_reply == HANDOFF_ACKNOWLEDGEMENT
        assert result.terminate is True
        assert result.handoff_reason == "explicit_request"
        assert engine.alerts.handoffs[0].call_id == "CA-test-1"

        again = await engine.say("I'd like to book tomorrow")
        assert again.spoken_reply == HANDOFF_ACKNOWLEDGEMENT
        assert engine.inference.calls == []

    @pytest.mark.asyncio
    async def test_low_confidence_inference(self, engine):
        engine.inference.push(InferenceResult(reply="Hmm.", confidence=0.1))

        result = await engine.say("I have a question about my invoice")

        assert result.handoff_reason == "low_confidence"
        ctx = await engine.context()
        assert ctx.current_state.escalated is True

    @pytest.mark.asyncio
    async def test_lookup_failure_escalates(self, engine):
        engine.provider.find_patient = AsyncMock(side_effect=RuntimeError("calendar down"))

        result = await engine.say("I need to cancel my appointment")

        assert result.handoff_reason == "scheduling_error"
        assert result.terminate is True


class TestChangeAndCancel:
    @pytest.fixture
    def existing(self, engine):
        engine.provider.patients[engine.caller_id] = "patient-1"
        engine.provider.appointments["appt-9"] = Appointment(
            id="appt-9", start=at(22, 10, 0), resource_id="dr-lee",
            patient_ref="patient-1", party_name="Jane Smith",
        )
        return engine

    @pytest.mark.asyncio
    async def test_cancel_upcoming(self, existing):
        engine = existing
        engine.inference.script("I can see Thursday at 10:00am. Shall I cancel it?")
        await engine.say("I need to cancel my appointment")

        ctx = await engine.context()
        assert ctx.upcoming_appointment.id == "appt-9"
        assert ctx.upcoming_appointment.speakable == "Thursday at 10:00am"

        engine.inference.script("Cancelling now.", cancel_confirmed=True)
        result = await engine.say("Yes please")

        assert result.spoken_reply.startswith(
            "All done, your appointment Thursday at 10:00am has been cancelled."
        )
        assert "appt-9" not in engine.provider.appointments
        assert result.call_stage == "terminal"

    @pytest.mark.asyncio
    async def test_reschedule_upcoming(self, existing):
        engine = existing
        engine.inference.script("When would you like to move it to?")
        await engine.say("I need to reschedule my appointment")
        engine.inference.script("I have tomorrow at 9:00am.")
        await engine.say("tomorrow morning")

        ctx = await engine.context()
        assert ctx.current_state.is_new_patient is False
        assert ctx.available_slots[0].short_label == "9:00am"

        engine.inference.script("Moving it now.", selected_slot_index=0, reschedule_confirmed=True)
        result = await engine.say("Yes, move it there")

        assert result.spoken_reply.startswith(
            "Done. Your appointment has been moved to tomorrow at 9:00am with Dr Lee."
        )
        assert engine.provider.appointments["appt-9"].start == at(20, 9, 0)


class TestMapLink:
    @pytest.mark.asyncio
    async def test_sent_once(self, engine):
        await engine.say("Can you text me directions?")
        await engine.say("Sorry, can you send the map again?")

        maps = [body for _, body in engine.notifier.sent if "maps.google.com" in body]
        assert len(maps) == 1


class _BrokenStore(InMemoryContextStore):
    async def load(self, call_id):
        raise ContextStoreError("store offline")

    async def save(self, context):
        raise ContextStoreError("store offline")


class TestStoreFailure:
    @pytest.mark.asyncio
    async def test_turn_survives_store_outage(self, provider, inference, executor, notifier, alerts, tenant, clock):
        processor = TurnProcessor(
            store=_BrokenStore(),
            inference=inference,
            resolver=AvailabilityResolver(provider, clock=clock),
            executor=executor,
            escalation=EscalationDetector(),
            provider=provider,
            notifier=notifier,
            alerts=alerts,
            clock=clock,
        )

        result = await processor.process_turn("CA-x", "+61400111222", "Hi there", tenant)

        assert result.spoken_reply == "Sure, how can I help?"
        assert result.terminate is False
