"""Shared fixtures: a frozen clock, scripted inference and an in-memory engine."""

import asyncio
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from zoneinfo import ZoneInfo

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from receptionist.alerts import LoggingAlertSink
from receptionist.availability import AvailabilityResolver
from receptionist.booking import BookingExecutor
from receptionist.escalation import EscalationDetector
from receptionist.inference import InferenceAdapter, InferenceResult
from receptionist.models import Practitioner, TenantContext
from receptionist.notifications import LoggingNotifier
from receptionist.processor import TurnProcessor
from receptionist.providers import Appointment, InMemorySchedulingProvider
from receptionist.store import InMemoryContextStore

BRISBANE = ZoneInfo("Australia/Brisbane")


def at(day: int, hour: int, minute: int = 0) -> datetime:
    """A time in October 2026, Brisbane. The 19th is a Monday."""
    return datetime(2026, 10, day, hour, minute, tzinfo=BRISBANE)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FaultyProvider(InMemorySchedulingProvider):
    """In-memory provider with failure and timing hooks.

    ``create_error`` makes create calls raise, ``create_gate`` suspends
    them until the event is set, ``omit_ids`` returns appointments without
    an id and ``list_errors`` fails availability queries per resource.
    """

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.list_calls: list[tuple[str, str]] = []
        self.list_errors: dict[str, Exception] = {}
        self.create_error: Exception | None = None
        self.create_gate: asyncio.Event | None = None
        self.omit_ids = False

    async def list_slots(self, window, appointment_type_id, resource_id):
        self.list_calls.append((resource_id, appointment_type_id))
        if resource_id in self.list_errors:
            raise self.list_errors[resource_id]
        return await super().list_slots(window, appointment_type_id, resource_id)

    async def create_appointment(self, resource_id, appointment_type_id, start, party_name, caller_id, notes=""):
        if self.create_gate is not None:
            await self.create_gate.wait()
        if self.create_error is not None:
            raise self.create_error
        if self.omit_ids:
            return Appointment(id="", start=start, resource_id=resource_id, party_name=party_name)
        return await super().create_appointment(
            resource_id, appointment_type_id, start, party_name, caller_id, notes,
        )


class ScriptedInference(InferenceAdapter):
    """Returns queued results in order; a neutral reply once the queue is empty.

    Events appended to ``gates`` hold the next calls, one event per call,
    until they are set. ``waiting`` counts calls that reached a gate.
    """

    def __init__(self) -> None:
        self.queue: list[InferenceResult] = []
        self.calls: list[str] = []
        self.gates: list[asyncio.Event] = []
        self.waiting = 0

    def script(self, reply: str, **state) -> "ScriptedInference":
        self.queue.append(InferenceResult(reply=reply, state_delta=dict(state)))
        return self

    def push(self, result: InferenceResult) -> "ScriptedInference":
        self.queue.append(result)
        return self

    async def infer(self, context, utterance):
        if self.gates:
            gate = self.gates.pop(0)
            self.waiting += 1
            await gate.wait()
        self.calls.append(utterance)
        if self.queue:
            result = self.queue.pop(0)
            return InferenceResult(
                reply=result.reply,
                state_delta=dict(result.state_delta),
                handoff_needed=result.handoff_needed,
                handoff_category=result.handoff_category,
                expect_reply=result.expect_reply,
                confidence=result.confidence,
            )
        return InferenceResult(reply="Sure, how can I help?")


@dataclass
class Engine:
    processor: TurnProcessor
    store: InMemoryContextStore
    provider: InMemorySchedulingProvider
    notifier: LoggingNotifier
    alerts: LoggingAlertSink
    inference: ScriptedInference
    executor: BookingExecutor
    tenant: TenantContext
    clock: FakeClock
    call_id: str = "CA-test-1"
    caller_id: str = "+61400111222"
    replies: list = field(default_factory=list)

    async def say(self, utterance: str, call_id: str | None = None):
        result = await self.processor.process_turn(
            call_id or self.call_id, self.caller_id, utterance, self.tenant,
        )
        self.replies.append(result.spoken_reply)
        return result

    async def context(self, call_id: str | None = None):
        return await self.store.load(call_id or self.call_id)


@pytest.fixture
def clock():
    return FakeClock(at(19, 9, 0))


@pytest.fixture
def tenant():
    return TenantContext(
        clinic_name="Harbour Physio",
        address="12 Quay St, Brisbane QLD",
        timezone="Australia/Brisbane",
        practitioners=[Practitioner(id="dr-lee", name="Dr Lee")],
        default_practitioner_id="dr-lee",
        intake_form_url="https://forms.example.com/intake",
        faq={"How much is a consult?": "A standard consult is $95."},
    )


@pytest.fixture
def provider(clock):
    return FaultyProvider(
        open_times={
            "dr-lee": [
                at(19, 16, 0), at(19, 16, 30),
                at(20, 9, 0), at(20, 9, 30), at(20, 10, 0),
                at(20, 14, 30), at(20, 15, 0), at(20, 15, 30), at(20, 16, 0), at(20, 17, 0),
            ],
        },
        clock=clock,
    )


@pytest.fixture
def inference():
    return ScriptedInference()


@pytest.fixture
def notifier():
    return LoggingNotifier()


@pytest.fixture
def alerts():
    return LoggingAlertSink()


@pytest.fixture
def store():
    return InMemoryContextStore()


@pytest.fixture
def executor(provider, notifier, alerts, store, clock):
    return BookingExecutor(provider, notifier, alerts, store, clock=clock)


@pytest.fixture
def engine(store, provider, notifier, alerts, inference, executor, tenant, clock):
    processor = TurnProcessor(
        store=store,
        inference=inference,
        resolver=AvailabilityResolver(provider, clock=clock),
        executor=executor,
        escalation=EscalationDetector(),
        provider=provider,
        notifier=notifier,
        alerts=alerts,
        clock=clock,
    )
    return Engine(
        processor=processor,
        store=store,
        provider=provider,
        notifier=notifier,
        alerts=alerts,
        inference=inference,
        executor=executor,
        tenant=tenant,
        clock=clock,
    )
