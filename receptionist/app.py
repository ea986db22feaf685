"""FastAPI application: the voice transport's view of the engine.

Endpoints:

  POST /voice/turn          JSON turn: {call_id, caller_id, utterance} → reply
  POST /twilio/voice        Twilio speech webhook: returns TwiML <Say>/<Gather>
  GET  /health              Health check
  GET  /api/calls/{id}      Admin: persisted context for a call
  GET  /api/alerts          Admin: recent operator alerts

The Twilio flow:
  1. Incoming call hits POST /twilio/voice with no SpeechResult
  2. We greet the caller inside a <Gather input="speech">
  3. Twilio posts each transcribed utterance back to /twilio/voice
  4. The reply is spoken and we gather again, or hang up when the call ends
"""

from __future__ import annotations

# Load .env into os.environ before settings are read.
from dotenv import load_dotenv
load_dotenv()

import logging
import time
from typing import Optional
from xml.etree.ElementTree import Element, SubElement, tostring

# Configure root logger early so every receptionist.* logger has a handler
# when run via `uvicorn receptionist.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-24s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from receptionist.alerts import AlertSink, LoggingAlertSink
from receptionist.auth import AdminTokenGuard
from receptionist.availability import AvailabilityResolver
from receptionist.booking import BookingExecutor
from receptionist.config import Settings, settings
from receptionist.escalation import EscalationDetector
from receptionist.inference import ClaudeInferenceAdapter
from receptionist.models import Practitioner, TenantContext
from receptionist.notifications import LoggingNotifier, Notifier, TwilioSmsNotifier
from receptionist.privacy import redact_pii
from receptionist.processor import TurnProcessor, TurnResult
from receptionist.providers import InMemorySchedulingProvider
from receptionist.providers.base import SchedulingProvider
from receptionist.providers.google import GoogleCalendarProvider
from receptionist.store import ContextStore, InMemoryContextStore, RedisContextStore

log = logging.getLogger("receptionist.app")

_START_TIME = time.time()

GREETING = "Thanks for calling {clinic}. How can I help you today?"
_VOICE = "Polly.Olivia-Neural"
_XML_DECLARATION = '<?xml version="1.0" encoding="UTF-8"?>'


class TurnRequest(BaseModel):
    call_id: str
    caller_id: str = ""
    utterance: str = ""
    tenant: Optional[TenantContext] = None


class TurnResponse(BaseModel):
    spoken_reply: str
    expect_reply: bool
    terminate: bool
    call_stage: str
    handoff_reason: Optional[str] = None


# ── Wiring ──────────────────────────────────────────────────────

def default_tenant(cfg: Settings) -> TenantContext:
    """Single-clinic tenant built from settings."""
    practitioners = []
    if cfg.google_calendar_id:
        practitioners.append(
            Practitioner(id=cfg.google_calendar_id, name=cfg.practitioner_name)
        )
    return TenantContext(
        clinic_name=cfg.clinic_name,
        address=cfg.clinic_address,
        timezone=cfg.calendar_timezone,
        practitioners=practitioners,
        default_practitioner_id=cfg.google_calendar_id or None,
        new_patient_appointment_type=cfg.new_patient_appointment_type,
        standard_appointment_type=cfg.standard_appointment_type,
        intake_form_url=cfg.intake_form_url,
    )


def _build_provider(cfg: Settings) -> SchedulingProvider:
    if cfg.google_service_account_json:
        return GoogleCalendarProvider(
            service_account_path=cfg.google_service_account_json,
            calendar_ids=[cfg.google_calendar_id],
            appointment_minutes=cfg.appointment_duration_minutes,
        )
    log.warning("No Google service account configured; using in-memory scheduler")
    return InMemorySchedulingProvider()


def _build_store(cfg: Settings) -> ContextStore:
    if cfg.redis_url:
        return RedisContextStore.from_url(cfg.redis_url, ttl_seconds=cfg.context_ttl_seconds)
    return InMemoryContextStore()


def _build_notifier(cfg: Settings) -> Notifier:
    if cfg.twilio_account_sid and cfg.twilio_auth_token and cfg.twilio_phone_number:
        return TwilioSmsNotifier(
            cfg.twilio_account_sid, cfg.twilio_auth_token, cfg.twilio_phone_number,
        )
    return LoggingNotifier()


def build_processor(cfg: Settings, alerts: AlertSink | None = None) -> TurnProcessor:
    """Assemble a TurnProcessor from settings."""
    provider = _build_provider(cfg)
    store = _build_store(cfg)
    notifier = _build_notifier(cfg)
    alerts = alerts or LoggingAlertSink()

    return TurnProcessor(
        store=store,
        inference=ClaudeInferenceAdapter(
            api_key=cfg.anthropic_api_key,
            model=cfg.anthropic_model,
            max_tokens=cfg.inference_max_tokens,
            history_turns=cfg.inference_history_turns,
        ),
        resolver=AvailabilityResolver(
            provider,
            max_slots=cfg.max_offered_slots,
            concurrency=cfg.availability_concurrency,
            lead_minutes=cfg.slot_lead_minutes,
        ),
        executor=BookingExecutor(
            provider,
            notifier,
            alerts,
            store,
            lock_seconds=cfg.booking_lock_seconds,
            group_lock_seconds=cfg.group_booking_lock_seconds,
        ),
        escalation=EscalationDetector(confidence_threshold=cfg.handoff_confidence_threshold),
        provider=provider,
        notifier=notifier,
        alerts=alerts,
        max_terminal_followups=cfg.max_terminal_followups,
        max_followup_bookings=cfg.max_followup_bookings,
    )


# ── TwiML ───────────────────────────────────────────────────────

def render_twiml(reply: str, hang_up: bool) -> str:
    """Speak ``reply``, then gather the next utterance or hang up."""
    response_el = Element("Response")
    if hang_up:
        say_el = SubElement(response_el, "Say", voice=_VOICE)
        say_el.text = reply
        SubElement(response_el, "Hangup")
    else:
        gather_el = SubElement(
            response_el,
            "Gather",
            input="speech",
            action="/twilio/voice",
            method="POST",
            speechTimeout="auto",
        )
        say_el = SubElement(gather_el, "Say", voice=_VOICE)
        say_el.text = reply
        # No speech: post back with an empty SpeechResult
        SubElement(response_el, "Redirect", method="POST").text = "/twilio/voice?silence=1"
    return _XML_DECLARATION + tostring(response_el, encoding="unicode")


# ── Application ─────────────────────────────────────────────────

def create_app(
    processor: TurnProcessor | None = None,
    tenant: TenantContext | None = None,
    alerts: LoggingAlertSink | None = None,
    admin_guard: AdminTokenGuard | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The processor is built lazily from settings on first use unless one
    is injected (tests inject an in-memory one). The admin guard defaults
    to the token and debug flag from settings.
    """
    admin_guard = admin_guard or AdminTokenGuard.from_settings(settings)
    app = FastAPI(
        title="Voice Receptionist Engine",
        description="Turn-based conversation engine for voice appointment booking",
        version="0.1.0",
    )
    app.state.alerts = alerts or LoggingAlertSink()
    app.state.processor = processor
    app.state.tenant = tenant

    def get_processor() -> TurnProcessor:
        if app.state.processor is None:
            app.state.processor = build_processor(settings, app.state.alerts)
        return app.state.processor

    def get_tenant() -> TenantContext:
        if app.state.tenant is None:
            app.state.tenant = default_tenant(settings)
        return app.state.tenant

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        """Lightweight health check; confirms the event loop is responsive."""
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime})

    # ── Turn API ───────────────────────────────────────────────

    @app.post("/voice/turn", response_model=TurnResponse)
    async def voice_turn(req: TurnRequest) -> TurnResponse:
        result: TurnResult = await get_processor().process_turn(
            req.call_id, req.caller_id, req.utterance, req.tenant or get_tenant(),
        )
        return TurnResponse(
            spoken_reply=result.spoken_reply,
            expect_reply=result.expect_reply,
            terminate=result.terminate,
            call_stage=result.call_stage,
            handoff_reason=result.handoff_reason,
        )

    # ── Twilio speech webhook ──────────────────────────────────

    @app.post("/twilio/voice")
    async def twilio_voice(request: Request) -> Response:
        """Twilio webhook: greet on the first hit, then one turn per utterance."""
        form = await request.form()
        call_sid = str(form.get("CallSid", ""))
        caller = str(form.get("From", ""))
        speech = form.get("SpeechResult")
        tenant = get_tenant()

        if speech is None and "silence" not in request.query_params:
            log.info("Incoming call %s from %s", call_sid, redact_pii(caller))
            twiml = render_twiml(GREETING.format(clinic=tenant.clinic_name), hang_up=False)
        else:
            result = await get_processor().process_turn(
                call_sid, caller, str(speech or ""), tenant,
            )
            twiml = render_twiml(result.spoken_reply, hang_up=result.terminate)

        return Response(content=twiml, media_type="application/xml")

    # ── Admin API ──────────────────────────────────────────────

    @app.get("/api/calls/{call_id}", dependencies=[Depends(admin_guard)])
    async def get_call(call_id: str) -> JSONResponse:
        context = await get_processor().store.load(call_id)
        if context is None:
            raise HTTPException(status_code=404, detail=f"Unknown call {call_id}")
        return JSONResponse(context.model_dump(mode="json"))

    @app.get("/api/alerts", dependencies=[Depends(admin_guard)])
    async def list_alerts(limit: int = 50) -> JSONResponse:
        return JSONResponse({"alerts": app.state.alerts.recent(limit)})

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    for warning in settings.validate_startup():
        log.warning(warning)

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "receptionist.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
