"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("receptionist.config")


class Settings(BaseSettings):
    # LLM
    llm_provider: str = "claude"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-5"
    inference_max_tokens: int = 400
    inference_history_turns: int = 20

    # Twilio SMS
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""

    # Google Calendar
    google_service_account_json: str = ""
    google_calendar_id: str = "primary"
    calendar_timezone: str = "Australia/Brisbane"
    appointment_duration_minutes: int = 30

    # Clinic served by the default tenant
    clinic_name: str = "the clinic"
    clinic_address: str = ""
    practitioner_name: str = ""
    new_patient_appointment_type: str = "new-patient"
    standard_appointment_type: str = "standard"
    intake_form_url: str = ""

    # Context persistence
    redis_url: str = ""
    context_ttl_seconds: int = 86400

    # Booking engine
    booking_lock_seconds: int = 10
    group_booking_lock_seconds: int = 20
    max_offered_slots: int = 3
    availability_concurrency: int = 3
    slot_lead_minutes: int = 15
    max_terminal_followups: int = 2
    max_followup_bookings: int = 2
    handoff_confidence_threshold: float = 0.5

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-ant-...", "AC...", "path/to/service-account.json"}

        if self.llm_provider == "claude":
            if not self.anthropic_api_key or self.anthropic_api_key in _placeholders:
                raise ValueError(
                    "ANTHROPIC_API_KEY is missing or still a placeholder. "
                    "Set it in .env to use Claude."
                )

        if self.booking_lock_seconds <= 0 or self.group_booking_lock_seconds <= 0:
            raise ValueError("Booking lock windows must be positive.")

        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        if not self.twilio_account_sid or self.twilio_account_sid in _placeholders:
            warnings.append("TWILIO_ACCOUNT_SID not set; SMS will only be logged.")

        if not self.google_service_account_json or self.google_service_account_json in _placeholders:
            warnings.append(
                "GOOGLE_SERVICE_ACCOUNT_JSON not set; using the in-memory scheduler."
            )

        if not self.redis_url:
            warnings.append("REDIS_URL not set; call contexts are kept in process memory.")

        return warnings


settings = Settings()
