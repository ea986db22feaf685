"""Outbound text notifications (confirmation, intake form, map link, fallback).

Notifications are fire-and-forget: a failed send is logged and reported
as ``False`` but never raised into the turn.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from urllib.parse import quote_plus

import httpx

from receptionist.privacy import redact_pii

log = logging.getLogger("receptionist.notifications")

TWILIO_API = "https://api.twilio.com/2010-04-01"


def map_link(address: str) -> str:
    return f"https://maps.google.com/maps?q={quote_plus(address)}"


class Notifier(ABC):
    """Formats the clinic's messages; subclasses deliver them."""

    @abstractmethod
    async def send_sms(self, to: str, body: str) -> bool:
        """Deliver one text message. Returns False if it was not sent."""

    async def send_confirmation(
        self,
        to: str,
        clinic_name: str,
        when: str,
        practitioner_name: str = "",
        address: str = "",
    ) -> bool:
        body = f"Your appointment at {clinic_name} has been confirmed for {when}"
        if practitioner_name:
            body += f" with {practitioner_name}"
        body += "."
        if address:
            body += f" Address: {address}."
        body += " Reply or call us if you need to make changes."
        return await self.send_sms(to, body)

    async def send_intake_form(self, to: str, clinic_name: str, form_url: str) -> bool:
        body = (
            f"Thanks for calling {clinic_name}! Please complete your details "
            f"here (takes 30 seconds): {form_url}"
        )
        return await self.send_sms(to, body)

    async def send_map_link(self, to: str, clinic_name: str, address: str) -> bool:
        body = f"Here's a map link with directions to {clinic_name}: {map_link(address)}"
        return await self.send_sms(to, body)

    async def send_fallback(self, to: str, clinic_name: str, requested: str) -> bool:
        body = (
            f"Thanks for calling {clinic_name}. Requested: {requested} - PENDING "
            "CONFIRMATION. Our reception team will text you shortly to confirm."
        )
        return await self.send_sms(to, body)


class LoggingNotifier(Notifier):
    """Keeps messages in memory and logs them; used when SMS is not configured."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    async def send_sms(self, to: str, body: str) -> bool:
        self.sent.append((to, body))
        log.info("SMS to %s: %s", redact_pii(to), body)
        return True


class TwilioSmsNotifier(Notifier):
    """Sends SMS through the Twilio Messages REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from = from_number
        self._client = client
        self._timeout = timeout

    async def _post(self, client: httpx.AsyncClient, to: str, body: str) -> httpx.Response:
        resp = await client.post(
            f"{TWILIO_API}/Accounts/{self._account_sid}/Messages.json",
            data={"To": to, "From": self._from, "Body": body},
            auth=(self._account_sid, self._auth_token),
        )
        resp.raise_for_status()
        return resp

    async def send_sms(self, to: str, body: str) -> bool:
        if not to:
            log.warning("No caller number; SMS not sent")
            return False
        try:
            if self._client is not None:
                resp = await self._post(self._client, to, body)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await self._post(client, to, body)
        except httpx.HTTPStatusError as exc:
            log.error(
                "Twilio SMS to %s failed (%d): %s",
                redact_pii(to), exc.response.status_code, exc.response.text[:200],
            )
            return False
        except httpx.HTTPError as exc:
            log.error("Twilio SMS to %s failed: %s", redact_pii(to), exc)
            return False

        log.info("SMS sent to %s (sid=%s)", redact_pii(to), resp.json().get("sid", "?"))
        return True
