"""Tests for outbound SMS notifications and operator alerts."""

import os
import sys
from urllib.parse import parse_qs

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest

from receptionist.alerts import LoggingAlertSink
from receptionist.notifications import LoggingNotifier, TwilioSmsNotifier, map_link
from receptionist.privacy import redact_pii


def _twilio(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return TwilioSmsNotifier("AC123", "secret", "+61700000000", client=client)


class TestMessageFormats:
    @pytest.mark.asyncio
    async def test_confirmation(self):
        notifier = LoggingNotifier()
        await notifier.send_confirmation(
            "+61400111222", "Harbour Physio", "tomorrow at 4:00pm", "Dr Lee", "12 Quay St",
        )
        to, body = notifier.sent[0]
        assert to == "+61400111222"
        assert body == (
            "Your appointment at Harbour Physio has been confirmed for tomorrow at 4:00pm "
            "with Dr Lee. Address: 12 Quay St. Reply or call us if you need to make changes."
        )

    @pytest.mark.asyncio
    async def test_intake_form(self):
        notifier = LoggingNotifier()
        await notifier.send_intake_form("+61400111222", "Harbour Physio", "https://forms.example.com/intake")
        assert notifier.sent[0][1].endswith("https://forms.example.com/intake")

    @pytest.mark.asyncio
    async def test_map_link(self):
        notifier = LoggingNotifier()
        await notifier.send_map_link("+61400111222", "Harbour Physio", "12 Quay St, Brisbane QLD")
        assert "https://maps.google.com/maps?q=12+Quay+St%2C+Brisbane+QLD" in notifier.sent[0][1]

    @pytest.mark.asyncio
    async def test_fallback(self):
        notifier = LoggingNotifier()
        await notifier.send_fallback("+61400111222", "Harbour Physio", "tomorrow at 4:00pm")
        assert "PENDING CONFIRMATION" in notifier.sent[0][1]

    def test_map_link_encodes(self):
        assert map_link("1 A St") == "https://maps.google.com/maps?q=1+A+St"


class TestTwilioSmsNotifier:
    @pytest.mark.asyncio
    async def test_posts_message(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"sid": "SM1"})

        assert await _twilio(handler).send_sms("+61400111222", "Hello") is True

        request = seen[0]
        assert request.url.path == "/2010-04-01/Accounts/AC123/Messages.json"
        assert request.headers["authorization"].startswith("Basic ")
        form = parse_qs(request.content.decode())
        assert form == {"To": ["+61400111222"], "From": ["+61700000000"], "Body": ["Hello"]}

    @pytest.mark.asyncio
    async def test_http_error_returns_false(self):
        def handler(request):
            return httpx.Response(400, json={"message": "invalid number"})

        assert await _twilio(handler).send_sms("+61400111222", "Hello") is False

    @pytest.mark.asyncio
    async def test_transport_error_returns_false(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        assert await _twilio(handler).send_sms("+61400111222", "Hello") is False

    @pytest.mark.asyncio
    async def test_missing_number(self):
        def handler(request):
            raise AssertionError("should not be called")

        assert await _twilio(handler).send_sms("", "Hello") is False


class TestAlertSink:
    @pytest.mark.asyncio
    async def test_keeps_recent(self):
        sink = LoggingAlertSink(max_kept=2)
        for i in range(3):
            await sink.create_alert("booking_failed", {"n": i})
        assert [a["payload"]["n"] for a in sink.recent()] == [1, 2]

    @pytest.mark.asyncio
    async def test_route_handoff(self):
        sink = LoggingAlertSink()
        await sink.route_handoff("CA1", "explicit_request")
        assert sink.handoffs[0].reason == "explicit_request"
        assert sink.handoffs[0].category is None


class TestRedactPii:
    def test_masks_middle(self):
        assert redact_pii("+61400111222") == "+61***22"

    def test_short_values(self):
        assert redact_pii("123") == "***"
        assert redact_pii(None) == "***"
