"""
Tests for the Twilio webhook endpoints.

These tests verify that:
1. POST /twilio/voice rejects unsigned or mis-signed requests with a hangup
2. Signed requests return a speech Gather carrying the next turn number
3. Signatures are checked against the public URL behind a proxy
4. POST /twilio/status and /twilio/voice/status always answer 200
5. Status callbacks only process verified requests
"""
import xml.etree.ElementTree as ET

import pytest
from httpx import AsyncClient
from fastapi import Request

from app.call_controller import parse_turn
from app.twilio_service import (
    WebhookAuthError,
    build_gather_twiml,
    build_hangup_twiml,
    get_twilio_service,
    public_request_url,
    reset_twilio_service,
)
from engine.prompts import CLOSING_REMARK, OPENING_GREETING, TIMEOUT_GOODBYE, VERIFICATION_FAILED_MESSAGE
from intake.specs import CollectedData, ConversationState

from .conftest import sign

CALL_SID = "CA11111111111111111111111111111111"
VOICE_PARAMS = {
    "CallSid": CALL_SID,
    "From": "+14155550100",
    "To": "+14155550199",
    "AccountSid": "AC00000000000000000000000000000000",
}


def _says(xml_text: str):
    root = ET.fromstring(xml_text)
    return [say.text for say in root.iter("Say")]


def _gather(xml_text: str):
    return ET.fromstring(xml_text).find("Gather")


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestVoiceSignature:

    @pytest.mark.asyncio
    async def test_missing_signature_hangs_up(self, client: AsyncClient, store):
        response = await client.post("/twilio/voice", data=VOICE_PARAMS)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/xml")
        assert _says(response.text) == [VERIFICATION_FAILED_MESSAGE]
        assert "<Hangup/>" in response.text
        assert _gather(response.text) is None
        assert await store.get(CALL_SID) is None

    @pytest.mark.asyncio
    async def test_wrong_signature_hangs_up(self, twilio_post, store):
        response = await twilio_post("/twilio/voice", VOICE_PARAMS, signature="bm90LXRoZS1yaWdodC1zaWc=")
        assert _says(response.text) == [VERIFICATION_FAILED_MESSAGE]
        assert await store.get(CALL_SID) is None

    @pytest.mark.asyncio
    async def test_tampered_params_are_rejected(self, client: AsyncClient, store):
        signature = sign("https://receptionist.test/twilio/voice", VOICE_PARAMS)
        tampered = {**VOICE_PARAMS, "SpeechResult": "yes"}
        response = await client.post("/twilio/voice", data=tampered, headers={"X-Twilio-Signature": signature})
        assert _says(response.text) == [VERIFICATION_FAILED_MESSAGE]

    @pytest.mark.asyncio
    async def test_forwarded_public_url_is_used(self, client: AsyncClient, store):
        public_url = "https://calls.example.com/twilio/voice?turn=1"
        params = {**VOICE_PARAMS, "SpeechResult": "what are your hours"}
        response = await client.post(
            "/twilio/voice?turn=1",
            data=params,
            headers={
                "X-Twilio-Signature": sign(public_url, params),
                "X-Forwarded-Proto": "https",
                "X-Forwarded-Host": "calls.example.com",
            },
        )
        assert _says(response.text)[0].startswith("Got it.")
        assert (await store.get(CALL_SID)).transcript == "what are your hours"

    @pytest.mark.asyncio
    async def test_unconfigured_token_rejects(self, twilio_post, monkeypatch):
        monkeypatch.delenv("TWILIO_AUTH_TOKEN")
        reset_twilio_service()
        response = await twilio_post("/twilio/voice", VOICE_PARAMS)
        assert _says(response.text) == [VERIFICATION_FAILED_MESSAGE]


class TestVoiceTurns:

    @pytest.mark.asyncio
    async def test_first_request_greets(self, twilio_post, store):
        response = await twilio_post("/twilio/voice", VOICE_PARAMS)

        assert response.status_code == 200
        gather = _gather(response.text)
        assert gather.get("input") == "speech"
        assert gather.get("action") == "/twilio/voice?turn=1"
        assert gather.get("timeout") == "10"
        assert gather.get("speechTimeout") == "2"
        assert gather.get("language") == "en-US"
        assert gather.find("Say").get("voice") == "Polly.Joanna"
        assert _says(response.text) == [OPENING_GREETING, TIMEOUT_GOODBYE]
        assert response.text.rstrip().endswith("<Hangup/>\n</Response>")

        session = await store.get(CALL_SID)
        assert session.status == "in-progress"
        assert session.from_number == "+14155550100"
        assert session.to_number == "+14155550199"

    @pytest.mark.asyncio
    async def test_speech_turn_advances(self, twilio_post, store):
        params = {**VOICE_PARAMS, "SpeechResult": "Do you work on weekends & holidays?"}
        response = await twilio_post("/twilio/voice", params, query="turn=1")

        assert _gather(response.text).get("action") == "/twilio/voice?turn=2"
        assert "&amp; holidays" in response.text
        assert _says(response.text)[0] == (
            "Got it. Perfect. Just to confirm: you said Do you work on weekends & holidays. Is that correct?"
        )

        session = await store.get(CALL_SID)
        assert session.state == ConversationState.CONFIRM
        assert session.last_turn == 1
        assert session.status == "handled"

    @pytest.mark.asyncio
    async def test_affirmed_call_hangs_up(self, twilio_post, store):
        await store.get_or_create(CALL_SID, from_number="+14155550100")
        await store.upsert(CALL_SID, {
            "collected": CollectedData(notes="hours"),
            "state": ConversationState.CONFIRM,
            "last_turn": 1,
        })

        response = await twilio_post("/twilio/voice", {**VOICE_PARAMS, "SpeechResult": "yes"}, query="turn=2")

        assert _gather(response.text) is None
        assert _says(response.text) == [CLOSING_REMARK]
        assert "<Hangup/>" in response.text
        assert (await store.get(CALL_SID)).status == "completed"

    @pytest.mark.asyncio
    async def test_redelivered_turn_repeats_reply(self, twilio_post, store):
        params = {**VOICE_PARAMS, "SpeechResult": "what are your hours"}
        first = await twilio_post("/twilio/voice", params, query="turn=1")
        second = await twilio_post("/twilio/voice", params, query="turn=1")

        assert _says(second.text) == _says(first.text)
        assert _gather(second.text).get("action") == "/twilio/voice?turn=2"
        assert (await store.get(CALL_SID)).transcript == "what are your hours"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["turn=abc", "turn=", "turn=-3", "turn=1.5"])
    async def test_malformed_turn_still_gets_twiml(self, twilio_post, store, query):
        params = {**VOICE_PARAMS, "SpeechResult": "what are your hours"}
        response = await twilio_post("/twilio/voice", params, query=query)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/xml")
        assert _gather(response.text).get("action") == "/twilio/voice?turn=1"
        assert (await store.get(CALL_SID)).transcript == "what are your hours"

    @pytest.mark.asyncio
    async def test_malformed_turn_unsigned_hangs_up(self, client: AsyncClient):
        response = await client.post("/twilio/voice?turn=abc", data=VOICE_PARAMS)
        assert response.status_code == 200
        assert _says(response.text) == [VERIFICATION_FAILED_MESSAGE]


class TestParseTurn:

    @pytest.mark.parametrize("raw,expected", [
        (None, None), ("", None), ("abc", None), ("-1", None), ("1.5", None), ("0", 0), (" 7 ", 7),
    ])
    def test_parse_turn(self, raw, expected):
        assert parse_turn(raw) == expected


class TestStatusCallbacks:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/twilio/status", "/twilio/voice/status"])
    async def test_signed_callback_updates_status(self, twilio_post, store, path):
        await store.get_or_create(CALL_SID)
        params = {"CallSid": CALL_SID, "CallStatus": "completed", "CallDuration": "42"}

        response = await twilio_post(path, params)

        assert response.status_code == 200
        assert response.text == "OK"
        session = await store.get(CALL_SID)
        assert session.status == "completed"
        assert session.call_duration_seconds == 42
        assert session.ended_at is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("path", ["/twilio/status", "/twilio/voice/status"])
    async def test_unsigned_callback_is_acknowledged_and_ignored(self, client: AsyncClient, store, path):
        await store.get_or_create(CALL_SID)
        response = await client.post(path, data={"CallSid": CALL_SID, "CallStatus": "failed"})

        assert response.status_code == 200
        assert (await store.get(CALL_SID)).status == "in-progress"


class TestTwimlBuilders:

    def test_gather_escapes_prompt(self):
        twiml = build_gather_twiml('Tom & Jerry\'s "shop" <now>', 4)
        assert "Tom &amp; Jerry&apos;s &quot;shop&quot; &lt;now&gt;" in twiml
        assert ET.fromstring(twiml).find("Gather").get("action") == "/twilio/voice?turn=4"

    def test_hangup(self):
        twiml = build_hangup_twiml("Bye now.")
        assert _says(twiml) == ["Bye now."]
        assert ET.fromstring(twiml).find("Hangup") is not None


def _request(path: str, query: str, headers: dict) -> Request:
    return Request({
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "server": ("10.0.0.5", 8000),
        "path": path,
        "query_string": query.encode(),
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
    })


class TestPublicUrl:

    def test_prefers_forwarded_headers(self):
        request = _request("/twilio/voice", "turn=3", {
            "host": "10.0.0.5:8000",
            "x-forwarded-proto": "https, http",
            "x-forwarded-host": "calls.example.com, proxy.internal",
        })
        assert public_request_url(request) == "https://calls.example.com/twilio/voice?turn=3"

    def test_defaults_to_https_with_host(self):
        request = _request("/twilio/status", "", {"host": "calls.example.com"})
        assert public_request_url(request) == "https://calls.example.com/twilio/status"

    def test_verify_signature_raises(self):
        service = get_twilio_service()
        with pytest.raises(WebhookAuthError):
            service.verify_signature("https://calls.example.com/twilio/voice", {"CallSid": "CA1"}, "")
