"""
Shared fixtures for the receptionist backend tests.

Environment is fixed BEFORE app.main is imported:
- no OpenAI key (rule-based extraction unless a test injects a fake client)
- a known Twilio auth token so tests can sign webhook requests
- no Supabase (in-memory store)
"""
import json
import os
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

TEST_AUTH_TOKEN = "test-twilio-auth-token"
TEST_BASE_URL = "https://receptionist.test"

os.environ["TWILIO_AUTH_TOKEN"] = TEST_AUTH_TOKEN
for _name in (
    "OPENAI_API_KEY",
    "TWILIO_ACCOUNT_SID",
    "TWILIO_PHONE_NUMBER",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
    "SMS_ENABLED",
    "VAPI_WEBHOOK_SECRET",
    "VAPI_API_KEY",
    "PORTAL_API_TOKEN",
    "DEFAULT_BUSINESS_ID",
):
    os.environ.pop(_name, None)
os.environ["VAPI_ENRICH_DELAY_SECONDS"] = "0"

from httpx import ASGITransport, AsyncClient
from twilio.request_validator import RequestValidator

from app import main
from app.call_controller import CallController
from app.recap_service import RecapNotifier
from app.session_store import InMemoryCallSessionStore
from app.twilio_service import reset_twilio_service
from app.vapi_service import VapiService
from engine.extract import OpenAIExtractor, RuleBasedExtractor


class FakeSmsSender:
    """Stands in for TwilioService.send_sms."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[str, str]] = []

    def send_sms(self, to: str, body: str) -> str:
        if self.fail:
            raise RuntimeError("Twilio unavailable")
        self.sent.append((to, body))
        return f"SM{len(self.sent):032d}"


def openai_reply(payload: Any) -> MagicMock:
    """Fake chat completion whose content is payload (JSON-encoded unless a str)."""
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = payload if isinstance(payload, str) else json.dumps(payload)
    return response


def fake_openai_client(*payloads: Any) -> MagicMock:
    """Client whose chat.completions.create returns payloads in order."""
    client = MagicMock()
    client.chat.completions.create = AsyncMock(side_effect=[openai_reply(p) for p in payloads])
    return client


def sign(url: str, params: Dict[str, str]) -> str:
    return RequestValidator(TEST_AUTH_TOKEN).compute_signature(url, params)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store() -> InMemoryCallSessionStore:
    return InMemoryCallSessionStore()


@pytest.fixture
def sms_sender() -> FakeSmsSender:
    return FakeSmsSender()


@pytest.fixture
def notifier(store, sms_sender) -> RecapNotifier:
    return RecapNotifier(store, sms_sender, enabled=True)


@pytest.fixture
def controller(store, notifier) -> CallController:
    return CallController(store=store, extractor=RuleBasedExtractor(), notifier=notifier)


@pytest.fixture
def ai_controller(store, notifier):
    """Factory: controller whose extractor answers with the given JSON payloads."""
    def build(*payloads: Any) -> CallController:
        extractor = OpenAIExtractor(client=fake_openai_client(*payloads))
        return CallController(store=store, extractor=extractor, notifier=notifier)
    return build


@pytest.fixture
def wired_app(store, controller, monkeypatch):
    """app.main with its services replaced by the test doubles."""
    reset_twilio_service()
    monkeypatch.setattr(main, "session_store", store)
    monkeypatch.setattr(main, "call_controller", controller)
    monkeypatch.setattr(main, "vapi_service", VapiService(store))
    yield main.app
    reset_twilio_service()


@pytest.fixture
async def client(wired_app):
    """Create async test client."""
    transport = ASGITransport(app=wired_app)
    async with AsyncClient(transport=transport, base_url=TEST_BASE_URL) as client:
        yield client


@pytest.fixture
def twilio_post(client):
    """POST a correctly signed Twilio webhook."""
    async def post(path: str, params: Dict[str, str], query: str = "", signature: Optional[str] = None):
        target = f"{path}?{query}" if query else path
        headers = {"X-Twilio-Signature": signature if signature is not None else sign(f"{TEST_BASE_URL}{target}", params)}
        return await client.post(target, data=params, headers=headers)
    return post
