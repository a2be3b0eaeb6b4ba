"""
Vapi Service - ingestion of voice-AI provider webhooks.

Vapi-hosted calls never hit the Twilio voice webhook, so their sessions are
written from Vapi's server messages instead:
1. Shared-secret check (header or ?secret=)
2. Pull the call identifiers out of the loosely shaped payload
3. Upsert the CallSession keyed by the Twilio call SID (or the Vapi call id)
4. For ended calls, fetch the call from the Vapi API a moment later to pick
   up structured outputs (call outcome) for reporting

Python 3.9 compatible - uses typing.Dict, typing.Optional
"""

import asyncio
import hmac
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from .models import CallStatus
from .session_store import CallSessionStore

logger = logging.getLogger(__name__)

WEBHOOK_VERSION = "v2-2025-12-29"
MAX_BODY_BYTES = 1_000_000
MAX_STORED_CHARS = 20_000
DEFAULT_ENRICH_DELAY_SECONDS = 2.5

_datetime_adapter = TypeAdapter(datetime)


@dataclass
class VapiCallEvent:
    """Identifiers and timestamps pulled out of one webhook payload."""
    call_key: str
    event_type: Optional[str] = None
    vapi_call_id: Optional[str] = None
    twilio_call_sid: Optional[str] = None
    vapi_phone_number_id: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    transcript: Optional[str] = None

    @property
    def has_ended(self) -> bool:
        return self.ended_at is not None


def _dig(obj: Any, *path: str) -> Any:
    """Nested dict lookup that returns None on any missing level."""
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value is not None and value != "":
            return str(value)
    return None


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = _datetime_adapter.validate_python(value)
    except ValidationError:
        logger.warning(f"Vapi webhook: unparseable timestamp {value!r}")
        return None
    # Offset-less timestamps are UTC; stored times are always aware
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def truncate_for_storage(obj: Any, max_chars: int = MAX_STORED_CHARS) -> Any:
    """Return obj, or a preview stub if its JSON form is too large to store."""
    try:
        text = json.dumps(obj)
    except (TypeError, ValueError):
        return {"__unserializable": True}
    if len(text) <= max_chars:
        return obj
    return {"__truncated": True, "length": len(text), "preview": text[:max_chars]}


def parse_vapi_event(body: Dict[str, Any]) -> Optional[VapiCallEvent]:
    """
    Extract call identifiers from a Vapi payload.

    Vapi usually wraps everything as {"message": {"type", "call", ...}} but
    older and custom payloads put the same keys at the top level.

    Returns:
        VapiCallEvent, or None when no call key can be found
    """
    msg = body.get("message") if isinstance(body.get("message"), dict) else body
    call = msg.get("call") if isinstance(msg.get("call"), dict) else body.get("call")
    if not isinstance(call, dict):
        call = {}

    vapi_call_id = _first(call.get("id"), msg.get("callId"), body.get("callId"))
    twilio_call_sid = _first(
        _dig(call, "transport", "callSid"),
        call.get("phoneCallProviderId"),
        msg.get("callSid"),
        body.get("callSid"),
    )
    call_key = twilio_call_sid or vapi_call_id
    if not call_key:
        return None

    artifact = msg.get("artifact") or call.get("artifact") or {}
    transcript_raw = _dig(artifact, "transcript") or call.get("transcript") or msg.get("transcript")
    if transcript_raw is None or isinstance(transcript_raw, str):
        transcript = transcript_raw
    else:
        transcript = json.dumps(transcript_raw)

    return VapiCallEvent(
        call_key=call_key,
        event_type=_first(msg.get("type")),
        vapi_call_id=vapi_call_id,
        twilio_call_sid=twilio_call_sid,
        vapi_phone_number_id=_first(
            _dig(msg, "phoneNumber", "id"),
            call.get("phoneNumberId"),
            _dig(call, "phoneNumber", "id"),
        ),
        to_number=_first(
            _dig(msg, "phoneNumber", "number"),
            _dig(call, "phoneNumber", "number"),
            call.get("to"),
            body.get("to"),
        ),
        from_number=_first(
            _dig(call, "customer", "number"),
            _dig(msg, "customer", "number"),
            body.get("from"),
        ),
        started_at=_parse_timestamp(_first(
            call.get("startedAt"), msg.get("startedAt"), body.get("startedAt"), call.get("createdAt")
        )),
        ended_at=_parse_timestamp(_first(call.get("endedAt"), msg.get("endedAt"), body.get("endedAt"))),
        transcript=transcript,
    )


class VapiService:
    """Authenticates, stores and enriches Vapi webhook events."""

    API_BASE_URL = "https://api.vapi.ai"

    def __init__(self, store: CallSessionStore, http_client: Optional[httpx.AsyncClient] = None):
        self.store = store
        self.webhook_secret = os.getenv("VAPI_WEBHOOK_SECRET")
        self.api_key = os.getenv("VAPI_API_KEY")
        self.default_business_id = os.getenv("DEFAULT_BUSINESS_ID")
        self.enrich_delay_seconds = float(
            os.getenv("VAPI_ENRICH_DELAY_SECONDS", str(DEFAULT_ENRICH_DELAY_SECONDS))
        )
        self.http_client = http_client or httpx.AsyncClient(base_url=self.API_BASE_URL, timeout=10.0)

        if not self.webhook_secret:
            logger.warning("VapiService: VAPI_WEBHOOK_SECRET not set - webhook is unauthenticated")
        if not self.api_key:
            logger.warning("VapiService: VAPI_API_KEY not set - ended calls will not be enriched")

    async def close(self) -> None:
        await self.http_client.aclose()

    def is_authorized(self, header_secret: Optional[str], query_secret: Optional[str]) -> bool:
        """Constant-time shared secret check. Open when no secret is configured."""
        if not self.webhook_secret:
            return True
        provided = header_secret or query_secret or ""
        if not provided:
            return False
        return hmac.compare_digest(provided.encode(), self.webhook_secret.encode())

    async def _resolve_business_id(self, event: VapiCallEvent) -> Optional[str]:
        business_id = await self.store.lookup_business_id(
            vapi_phone_number_id=event.vapi_phone_number_id,
            twilio_number=event.to_number,
        )
        return business_id or self.default_business_id

    def _base_changes(self, event: VapiCallEvent, business_id: Optional[str]) -> Dict[str, Any]:
        changes: Dict[str, Any] = {
            "vapi_call_id": event.vapi_call_id,
            "vapi_phone_number_id": event.vapi_phone_number_id,
        }
        optional = {
            "business_id": business_id,
            "from_number": event.from_number,
            "to_number": event.to_number,
            "transcript": event.transcript,
            "started_at": event.started_at,
            "ended_at": event.ended_at,
        }
        changes.update({key: value for key, value in optional.items() if value is not None})
        return changes

    async def ingest(self, body: Dict[str, Any]) -> Optional[VapiCallEvent]:
        """Upsert the session described by body.

        Returns:
            The parsed event, or None if the payload names no call

        Raises:
            SessionStoreError: If the store write fails
        """
        event = parse_vapi_event(body)
        if event is None:
            logger.info("Vapi webhook: payload has no call key, ignoring")
            return None

        business_id = await self._resolve_business_id(event)
        existing = await self.store.get(event.call_key)

        changes = self._base_changes(event, business_id)
        status = CallStatus.COMPLETED.value if event.has_ended else CallStatus.HANDLED.value
        if existing is None or not existing.is_terminal:
            changes["status"] = status
        if existing is not None and existing.ended_at is not None:
            changes.pop("ended_at", None)
        changes["provider_data"] = {
            "source": "vapi",
            "webhook_version": WEBHOOK_VERSION,
            "event_type": event.event_type,
            "extracted": {
                "callKey": event.call_key,
                "twilioCallSid": event.twilio_call_sid,
                "vapiCallId": event.vapi_call_id,
                "vapiPhoneNumberId": event.vapi_phone_number_id,
                "fromNumber": event.from_number,
                "toNumber": event.to_number,
            },
            "raw_truncated": truncate_for_storage(body),
        }

        await self.store.upsert(event.call_key, changes)
        logger.info(
            f"Vapi webhook stored: call_key={event.call_key}, type={event.event_type}, "
            f"status={changes.get('status', existing.status if existing else None)}"
        )
        return event

    async def fetch_call(self, vapi_call_id: str) -> Optional[Dict[str, Any]]:
        """GET /call/{id} from the Vapi API. None when unavailable."""
        if not self.api_key:
            return None
        try:
            response = await self.http_client.get(
                f"/call/{vapi_call_id}",
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"METRIC vapi_fetch_failed call_id={vapi_call_id} error={type(e).__name__}")
            return None

    async def enrich(self, event: VapiCallEvent) -> None:
        """Attach structured outputs from the Vapi API to an ended call.

        Runs as a background task, so every failure is logged, not raised.
        """
        if not event.has_ended or not event.vapi_call_id:
            return

        if self.enrich_delay_seconds > 0:
            # Vapi finishes the analysis shortly after end-of-call-report
            await asyncio.sleep(self.enrich_delay_seconds)

        detail = await self.fetch_call(event.vapi_call_id)
        if not isinstance(detail, dict) or not detail:
            return

        call_obj = detail.get("call") if isinstance(detail.get("call"), dict) else detail
        structured_outputs = _dig(call_obj, "artifact", "structuredOutputs")

        try:
            await self.store.upsert(event.call_key, {
                "status": CallStatus.COMPLETED.value,
                "provider_data": {
                    "structured_outputs": structured_outputs,
                    "vapi_call_truncated": truncate_for_storage(detail),
                },
            })
        except Exception as e:
            logger.error(f"METRIC vapi_enrich_failed call_key={event.call_key} error={e}")
            return

        logger.info(f"Vapi call enriched: call_key={event.call_key}, outputs={structured_outputs is not None}")
