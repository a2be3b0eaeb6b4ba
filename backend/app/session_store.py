"""
Call Session Store - persistence for CallSession records.

Two implementations of one interface:
1. InMemoryCallSessionStore: process-local dict (development, tests)
2. SupabaseCallSessionStore: Supabase PostgREST over httpx (production)

Writes are always partial: callers pass only the fields they changed, so the
voice-turn handler and the status callback never overwrite each other's
columns. The recap guard uses a compare-and-set claim in both stores.

Python 3.9 compatible - uses typing.Dict, typing.List, typing.Optional
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx

from intake.specs import CollectedData, ConversationState, Intent

from .models import CallSession, MessageLogEntry, utc_now

logger = logging.getLogger(__name__)


class SessionStoreError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


class CallSessionStore(ABC):
    """Upsert-by-call-id persistence with partial updates."""

    @abstractmethod
    async def get(self, call_id: str) -> Optional[CallSession]:
        """Load a session, or None if unknown."""

    @abstractmethod
    async def get_or_create(
        self,
        call_id: str,
        business_id: Optional[str] = None,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
    ) -> CallSession:
        """Return the session, creating it as in-progress on first sight.

        Existing sessions only get missing phone numbers filled in; their
        status and conversation fields are never touched here.
        """

    @abstractmethod
    async def upsert(self, call_id: str, changes: Dict[str, Any]) -> CallSession:
        """Apply a partial update, creating the session if needed.

        provider_data is shallow-merged; every other field is set as given.
        """

    @abstractmethod
    async def claim_recap(self, call_id: str) -> bool:
        """Atomically take the recap claim. True only for the single winner."""

    @abstractmethod
    async def mark_recap_sent(self, call_id: str, sid: Optional[str]) -> None:
        """Record a successful recap send."""

    @abstractmethod
    async def release_recap(self, call_id: str) -> None:
        """Give the claim back after a failed send (no-op once sent)."""

    @abstractmethod
    async def log_message(self, entry: MessageLogEntry) -> None:
        """Append to the outbound message log."""

    @abstractmethod
    async def lookup_business_id(
        self,
        vapi_phone_number_id: Optional[str] = None,
        twilio_number: Optional[str] = None,
    ) -> Optional[str]:
        """Resolve the business that owns a dialed number."""

    @abstractmethod
    async def list_calls(
        self,
        business_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[CallSession]:
        """Sessions for a business, newest first."""

    async def close(self) -> None:
        return None


def _apply_changes(session: CallSession, changes: Dict[str, Any]) -> CallSession:
    """Return a copy of session with changes applied (provider_data merged)."""
    updates = dict(changes)
    if "provider_data" in updates:
        updates["provider_data"] = {**session.provider_data, **(updates["provider_data"] or {})}
    if isinstance(updates.get("collected"), dict):
        updates["collected"] = CollectedData(**updates["collected"])
    return session.model_copy(update=updates)


# =============================================================================
# IN-MEMORY
# =============================================================================

class InMemoryCallSessionStore(CallSessionStore):
    """Process-local store. The lock makes claim_recap a true compare-and-set."""

    def __init__(self, business_numbers: Optional[Dict[str, str]] = None):
        self.sessions: Dict[str, CallSession] = {}
        self.messages: List[MessageLogEntry] = []
        # vapi phone number id or E.164 number -> business id
        self.business_numbers: Dict[str, str] = dict(business_numbers or {})
        self._lock = asyncio.Lock()

    async def get(self, call_id: str) -> Optional[CallSession]:
        session = self.sessions.get(call_id)
        return session.model_copy(deep=True) if session else None

    async def get_or_create(
        self,
        call_id: str,
        business_id: Optional[str] = None,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
    ) -> CallSession:
        async with self._lock:
            session = self.sessions.get(call_id)
            if session is None:
                session = CallSession(
                    call_id=call_id,
                    business_id=business_id,
                    from_number=from_number or None,
                    to_number=to_number or None,
                    started_at=utc_now(),
                )
                logger.info(f"Session created: call_id={call_id}")
            else:
                fill: Dict[str, Any] = {}
                if from_number and not session.from_number:
                    fill["from_number"] = from_number
                if to_number and not session.to_number:
                    fill["to_number"] = to_number
                if business_id and not session.business_id:
                    fill["business_id"] = business_id
                if fill:
                    session = _apply_changes(session, fill)
            self.sessions[call_id] = session
            return session.model_copy(deep=True)

    async def upsert(self, call_id: str, changes: Dict[str, Any]) -> CallSession:
        async with self._lock:
            session = self.sessions.get(call_id)
            if session is None:
                session = CallSession(call_id=call_id, started_at=utc_now())
            session = _apply_changes(session, changes)
            self.sessions[call_id] = session
            return session.model_copy(deep=True)

    async def claim_recap(self, call_id: str) -> bool:
        async with self._lock:
            session = self.sessions.get(call_id)
            if session is None or session.sms_sent or session.sms_claimed:
                return False
            self.sessions[call_id] = session.model_copy(update={"sms_claimed": True})
            return True

    async def mark_recap_sent(self, call_id: str, sid: Optional[str]) -> None:
        async with self._lock:
            session = self.sessions.get(call_id)
            if session is not None:
                self.sessions[call_id] = session.model_copy(
                    update={"sms_sent": True, "sms_sid": sid}
                )

    async def release_recap(self, call_id: str) -> None:
        async with self._lock:
            session = self.sessions.get(call_id)
            if session is not None and not session.sms_sent:
                self.sessions[call_id] = session.model_copy(update={"sms_claimed": False})

    async def log_message(self, entry: MessageLogEntry) -> None:
        self.messages.append(entry)

    async def lookup_business_id(
        self,
        vapi_phone_number_id: Optional[str] = None,
        twilio_number: Optional[str] = None,
    ) -> Optional[str]:
        for key in (vapi_phone_number_id, twilio_number):
            if key and key in self.business_numbers:
                return self.business_numbers[key]
        return None

    async def list_calls(
        self,
        business_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[CallSession]:
        rows = [
            s for s in self.sessions.values()
            if s.business_id == business_id
            and (since is None or (s.started_at is not None and s.started_at >= since))
        ]
        rows.sort(key=lambda s: s.started_at.timestamp() if s.started_at else 0.0, reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [s.model_copy(deep=True) for s in rows]


# =============================================================================
# SUPABASE (PostgREST)
# =============================================================================

# CallSession field -> calls table column, where they differ
_COLUMN_NAMES = {
    "call_id": "twilio_call_sid",
    "collected": "collected_data",
    "state": "conversation_state",
}
_FIELD_NAMES = {column: field for field, column in _COLUMN_NAMES.items()}


def session_to_row(changes: Dict[str, Any]) -> Dict[str, Any]:
    """Convert CallSession field values to JSON-ready calls columns."""
    row: Dict[str, Any] = {}
    for name, value in changes.items():
        if isinstance(value, CollectedData):
            value = value.model_dump(mode="json")
        elif isinstance(value, (Intent, ConversationState)):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        row[_COLUMN_NAMES.get(name, name)] = value
    return row


def row_to_session(row: Dict[str, Any]) -> CallSession:
    """Build a CallSession from a calls row, ignoring unknown columns."""
    known = set(CallSession.model_fields.keys())
    data: Dict[str, Any] = {}
    for column, value in row.items():
        name = _FIELD_NAMES.get(column, column)
        if name in known and value is not None:
            data[name] = value
    collected = data.get("collected")
    if isinstance(collected, dict):
        # Only typed intake keys live in CollectedData
        data["collected"] = {
            k: v for k, v in collected.items() if k in CollectedData.model_fields
        }
    return CallSession(**data)


class SupabaseCallSessionStore(CallSessionStore):
    """Supabase store using the PostgREST API with the service role key."""

    CALLS = "/calls"
    MESSAGES = "/messages"
    PHONE_NUMBERS = "/phone_numbers"

    def __init__(
        self,
        url: Optional[str] = None,
        service_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = (url or os.getenv("SUPABASE_URL") or "").rstrip("/")
        self.service_key = service_key or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        if not self.url or not self.service_key:
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required")

        self.headers = {
            "apikey": self.service_key,
            "Authorization": f"Bearer {self.service_key}",
            "Content-Type": "application/json",
        }
        self.http_client = http_client or httpx.AsyncClient(
            base_url=f"{self.url}/rest/v1",
            timeout=5.0,
        )
        logger.info(f"Supabase session store configured for {self.url}")

    async def close(self) -> None:
        await self.http_client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self.http_client.request(
                method, path, params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise SessionStoreError(f"Supabase {method} {path} failed: {e}") from e

        if not response.content:
            return None
        return response.json()

    def _by_call(self, call_id: str, **filters: str) -> Dict[str, str]:
        params = {"twilio_call_sid": f"eq.{call_id}"}
        params.update(filters)
        return params

    async def get(self, call_id: str) -> Optional[CallSession]:
        rows = await self._request(
            "GET", self.CALLS, params=self._by_call(call_id, select="*", limit="1")
        )
        return row_to_session(rows[0]) if rows else None

    async def _patch(self, call_id: str, changes: Dict[str, Any], **filters: str) -> List[Dict[str, Any]]:
        rows = await self._request(
            "PATCH",
            self.CALLS,
            params=self._by_call(call_id, **filters),
            json=session_to_row(changes),
            prefer="return=representation",
        )
        return rows or []

    async def _insert(self, session: CallSession) -> None:
        # A concurrent insert of the same call id is ignored, not an error
        await self._request(
            "POST",
            self.CALLS,
            params={"on_conflict": "twilio_call_sid"},
            json=session_to_row(session.model_dump(mode="json", exclude_none=True)),
            prefer="resolution=ignore-duplicates,return=minimal",
        )

    async def get_or_create(
        self,
        call_id: str,
        business_id: Optional[str] = None,
        from_number: Optional[str] = None,
        to_number: Optional[str] = None,
    ) -> CallSession:
        existing = await self.get(call_id)
        if existing is None:
            await self._insert(CallSession(
                call_id=call_id,
                business_id=business_id,
                from_number=from_number or None,
                to_number=to_number or None,
                started_at=utc_now(),
            ))
            logger.info(f"Session created: call_id={call_id}")
            existing = await self.get(call_id)
            if existing is None:
                raise SessionStoreError(f"Session {call_id} missing after insert")
            return existing

        fill: Dict[str, Any] = {}
        if from_number and not existing.from_number:
            fill["from_number"] = from_number
        if to_number and not existing.to_number:
            fill["to_number"] = to_number
        if business_id and not existing.business_id:
            fill["business_id"] = business_id
        if fill:
            await self._patch(call_id, fill)
            existing = _apply_changes(existing, fill)
        return existing

    async def upsert(self, call_id: str, changes: Dict[str, Any]) -> CallSession:
        existing = await self.get(call_id)
        if existing is None:
            await self._insert(CallSession(call_id=call_id, started_at=utc_now()))
            existing = await self.get(call_id)
            if existing is None:
                raise SessionStoreError(f"Session {call_id} missing after insert")

        # jsonb columns are replaced by PATCH, so merge provider_data here
        merged = _apply_changes(existing, changes)
        patch = dict(changes)
        if "provider_data" in patch:
            patch["provider_data"] = merged.provider_data
        rows = await self._patch(call_id, patch)
        return row_to_session(rows[0]) if rows else merged

    async def claim_recap(self, call_id: str) -> bool:
        rows = await self._patch(
            call_id,
            {"sms_claimed": True},
            sms_sent="is.false",
            sms_claimed="is.false",
        )
        return len(rows) > 0

    async def mark_recap_sent(self, call_id: str, sid: Optional[str]) -> None:
        await self._patch(call_id, {"sms_sent": True, "sms_sid": sid})

    async def release_recap(self, call_id: str) -> None:
        await self._patch(call_id, {"sms_claimed": False}, sms_sent="is.false")

    async def log_message(self, entry: MessageLogEntry) -> None:
        await self._request(
            "POST",
            self.MESSAGES,
            json={
                "business_id": entry.business_id,
                "twilio_call_sid": entry.call_id,
                "phone": entry.phone,
                "direction": entry.direction.value,
                "body": entry.body,
            },
            prefer="return=minimal",
        )

    async def lookup_business_id(
        self,
        vapi_phone_number_id: Optional[str] = None,
        twilio_number: Optional[str] = None,
    ) -> Optional[str]:
        lookups = (
            ("vapi_phone_number_id", vapi_phone_number_id),
            ("twilio_number", twilio_number),
        )
        for column, value in lookups:
            if not value:
                continue
            rows = await self._request(
                "GET",
                self.PHONE_NUMBERS,
                params={
                    "select": "business_id",
                    column: f"eq.{value}",
                    "active": "is.true",
                    "limit": "1",
                },
            )
            if rows and rows[0].get("business_id"):
                return str(rows[0]["business_id"])
        return None

    async def list_calls(
        self,
        business_id: str,
        since: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[CallSession]:
        params = {
            "select": "*",
            "business_id": f"eq.{business_id}",
            "order": "started_at.desc",
        }
        if since is not None:
            params["started_at"] = f"gte.{since.isoformat()}"
        if limit is not None:
            params["limit"] = str(limit)
        rows = await self._request("GET", self.CALLS, params=params)
        return [row_to_session(row) for row in rows or []]


def build_session_store() -> CallSessionStore:
    """Supabase when configured, otherwise the in-memory store."""
    if os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        return SupabaseCallSessionStore()
    logger.warning("Supabase not configured - call sessions are kept in memory only")
    return InMemoryCallSessionStore()
