"""
Pydantic models for call sessions, the message log and the portal API.
Python 3.9 compatible - uses typing.List, typing.Dict, typing.Optional
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from intake.specs import CollectedData, ConversationState, Intent


class CallStatus(str, Enum):
    IN_PROGRESS = "in-progress"
    HANDLED = "handled"
    COMPLETED = "completed"
    NO_ANSWER = "no-answer"
    BUSY = "busy"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED.value,
    CallStatus.NO_ANSWER.value,
    CallStatus.BUSY.value,
    CallStatus.FAILED.value,
})


class MessageDirection(str, Enum):
    OUTBOUND_ATTEMPT = "outbound_attempt"
    OUTBOUND_QUEUED = "outbound_queued"
    OUTBOUND_ERROR = "outbound_error"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def is_terminal_status(status: Optional[str]) -> bool:
    return bool(status) and status in TERMINAL_STATUSES


class CallSession(BaseModel):
    """Persisted record for one telephony call."""
    call_id: str  # Twilio Call SID (or voice-AI call id when no SID exists)
    business_id: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None

    # Provider statuses outside CallStatus (ringing, canceled) are kept verbatim
    status: str = CallStatus.IN_PROGRESS.value
    intent: Intent = Intent.OTHER

    # Conversation
    collected: CollectedData = Field(default_factory=CollectedData)
    state: ConversationState = ConversationState.COLLECT
    transcript: str = ""
    last_turn: Optional[int] = None
    last_reply: Optional[str] = None

    # Recap idempotency guard
    sms_sent: bool = False
    sms_sid: Optional[str] = None
    sms_claimed: bool = False

    # Status callback / voice-AI provider
    call_duration_seconds: Optional[int] = None
    provider_data: Dict[str, Any] = Field(default_factory=dict)
    vapi_call_id: Optional[str] = None
    vapi_phone_number_id: Optional[str] = None

    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)

    def appended_transcript(self, speech: str) -> str:
        """Transcript with one more line; never rewrites earlier lines."""
        if not self.transcript:
            return speech
        return f"{self.transcript}\n{speech}"


class MessageLogEntry(BaseModel):
    """One row of the outbound message log."""
    business_id: Optional[str] = None
    call_id: Optional[str] = None
    phone: str
    direction: MessageDirection
    body: str
    created_at: datetime = Field(default_factory=utc_now)


# ============================================================
# Portal reporting models
# ============================================================

class CallMetricsResponse(BaseModel):
    business_id: str
    days: int
    total_calls: int
    answered_calls: int
    leads_captured: int
    transfers: int
    bookings: int
    avg_duration_seconds: int


class RecentCallRow(BaseModel):
    call_id: str
    started_at: Optional[datetime] = None
    status: Optional[str] = None
    from_number: Optional[str] = None
    to_number: Optional[str] = None
    duration_seconds: Optional[int] = None
    outcome: str
    call_reason: Optional[str] = None
    notes: Optional[str] = None
    lead_captured: bool = False
    transferred: bool = False
    booked: bool = False


class RecentCallsResponse(BaseModel):
    rows: List[RecentCallRow]
