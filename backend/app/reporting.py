"""
Portal reporting - call metrics and recent-call rows for one business.

Outcome flags (lead captured, transferred, booked) come from the voice-AI
"Call Outcome (v1)" structured output stored in provider_data. Calls that
never produced one count toward totals only.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from .models import (
    CallMetricsResponse,
    CallSession,
    CallStatus,
    RecentCallRow,
    RecentCallsResponse,
    utc_now,
)
from .session_store import CallSessionStore

logger = logging.getLogger(__name__)

ACCEPTED_OUTCOME_NAMES = frozenset({"NEAIS Call Outcome (v1)", "Kallr Call Outcome (v1)"})
ALLOWED_DAYS = (1, 7, 30)
DEFAULT_DAYS = 7
RECENT_CALLS_LIMIT = 25

ANSWERED_STATUSES = frozenset({CallStatus.COMPLETED.value, CallStatus.HANDLED.value})


def parse_days(raw: Optional[str]) -> int:
    """1, 7 or 30; anything else means the default window."""
    try:
        days = int(raw) if raw is not None else DEFAULT_DAYS
    except ValueError:
        return DEFAULT_DAYS
    return days if days in ALLOWED_DAYS else DEFAULT_DAYS


def find_outcome_result(structured_outputs: Any) -> Optional[Dict[str, Any]]:
    """Result of the call-outcome structured output, if present."""
    if isinstance(structured_outputs, dict):
        items = structured_outputs.values()
    elif isinstance(structured_outputs, list):
        items = structured_outputs
    else:
        return None

    for item in items:
        if isinstance(item, dict) and str(item.get("name")) in ACCEPTED_OUTCOME_NAMES:
            result = item.get("result")
            return result if isinstance(result, dict) else None
    return None


def outcome_label(result: Optional[Dict[str, Any]]) -> str:
    if not result:
        return "other"
    if result.get("booked") is True:
        return "booked"
    if result.get("transferred") is True:
        return "transferred"
    if result.get("lead_captured") is True:
        return "lead_captured"
    return "info_only"


def call_duration(session: CallSession) -> Optional[int]:
    """Whole seconds between start and end, else the provider-reported duration."""
    if session.started_at and session.ended_at:
        seconds = (session.ended_at - session.started_at).total_seconds()
        if seconds >= 0:
            return int(round(seconds))
    return session.call_duration_seconds


def _text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _outcome_for(session: CallSession) -> Optional[Dict[str, Any]]:
    return find_outcome_result(session.provider_data.get("structured_outputs"))


async def compute_metrics(
    store: CallSessionStore,
    business_id: str,
    days: int,
    now: Optional[datetime] = None,
) -> CallMetricsResponse:
    since = (now or utc_now()) - timedelta(days=days)
    calls = await store.list_calls(business_id, since=since)

    answered = leads = transfers = bookings = 0
    durations = []
    for session in calls:
        if session.status in ANSWERED_STATUSES:
            answered += 1

        result = _outcome_for(session) or {}
        if result.get("lead_captured") is True:
            leads += 1
        if result.get("transferred") is True:
            transfers += 1
        if result.get("booked") is True:
            bookings += 1

        seconds = call_duration(session)
        if seconds is not None:
            durations.append(seconds)

    avg_seconds = round(sum(durations) / len(durations)) if durations else 0
    logger.info(f"Metrics for business={business_id} days={days}: total={len(calls)}")

    return CallMetricsResponse(
        business_id=business_id,
        days=days,
        total_calls=len(calls),
        answered_calls=answered,
        leads_captured=leads,
        transfers=transfers,
        bookings=bookings,
        avg_duration_seconds=avg_seconds,
    )


async def recent_calls(
    store: CallSessionStore,
    business_id: str,
    limit: int = RECENT_CALLS_LIMIT,
) -> RecentCallsResponse:
    calls = await store.list_calls(business_id, limit=limit)

    rows = []
    for session in calls:
        result = _outcome_for(session)
        rows.append(RecentCallRow(
            call_id=session.call_id,
            started_at=session.started_at,
            status=session.status,
            from_number=session.from_number,
            to_number=session.to_number,
            duration_seconds=call_duration(session),
            outcome=outcome_label(result),
            call_reason=_text((result or {}).get("call_reason")),
            notes=_text((result or {}).get("notes")),
            lead_captured=(result or {}).get("lead_captured") is True,
            transferred=(result or {}).get("transferred") is True,
            booked=(result or {}).get("booked") is True,
        ))
    return RecentCallsResponse(rows=rows)
