"""
Call Controller - one voice webhook delivery in, one spoken reply out.

Per turn:
1. Load (or create) the CallSession
2. Drop redelivered turns (turn <= last_turn) by re-speaking the last reply
3. Extract (collect state only), then plan via engine.planner
4. Merge-then-write the changed fields
5. Fire the recap notifier when the plan asks for it

Store failures never reach the caller: they are logged and the prompt is
still spoken. Extraction failures fall back to the rule-based strategy.

Python 3.9 compatible - uses typing.Any, typing.Dict, typing.Optional
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from engine.extract import RuleBasedExtractor, TurnExtractor, TurnResult
from engine.planner import TurnPlan, needs_extraction, plan_turn, standard_prompt
from intake.specs import ConversationState

from .models import CallSession, CallStatus, is_terminal_status, utc_now
from .recap_service import RecapNotifier
from .session_store import CallSessionStore, SessionStoreError

logger = logging.getLogger(__name__)


@dataclass
class VoiceReply:
    """What to say, whether to hang up, and the turn number for the next Gather."""
    text: str
    end_call: bool
    next_turn: int


def parse_duration(raw: Optional[str]) -> Optional[int]:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        return int(str(raw).strip())
    except ValueError:
        logger.warning(f"Ignoring non-numeric call duration: {raw!r}")
        return None


def parse_turn(raw: Optional[str]) -> Optional[int]:
    """Turn number from the gather action query; malformed values count as absent."""
    if raw is None or str(raw).strip() == "":
        return None
    try:
        turn = int(str(raw).strip())
    except ValueError:
        logger.warning(f"Ignoring malformed turn parameter: {raw!r}")
        return None
    return turn if turn >= 0 else None


class CallController:
    """Runs the conversation state machine across stateless webhook requests."""

    def __init__(
        self,
        store: CallSessionStore,
        extractor: TurnExtractor,
        notifier: RecapNotifier,
        default_business_id: Optional[str] = None,
    ):
        self.store = store
        self.extractor = extractor
        self.notifier = notifier
        self.default_business_id = default_business_id

    # =========================================================================
    # VOICE TURNS
    # =========================================================================

    async def _resolve_business_id(self, to_number: Optional[str]) -> Optional[str]:
        if self.default_business_id:
            return self.default_business_id
        if not to_number:
            return None
        try:
            return await self.store.lookup_business_id(twilio_number=to_number)
        except SessionStoreError as e:
            logger.warning(f"Business lookup failed for {to_number}: {e}")
            return None

    async def _load_session(
        self,
        call_id: str,
        from_number: Optional[str],
        to_number: Optional[str],
    ) -> CallSession:
        business_id = await self._resolve_business_id(to_number)
        try:
            return await self.store.get_or_create(
                call_id,
                business_id=business_id,
                from_number=from_number,
                to_number=to_number,
            )
        except SessionStoreError as e:
            logger.error(
                f"METRIC session_load_failed call_id={call_id} error={e}", exc_info=True
            )
            # Keep talking with a session that lives for this request only
            return CallSession(
                call_id=call_id,
                business_id=business_id,
                from_number=from_number or None,
                to_number=to_number or None,
                started_at=utc_now(),
            )

    async def _extract(self, session: CallSession, speech: str) -> TurnResult:
        try:
            return await self.extractor.extract(session.collected, speech)
        except Exception as e:
            logger.error(f"METRIC extraction_fallback reason=extractor_raised error={type(e).__name__}")
            return RuleBasedExtractor().extract_sync(session.collected, speech)

    def _changes_for(
        self,
        session: CallSession,
        plan: TurnPlan,
        speech: str,
        turn: Optional[int],
    ) -> Dict[str, Any]:
        changes: Dict[str, Any] = {
            "state": plan.next_state,
            "transcript": session.appended_transcript(speech),
            "last_reply": plan.reply,
        }
        if turn is not None:
            changes["last_turn"] = turn
        if plan.collected is not None:
            changes["collected"] = plan.collected
            changes["intent"] = plan.collected.intent
        if plan.status and not session.is_terminal:
            changes["status"] = plan.status
            if is_terminal_status(plan.status) and session.ended_at is None:
                changes["ended_at"] = utc_now()
        return changes

    async def handle_voice_turn(
        self,
        call_id: str,
        from_number: Optional[str],
        to_number: Optional[str],
        speech: Optional[str],
        turn: Optional[int] = None,
    ) -> VoiceReply:
        """Process one voice delivery and return the reply to speak."""
        speech = (speech or "").strip()
        session = await self._load_session(call_id, from_number, to_number)

        if turn is not None and session.last_turn is not None and turn <= session.last_turn:
            logger.warning(
                f"METRIC duplicate_turn call_id={call_id} turn={turn} last_turn={session.last_turn}"
            )
            return VoiceReply(
                text=session.last_reply or standard_prompt(session.state, session.collected),
                end_call=session.state == ConversationState.DONE,
                next_turn=session.last_turn + 1,
            )

        next_turn = (turn if turn is not None else (session.last_turn or 0)) + 1

        extraction = None
        if needs_extraction(session.state, speech):
            extraction = await self._extract(session, speech)

        plan = plan_turn(session.state, session.collected, speech, extraction)
        logger.info(
            f"Call {call_id} turn={turn}: {session.state.value} -> {plan.next_state.value}"
            f" (end_call={plan.end_call}, send_recap={plan.send_recap})"
        )

        current = session
        if plan.persist:
            changes = self._changes_for(session, plan, speech, turn)
            try:
                current = await self.store.upsert(call_id, changes)
            except SessionStoreError as e:
                logger.error(
                    f"METRIC session_write_failed call_id={call_id} error={e}", exc_info=True
                )
                current = session.model_copy(update=changes)

        if plan.send_recap:
            outcome = await self.notifier.send_once(current, from_number)
            logger.info(f"Call {call_id} recap outcome: {outcome.value}")

        return VoiceReply(text=plan.reply, end_call=plan.end_call, next_turn=next_turn)

    # =========================================================================
    # STATUS CALLBACKS
    # =========================================================================

    async def handle_status_callback(
        self,
        call_id: str,
        status: str,
        duration: Optional[str] = None,
    ) -> None:
        """Record a provider status change. Never touches conversation fields."""
        status = (status or "").strip().lower()
        if not status:
            logger.warning(f"Status callback without status for call {call_id}")
            return

        try:
            session = await self.store.get(call_id)
        except SessionStoreError as e:
            logger.error(f"METRIC status_update_failed call_id={call_id} error={e}", exc_info=True)
            return

        changes: Dict[str, Any] = {}
        if session is not None and session.is_terminal and not is_terminal_status(status):
            logger.info(f"Call {call_id}: ignoring {status} after terminal {session.status}")
        else:
            changes["status"] = status

        if is_terminal_status(status) and (session is None or session.ended_at is None):
            changes["ended_at"] = utc_now()

        seconds = parse_duration(duration)
        if seconds is not None:
            changes["call_duration_seconds"] = seconds

        if not changes:
            return

        try:
            current = await self.store.upsert(call_id, changes)
        except SessionStoreError as e:
            logger.error(f"METRIC status_update_failed call_id={call_id} error={e}", exc_info=True)
            return

        logger.info(f"Call {call_id} status updated to {current.status} (duration={seconds})")

        # Callers who hang up before confirming still get their recap
        if status == CallStatus.COMPLETED.value and current.collected.has_any_field():
            outcome = await self.notifier.send_once(current)
            logger.info(f"Call {call_id} recap outcome on completion: {outcome.value}")
