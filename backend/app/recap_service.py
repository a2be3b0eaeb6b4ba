"""
Recap Service - sends the post-call SMS recap at most once per call.

Guard order:
1. SMS_ENABLED must be exactly "true"
2. Destination must normalize to E.164
3. sms_sent / sms_claimed already set => skip
4. Atomic claim in the store => only one concurrent request wins

A failed send is logged, the claim is released and the call continues.
send_once() NEVER raises.

Python 3.9 compatible - uses typing.Optional
"""

import asyncio
import logging
import os
from enum import Enum
from typing import Optional

from engine.prompts import recap_sms_body

from .models import CallSession, MessageDirection, MessageLogEntry
from .session_store import CallSessionStore
from .twilio_service import normalize_phone_e164

logger = logging.getLogger(__name__)


class RecapOutcome(str, Enum):
    SENT = "sent"
    DISABLED = "disabled"
    NO_DESTINATION = "no_destination"
    ALREADY_SENT = "already_sent"
    CLAIM_LOST = "claim_lost"
    FAILED = "failed"


def sms_enabled_from_env() -> bool:
    return os.getenv("SMS_ENABLED", "false").strip().lower() == "true"


class RecapNotifier:
    """One-shot SMS recap. The sender is anything with send_sms(to, body) -> sid."""

    def __init__(self, store: CallSessionStore, sender, enabled: Optional[bool] = None):
        self.store = store
        self.sender = sender
        self.enabled = sms_enabled_from_env() if enabled is None else enabled
        if not self.enabled:
            logger.info("RecapNotifier: SMS_ENABLED is not true - recaps disabled")

    async def _log(self, session: CallSession, phone: str, direction: MessageDirection, body: str) -> None:
        try:
            await self.store.log_message(MessageLogEntry(
                business_id=session.business_id,
                call_id=session.call_id,
                phone=phone,
                direction=direction,
                body=body,
            ))
        except Exception as e:
            logger.warning(f"METRIC recap_log_failed call_id={session.call_id} error={type(e).__name__}")

    async def send_once(self, session: CallSession, to_number: Optional[str] = None) -> RecapOutcome:
        """Attempt the recap for this call. Safe to call from every trigger."""
        call_id = session.call_id

        if not self.enabled:
            return RecapOutcome.DISABLED

        destination = normalize_phone_e164(to_number or session.from_number)
        if not destination:
            logger.info(f"METRIC recap_skipped reason=no_destination call_id={call_id}")
            return RecapOutcome.NO_DESTINATION

        if session.sms_sent or session.sms_claimed:
            logger.info(f"METRIC recap_skipped reason=already_sent call_id={call_id}")
            return RecapOutcome.ALREADY_SENT

        try:
            claimed = await self.store.claim_recap(call_id)
        except Exception as e:
            logger.error(f"METRIC recap_claim_failed call_id={call_id} error={type(e).__name__}: {e}")
            return RecapOutcome.FAILED

        if not claimed:
            logger.info(f"METRIC recap_skipped reason=claim_lost call_id={call_id}")
            return RecapOutcome.CLAIM_LOST

        body = recap_sms_body(session.collected)
        await self._log(session, destination, MessageDirection.OUTBOUND_ATTEMPT, body)

        try:
            # Twilio's REST client is blocking
            sid = await asyncio.to_thread(self.sender.send_sms, destination, body)
        except Exception as e:
            logger.error(f"METRIC recap_failed call_id={call_id} error={type(e).__name__}: {e}")
            await self._log(
                session, destination, MessageDirection.OUTBOUND_ERROR, f"{type(e).__name__}: {e}"
            )
            try:
                await self.store.release_recap(call_id)
            except Exception as release_error:
                logger.error(f"Recap claim release failed for call {call_id}: {release_error}")
            return RecapOutcome.FAILED

        try:
            await self.store.mark_recap_sent(call_id, sid)
        except Exception as e:
            # The claim stays taken, so no second SMS goes out
            logger.error(f"Recap sent but not recorded for call {call_id}: {e}")

        await self._log(session, destination, MessageDirection.OUTBOUND_QUEUED, f"SID:{sid}")
        logger.info(f"METRIC recap_sent call_id={call_id} sid={sid}")
        return RecapOutcome.SENT
