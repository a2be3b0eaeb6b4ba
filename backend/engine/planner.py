"""
Deterministic conversation planner.

This module is the SINGLE SOURCE OF TRUTH for call flow decisions:
- What the receptionist says next
- When the state moves between collect, confirm and done
- When the call ends
- When the SMS recap should be attempted

NO I/O happens here. The call controller performs extraction, persistence
and notification around the TurnPlan returned by plan_turn().
"""
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Dict, Optional, Set

from intake.specs import CollectedData, ConversationState

from .prompts import (
    ACKNOWLEDGEMENT,
    CLOSING_REMARK,
    CORRECTION_PROMPT,
    OPENING_GREETING,
    YES_OR_NO_PROMPT,
    confirmation_prompt,
    next_question,
)

if TYPE_CHECKING:
    from .extract import TurnResult

logger = logging.getLogger(__name__)


class ConfirmationAnswer(str, Enum):
    YES = "YES"
    NO = "NO"
    UNCLEAR = "UNCLEAR"


AFFIRMATIVE_TOKENS = frozenset({"yes", "yeah", "yep", "correct", "right"})
NEGATIVE_TOKENS = frozenset({"no", "nope", "nah", "incorrect"})

TRANSITIONS: Dict[ConversationState, Set[ConversationState]] = {
    ConversationState.COLLECT: {ConversationState.COLLECT, ConversationState.CONFIRM},
    ConversationState.CONFIRM: {
        ConversationState.CONFIRM,
        ConversationState.COLLECT,
        ConversationState.DONE,
    },
    ConversationState.DONE: {ConversationState.DONE},
}


@dataclass
class TurnPlan:
    """Decision for one turn."""
    next_state: ConversationState
    reply: str
    end_call: bool = False
    send_recap: bool = False
    # Merged record to persist; None means collected data is unchanged
    collected: Optional[CollectedData] = None
    # Call status to write; None means leave it alone
    status: Optional[str] = None
    # False for turns that must not write anything (silence, terminal calls)
    persist: bool = True


# =============================================================================
# YES / NO CLASSIFICATION
# =============================================================================

def normalize_utterance(raw: str) -> str:
    """Lower-case, letters and single spaces only."""
    text = re.sub(r"[^a-z\s]", " ", (raw or "").lower())
    return re.sub(r"\s+", " ", text).strip()


def is_affirmative(raw: str) -> bool:
    text = normalize_utterance(raw)
    return text in AFFIRMATIVE_TOKENS or text.startswith("yes ")


def is_negative(raw: str) -> bool:
    text = normalize_utterance(raw)
    return text in NEGATIVE_TOKENS or text.startswith("no ")


def classify_confirmation(raw: str) -> ConfirmationAnswer:
    if is_affirmative(raw):
        return ConfirmationAnswer.YES
    if is_negative(raw):
        return ConfirmationAnswer.NO
    return ConfirmationAnswer.UNCLEAR


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

def can_transition(current: ConversationState, target: ConversationState) -> bool:
    return target in TRANSITIONS.get(current, set())


def _transition(current: ConversationState, target: ConversationState) -> ConversationState:
    """Return target if the move is legal, otherwise stay put."""
    if can_transition(current, target):
        return target
    logger.error(f"Planner: illegal transition {current.value} -> {target.value}, staying")
    return current


def standard_prompt(state: ConversationState, collected: CollectedData) -> str:
    """What to say when the caller said nothing."""
    if state == ConversationState.CONFIRM:
        return confirmation_prompt(collected)
    if state == ConversationState.DONE:
        return CLOSING_REMARK
    if not collected.has_any_field():
        return OPENING_GREETING
    return next_question(collected)


def needs_extraction(state: ConversationState, speech: str) -> bool:
    """Only collect-state turns with actual speech consult the extractor."""
    return state == ConversationState.COLLECT and bool((speech or "").strip())


# =============================================================================
# MAIN PLANNER
# =============================================================================

def plan_turn(
    state: ConversationState,
    collected: CollectedData,
    speech: str,
    extraction: Optional["TurnResult"] = None,
) -> TurnPlan:
    """
    Decide the next step of the call.

    Rules:
    1. No speech => repeat the current state's standard prompt, no writes
    2. done => closing remark and hang up (recap attempt is guarded)
    3. confirm + yes => done, recap, hang up
    4. confirm + no => collect, ask what to change, keep all fields
    5. confirm + unclear => stay, ask for yes or no
    6. collect => confirm if the extraction is complete, otherwise ask
       for the next missing field

    Args:
        state: Current conversation state
        collected: Current collected data
        speech: Caller speech for this turn (may be empty)
        extraction: TurnResult for collect-state turns with speech

    Returns:
        TurnPlan describing reply, next state and side effects
    """
    speech = (speech or "").strip()

    if not speech:
        logger.info(f"Planner: no speech in state={state.value} => standard prompt")
        return TurnPlan(
            next_state=state,
            reply=standard_prompt(state, collected),
            end_call=state == ConversationState.DONE,
            persist=False,
        )

    if state == ConversationState.DONE:
        logger.info("Planner: speech after done => closing remark")
        return TurnPlan(
            next_state=ConversationState.DONE,
            reply=CLOSING_REMARK,
            end_call=True,
            send_recap=True,
            persist=False,
        )

    if state == ConversationState.CONFIRM:
        answer = classify_confirmation(speech)
        logger.info(f"Planner: confirm answer={answer.value}")

        if answer == ConfirmationAnswer.YES:
            return TurnPlan(
                next_state=_transition(state, ConversationState.DONE),
                reply=CLOSING_REMARK,
                end_call=True,
                send_recap=True,
                status="completed",
            )
        if answer == ConfirmationAnswer.NO:
            return TurnPlan(
                next_state=_transition(state, ConversationState.COLLECT),
                reply=CORRECTION_PROMPT,
                status="handled",
            )
        return TurnPlan(
            next_state=ConversationState.CONFIRM,
            reply=YES_OR_NO_PROMPT,
            status="handled",
        )

    if extraction is None:
        raise ValueError("plan_turn requires an extraction result for collect-state speech")

    target = ConversationState.CONFIRM if extraction.done else ConversationState.COLLECT
    next_state = _transition(state, target)
    logger.info(
        f"Planner: collect => {next_state.value} "
        f"(strategy={extraction.strategy}, done={extraction.done})"
    )
    return TurnPlan(
        next_state=next_state,
        reply=f"{ACKNOWLEDGEMENT} {extraction.speakable_reply}",
        collected=extraction.merged,
        send_recap=next_state == ConversationState.CONFIRM,
        status="handled",
    )
