"""
Tests for the deterministic planner and spoken prompts.

These tests verify that:
1. Yes/no classification matches the fixed token lists
2. Only legal state transitions happen
3. plan_turn picks the right reply and side effects per state
4. Questions follow the fixed field order
"""
import pytest

from engine.extract import TurnResult, is_intake_complete
from engine.planner import (
    ConfirmationAnswer,
    TRANSITIONS,
    can_transition,
    classify_confirmation,
    plan_turn,
    standard_prompt,
)
from engine.prompts import (
    CLOSING_REMARK,
    CORRECTION_PROMPT,
    OPENING_GREETING,
    YES_OR_NO_PROMPT,
    confirmation_prompt,
    next_question,
    recap_line,
    recap_sms_body,
)
from intake.specs import CollectedData, ConversationState, Intent, booking_fields

COMPLETE_BOOKING = CollectedData(
    intent=Intent.SERVICE_REQUEST,
    service="oil change",
    location="123 Main Street",
    preferred_time="tomorrow at 3pm",
)


def extraction(merged: CollectedData, done: bool, reply: str = "What day and time works best for you?") -> TurnResult:
    return TurnResult(merged=merged, done=done, speakable_reply=reply, short_summary="", strategy="openai")


class TestConfirmationClassification:

    @pytest.mark.parametrize("speech", ["yes", "Yeah.", "yep!", "Correct", "right", "yes please", "YES, that's it"])
    def test_affirmative(self, speech):
        assert classify_confirmation(speech) == ConfirmationAnswer.YES

    @pytest.mark.parametrize("speech", ["no", "Nope.", "nah", "incorrect", "no that's wrong", "No, wrong day"])
    def test_negative(self, speech):
        assert classify_confirmation(speech) == ConfirmationAnswer.NO

    @pytest.mark.parametrize("speech", ["maybe", "yesterday", "not sure", "sounds good", "know what", ""])
    def test_unclear(self, speech):
        assert classify_confirmation(speech) == ConfirmationAnswer.UNCLEAR


class TestTransitions:

    def test_done_is_terminal(self):
        assert TRANSITIONS[ConversationState.DONE] == {ConversationState.DONE}

    def test_collect_cannot_jump_to_done(self):
        assert not can_transition(ConversationState.COLLECT, ConversationState.DONE)

    def test_confirm_can_regress(self):
        assert can_transition(ConversationState.CONFIRM, ConversationState.COLLECT)


class TestPlanTurn:

    def test_silence_on_first_turn_greets(self):
        plan = plan_turn(ConversationState.COLLECT, CollectedData(), "")
        assert plan.reply == OPENING_GREETING
        assert plan.next_state == ConversationState.COLLECT
        assert plan.persist is False
        assert plan.send_recap is False

    def test_silence_mid_collect_repeats_question(self):
        data = CollectedData(intent=Intent.BOOKING, service="haircut")
        plan = plan_turn(ConversationState.COLLECT, data, "   ")
        assert plan.reply == "What city or address should we come to?"
        assert plan.persist is False

    def test_silence_in_confirm_rereads_summary(self):
        plan = plan_turn(ConversationState.CONFIRM, COMPLETE_BOOKING, "")
        assert plan.reply == confirmation_prompt(COMPLETE_BOOKING)
        assert plan.next_state == ConversationState.CONFIRM

    def test_collect_incomplete_asks_next(self):
        merged = CollectedData(intent=Intent.BOOKING, service="haircut", location="downtown")
        plan = plan_turn(ConversationState.COLLECT, CollectedData(), "haircut downtown", extraction(merged, False))
        assert plan.next_state == ConversationState.COLLECT
        assert plan.reply == "Got it. What day and time works best for you?"
        assert plan.collected == merged
        assert plan.send_recap is False
        assert plan.status == "handled"

    def test_collect_complete_moves_to_confirm_with_recap(self):
        reply = confirmation_prompt(COMPLETE_BOOKING)
        plan = plan_turn(ConversationState.COLLECT, CollectedData(), "oil change", extraction(COMPLETE_BOOKING, True, reply))
        assert plan.next_state == ConversationState.CONFIRM
        assert plan.reply.endswith("Is that correct?")
        assert plan.send_recap is True
        assert plan.end_call is False

    def test_collect_requires_extraction(self):
        with pytest.raises(ValueError):
            plan_turn(ConversationState.COLLECT, CollectedData(), "hello")

    def test_confirm_yes_finishes(self):
        plan = plan_turn(ConversationState.CONFIRM, COMPLETE_BOOKING, "yes")
        assert plan.next_state == ConversationState.DONE
        assert plan.reply == CLOSING_REMARK
        assert plan.end_call is True
        assert plan.send_recap is True
        assert plan.status == "completed"
        assert plan.collected is None

    def test_confirm_no_returns_to_collect(self):
        plan = plan_turn(ConversationState.CONFIRM, COMPLETE_BOOKING, "no that's wrong")
        assert plan.next_state == ConversationState.COLLECT
        assert plan.reply == CORRECTION_PROMPT
        assert plan.collected is None
        assert plan.send_recap is False

    def test_confirm_unclear_asks_yes_or_no(self):
        plan = plan_turn(ConversationState.CONFIRM, COMPLETE_BOOKING, "hmm maybe")
        assert plan.next_state == ConversationState.CONFIRM
        assert plan.reply == YES_OR_NO_PROMPT

    def test_speech_after_done_closes_again(self):
        plan = plan_turn(ConversationState.DONE, COMPLETE_BOOKING, "wait one more thing")
        assert plan.next_state == ConversationState.DONE
        assert plan.reply == CLOSING_REMARK
        assert plan.end_call is True
        assert plan.persist is False


class TestPrompts:

    def test_question_order(self):
        data = CollectedData()
        asked = []
        for name, value in [
            ("service", "detailing"),
            ("location", "Springfield"),
            ("preferred_time", "monday"),
            ("vehicle_or_item", "pickup truck"),
            ("caller_name", "Sam"),
        ]:
            asked.append(next_question(data))
            data = data.model_copy(update={name: value})
        asked.append(next_question(data))

        assert asked == [
            "What service are you looking for?",
            "What city or address should we come to?",
            "What day and time works best for you?",
            "What kind of vehicle is it?",
            "What name should I put this under?",
            "Anything else you'd like me to note?",
        ]

    def test_confirmation_for_notes_only(self):
        data = CollectedData(notes="what are your hours")
        assert confirmation_prompt(data) == (
            "Perfect. Just to confirm: you said what are your hours. Is that correct?"
        )

    @pytest.mark.parametrize("notes", [
        "do you work on weekends?",
        "do you work on weekends.",
        "do you work on weekends?! ",
    ])
    def test_confirmation_drops_trailing_punctuation(self, notes):
        assert confirmation_prompt(CollectedData(notes=notes)) == (
            "Perfect. Just to confirm: you said do you work on weekends. Is that correct?"
        )

    def test_booking_fields_drive_completion_and_summary(self):
        assert [spec.name for spec in booking_fields()] == ["service", "location", "preferred_time"]
        partial = COMPLETE_BOOKING.model_copy(update={"preferred_time": None})
        assert COMPLETE_BOOKING.has_booking_fields() is True
        assert partial.has_booking_fields() is False
        assert is_intake_complete(partial, extracted_any=True) is False
        assert confirmation_prompt(COMPLETE_BOOKING) == (
            "Perfect. Just to confirm: oil change, in 123 Main Street, tomorrow at 3pm. Is that correct?"
        )

    def test_standard_prompt_done(self):
        assert standard_prompt(ConversationState.DONE, COMPLETE_BOOKING) == CLOSING_REMARK

    def test_recap_line_order_and_labels(self):
        data = COMPLETE_BOOKING.model_copy(update={"caller_name": "Dana", "vehicle_or_item": "Civic"})
        assert recap_line(data) == (
            "Service: oil change • Vehicle: Civic • Location: 123 Main Street • "
            "Time: tomorrow at 3pm • Name: Dana"
        )

    def test_recap_fallback_line(self):
        body = recap_sms_body(CollectedData(notes="call me back"))
        assert body == (
            "Thanks for calling! Here's what I have:\n"
            "We captured your request, but a few details may be missing.\n\n"
            "Reply YES to confirm or text any changes."
        )
