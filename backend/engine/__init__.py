"""
Conversation engine - planner and extractor.
"""
from .planner import (
    ConfirmationAnswer,
    TurnPlan,
    TRANSITIONS,
    can_transition,
    classify_confirmation,
    is_affirmative,
    is_negative,
    needs_extraction,
    plan_turn,
    standard_prompt,
)
from .extract import (
    ExtractedFields,
    OpenAIExtractor,
    RuleBasedExtractor,
    TurnExtractor,
    TurnResult,
    build_turn_extractor,
    merge_collected,
)

__all__ = [
    "ConfirmationAnswer",
    "TurnPlan",
    "TRANSITIONS",
    "can_transition",
    "classify_confirmation",
    "is_affirmative",
    "is_negative",
    "needs_extraction",
    "plan_turn",
    "standard_prompt",
    "ExtractedFields",
    "OpenAIExtractor",
    "RuleBasedExtractor",
    "TurnExtractor",
    "TurnResult",
    "build_turn_extractor",
    "merge_collected",
]
