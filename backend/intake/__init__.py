"""
Intake vocabulary: intents, states and field specifications.
"""
from .specs import (
    Intent,
    ConversationState,
    BOOKING_INTENTS,
    FieldSpec,
    INTAKE_FIELDS,
    ANYTHING_ELSE_PROMPT,
    TEXT_FIELD_NAMES,
    RECAP_FIELD_ORDER,
    CollectedData,
    get_field_spec,
    booking_fields,
)

__all__ = [
    "Intent",
    "ConversationState",
    "BOOKING_INTENTS",
    "FieldSpec",
    "INTAKE_FIELDS",
    "ANYTHING_ELSE_PROMPT",
    "TEXT_FIELD_NAMES",
    "RECAP_FIELD_ORDER",
    "CollectedData",
    "get_field_spec",
    "booking_fields",
]
