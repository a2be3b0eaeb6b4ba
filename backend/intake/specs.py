"""
Intake field specifications.

This module defines the declarative vocabulary of a receptionist call:
which intents exist, which fields are collected, in what order they are
asked for, and how each one is labelled when read back to the caller.
The planner and extractor use these specs instead of per-field branching.
"""
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel


class Intent(str, Enum):
    """Classified purpose of the call."""
    BOOKING = "booking"
    SERVICE_REQUEST = "service_request"
    PRICING = "pricing"
    HOURS = "hours"
    OTHER = "other"


class ConversationState(str, Enum):
    """Conversation-state marker persisted on the call session."""
    COLLECT = "collect"
    CONFIRM = "confirm"
    DONE = "done"


# Intents that require service + location + preferred_time before confirming
BOOKING_INTENTS = frozenset({Intent.BOOKING, Intent.SERVICE_REQUEST})


@dataclass
class FieldSpec:
    """
    Specification for a single intake field.

    Attributes:
        name: The field key on CollectedData (e.g. "service")
        prompt: The question to ask when the field is missing
        label: Short label used in summaries and the SMS recap
        required_for_booking: Must be present before a booking can be confirmed
    """
    name: str
    prompt: str
    label: str
    required_for_booking: bool = False


# Fields in the order they are asked for
INTAKE_FIELDS: List[FieldSpec] = [
    FieldSpec(
        name="service",
        prompt="What service are you looking for?",
        label="Service",
        required_for_booking=True,
    ),
    FieldSpec(
        name="location",
        prompt="What city or address should we come to?",
        label="Location",
        required_for_booking=True,
    ),
    FieldSpec(
        name="preferred_time",
        prompt="What day and time works best for you?",
        label="Time",
        required_for_booking=True,
    ),
    FieldSpec(
        name="vehicle_or_item",
        prompt="What kind of vehicle is it?",
        label="Vehicle",
    ),
    FieldSpec(
        name="caller_name",
        prompt="What name should I put this under?",
        label="Name",
    ),
]

ANYTHING_ELSE_PROMPT = "Anything else you'd like me to note?"

# String fields the extractor may fill (intent is handled separately)
TEXT_FIELD_NAMES = (
    "caller_name",
    "service",
    "vehicle_or_item",
    "location",
    "preferred_time",
    "notes",
)

# Fields read back in the SMS recap, in display order
RECAP_FIELD_ORDER = ("service", "vehicle_or_item", "location", "preferred_time", "caller_name")


class CollectedData(BaseModel):
    """Structured intake data accumulated across the turns of one call."""
    intent: Intent = Intent.OTHER
    caller_name: Optional[str] = None
    service: Optional[str] = None
    vehicle_or_item: Optional[str] = None
    location: Optional[str] = None
    preferred_time: Optional[str] = None
    notes: Optional[str] = None

    @property
    def is_booking_like(self) -> bool:
        return self.intent in BOOKING_INTENTS

    def has_any_field(self) -> bool:
        """True if any intake field (other than intent) has been captured."""
        return any(getattr(self, name) for name in TEXT_FIELD_NAMES)

    def has_booking_fields(self) -> bool:
        """True once every field required for a booking is present."""
        return all(getattr(self, spec.name) for spec in booking_fields())


def get_field_spec(name: str) -> Optional[FieldSpec]:
    """Look up a field spec by name."""
    for spec in INTAKE_FIELDS:
        if spec.name == name:
            return spec
    return None


def booking_fields() -> List[FieldSpec]:
    """Fields that must be present before a booking-like intent can confirm."""
    return [spec for spec in INTAKE_FIELDS if spec.required_for_booking]
