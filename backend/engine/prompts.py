"""
Spoken lines, summaries and the extraction prompt.

Everything the receptionist says is built here so the planner and the
extractor produce identical wording for identical data.
"""
from intake.specs import (
    ANYTHING_ELSE_PROMPT,
    INTAKE_FIELDS,
    RECAP_FIELD_ORDER,
    CollectedData,
    get_field_spec,
)

OPENING_GREETING = (
    "Thanks for calling. I'm the virtual receptionist. "
    "Take your time. What can I help you with today?"
)
TIMEOUT_GOODBYE = "No worries. Thanks for calling. Goodbye."
CLOSING_REMARK = "Perfect, you're all set. Goodbye."
CORRECTION_PROMPT = "No problem at all. What should I change?"
YES_OR_NO_PROMPT = "Just say yes or no. Is that correct?"
VERIFICATION_FAILED_MESSAGE = "Unable to process this call right now. Goodbye."
ACKNOWLEDGEMENT = "Got it."

RECAP_FALLBACK_LINE = "We captured your request, but a few details may be missing."
RECAP_SEPARATOR = " • "


EXTRACTION_SYSTEM_PROMPT = """You are a professional, friendly AI receptionist for a service business.

You receive:
- previous_data (JSON)
- caller_speech (string)

Extract ONLY what the caller explicitly says.
Return ONLY valid JSON in this schema:

{
  "intent": "booking"|"service_request"|"pricing"|"hours"|"other",
  "caller_name": string|null,
  "service": string|null,
  "vehicle_or_item": string|null,
  "location": string|null,
  "preferred_time": string|null,
  "notes": string|null
}

Rules:
- Do NOT guess missing details.
- Use null if not stated.
- booking/service_request only if they want service performed."""


def next_question(data: CollectedData) -> str:
    """Question for the first missing field, in fixed priority order."""
    for spec in INTAKE_FIELDS:
        if not getattr(data, spec.name):
            return spec.prompt
    return ANYTHING_ELSE_PROMPT


def summarize(data: CollectedData) -> str:
    """Short one-line summary of everything captured, for logs and storage."""
    parts = [f"Intent: {data.intent.value}"]
    for name in ("caller_name", "service", "vehicle_or_item", "location", "preferred_time", "notes"):
        value = getattr(data, name)
        if not value:
            continue
        label = "Notes" if name == "notes" else get_field_spec(name).label
        parts.append(f"{label}: {value}")
    return " | ".join(parts)


def spoken_summary(data: CollectedData) -> str:
    """Summary of the known fields phrased for reading back on the call."""
    if data.is_booking_like and data.has_booking_fields():
        return f"{data.service}, in {data.location}, {data.preferred_time}"

    values = [getattr(data, name) for name in RECAP_FIELD_ORDER if getattr(data, name)]
    if values:
        return ", ".join(values)
    # The caller prompt adds its own period
    notes = (data.notes or "").rstrip(" .?!")
    if notes:
        return f"you said {notes}"
    return "your request"


def confirmation_prompt(data: CollectedData) -> str:
    return f"Perfect. Just to confirm: {spoken_summary(data)}. Is that correct?"


def recap_line(data: CollectedData) -> str:
    """Human-readable recap used in the SMS body."""
    parts = []
    for name in RECAP_FIELD_ORDER:
        value = getattr(data, name)
        if value:
            parts.append(f"{get_field_spec(name).label}: {value}")
    return RECAP_SEPARATOR.join(parts) if parts else RECAP_FALLBACK_LINE


def recap_sms_body(data: CollectedData) -> str:
    return (
        "Thanks for calling! Here's what I have:\n"
        f"{recap_line(data)}\n\n"
        "Reply YES to confirm or text any changes."
    )
