"""
Turn extraction logic.

This module maps (prior collected data, new caller speech) to an updated
CollectedData record plus a "done" flag. Two interchangeable strategies:

1. RuleBasedExtractor (deterministic): keeps the raw speech as notes and
   decides completion from the fields already present
2. OpenAIExtractor (LLM parser): asks OpenAI for the fixed JSON schema and
   falls back to the rule-based strategy on ANY failure

The LLM is ONLY used as a parser, never for flow decisions. Both strategies
share merge_collected(), so a turn can only add or correct information.
"""
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from openai import AsyncOpenAI
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from intake.specs import TEXT_FIELD_NAMES, CollectedData, Intent

from .prompts import EXTRACTION_SYSTEM_PROMPT, confirmation_prompt, next_question, summarize

logger = logging.getLogger(__name__)

# Keys shorter than this are treated as "not configured"
MIN_API_KEY_LENGTH = 10

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TIMEOUT_SECONDS = 4.0


@dataclass
class TurnResult:
    """Result of one extraction turn."""
    merged: CollectedData
    done: bool
    speakable_reply: str
    short_summary: str
    strategy: str = "rule_based"


class ExtractedFields(BaseModel):
    """Schema the model must return. Every field is nullable."""
    model_config = ConfigDict(extra="ignore")

    intent: Optional[Intent] = None
    caller_name: Optional[str] = None
    service: Optional[str] = None
    vehicle_or_item: Optional[str] = None
    location: Optional[str] = None
    preferred_time: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("intent", mode="before")
    @classmethod
    def _lenient_intent(cls, value: Any) -> Optional[Intent]:
        # Off-vocabulary labels drop the intent, not the whole reply
        return _coerce_intent(value)


# =============================================================================
# MERGE
# =============================================================================

def normalize_value(value: Any) -> Optional[str]:
    """Trimmed string, or None for null/empty values."""
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def _coerce_intent(value: Any) -> Optional[Intent]:
    if isinstance(value, Intent):
        return value
    text = normalize_value(value)
    if text is None:
        return None
    try:
        return Intent(text.lower())
    except ValueError:
        return None


def merge_collected(prev: CollectedData, extracted: Dict[str, Any]) -> CollectedData:
    """
    Merge newly extracted values into the previous record.

    For each field, a new non-empty value wins; otherwise the previous value
    is kept. A null or missing extraction never erases captured data.
    """
    updates: Dict[str, Any] = {}

    intent = _coerce_intent(extracted.get("intent"))
    updates["intent"] = intent if intent is not None else prev.intent

    for name in TEXT_FIELD_NAMES:
        new_value = normalize_value(extracted.get(name))
        updates[name] = new_value if new_value is not None else getattr(prev, name)

    return CollectedData(**updates)


def is_intake_complete(data: CollectedData, extracted_any: bool) -> bool:
    """
    Decide whether the record is complete enough to confirm.

    Booking-like intents need service, location and preferred time.
    Other intents confirm as soon as the turn extracted anything.
    """
    if data.is_booking_like:
        return data.has_booking_fields()
    return extracted_any


def _build_result(merged: CollectedData, done: bool, strategy: str) -> TurnResult:
    reply = confirmation_prompt(merged) if done else next_question(merged)
    return TurnResult(
        merged=merged,
        done=done,
        speakable_reply=reply,
        short_summary=summarize(merged),
        strategy=strategy,
    )


# =============================================================================
# STRATEGIES
# =============================================================================

class TurnExtractor(ABC):
    """Extraction strategy interface used by the call controller."""

    name = "base"

    @abstractmethod
    async def extract(self, prior: CollectedData, speech: str) -> TurnResult:
        """Return the merged record for this turn. Must not raise."""


class RuleBasedExtractor(TurnExtractor):
    """Deterministic fallback. Never calls out, never raises."""

    name = "rule_based"

    async def extract(self, prior: CollectedData, speech: str) -> TurnResult:
        return self.extract_sync(prior, speech)

    def extract_sync(self, prior: CollectedData, speech: str) -> TurnResult:
        merged = merge_collected(prior, {"notes": speech})
        return _build_result(merged, is_intake_complete(merged, True), self.name)


class OpenAIExtractor(TurnExtractor):
    """
    LLM-backed extraction.

    GUARANTEE: extract() NEVER raises. API errors, timeouts, empty content,
    invalid JSON and schema mismatches all return the rule-based result.
    """

    name = "openai"

    def __init__(
        self,
        client: Any,
        model: str = DEFAULT_MODEL,
        fallback: Optional[TurnExtractor] = None,
    ):
        self.client = client
        self.model = model
        self.fallback = fallback or RuleBasedExtractor()

    def build_user_payload(self, prior: CollectedData, speech: str) -> str:
        return json.dumps({
            "previous_data": prior.model_dump(mode="json"),
            "caller_speech": speech,
        })

    async def extract(self, prior: CollectedData, speech: str) -> TurnResult:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
                    {"role": "user", "content": self.build_user_payload(prior, speech)},
                ],
                temperature=0.2,
                max_tokens=300,
                response_format={"type": "json_object"},
            )
            content = response.choices[0].message.content
        except Exception as e:
            logger.warning(
                f"METRIC extraction_fallback reason=api_error error={type(e).__name__}"
            )
            return await self.fallback.extract(prior, speech)

        logger.debug(f"LLM extraction response: {content}")

        if not content:
            logger.warning("METRIC extraction_fallback reason=empty_response")
            return await self.fallback.extract(prior, speech)

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning(f"METRIC extraction_fallback reason=invalid_json error={e}")
            return await self.fallback.extract(prior, speech)

        if not isinstance(data, dict):
            logger.warning("METRIC extraction_fallback reason=not_an_object")
            return await self.fallback.extract(prior, speech)

        try:
            extracted = ExtractedFields.model_validate(data)
        except ValidationError as e:
            logger.warning(
                f"METRIC extraction_fallback reason=schema_mismatch errors={e.error_count()}"
            )
            return await self.fallback.extract(prior, speech)

        values = extracted.model_dump(exclude_none=True)
        # "other" is the default classification, not information
        extracted_any = extracted.intent not in (None, Intent.OTHER) or any(
            normalize_value(values.get(name)) for name in TEXT_FIELD_NAMES
        )

        merged = merge_collected(prior, values)
        done = is_intake_complete(merged, extracted_any)

        logger.info(
            f"LLM extraction: fields={sorted(values.keys())}, "
            f"intent={merged.intent.value}, done={done}"
        )
        return _build_result(merged, done, self.name)


def build_turn_extractor() -> TurnExtractor:
    """
    Select the extraction strategy from configuration.

    OPENAI_API_KEY missing or implausibly short -> rule-based only.
    """
    api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if len(api_key) < MIN_API_KEY_LENGTH:
        logger.warning("OpenAI not configured - using rule-based extraction only")
        return RuleBasedExtractor()

    model = os.getenv("OPENAI_MODEL", DEFAULT_MODEL)
    timeout = float(os.getenv("OPENAI_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS)))
    client = AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
    logger.info(f"OpenAI extraction configured with model: {model} (timeout={timeout}s)")
    return OpenAIExtractor(client=client, model=model)
