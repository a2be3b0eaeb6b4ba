"""
Twilio Service - the telephony boundary.

This service:
1. Verifies webhook signatures against the PUBLIC url Twilio requested
2. Sends SMS via the Twilio Messages API
3. Builds the TwiML returned to the voice webhook
4. Normalizes phone numbers to E.164

Python 3.9 compatible - uses typing.Mapping, typing.Optional
"""

import logging
import os
from typing import Mapping, Optional

import phonenumbers
from fastapi import Request
from twilio.request_validator import RequestValidator
from twilio.rest import Client as TwilioClient

from engine.prompts import TIMEOUT_GOODBYE

logger = logging.getLogger(__name__)

TWIML_MEDIA_TYPE = "text/xml"

VOICE = "Polly.Joanna"
LANGUAGE = "en-US"
GATHER_TIMEOUT_SECONDS = 10
SPEECH_TIMEOUT_SECONDS = 2

DEFAULT_SMS_REGION = "US"


class WebhookAuthError(Exception):
    """Raised when a Twilio webhook fails signature verification."""


# =============================================================================
# HELPERS
# =============================================================================

def _escape_xml(text: str) -> str:
    """Escape text for XML."""
    return (
        text
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&apos;")
    )


def _first_header_value(value: Optional[str]) -> str:
    if not value:
        return ""
    return value.split(",")[0].strip()


def public_request_url(request: Request) -> str:
    """
    Reconstruct the URL Twilio actually requested.

    Behind a proxy the app sees an internal host/scheme, but Twilio signs the
    public URL, so prefer the forwarded headers.
    """
    headers = request.headers
    proto = _first_header_value(headers.get("x-forwarded-proto")) or "https"
    host = (
        _first_header_value(headers.get("x-forwarded-host"))
        or _first_header_value(headers.get("host"))
    )
    if not host:
        return str(request.url)

    url = f"{proto}://{host}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


def normalize_phone_e164(raw: Optional[str], region: Optional[str] = None) -> Optional[str]:
    """E.164 form of a phone number, or None if it cannot be parsed."""
    if not raw or not raw.strip():
        return None
    region = region or os.getenv("SMS_DEFAULT_REGION", DEFAULT_SMS_REGION)
    try:
        parsed = phonenumbers.parse(raw.strip(), region)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(parsed):
        return None
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


# =============================================================================
# TWIML
# =============================================================================

def build_gather_twiml(prompt: str, turn: int) -> str:
    """Speak prompt inside a speech Gather whose action carries the next turn.

    If the caller stays silent the Gather falls through to a goodbye and hangup.
    """
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Gather input="speech" action="/twilio/voice?turn={turn}" method="POST" timeout="{GATHER_TIMEOUT_SECONDS}" speechTimeout="{SPEECH_TIMEOUT_SECONDS}" language="{LANGUAGE}">
        <Say voice="{VOICE}">{_escape_xml(prompt)}</Say>
    </Gather>
    <Say voice="{VOICE}">{_escape_xml(TIMEOUT_GOODBYE)}</Say>
    <Hangup/>
</Response>"""


def build_hangup_twiml(text: str) -> str:
    """Speak text, then hang up."""
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<Response>
    <Say voice="{VOICE}">{_escape_xml(text)}</Say>
    <Hangup/>
</Response>"""


# =============================================================================
# SERVICE
# =============================================================================

class TwilioService:
    """Signature verification and outbound SMS."""

    def __init__(self):
        """Initialize Twilio client.

        Does NOT crash if Twilio not configured - allows graceful degradation.
        Unconfigured verification rejects every request; SMS sends raise.
        """
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN")
        self.phone_number = os.getenv("TWILIO_PHONE_NUMBER")

        self.client: Optional[TwilioClient] = None
        self.validator: Optional[RequestValidator] = None

        if self.auth_token:
            self.validator = RequestValidator(self.auth_token)
        else:
            logger.warning("TwilioService: TWILIO_AUTH_TOKEN not set - webhooks will be rejected")

        if self.account_sid and self.auth_token and self.phone_number:
            self.client = TwilioClient(self.account_sid, self.auth_token)
            logger.info(f"TwilioService configured with phone: {self.phone_number}")
        else:
            logger.warning("TwilioService: Twilio credentials not configured - SMS will fail")

    @property
    def is_configured(self) -> bool:
        """Check if Twilio is properly configured for sending."""
        return self.client is not None

    def verify_signature(self, url: str, params: Mapping[str, str], signature: str) -> None:
        """Raise WebhookAuthError unless signature matches url + params."""
        if self.validator is None:
            raise WebhookAuthError("Missing TWILIO_AUTH_TOKEN")
        if not signature:
            raise WebhookAuthError("Missing X-Twilio-Signature header")
        if not self.validator.validate(url, dict(params), signature):
            raise WebhookAuthError("Invalid Twilio signature")

    async def verify_request(self, request: Request) -> Mapping[str, str]:
        """Verify a form-encoded webhook and return its parameters.

        Raises:
            WebhookAuthError: If the signature is missing or wrong
        """
        form = await request.form()
        params = {key: str(value) for key, value in form.items()}
        signature = request.headers.get("x-twilio-signature", "")
        self.verify_signature(public_request_url(request), params, signature)
        return params

    def send_sms(self, to: str, body: str) -> str:
        """Send an SMS and return the message SID.

        Raises:
            RuntimeError: If Twilio not configured
            Exception: If Twilio API call fails
        """
        if not self.is_configured:
            raise RuntimeError("Twilio not configured")

        message = self.client.messages.create(to=to, from_=self.phone_number, body=body)
        logger.info(f"Twilio SMS queued: SID={message.sid}, status={message.status}")
        return message.sid


# Singleton instance (created lazily)
_twilio_service: Optional[TwilioService] = None


def get_twilio_service() -> TwilioService:
    """Get or create the TwilioService singleton."""
    global _twilio_service
    if _twilio_service is None:
        _twilio_service = TwilioService()
    return _twilio_service


def reset_twilio_service() -> None:
    """Drop the singleton so the next get re-reads the environment."""
    global _twilio_service
    _twilio_service = None
