"""
Receptionist Backend - FastAPI Application

Webhook surface for the AI phone receptionist:
- Twilio voice turns (TwiML in, TwiML out)
- Twilio status callbacks
- Vapi server messages
- Portal reporting

The conversation itself is decided by engine.planner; this module only
verifies requests, wires services together and renders responses.

Python 3.9 compatible.
"""

import hmac
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from engine.extract import build_turn_extractor
from engine.prompts import VERIFICATION_FAILED_MESSAGE

from .call_controller import CallController, parse_turn
from .models import CallMetricsResponse, RecentCallsResponse
from .recap_service import RecapNotifier
from .reporting import compute_metrics, parse_days, recent_calls
from .session_store import CallSessionStore, SessionStoreError, build_session_store
from .twilio_service import (
    TWIML_MEDIA_TYPE,
    WebhookAuthError,
    build_gather_twiml,
    build_hangup_twiml,
    get_twilio_service,
    reset_twilio_service,
)
from .vapi_service import MAX_BODY_BYTES, WEBHOOK_VERSION, VapiService

APP_VERSION = "1.0.0"

# Load environment variables from backend/.env
# Try multiple paths to ensure we find .env
env_paths = [
    Path(__file__).parent.parent / ".env",  # backend/.env
    Path.cwd() / ".env",  # current working directory
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    load_dotenv()  # fallback to default behavior

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Service instances (Python 3.9 compatible type hints)
session_store: Optional[CallSessionStore] = None
call_controller: Optional[CallController] = None
vapi_service: Optional[VapiService] = None


def _mask_key(key: Optional[str]) -> str:
    """Mask API key showing only last 4 chars."""
    if not key:
        return "(not set)"
    if len(key) <= 4:
        return "****"
    return f"****{key[-4:]}"


# ============================================================
# Service wiring (lazy, so tests can swap the globals)
# ============================================================

def get_session_store() -> CallSessionStore:
    global session_store
    if session_store is None:
        session_store = build_session_store()
    return session_store


def get_call_controller() -> CallController:
    global call_controller
    if call_controller is None:
        store = get_session_store()
        call_controller = CallController(
            store=store,
            extractor=build_turn_extractor(),
            notifier=RecapNotifier(store, get_twilio_service()),
            default_business_id=os.getenv("DEFAULT_BUSINESS_ID"),
        )
    return call_controller


def get_vapi_service() -> VapiService:
    global vapi_service
    if vapi_service is None:
        vapi_service = VapiService(get_session_store())
    return vapi_service


def reset_services() -> None:
    """Forget every service so the next request rebuilds from the environment."""
    global session_store, call_controller, vapi_service
    session_store = None
    call_controller = None
    vapi_service = None
    reset_twilio_service()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - log configuration and initialize services."""
    logger.info("=" * 60)
    logger.info("Initializing Receptionist Backend")
    logger.info("=" * 60)

    for name in ("OPENAI_API_KEY", "TWILIO_AUTH_TOKEN", "SUPABASE_SERVICE_ROLE_KEY",
                 "VAPI_WEBHOOK_SECRET", "VAPI_API_KEY", "PORTAL_API_TOKEN"):
        value = os.getenv(name)
        logger.info(f"{name} present: {bool(value)} ({_mask_key(value)})")
    logger.info(f"SMS_ENABLED: {os.getenv('SMS_ENABLED', 'false')}")

    store = get_session_store()
    logger.info(f"Session store: {type(store).__name__}")
    get_call_controller()
    get_vapi_service()

    logger.info("=" * 60)

    yield

    # Shutdown
    if vapi_service is not None:
        await vapi_service.close()
    if session_store is not None:
        await session_store.close()
    logger.info("Shutting down Receptionist Backend")


app = FastAPI(
    title="Receptionist Backend",
    description="Webhook backend for an AI phone receptionist",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS middleware for the portal frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _twiml(twiml: str) -> Response:
    return Response(content=twiml, media_type=TWIML_MEDIA_TYPE)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "version": APP_VERSION}


# ============================================================
# Twilio Webhooks
# ============================================================

@app.post("/twilio/voice")
async def twilio_voice(request: Request, turn: Optional[str] = Query(None)):
    """
    Twilio voice webhook - one request per caller utterance.

    The first request of a call has no SpeechResult and gets the greeting.
    Every Gather action points back here with the next turn number.
    """
    try:
        params = await get_twilio_service().verify_request(request)
    except WebhookAuthError as e:
        logger.warning(f"METRIC twilio_signature_rejected path=/twilio/voice reason={e}")
        return _twiml(build_hangup_twiml(VERIFICATION_FAILED_MESSAGE))

    call_sid = params.get("CallSid", "").strip()
    if not call_sid:
        logger.warning("twilio_voice: request without CallSid")
        return _twiml(build_hangup_twiml(VERIFICATION_FAILED_MESSAGE))

    reply = await get_call_controller().handle_voice_turn(
        call_id=call_sid,
        from_number=params.get("From"),
        to_number=params.get("To"),
        speech=params.get("SpeechResult"),
        turn=parse_turn(turn),
    )

    if reply.end_call:
        return _twiml(build_hangup_twiml(reply.text))
    return _twiml(build_gather_twiml(reply.text, reply.next_turn))


async def _handle_status_callback(request: Request, path: str) -> PlainTextResponse:
    # Always 200: a non-2xx makes Twilio retry the callback
    try:
        params = await get_twilio_service().verify_request(request)
    except WebhookAuthError as e:
        logger.warning(f"METRIC twilio_signature_rejected path={path} reason={e}")
        return PlainTextResponse("OK")

    call_sid = params.get("CallSid", "").strip()
    status = params.get("CallStatus", "").strip()
    logger.info(f"Twilio status webhook: CallSid={call_sid}, status={status}, duration={params.get('CallDuration')}")

    if call_sid and status:
        await get_call_controller().handle_status_callback(
            call_sid, status, params.get("CallDuration")
        )
    return PlainTextResponse("OK")


@app.post("/twilio/voice/status")
async def twilio_voice_status(request: Request):
    """Status callback configured on the phone number's voice settings."""
    return await _handle_status_callback(request, "/twilio/voice/status")


@app.post("/twilio/status")
async def twilio_status(request: Request):
    """Generic Twilio status callback: initiated, ringing, completed, busy, ..."""
    return await _handle_status_callback(request, "/twilio/status")


# ============================================================
# Vapi Webhook
# ============================================================

@app.get("/vapi/webhook")
async def vapi_webhook_check():
    return PlainTextResponse(f"VAPI WEBHOOK OK ({WEBHOOK_VERSION})")


@app.post("/vapi/webhook")
async def vapi_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    secret: Optional[str] = Query(None),
):
    """
    Vapi server messages (status updates, end-of-call reports).

    Ended calls are enriched from the Vapi API in the background.
    """
    vapi = get_vapi_service()
    header_secret = (
        request.headers.get("x-kallr-webhook-secret")
        or request.headers.get("x-vapi-webhook-secret")
    )
    if not vapi.is_authorized(header_secret, secret):
        raise HTTPException(status_code=401, detail="Unauthorized")

    declared_length = request.headers.get("content-length")
    if declared_length and declared_length.isdigit() and int(declared_length) > MAX_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    raw = await request.body()
    if not raw:
        raise HTTPException(status_code=400, detail="Bad Request")
    if len(raw) > MAX_BODY_BYTES:
        raise HTTPException(status_code=413, detail="Payload too large")

    try:
        body = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Bad Request")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Bad Request")

    try:
        event = await vapi.ingest(body)
    except SessionStoreError as e:
        logger.error(f"Vapi webhook store error: {e}")
        raise HTTPException(status_code=500, detail="DB error")

    if event is None:
        return PlainTextResponse("OK (no call key)")

    if event.has_ended and event.vapi_call_id:
        background_tasks.add_task(vapi.enrich, event)

    return PlainTextResponse("OK")


# ============================================================
# Portal Reporting
# ============================================================

def _check_portal_token(provided: Optional[str]) -> None:
    expected = os.getenv("PORTAL_API_TOKEN")
    if not expected:
        raise HTTPException(status_code=503, detail="Portal API not configured")
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="unauthorized")


@app.get("/portal/metrics", response_model=CallMetricsResponse)
async def portal_metrics(
    business_id: str = Query(...),
    days: Optional[str] = Query(None),
    x_portal_token: Optional[str] = Header(None),
) -> CallMetricsResponse:
    """Aggregate call metrics over the last 1, 7 or 30 days."""
    _check_portal_token(x_portal_token)
    try:
        return await compute_metrics(get_session_store(), business_id, parse_days(days))
    except SessionStoreError as e:
        logger.error(f"portal_metrics failed for business={business_id}: {e}")
        raise HTTPException(status_code=500, detail="db_error")


@app.get("/portal/recent-calls", response_model=RecentCallsResponse)
async def portal_recent_calls(
    business_id: str = Query(...),
    x_portal_token: Optional[str] = Header(None),
) -> RecentCallsResponse:
    """The most recent calls with their outcome labels."""
    _check_portal_token(x_portal_token)
    try:
        return await recent_calls(get_session_store(), business_id)
    except SessionStoreError as e:
        logger.error(f"portal_recent_calls failed for business={business_id}: {e}")
        raise HTTPException(status_code=500, detail="db_error")


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
