import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.orm import Session

from rentbot.config import settings
from rentbot.conversation import ConversationRouter
from rentbot.dedup import DedupGuard
from rentbot.flows import PING_RESPONSE, handle_flow_exchange, is_ping
from rentbot.gateway import WhatsAppGateway
from rentbot.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from rentbot.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from rentbot.normalize import normalize_payload
from rentbot.schemas import (
    ErrorResponse,
    FlowExchange,
    HealthResponse,
    IgnoredPayload,
    MessageResponse,
    MessagesListResponse,
    WebhookResponse,
)
from rentbot.storage import init_db, check_db_health, get_db, get_messages, record_webhook_event, save_inbound_message
from rentbot.utils import canonical_phone, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Per-process fallback when the handled flag cannot be persisted
dedup_guard = DedupGuard(ttl_seconds=settings.DEDUP_TTL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="RentBot WhatsApp Webhook",
    description="Conversational WhatsApp front door for rental listings",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)


def get_gateway() -> WhatsAppGateway:
    """Outbound gateway dependency; tests override it with a recording transport."""
    return WhatsAppGateway.from_settings(settings)


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. WHATSAPP_VERIFY_TOKEN is set (non-empty)
    2. DB is reachable and schema is applied

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WHATSAPP_VERIFY_TOKEN:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WHATSAPP_VERIFY_TOKEN not configured"
        )

    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhooks/whatsapp", response_class=PlainTextResponse)
async def verify_webhook(
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """
    Meta webhook subscription handshake.

    - 200 with hub.challenge when hub.verify_token matches WHATSAPP_VERIFY_TOKEN
    - 403 on a mismatch
    - 500 when no verify token is configured
    """
    if not settings.WHATSAPP_VERIFY_TOKEN:
        logger.error("Webhook verification attempted but WHATSAPP_VERIFY_TOKEN is not set")
        return PlainTextResponse("verify token not configured", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    if hub_mode == "subscribe" and hub_verify_token == settings.WHATSAPP_VERIFY_TOKEN:
        logger.info("Webhook verified")
        return PlainTextResponse(hub_challenge or "")

    logger.warning(f"Webhook verification rejected: mode={hub_mode}")
    return PlainTextResponse("forbidden", status_code=status.HTTP_403_FORBIDDEN)


def _finish(request: Request, note: str, message_id: str = None, phone: str = None,
            dup: bool = False, state: str = None) -> WebhookResponse:
    record_webhook_outcome(note)
    log_webhook_data(request=request, message_id=message_id, phone=phone, dup=dup, note=note, state=state)
    return WebhookResponse(note=note, state=state)


@app.post(
    "/webhooks/whatsapp",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature (only when enforced)"},
        421: {"model": ErrorResponse, "description": "Flow request could not be decrypted"},
        500: {"model": ErrorResponse, "description": "Flow private key missing"},
    }
)
async def receive_webhook(
    request: Request,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    db: Session = Depends(get_db),
    gateway: WhatsAppGateway = Depends(get_gateway),
):
    """
    Handle one WhatsApp delivery.

    Conversational turns always answer 200 {ok, note, state?} so the provider
    does not retry. Flow data-exchange requests answer with the encrypted
    base64 body.
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    if settings.WHATSAPP_APP_SECRET:
        signature_ok = bool(x_hub_signature_256) and verify_hmac_signature(
            raw_body, x_hub_signature_256, settings.WHATSAPP_APP_SECRET
        )
        if not signature_ok:
            logger.warning("Invalid or missing X-Hub-Signature-256")
            if settings.WHATSAPP_ENFORCE_SIGNATURE:
                record_webhook_outcome("invalid-signature")
                log_webhook_data(request=request, note="invalid-signature")
                raise HTTPException(
                    status_code=status.HTTP_401_UNAUTHORIZED,
                    detail="invalid signature"
                )

    try:
        payload = json.loads(raw_body) if raw_body else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning(f"Webhook body is not JSON: {e}")
        return _finish(request, "invalid-json")

    record_webhook_event(db, headers=dict(request.headers), payload=payload)

    if is_ping(payload):
        record_webhook_outcome("ping")
        log_webhook_data(request=request, note="ping")
        return JSONResponse(PING_RESPONSE)

    normalized = normalize_payload(payload, settings.DEFAULT_COUNTRY_CODE)

    if isinstance(normalized, FlowExchange):
        status_code, body, media_type = handle_flow_exchange(db, normalized, settings)
        note = "flow-exchange" if status_code == 200 else body["note"]
        record_webhook_outcome(note)
        log_webhook_data(request=request, note=note)
        if media_type == "text/plain":
            return PlainTextResponse(body, status_code=status_code)
        return JSONResponse(body, status_code=status_code)

    if isinstance(normalized, IgnoredPayload):
        logger.info(f"Ignoring payload: {normalized.reason}")
        return _finish(request, f"ignored-{normalized.reason}")

    message_id = normalized.id or None
    phone = normalized.phone

    if dedup_guard.is_handled(db, message_id):
        logger.info(f"Duplicate delivery skipped: {message_id}")
        return _finish(request, "dedupe-skip", message_id=message_id, phone=phone, dup=True)

    stored = save_inbound_message(
        db,
        phone=phone,
        external_id=message_id,
        kind=normalized.kind,
        body_text=normalized.text,
        raw_payload=payload,
        conversation_id=normalized.conversation_id,
    )
    dedup_guard.mark_handled(db, message_id, phone=phone)

    try:
        outcome = await ConversationRouter(db, gateway, settings).handle(normalized, stored_message=stored)
    except Exception:
        db.rollback()
        logger.exception(f"Conversation turn failed for {phone}")
        return _finish(request, "turn-error-logged", message_id=message_id, phone=phone)

    failed_sends = [s.kind for s in outcome.sends if not s.ok]
    if failed_sends:
        logger.warning(f"Turn for {phone} had failed sends: {failed_sends}")
    logger.info(f"Turn processed: phone={phone}, note={outcome.note}, state={outcome.state}")
    return _finish(request, outcome.note, message_id=message_id, phone=phone, state=outcome.state)


# =============================================================================
# Messages Route
# =============================================================================

@app.get(
    "/messages",
    response_model=MessagesListResponse,
)
async def list_messages(
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    offset: Annotated[int, Query(ge=0, description="Number of messages to skip")] = 0,
    phone: Annotated[str | None, Query(description="Replay one conversation (any phone format)")] = None,
    db: Session = Depends(get_db)
) -> MessagesListResponse:
    """
    Conversation replay / audit log.

    Ordering:
        - created_at ASC, id ASC (deterministic)

    Response:
        - data: inbound, system and agent messages with their meta
        - total: Total count matching the phone filter (ignoring limit/offset)
    """
    canonical = canonical_phone(phone, settings.DEFAULT_COUNTRY_CODE) if phone else None
    logger.info(f"GET /messages: limit={limit}, offset={offset}, phone={canonical}")

    messages, total = get_messages(db=db, phone=canonical, limit=limit, offset=offset)

    return MessagesListResponse(
        data=[MessageResponse.model_validate(msg) for msg in messages],
        total=total,
        limit=limit,
        offset=offset
    )


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus metrics (http, webhook outcomes, sends, transitions,
    best-effort failures).
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
