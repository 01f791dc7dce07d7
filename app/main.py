import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from app.config import settings
from app.delivery import SendOrchestrator, SendRequest, DEFAULT_HISTORY_LIMIT
from app.exceptions import (
    DeliveryFailedError,
    InvalidTransitionError,
    MessageValidationError,
    ProviderError,
    WebhookAuthError,
)
from app.logging_utils import setup_logging, RequestLoggingMiddleware, annotate_request_log
from app.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from app.provider import ProviderClient
from app.reconciler import WebhookReconciler
from app.schemas import (
    ConversationHistory,
    ConversationHistoryResponse,
    ErrorResponse,
    HealthResponse,
    MessageResponse,
    ProviderStatusResponse,
    SendErrorResponse,
    SendMessageData,
    SendMessageRequest,
    SendMessageResponse,
    WebhookAck,
)
from app.storage import MessageStore, build_store
from app.utils import compute_key_fingerprint


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: build the message store and the provider client
    - Shutdown: close the provider HTTP connection pool
    """
    app.state.store = build_store(settings)
    app.state.provider = ProviderClient.from_settings(settings)
    if not settings.WEBHOOK_SECRET:
        logger.warning("WEBHOOK_SECRET not configured - webhook signatures will not be verified")
    yield
    await app.state.provider.aclose()


app = FastAPI(
    title="Message Delivery Relay",
    description="Relays messages to the WhatsApp Cloud API and reconciles delivery state",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


# =============================================================================
# Dependencies
# =============================================================================

def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_provider(request: Request) -> ProviderClient:
    return request.app.state.provider


def get_orchestrator(
    store: MessageStore = Depends(get_store),
    provider: ProviderClient = Depends(get_provider),
) -> SendOrchestrator:
    return SendOrchestrator(store, provider)


def get_reconciler(store: MessageStore = Depends(get_store)) -> WebhookReconciler:
    return WebhookReconciler(
        store,
        webhook_secret=settings.WEBHOOK_SECRET,
        verify_token=settings.WEBHOOK_VERIFY_TOKEN,
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: log and return a generic failure for this request only."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "internal server error"},
    )


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
async def health_ready(
    response: Response,
    deep: bool = Query(False, description="Also call the provider API"),
    store: MessageStore = Depends(get_store),
    provider: ProviderClient = Depends(get_provider),
) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. The message store is reachable (and its schema applied)
    2. Provider credentials are configured
    3. With deep=true, the provider accepts them (phone number lookup succeeds)

    Otherwise returns 503 (Service Unavailable).
    """
    if not store.ping():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Message store not reachable")

    if not provider.configured:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", reason="Provider credentials not configured")

    if deep:
        try:
            await provider.get_phone_number_info()
        except ProviderError as e:
            logger.error(f"Provider readiness check failed: {e}")
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="Provider API check failed")

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/api/messages/send",
    response_model=SendMessageResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Missing required fields"},
        502: {"model": SendErrorResponse, "description": "Provider dispatch failed"},
    },
)
async def send_message(
    body: SendMessageRequest,
    x_device_id: Annotated[str | None, Header(alias="X-Device-Id")] = None,
    orchestrator: SendOrchestrator = Depends(get_orchestrator),
):
    """
    Send an opaque, pre-encoded payload to a recipient via the provider.

    The local message is stored before dispatch; on provider failure the
    response carries its id with status 502 and the message is marked failed.
    """
    request = SendRequest(
        recipient_address=body.recipient_phone_number,
        payload=body.encrypted_content,
        recipient_id=body.recipient_contact_id,
        kind=body.message_type,
        key_fingerprint=body.public_key_id or compute_key_fingerprint(body.recipient_public_key),
        sender_id=x_device_id,
        conversation_id=body.conversation_id,
    )
    try:
        message = await orchestrator.send(request)
    except MessageValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except DeliveryFailedError as e:
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=SendErrorResponse(
                error="Failed to send via WhatsApp",
                details=e.reason,
                message_id=e.message_id,
            ).model_dump(),
        )

    return SendMessageResponse(
        data=SendMessageData(
            message_id=message.id,
            provider_message_id=message.provider_message_id,
            status=message.status,
            timestamp=message.timestamp,
        )
    )


@app.get(
    "/api/messages/status/{provider_message_id}",
    response_model=ProviderStatusResponse,
    responses={502: {"model": ErrorResponse, "description": "Provider lookup failed"}},
)
async def provider_message_status(
    provider_message_id: str,
    orchestrator: SendOrchestrator = Depends(get_orchestrator),
) -> ProviderStatusResponse:
    """Check a message's delivery status directly with the provider."""
    try:
        snapshot = await orchestrator.provider_status(provider_message_id)
    except ProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return ProviderStatusResponse(data=snapshot.raw)


@app.get("/api/messages/{conversation_id}", response_model=ConversationHistoryResponse)
async def conversation_history(
    conversation_id: str,
    limit: Annotated[int, Query(ge=1, le=500, description="Maximum number of messages to return")] = DEFAULT_HISTORY_LIMIT,
    orchestrator: SendOrchestrator = Depends(get_orchestrator),
) -> ConversationHistoryResponse:
    """
    Message history for a conversation, newest first, truncated to ``limit``.
    """
    messages = orchestrator.history(conversation_id, limit)
    logger.info(f"GET history: returned {len(messages)} messages (limit={limit})")
    return ConversationHistoryResponse(
        data=ConversationHistory(
            conversation_id=conversation_id,
            message_count=len(messages),
            messages=messages,
        )
    )


@app.post(
    "/api/messages/{message_id}/read",
    response_model=MessageResponse,
    responses={
        404: {"model": ErrorResponse, "description": "Message not found"},
        409: {"model": ErrorResponse, "description": "Message cannot be marked read"},
    },
)
async def mark_message_read(
    message_id: str,
    orchestrator: SendOrchestrator = Depends(get_orchestrator),
) -> MessageResponse:
    """
    Mark a message as read; also acknowledges it to the provider (best effort).
    """
    try:
        message = await orchestrator.mark_read(message_id)
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if message is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Message not found")
    return MessageResponse(data=message)


# =============================================================================
# Webhook Routes
# =============================================================================

@app.get("/webhook", response_class=PlainTextResponse)
async def webhook_verify(
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
    reconciler: WebhookReconciler = Depends(get_reconciler),
):
    """
    Subscription handshake called by the provider when the webhook is registered.
    Echoes hub.challenge when hub.verify_token matches.
    """
    try:
        challenge = reconciler.verify_subscription(hub_mode, hub_verify_token, hub_challenge)
    except WebhookAuthError:
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content={"detail": "verification failed"})
    return PlainTextResponse(challenge)


@app.post(
    "/webhook",
    response_model=WebhookAck,
    responses={401: {"model": ErrorResponse, "description": "Invalid signature"}},
)
async def webhook(
    request: Request,
    x_hub_signature_256: Annotated[str | None, Header(alias="X-Hub-Signature-256")] = None,
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> WebhookAck:
    """
    Receive inbound messages and status updates from the provider.

    - Validates the HMAC-SHA256 signature in X-Hub-Signature-256 before parsing
    - Once authenticated, always acknowledges with 200: the provider retries
      the whole callback on any other status, duplicating work
    """
    raw_body = await request.body()
    logger.debug(f"Webhook body size: {len(raw_body)} bytes")

    try:
        reconciler.verify_signature(raw_body, x_hub_signature_256)
    except WebhookAuthError as e:
        logger.error(f"Webhook rejected: {e}")
        record_webhook_outcome("invalid_signature")
        annotate_request_log(request, result="invalid_signature")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid signature")

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.error(f"Invalid JSON in webhook body: {e}")
        payload = None

    if not isinstance(payload, dict):
        record_webhook_outcome("unparseable")
        annotate_request_log(request, result="unparseable")
        return WebhookAck()

    summary = reconciler.process(payload)
    result = "processed" if not summary.errors else "partial"
    record_webhook_outcome(result)
    annotate_request_log(request, result=result, **summary.as_log_fields())
    return WebhookAck()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
