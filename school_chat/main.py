import json
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Response, Request, Depends, Header, HTTPException, status, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from school_chat.config import settings
from school_chat.conversations import (
    ParticipantKey,
    get_conversation,
    get_conversation_stats,
    get_or_create_conversation,
    list_conversations,
    recompute_conversation,
    set_conversation_active,
    upsert_on_message,
)
from school_chat.delivery import DeliveryChannel, check_message_window, get_delivery_channel
from school_chat.errors import ChatError, DuplicateMessageError, InactiveConversationError, ValidationError
from school_chat.logging_utils import setup_logging, RequestLoggingMiddleware, attach_log_fields, log_webhook_data
from school_chat.metrics import (
    get_metrics,
    get_metrics_content_type,
    record_message_stored,
    record_webhook_outcome,
)
from school_chat.models import Direction, MessageType, ParticipantType
from school_chat.read_state import on_conversation_opened
from school_chat.schemas import (
    ChatMessageResponse,
    ConversationCreateRequest,
    ConversationResponse,
    ConversationsListResponse,
    ConversationUpdateRequest,
    ErrorResponse,
    HealthResponse,
    MarkReadResponse,
    MessageSearchResponse,
    MessagesPageResponse,
    MessageWindowResponse,
    MessageWindowStatusResponse,
    SearchHit,
    SendMessageRequest,
    SendMessageResponse,
    SendTemplateRequest,
    SendTemplateResponse,
    StatsResponse,
    StatusWebhookRequest,
    TemplateCreateRequest,
    TemplateResponse,
    WebhookRequest,
    WebhookResponse,
)
from school_chat.send_pipeline import send_message, send_template_message
from school_chat.templates import create_template, list_templates
from school_chat.storage import (
    advance_message_status,
    check_db_health,
    get_db,
    get_message_by_provider_id,
    init_db,
    list_messages,
    search_messages,
)
from school_chat.utils import format_timestamp, normalize_msisdn, parse_timestamp, verify_hmac_signature


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

# Placeholder content for media messages without a caption
MEDIA_PLACEHOLDERS = {
    MessageType.IMAGE: "[Image]",
    MessageType.AUDIO: "[Audio]",
    MessageType.VIDEO: "[Video]",
    MessageType.DOCUMENT: "[Document]",
    MessageType.LOCATION: "[Location]",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="School Chat API",
    description="Conversation and message synchronization for the school communication module",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    """Render chat errors as {"detail": ...} with the error's status code."""
    logger.warning(f"{type(exc).__name__}: {exc.detail}")
    attach_log_fields(request, error=type(exc).__name__)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Conversation not found"},
    409: {"model": ErrorResponse, "description": "Conversation inactive"},
}


def _conversation_out(conversation) -> ConversationResponse:
    return ConversationResponse.model_validate(conversation)


def _message_out(message) -> ChatMessageResponse:
    return ChatMessageResponse.model_validate(message)


def _normalize_ts(value: str | None) -> str | None:
    """Convert a caller-supplied ISO-8601 timestamp to the stored UTC format."""
    if not value:
        return None
    try:
        return format_timestamp(parse_timestamp(value))
    except ValueError:
        raise ValidationError(f"Invalid ISO-8601 timestamp: {value}")


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
    1. DB is reachable and schema is applied
    2. WEBHOOK_SECRET is set (non-empty)

    Otherwise returns 503 (Service Unavailable).
    """
    if not settings.WEBHOOK_SECRET:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="WEBHOOK_SECRET not configured"
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

async def _verified_body(request: Request, x_signature: str | None) -> bytes:
    """Read the raw body and check its HMAC signature, raising 401 on mismatch."""
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    if not x_signature or not verify_hmac_signature(raw_body, x_signature, settings.WEBHOOK_SECRET):
        logger.error("Missing or invalid X-Signature header")
        record_webhook_outcome("invalid_signature")
        log_webhook_data(request=request, message_id=None, dup=False, result="invalid_signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid signature"
        )
    return raw_body


def _parse_body(request: Request, raw_body: bytes, model):
    """Parse and validate a webhook body, raising 422 on failure."""
    body_dict = None
    try:
        body_dict = json.loads(raw_body)
        return model.model_validate(body_dict)
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON: {e}")
        detail = f"Invalid JSON: {e}"
    except PydanticValidationError as e:
        logger.error(f"Validation error: {e}")
        detail = str(e)

    record_webhook_outcome("validation_error")
    log_webhook_data(
        request=request,
        message_id=body_dict.get("message_id") if isinstance(body_dict, dict) else None,
        dup=False,
        result="validation_error"
    )
    raise HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail=detail
    )


def _duplicate(request: Request, message_id: str) -> WebhookResponse:
    logger.info(f"Duplicate message detected: {message_id}")
    record_webhook_outcome("duplicate")
    log_webhook_data(request=request, message_id=message_id, dup=True, result="duplicate")
    return WebhookResponse(status="ok")


@app.get("/webhook", response_class=PlainTextResponse)
async def webhook_verify(
    hub_mode: Annotated[str | None, Query(alias="hub.mode")] = None,
    hub_verify_token: Annotated[str | None, Query(alias="hub.verify_token")] = None,
    hub_challenge: Annotated[str | None, Query(alias="hub.challenge")] = None,
) -> PlainTextResponse:
    """
    Provider subscription handshake: echo hub.challenge when the verify token matches.
    """
    if (
        hub_mode == "subscribe"
        and settings.WEBHOOK_VERIFY_TOKEN
        and hub_verify_token == settings.WEBHOOK_VERIFY_TOKEN
    ):
        logger.info("Webhook verification succeeded")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("Webhook verification failed")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="verification failed")


@app.post(
    "/webhook",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        409: {"model": ErrorResponse, "description": "Conversation inactive"},
        422: {"description": "Validation error"},
    }
)
async def webhook(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db)
) -> WebhookResponse:
    """
    Ingest an inbound message exactly once.

    - Validates HMAC-SHA256 signature using X-Signature header
    - Validates request body against WebhookRequest schema
    - Idempotent: duplicate message_id returns 200 without inserting
    - Creates the participant's conversation on first contact and bumps its unread count

    Headers:
        - Content-Type: application/json
        - X-Signature: hex HMAC-SHA256 of raw body using WEBHOOK_SECRET
    """
    logger.info("Webhook request received")

    raw_body = await _verified_body(request, x_signature)
    payload = _parse_body(request, raw_body, WebhookRequest)

    if get_message_by_provider_id(db, payload.message_id) is not None:
        return _duplicate(request, payload.message_id)

    content = payload.text or MEDIA_PLACEHOLDERS.get(payload.message_type, "")
    key = ParticipantKey(payload.branch_id, normalize_msisdn(payload.from_msisdn))

    try:
        conversation, message = upsert_on_message(
            db,
            key,
            Direction.INCOMING,
            content,
            payload.message_type,
            participant_type=payload.participant_type,
            participant_name=payload.participant_name,
            participant_id=payload.participant_id,
            media_url=payload.media_url,
            media_type=payload.media_type,
            provider_message_id=payload.message_id,
            metadata={"provider_ts": payload.ts},
        )
    except DuplicateMessageError:
        # A concurrent delivery of the same message got in first
        return _duplicate(request, payload.message_id)
    except InactiveConversationError as e:
        logger.warning(f"Inbound message {payload.message_id} rejected: {e.detail}")
        record_webhook_outcome("inactive")
        log_webhook_data(request=request, message_id=payload.message_id, dup=False, result="inactive")
        raise

    record_message_stored(Direction.INCOMING.value)
    record_webhook_outcome("created")
    log_webhook_data(request=request, message_id=payload.message_id, dup=False, result="created")
    attach_log_fields(request, conversation_id=conversation.id)
    logger.info(f"Message processed: {payload.message_id} -> conversation {conversation.id}")

    return WebhookResponse(status="ok")


@app.post(
    "/webhook/status",
    response_model=WebhookResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Invalid signature"},
        422: {"description": "Validation error"},
    }
)
async def webhook_status(
    request: Request,
    x_signature: Annotated[str | None, Header(alias="X-Signature")] = None,
    db: Session = Depends(get_db)
) -> WebhookResponse:
    """
    Apply a provider delivery status callback to an outgoing message.

    Statuses only move forward (sent -> delivered -> read). Unknown message
    ids and 'failed' callbacks are acknowledged and logged.
    """
    raw_body = await _verified_body(request, x_signature)
    payload = _parse_body(request, raw_body, StatusWebhookRequest)

    if payload.status == "failed":
        logger.warning(f"Provider reported delivery failure for {payload.message_id}")
        result = "status_failed"
    else:
        advanced = advance_message_status(db, payload.message_id, payload.status, at=_normalize_ts(payload.ts))
        result = "status_update" if advanced else "status_ignored"

    record_webhook_outcome(result)
    log_webhook_data(request=request, message_id=payload.message_id, dup=False, result=result)
    return WebhookResponse(status="ok")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.get("/conversations", response_model=ConversationsListResponse)
async def get_conversations(
    branch_id: Annotated[str, Query(min_length=1, description="Branch scope")],
    participant_type: Annotated[ParticipantType | None, Query(description="Filter by participant type")] = None,
    search: Annotated[str | None, Query(description="Case-insensitive participant name search")] = None,
    include_inactive: Annotated[bool, Query(description="Include deactivated conversations")] = False,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db)
) -> ConversationsListResponse:
    """
    List a branch's conversations, most recently active first.
    Conversations without any message sort last.
    """
    conversations, total = list_conversations(
        db,
        branch_id=branch_id,
        participant_type=participant_type,
        search=search,
        limit=limit,
        offset=offset,
        include_inactive=include_inactive,
    )
    return ConversationsListResponse(
        data=[_conversation_out(c) for c in conversations],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + limit < total,
    )


@app.post("/conversations", response_model=ConversationResponse, responses=ERROR_RESPONSES)
async def create_conversation(
    payload: ConversationCreateRequest,
    response: Response,
    db: Session = Depends(get_db)
) -> ConversationResponse:
    """
    Return the conversation with a participant, creating it if needed (201).
    Used to start an outgoing conversation.
    """
    key = ParticipantKey(payload.branch_id, normalize_msisdn(payload.participant_phone))
    conversation, created = get_or_create_conversation(
        db,
        key,
        participant_type=payload.participant_type,
        participant_name=payload.participant_name,
        participant_id=payload.participant_id,
        metadata=payload.metadata,
    )
    if created:
        response.status_code = status.HTTP_201_CREATED
    return _conversation_out(conversation)


@app.get("/conversations/{conversation_id}", response_model=ConversationResponse, responses=ERROR_RESPONSES)
async def get_conversation_detail(conversation_id: str, db: Session = Depends(get_db)) -> ConversationResponse:
    return _conversation_out(get_conversation(db, conversation_id))


@app.patch("/conversations/{conversation_id}", response_model=ConversationResponse, responses=ERROR_RESPONSES)
async def update_conversation(
    conversation_id: str,
    payload: ConversationUpdateRequest,
    request: Request,
    db: Session = Depends(get_db)
) -> ConversationResponse:
    """Deactivate or reactivate a conversation."""
    attach_log_fields(request, conversation_id=conversation_id)
    return _conversation_out(set_conversation_active(db, conversation_id, payload.is_active))


@app.post("/conversations/{conversation_id}/repair", response_model=ConversationResponse, responses=ERROR_RESPONSES)
async def repair_conversation(
    conversation_id: str,
    request: Request,
    db: Session = Depends(get_db)
) -> ConversationResponse:
    """Rebuild the conversation's cached last-message and counter fields."""
    attach_log_fields(request, conversation_id=conversation_id)
    return _conversation_out(recompute_conversation(db, conversation_id))


@app.get(
    "/conversations/{conversation_id}/window",
    response_model=MessageWindowStatusResponse,
    responses=ERROR_RESPONSES,
)
async def get_message_window(conversation_id: str, db: Session = Depends(get_db)) -> MessageWindowStatusResponse:
    """Whether a freeform reply can currently be delivered to the participant."""
    conversation = get_conversation(db, conversation_id)
    window = check_message_window(conversation.last_message_at, conversation.last_message_from)
    return MessageWindowStatusResponse(
        **window._asdict(),
        conversation_id=conversation.id,
        participant_name=conversation.participant_name,
        participant_phone=conversation.participant_phone,
    )


# =============================================================================
# Message Routes
# =============================================================================

@app.get(
    "/conversations/{conversation_id}/messages",
    response_model=MessagesPageResponse,
    responses=ERROR_RESPONSES,
)
async def get_conversation_messages(
    conversation_id: str,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 50,
    before: Annotated[int | None, Query(ge=1, description="Return messages older than this message id")] = None,
    db: Session = Depends(get_db)
) -> MessagesPageResponse:
    """
    Page through a conversation's messages.

    Ordering:
        - Oldest first within a page (creation order)
        - Pages walk backwards in time: pass next_cursor as `before`
    """
    messages, has_more = list_messages(db, conversation_id, limit=limit, before=before)
    return MessagesPageResponse(
        data=[_message_out(m) for m in messages],
        limit=limit,
        has_more=has_more,
        next_cursor=messages[0].id if has_more and messages else None,
    )


@app.post(
    "/conversations/{conversation_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 422: {"model": ErrorResponse, "description": "Empty message"}},
)
async def send_conversation_message(
    conversation_id: str,
    payload: SendMessageRequest,
    request: Request,
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
    db: Session = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> SendMessageResponse:
    """
    Send a message to the conversation's participant.

    The message is stored before delivery is attempted; a delivery failure
    is reported in `warning` and does not remove the stored message.
    """
    attach_log_fields(request, conversation_id=conversation_id)

    result = await send_message(
        db,
        conversation_id,
        payload.content,
        message_type=payload.message_type,
        sent_by=x_user_id,
        channel=channel,
    )
    attach_log_fields(request, message_id=result.message.id, result=result.delivery_status)

    return SendMessageResponse(
        message=_message_out(result.message),
        delivered=result.delivered,
        delivery_status=result.delivery_status,
        warning=result.warning,
        window=MessageWindowResponse(**result.window._asdict()),
    )


@app.post("/conversations/{conversation_id}/read", response_model=MarkReadResponse, responses=ERROR_RESPONSES)
async def mark_conversation_read(
    conversation_id: str,
    request: Request,
    db: Session = Depends(get_db)
) -> MarkReadResponse:
    """Acknowledge the conversation: mark incoming messages read and clear its unread count."""
    attach_log_fields(request, conversation_id=conversation_id)
    receipt = on_conversation_opened(db, conversation_id)
    return MarkReadResponse(
        conversation_id=conversation_id,
        marked_count=receipt.marked_count,
        unread_count=receipt.unread_count,
    )


@app.get("/messages/search", response_model=MessageSearchResponse)
async def search_branch_messages(
    branch_id: Annotated[str, Query(min_length=1)],
    q: Annotated[str, Query(min_length=1, description="Case-insensitive text to search for")],
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
    db: Session = Depends(get_db)
) -> MessageSearchResponse:
    """Search message content across a branch's conversations, newest first."""
    rows, total = search_messages(db, branch_id, q, limit=limit, offset=offset)
    return MessageSearchResponse(
        data=[
            SearchHit(
                message=_message_out(message),
                conversation_id=conversation.id,
                participant_name=conversation.participant_name,
                participant_type=conversation.participant_type,
                participant_phone=conversation.participant_phone,
            )
            for message, conversation in rows
        ],
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + limit < total,
    )


# =============================================================================
# Template Routes
# =============================================================================

@app.get("/templates", response_model=list[TemplateResponse])
async def get_templates(
    branch_id: Annotated[str, Query(min_length=1)],
    db: Session = Depends(get_db)
) -> list[TemplateResponse]:
    """Approved templates a branch can send: its own plus the global ones."""
    return [TemplateResponse.model_validate(t) for t in list_templates(db, branch_id)]


@app.post(
    "/templates",
    response_model=TemplateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse, "description": "Invalid or duplicate template"}},
)
async def register_template(payload: TemplateCreateRequest, db: Session = Depends(get_db)) -> TemplateResponse:
    template = create_template(db, **payload.model_dump())
    return TemplateResponse.model_validate(template)


@app.post(
    "/conversations/{conversation_id}/templates",
    response_model=SendTemplateResponse,
    status_code=status.HTTP_201_CREATED,
    responses={**ERROR_RESPONSES, 422: {"model": ErrorResponse, "description": "Template not sendable"}},
)
async def send_conversation_template(
    conversation_id: str,
    payload: SendTemplateRequest,
    request: Request,
    x_user_id: Annotated[str | None, Header(alias="X-User-ID")] = None,
    db: Session = Depends(get_db),
    channel: DeliveryChannel = Depends(get_delivery_channel),
) -> SendTemplateResponse:
    """
    Send an approved template, e.g. to re-engage a participant outside the
    messaging window. Stored and delivered like any outgoing message.
    """
    attach_log_fields(request, conversation_id=conversation_id, template_id=payload.template_id)

    result = await send_template_message(
        db,
        conversation_id,
        payload.template_id,
        variables=payload.variables,
        sent_by=x_user_id,
        channel=channel,
    )
    attach_log_fields(request, message_id=result.message.id, result=result.delivery_status)

    return SendTemplateResponse(
        message=_message_out(result.message),
        delivered=result.delivered,
        delivery_status=result.delivery_status,
        warning=result.warning,
        window=MessageWindowResponse(**result.window._asdict()),
        template_used=result.message.meta["template_name"],
    )


# =============================================================================
# Stats Route
# =============================================================================

@app.get("/stats", response_model=StatsResponse)
async def get_statistics(
    branch_id: Annotated[str, Query(min_length=1)],
    date_from: Annotated[str | None, Query(description="ISO-8601 UTC lower bound")] = None,
    date_to: Annotated[str | None, Query(description="ISO-8601 UTC upper bound")] = None,
    db: Session = Depends(get_db)
) -> StatsResponse:
    """
    Chat analytics for a branch.

    Response:
        - total_conversations / active_conversations (last 7 days)
        - total_unread_messages
        - total_messages / incoming_messages / outgoing_messages
        - conversations_by_type
    """
    stats = get_conversation_stats(db, branch_id, date_from=_normalize_ts(date_from), date_to=_normalize_ts(date_to))
    logger.info(f"GET /stats: {stats['total_conversations']} conversations in branch {branch_id}")
    return StatsResponse(**stats)


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
