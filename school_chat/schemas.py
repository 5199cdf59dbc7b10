"""
Pydantic schemas for request/response validation.

This module contains:
- Webhook request models for inbound messages and status callbacks
- Chat request models (create conversation, send message, update)
- Response models for the HTTP API, also used by the polling client
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

from school_chat.models import Direction, MessageType, ParticipantType, TemplateStatus


def _validate_e164(value: str, field_name: str) -> str:
    if not value.startswith("+"):
        raise ValueError(f"{field_name} must start with '+'")
    if len(value) < 2:
        raise ValueError(f"{field_name} must have at least one digit after '+'")
    if not value[1:].isdigit():
        raise ValueError(f"{field_name} must contain only digits after '+'")
    return value


# =============================================================================
# Webhook Request Models
# =============================================================================

class WebhookRequest(BaseModel):
    """
    Inbound message pushed by the WhatsApp provider bridge.

    Validates:
    - message_id: non-empty provider message id (idempotency key)
    - branch_id: branch receiving the message
    - from: E.164-like format (starts with +, then digits only)
    - ts: ISO-8601 UTC string with Z suffix
    - text: optional, max 4096 characters
    """
    message_id: str = Field(..., min_length=1, description="Provider message identifier")
    branch_id: str = Field(..., min_length=1, description="Branch the message was received for")
    # 'from' is a reserved word in Python, so we use alias
    from_msisdn: str = Field(..., alias="from", description="Sender phone number in E.164 format")
    ts: str = Field(..., description="Provider timestamp in ISO-8601 UTC format")
    text: Optional[str] = Field(None, max_length=4096, description="Message text or media caption")
    message_type: MessageType = Field(MessageType.TEXT, description="Message type")
    media_url: Optional[str] = Field(None, description="Media reference for non-text messages")
    media_type: Optional[str] = Field(None, description="Media MIME type")
    participant_name: Optional[str] = Field(None, description="Resolved participant display name")
    participant_type: Optional[ParticipantType] = Field(None, description="Resolved participant classification")
    participant_id: Optional[str] = Field(None, description="Resolved participant record id")

    @field_validator("from_msisdn")
    @classmethod
    def validate_e164_format(cls, v: str) -> str:
        return _validate_e164(v, "from")

    @field_validator("ts")
    @classmethod
    def validate_iso8601_utc(cls, v: str) -> str:
        """Validate ISO-8601 UTC timestamp with Z suffix."""
        if not v.endswith("Z"):
            raise ValueError("ts must end with 'Z' (UTC timezone)")
        try:
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("ts must be a valid ISO-8601 UTC timestamp (e.g., 2025-01-15T10:00:00Z)")
        return v

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "examples": [
                {
                    "message_id": "wamid.1",
                    "branch_id": "branch-1",
                    "from": "+919876543210",
                    "ts": "2025-01-15T10:00:00Z",
                    "text": "Hello",
                }
            ]
        },
    }


class StatusWebhookRequest(BaseModel):
    """Provider delivery status callback for an outgoing message."""
    message_id: str = Field(..., min_length=1, description="Provider message identifier")
    status: Literal["sent", "delivered", "read", "failed"]
    ts: Optional[str] = Field(None, description="Provider timestamp in ISO-8601 UTC format")


# =============================================================================
# Chat Request Models
# =============================================================================

class ConversationCreateRequest(BaseModel):
    """Open (or fetch) the conversation with a participant before messaging them."""
    branch_id: str = Field(..., min_length=1)
    participant_phone: str = Field(..., description="Participant phone number in E.164 format")
    participant_name: Optional[str] = None
    participant_type: ParticipantType = ParticipantType.UNKNOWN
    participant_id: Optional[str] = None
    metadata: Optional[dict] = None

    @field_validator("participant_phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        return _validate_e164(v, "participant_phone")


class ConversationUpdateRequest(BaseModel):
    is_active: bool


class SendMessageRequest(BaseModel):
    content: str = Field(..., max_length=4096, description="Message text")
    message_type: MessageType = MessageType.TEXT


class TemplateCreateRequest(BaseModel):
    """Register a template; omit branch_id for one shared by every branch."""
    name: str = Field(..., min_length=1, max_length=100)
    body: str = Field(..., min_length=1, description="Template text as approved by the provider")
    branch_id: Optional[str] = None
    description: Optional[str] = None
    variables: list[str] = Field(default_factory=list, description="Placeholder names in provider order")
    category: str = "UTILITY"
    language: str = "en"
    provider_template_name: Optional[str] = Field(None, description="Template name registered with WhatsApp")
    status: TemplateStatus = TemplateStatus.PENDING


class SendTemplateRequest(BaseModel):
    template_id: str = Field(..., min_length=1)
    variables: dict[str, str] = Field(default_factory=dict)


# =============================================================================
# Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Response model for successful webhook processing."""
    status: str = Field(default="ok", description="Operation status")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")


class ConversationResponse(BaseModel):
    """A conversation with its cached last-message fields."""
    id: str
    branch_id: str
    participant_type: ParticipantType
    participant_id: Optional[str] = None
    participant_name: str
    participant_phone: str
    is_active: bool
    metadata: Optional[dict] = Field(None, validation_alias=AliasChoices("meta", "metadata"))
    last_message_at: Optional[str] = None
    last_message_content: Optional[str] = None
    last_message_from: Optional[Direction] = None
    unread_count: int = Field(..., ge=0)
    total_message_count: int = Field(..., ge=0)
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


class ConversationsListResponse(BaseModel):
    """
    Response model for GET /conversations.

    Contains:
    - data: conversations matching filters, most recently active first
    - total: total count matching filters (ignoring pagination)
    - limit, offset: the pagination values used
    - has_more: whether another page exists
    """
    data: list[ConversationResponse] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int = Field(..., ge=1, le=100)
    offset: int = Field(..., ge=0)
    has_more: bool


class ChatMessageResponse(BaseModel):
    id: int
    conversation_id: str
    direction: Direction
    content: str
    message_type: MessageType
    status: Optional[str] = None
    read_at: Optional[str] = None
    sent_by: Optional[str] = None
    media_url: Optional[str] = None
    media_type: Optional[str] = None
    provider_message_id: Optional[str] = None
    metadata: Optional[dict] = Field(None, validation_alias=AliasChoices("meta", "metadata"))
    created_at: str

    model_config = {"from_attributes": True}


class MessagesPageResponse(BaseModel):
    """
    Response model for GET /conversations/{id}/messages.

    Messages are in creation order (oldest first). Pass next_cursor as
    `before` to fetch the preceding page.
    """
    data: list[ChatMessageResponse] = Field(default_factory=list)
    limit: int = Field(..., ge=1, le=100)
    has_more: bool
    next_cursor: Optional[int] = None


class MessageWindowResponse(BaseModel):
    can_send_freeform: bool
    reason: str
    last_incoming_message_at: Optional[str] = None
    hours_remaining: Optional[float] = None


class SendMessageResponse(BaseModel):
    """
    Result of sending a message.

    The message is always stored; `delivered` and `warning` report what the
    outbound channel did with it.
    """
    message: ChatMessageResponse
    delivered: bool
    delivery_status: Literal["delivered", "skipped", "failed"]
    warning: Optional[str] = None
    window: MessageWindowResponse


class SendTemplateResponse(SendMessageResponse):
    template_used: str


class TemplateResponse(BaseModel):
    id: str
    branch_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    body: str
    variables: list[str] = Field(default_factory=list)
    category: str
    language: str
    provider_template_name: Optional[str] = None
    status: TemplateStatus
    is_active: bool

    model_config = {"from_attributes": True}


class MarkReadResponse(BaseModel):
    conversation_id: str
    marked_count: int = Field(..., ge=0)
    unread_count: int = Field(..., ge=0)


class MessageWindowStatusResponse(MessageWindowResponse):
    conversation_id: str
    participant_name: str
    participant_phone: str


class SearchHit(BaseModel):
    message: ChatMessageResponse
    conversation_id: str
    participant_name: str
    participant_type: ParticipantType
    participant_phone: str


class MessageSearchResponse(BaseModel):
    data: list[SearchHit] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int
    offset: int
    has_more: bool


class StatsResponse(BaseModel):
    """
    Response model for GET /stats.

    Provides branch-level chat analytics:
    - total_conversations, active_conversations (last 7 days)
    - total_unread_messages
    - total_messages, incoming_messages, outgoing_messages
    - conversations_by_type: participant type -> conversation count
    """
    total_conversations: int = Field(..., ge=0)
    active_conversations: int = Field(..., ge=0)
    total_unread_messages: int = Field(..., ge=0)
    total_messages: int = Field(..., ge=0)
    incoming_messages: int = Field(..., ge=0)
    outgoing_messages: int = Field(..., ge=0)
    conversations_by_type: dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
