import logging
from typing import Awaitable, Callable, NamedTuple, Optional

from sqlalchemy.orm import Session

from school_chat.conversations import get_active_conversation
from school_chat.delivery import DeliveryChannel, MessageWindow, check_message_window, get_delivery_channel
from school_chat.errors import DeliveryError, ValidationError
from school_chat.metrics import record_delivery_outcome, record_message_stored
from school_chat.models import ChatMessage, Direction, MessageType
from school_chat.storage import append_message, transaction
from school_chat.templates import check_sendable, get_template, template_parameters

logger = logging.getLogger(__name__)


class SendResult(NamedTuple):
    message: ChatMessage
    delivered: bool
    delivery_status: str  # delivered, skipped or failed
    warning: Optional[str]
    window: MessageWindow


async def send_message(
    db: Session,
    conversation_id: str,
    content: str,
    message_type="TEXT",
    sent_by: Optional[str] = None,
    channel: Optional[DeliveryChannel] = None,
) -> SendResult:
    """
    Persist an outgoing message, then hand it to the delivery channel.

    The message and the conversation cache are committed before delivery is
    attempted. A delivery failure leaves the message stored with status
    'sent' and is reported through the result's warning.

    Raises:
        ValidationError: content is empty or whitespace only
        NotFoundError: conversation does not exist
        InactiveConversationError: conversation is deactivated
    """
    if content is None or not content.strip():
        raise ValidationError("Message content is required")

    channel = channel or get_delivery_channel()

    conversation = get_active_conversation(db, conversation_id)
    window = check_message_window(conversation.last_message_at, conversation.last_message_from)
    phone = conversation.participant_phone

    message = append_message(
        db,
        conversation_id,
        Direction.OUTGOING,
        content,
        message_type,
        sent_by=sent_by,
    )
    record_message_stored(Direction.OUTGOING.value)
    logger.info(f"Outgoing message {message.id} stored for conversation {conversation_id}")

    if not window.can_send_freeform:
        logger.debug(f"Conversation {conversation_id} outside messaging window: {window.reason}")

    return await _deliver(db, message, window, channel, lambda: channel.send_text(phone, content))


async def send_template_message(
    db: Session,
    conversation_id: str,
    template_id: str,
    variables: Optional[dict] = None,
    sent_by: Optional[str] = None,
    channel: Optional[DeliveryChannel] = None,
) -> SendResult:
    """
    Persist a template message, then hand the template to the delivery channel.

    Templates are how a participant is re-engaged outside the messaging
    window. The stored content is the placeholder "[Template: <name>]"; the
    template id, name and variable values go into the message metadata.

    Raises:
        NotFoundError: conversation or template does not exist
        InactiveConversationError: conversation is deactivated
        ValidationError: template not usable by this branch, or a variable is missing
    """
    channel = channel or get_delivery_channel()

    conversation = get_active_conversation(db, conversation_id)
    template = get_template(db, template_id)
    check_sendable(template, conversation.branch_id)
    parameters = template_parameters(template, variables)

    window = check_message_window(conversation.last_message_at, conversation.last_message_from)
    phone = conversation.participant_phone
    provider_name, language = template.provider_template_name, template.language

    message = append_message(
        db,
        conversation_id,
        Direction.OUTGOING,
        f"[Template: {template.name}]",
        MessageType.TEXT,
        sent_by=sent_by,
        metadata={
            "template_id": template.id,
            "template_name": template.name,
            "template_variables": dict(variables or {}),
        },
    )
    record_message_stored(Direction.OUTGOING.value)
    logger.info(f"Template {template.name} stored as message {message.id} for conversation {conversation_id}")

    return await _deliver(
        db, message, window, channel, lambda: channel.send_template(phone, provider_name, language, parameters)
    )


async def _deliver(
    db: Session,
    message: ChatMessage,
    window: MessageWindow,
    channel: DeliveryChannel,
    send: Callable[[], Awaitable[Optional[str]]],
) -> SendResult:
    try:
        provider_message_id = await send()
    except DeliveryError as e:
        record_delivery_outcome("failed")
        logger.warning(f"Message {message.id} saved but not delivered via {channel.name}: {e.detail}")
        return SendResult(message, False, "failed", f"Message saved but not delivered: {e.detail}", window)

    if provider_message_id is None:
        record_delivery_outcome("skipped")
        return SendResult(message, False, "skipped", None, window)

    with transaction(db):
        message.provider_message_id = provider_message_id

    record_delivery_outcome("delivered")
    logger.info(f"Message {message.id} handed to {channel.name} as {provider_message_id}")
    return SendResult(message, True, "delivered", None, window)
