import logging
from typing import NamedTuple, Optional

from sqlalchemy.orm import Session

from school_chat.conversations import get_active_conversation, mark_opened
from school_chat.metrics import record_read_receipt
from school_chat.storage import mark_messages_read, transaction
from school_chat.utils import utc_now_iso

logger = logging.getLogger(__name__)


class ReadReceipt(NamedTuple):
    conversation_id: str
    marked_count: int
    unread_count: int
    changed: bool


def on_conversation_opened(
    db: Session,
    conversation_id: str,
    up_to: Optional[str] = None,
) -> ReadReceipt:
    """
    Acknowledge a conversation the viewer just opened.

    Stamps read_at on unread incoming messages created up to `up_to` and
    re-derives the unread counter, both in one transaction. A message that
    arrives after the cutoff stays unread and keeps the counter at 1.
    Opening a conversation with nothing unread writes nothing.

    Args:
        db: Database session
        conversation_id: Conversation being opened
        up_to: Read cutoff (ISO-8601 UTC); defaults to now

    Returns:
        ReadReceipt with the number of messages marked and the new unread count
    """
    conversation = get_active_conversation(db, conversation_id)
    if conversation.unread_count == 0:
        logger.debug(f"Conversation {conversation_id} has no unread messages")
        return ReadReceipt(conversation_id, 0, 0, False)

    up_to = up_to or utc_now_iso()
    with transaction(db):
        marked = mark_messages_read(db, conversation_id, up_to=up_to, commit=False)
        unread_count = mark_opened(db, conversation_id, commit=False)

    record_read_receipt()
    logger.info(f"Conversation {conversation_id} read: marked={marked}, unread_count={unread_count}")
    return ReadReceipt(conversation_id, marked, unread_count, True)
