"""
Conversation aggregate: one row per (branch, participant phone).

All writes to the cached columns go through single UPDATE statements with
SQL-side arithmetic, so concurrent writers never lose an increment.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import NamedTuple, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from school_chat.errors import DuplicateMessageError, InactiveConversationError, NotFoundError
from school_chat.models import ChatMessage, Conversation, Direction, ParticipantType
from school_chat.storage import append_message, transaction
from school_chat.utils import format_timestamp, utc_now_iso

logger = logging.getLogger(__name__)

ACTIVE_WINDOW_DAYS = 7


class ParticipantKey(NamedTuple):
    branch_id: str
    participant_phone: str


# =============================================================================
# Lookups
# =============================================================================

def get_conversation(db: Session, conversation_id: str) -> Conversation:
    """Fetch a conversation or raise NotFoundError."""
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return conversation


def get_active_conversation(db: Session, conversation_id: str) -> Conversation:
    """Fetch a conversation that accepts writes."""
    conversation = get_conversation(db, conversation_id)
    if not conversation.is_active:
        raise InactiveConversationError(f"Conversation {conversation_id} is inactive")
    return conversation


def find_conversation(db: Session, key: ParticipantKey) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.branch_id == key.branch_id,
            Conversation.participant_phone == key.participant_phone,
        )
        .first()
    )


def get_or_create_conversation(
    db: Session,
    key: ParticipantKey,
    participant_type=ParticipantType.UNKNOWN,
    participant_name: Optional[str] = None,
    participant_id: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> Tuple[Conversation, bool]:
    """
    Return the conversation for a participant, creating it on first contact.

    A concurrent creation for the same participant key loses on the unique
    constraint; the loser rolls back and reads the winner's row.

    Returns:
        Tuple of (conversation, created)
    """
    existing = find_conversation(db, key)
    if existing is not None:
        return existing, False

    now = utc_now_iso()
    conversation = Conversation(
        branch_id=key.branch_id,
        participant_type=ParticipantType(participant_type).value,
        participant_id=participant_id,
        participant_name=participant_name or key.participant_phone,
        participant_phone=key.participant_phone,
        is_active=True,
        meta=metadata,
        unread_count=0,
        total_message_count=0,
        created_at=now,
        updated_at=now,
    )
    try:
        db.add(conversation)
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Conversation for {key.participant_phone} in branch {key.branch_id} created concurrently")
        existing = find_conversation(db, key)
        if existing is None:
            raise
        return existing, False

    logger.info(f"Created conversation {conversation.id} for {key.participant_phone} in branch {key.branch_id}")
    return conversation, True


# =============================================================================
# Cache maintenance
# =============================================================================

def apply_message_to_conversation(
    db: Session,
    conversation: Conversation,
    message: ChatMessage,
    currently_open: bool = False,
) -> None:
    """
    Fold a freshly inserted message into the conversation's cached columns.

    Runs inside the caller's transaction as a single UPDATE.
    """
    increment = 1 if message.direction == Direction.INCOMING.value and not currently_open else 0

    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .values(
            last_message_at=message.created_at,
            last_message_content=message.content,
            last_message_from=message.direction,
            unread_count=Conversation.unread_count + increment,
            total_message_count=Conversation.total_message_count + 1,
            updated_at=message.created_at,
        )
        .execution_options(synchronize_session=False)
    )
    db.expire(conversation)
    logger.debug(f"Conversation {conversation.id} cache updated (unread +{increment})")


def upsert_on_message(
    db: Session,
    key: ParticipantKey,
    direction,
    content: str,
    message_type="TEXT",
    participant_type=None,
    participant_name: Optional[str] = None,
    participant_id: Optional[str] = None,
    participant_metadata: Optional[dict] = None,
    currently_open: bool = False,
    **message_fields,
) -> Tuple[Conversation, ChatMessage]:
    """
    Record a message for a participant, creating the conversation if needed.

    Participant details supplied with the message refresh the stored ones,
    since the upstream directory may have renamed or reclassified them.

    Args:
        db: Database session
        key: Participant key (branch_id, participant_phone)
        direction: INCOMING or OUTGOING
        content: Message text
        message_type: Message type
        participant_type: Classification of the participant
        participant_name: Display name
        participant_id: Id of the student/teacher/employee/parent record
        participant_metadata: Free-form participant details
        currently_open: Conversation is open in the viewer's session
        **message_fields: Passed through to append_message (media_url, provider_message_id, ...)

    Returns:
        Tuple of (conversation, message)
    """
    conversation, created = get_or_create_conversation(
        db,
        key,
        participant_type=participant_type or ParticipantType.UNKNOWN,
        participant_name=participant_name,
        participant_id=participant_id,
        metadata=participant_metadata,
    )

    if not created and conversation.is_active:
        if participant_name:
            conversation.participant_name = participant_name
        if participant_type:
            conversation.participant_type = ParticipantType(participant_type).value
        if participant_id:
            conversation.participant_id = participant_id
        if participant_metadata is not None:
            conversation.meta = participant_metadata

    try:
        message = append_message(
            db,
            conversation.id,
            direction,
            content,
            message_type,
            currently_open=currently_open,
            **message_fields,
        )
    except DuplicateMessageError:
        if created:
            _discard_if_empty(db, conversation.id)
        raise
    db.refresh(conversation)
    return conversation, message


def _discard_if_empty(db: Session, conversation_id: str) -> None:
    """Remove a conversation created for a message that turned out to be a duplicate."""
    with transaction(db):
        result = db.execute(
            delete(Conversation)
            .where(Conversation.id == conversation_id, Conversation.total_message_count == 0)
            .execution_options(synchronize_session=False)
        )
    if result.rowcount:
        logger.info(f"Discarded empty conversation {conversation_id}")


def mark_opened(db: Session, conversation_id: str, commit: bool = True) -> int:
    """
    Reset a conversation's unread counter.

    The counter is re-derived from unread incoming messages inside the same
    UPDATE, so after mark_messages_read it lands on 0, or on the number of
    messages that arrived after the read cutoff.

    Returns:
        The new unread count
    """
    with transaction(db, commit=commit):
        conversation = get_active_conversation(db, conversation_id)
        unread = (
            select(func.count(ChatMessage.id))
            .where(
                ChatMessage.conversation_id == conversation_id,
                ChatMessage.direction == Direction.INCOMING.value,
                ChatMessage.read_at.is_(None),
            )
            .scalar_subquery()
        )
        db.execute(
            update(Conversation)
            .where(Conversation.id == conversation_id)
            .values(unread_count=unread, updated_at=utc_now_iso())
            .execution_options(synchronize_session=False)
        )
        db.expire(conversation)
        unread_count = conversation.unread_count

    logger.info(f"Conversation {conversation_id} opened, unread_count={unread_count}")
    return unread_count


def set_conversation_active(db: Session, conversation_id: str, is_active: bool) -> Conversation:
    """Deactivate or reactivate a conversation. Conversations are never deleted."""
    with transaction(db):
        conversation = get_conversation(db, conversation_id)
        conversation.is_active = is_active
        conversation.updated_at = utc_now_iso()

    logger.info(f"Conversation {conversation_id} {'reactivated' if is_active else 'deactivated'}")
    db.refresh(conversation)
    return conversation


def recompute_conversation(db: Session, conversation_id: str) -> Conversation:
    """
    Rebuild a conversation's cached columns from its messages.

    Repair pass for rows whose cache drifted, e.g. after manual data fixes.
    """
    with transaction(db):
        conversation = get_conversation(db, conversation_id)

        latest = (
            db.query(ChatMessage)
            .filter(ChatMessage.conversation_id == conversation_id)
            .order_by(ChatMessage.id.desc())
            .first()
        )
        total = (
            db.query(func.count(ChatMessage.id))
            .filter(ChatMessage.conversation_id == conversation_id)
            .scalar()
        ) or 0
        unread = (
            db.query(func.count(ChatMessage.id))
            .filter(
                ChatMessage.conversation_id == conversation_id,
                ChatMessage.direction == Direction.INCOMING.value,
                ChatMessage.read_at.is_(None),
            )
            .scalar()
        ) or 0

        conversation.last_message_at = latest.created_at if latest else None
        conversation.last_message_content = latest.content if latest else None
        conversation.last_message_from = latest.direction if latest else None
        conversation.total_message_count = total
        conversation.unread_count = unread
        conversation.updated_at = utc_now_iso()

    logger.info(f"Recomputed conversation {conversation_id}: total={total}, unread={unread}")
    db.refresh(conversation)
    return conversation


# =============================================================================
# Queries
# =============================================================================

def list_conversations(
    db: Session,
    branch_id: str,
    participant_type=None,
    search: Optional[str] = None,
    limit: int = 20,
    offset: int = 0,
    include_inactive: bool = False,
) -> Tuple[list, int]:
    """
    List a branch's conversations, most recently active first.

    Args:
        db: Database session
        branch_id: Branch scope
        participant_type: Only conversations with this participant type
        search: Case-insensitive substring of the participant name, or part of the phone
        limit: Maximum number of conversations to return
        offset: Number of conversations to skip
        include_inactive: Also return deactivated conversations

    Returns:
        Tuple of (conversations, total count matching filters)
    """
    logger.info(f"Listing conversations for branch {branch_id}: limit={limit}, offset={offset}")
    logger.debug(f"Filters: participant_type={participant_type}, search={search}, include_inactive={include_inactive}")

    query = db.query(Conversation).filter(Conversation.branch_id == branch_id)

    if not include_inactive:
        query = query.filter(Conversation.is_active.is_(True))

    if participant_type:
        query = query.filter(Conversation.participant_type == ParticipantType(participant_type).value)

    if search:
        query = query.filter(
            or_(
                Conversation.participant_name.icontains(search, autoescape=True),
                Conversation.participant_phone.contains(search, autoescape=True),
            )
        )

    total = query.count()

    # Conversations without messages sort last
    query = query.order_by(
        Conversation.last_message_at.is_(None),
        Conversation.last_message_at.desc(),
        Conversation.created_at.desc(),
    )

    conversations = query.offset(offset).limit(limit).all()
    logger.info(f"Retrieved {len(conversations)} of {total} conversations")
    return conversations, total


def get_conversation_stats(
    db: Session,
    branch_id: str,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> dict:
    """
    Chat statistics for a branch.

    Computes:
    - total_conversations
    - active_conversations: last message within the past 7 days
    - total_unread_messages: sum of unread counters
    - total_messages, incoming_messages, outgoing_messages
    - conversations_by_type: participant type -> conversation count

    The optional date range (ISO-8601 UTC) applies to conversation and
    message creation time.
    """
    logger.info(f"Computing chat statistics for branch {branch_id}")

    conversations = db.query(Conversation).filter(Conversation.branch_id == branch_id)
    messages = (
        db.query(ChatMessage)
        .join(Conversation, ChatMessage.conversation_id == Conversation.id)
        .filter(Conversation.branch_id == branch_id)
    )
    if date_from and date_to:
        conversations = conversations.filter(
            Conversation.created_at >= date_from, Conversation.created_at <= date_to
        )
        messages = messages.filter(
            ChatMessage.created_at >= date_from, ChatMessage.created_at <= date_to
        )

    total_conversations = conversations.count()

    active_since = format_timestamp(datetime.now(timezone.utc) - timedelta(days=ACTIVE_WINDOW_DAYS))
    active_conversations = conversations.filter(Conversation.last_message_at >= active_since).count()

    total_unread = (
        conversations.with_entities(func.coalesce(func.sum(Conversation.unread_count), 0)).scalar()
    ) or 0

    by_type_rows = (
        conversations.with_entities(Conversation.participant_type, func.count(Conversation.id))
        .group_by(Conversation.participant_type)
        .all()
    )

    total_messages = messages.count()
    incoming_messages = messages.filter(ChatMessage.direction == Direction.INCOMING.value).count()

    logger.debug(f"Stats: {total_conversations} conversations, {total_messages} messages")

    return {
        "total_conversations": total_conversations,
        "active_conversations": active_conversations,
        "total_unread_messages": int(total_unread),
        "total_messages": total_messages,
        "incoming_messages": incoming_messages,
        "outgoing_messages": total_messages - incoming_messages,
        "conversations_by_type": {row[0]: row[1] for row in by_type_rows},
    }
