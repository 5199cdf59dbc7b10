import logging
from contextlib import contextmanager
from typing import Generator, Iterator, List, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session, declarative_base

from school_chat.config import settings
from school_chat.errors import DuplicateMessageError, NotFoundError
from school_chat.utils import utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite sessions cross FastAPI's threadpool
_connect_args = {"check_same_thread": False} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args,
    echo=False,
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("conversations", "chat_messages", "message_templates")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from school_chat import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in REQUIRED_TABLES:
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


@contextmanager
def transaction(db: Session, commit: bool = True) -> Iterator[Session]:
    """
    Run a block as one unit of work.

    With commit=False the caller owns the surrounding transaction and is
    responsible for committing or rolling back.
    """
    try:
        yield db
        if commit:
            db.commit()
    except Exception:
        if commit:
            db.rollback()
        raise


# =============================================================================
# Message Store
# =============================================================================

def append_message(
    db: Session,
    conversation_id: str,
    direction,
    content: str,
    message_type="TEXT",
    media_url: Optional[str] = None,
    media_type: Optional[str] = None,
    sent_by: Optional[str] = None,
    provider_message_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    currently_open: bool = False,
    commit: bool = True,
):
    """
    Append a message to a conversation and refresh the conversation cache.

    Outgoing messages start with status 'sent'; incoming messages carry no
    status. The conversation's last_message_*, unread and total counters are
    updated in the same transaction.

    Args:
        db: Database session
        conversation_id: Owning conversation
        direction: INCOMING or OUTGOING
        content: Message text
        message_type: TEXT, IMAGE, DOCUMENT, AUDIO, VIDEO or LOCATION
        media_url: Optional media reference
        media_type: Optional media MIME type
        sent_by: Staff user who sent an outgoing message
        provider_message_id: Id assigned by the WhatsApp provider
        metadata: Free-form JSON stored with the message
        currently_open: Conversation is open in the viewer's session
        commit: Commit when done; pass False to join the caller's transaction

    Returns:
        The stored ChatMessage

    Raises:
        NotFoundError: conversation does not exist
        InactiveConversationError: conversation is deactivated
        DuplicateMessageError: provider_message_id is already stored (after rollback)
    """
    from school_chat.models import ChatMessage, Direction, MessageStatus, MessageType
    from school_chat.conversations import apply_message_to_conversation, get_active_conversation

    direction = Direction(direction)
    message_type = MessageType(message_type)

    logger.info(f"Appending {direction.value} message to conversation {conversation_id}")

    try:
        with transaction(db, commit=commit):
            conversation = get_active_conversation(db, conversation_id)

            created_at = utc_now_iso()
            incoming = direction is Direction.INCOMING
            message = ChatMessage(
                conversation_id=conversation.id,
                direction=direction.value,
                content=content,
                message_type=message_type.value,
                status=None if incoming else MessageStatus.SENT.value,
                read_at=created_at if incoming and currently_open else None,
                sent_by=sent_by,
                media_url=media_url,
                media_type=media_type,
                provider_message_id=provider_message_id,
                meta=metadata,
                created_at=created_at,
            )
            db.add(message)
            db.flush()
            logger.debug(f"Message {message.id} flushed at {created_at}")

            apply_message_to_conversation(db, conversation, message, currently_open=currently_open)
    except IntegrityError:
        # Lost a race with a concurrent insert of the same provider message
        if not commit or provider_message_id is None:
            raise
        existing = get_message_by_provider_id(db, provider_message_id)
        if existing is None:
            raise
        logger.info(f"Provider message {provider_message_id} already stored as {existing.id}")
        raise DuplicateMessageError(provider_message_id, existing.id)

    return message


def get_message(db: Session, message_id: int):
    """Retrieve a message by id or raise NotFoundError."""
    from school_chat.models import ChatMessage

    message = db.get(ChatMessage, message_id)
    if message is None:
        raise NotFoundError(f"Message {message_id} not found")
    return message


def get_message_by_provider_id(db: Session, provider_message_id: str):
    """
    Retrieve a message by the id the WhatsApp provider assigned to it.

    Returns:
        ChatMessage if found, None otherwise
    """
    from school_chat.models import ChatMessage

    result = (
        db.query(ChatMessage)
        .filter(ChatMessage.provider_message_id == provider_message_id)
        .first()
    )
    logger.debug(f"Provider message lookup {provider_message_id}: {'found' if result else 'not found'}")
    return result


def list_messages(
    db: Session,
    conversation_id: str,
    limit: int = 50,
    before: Optional[int] = None,
) -> Tuple[List, bool]:
    """
    Page through a conversation's messages.

    Returns the newest `limit` messages whose id is below `before` (all
    messages when `before` is None), ordered oldest-first. The id of the
    first returned message is the cursor for the previous page.

    Args:
        db: Database session
        conversation_id: Conversation to read
        limit: Maximum number of messages to return
        before: Exclusive upper bound on message id

    Returns:
        Tuple of (messages in creation order, has_more older messages)
    """
    from school_chat.models import ChatMessage
    from school_chat.conversations import get_conversation

    get_conversation(db, conversation_id)

    query = db.query(ChatMessage).filter(ChatMessage.conversation_id == conversation_id)
    if before is not None:
        query = query.filter(ChatMessage.id < before)

    rows = query.order_by(ChatMessage.id.desc()).limit(limit + 1).all()
    has_more = len(rows) > limit
    messages = list(reversed(rows[:limit]))

    logger.info(f"Retrieved {len(messages)} messages for conversation {conversation_id} (has_more={has_more})")
    return messages, has_more


def mark_messages_read(
    db: Session,
    conversation_id: str,
    up_to: Optional[str] = None,
    commit: bool = True,
) -> int:
    """
    Stamp read_at on unread incoming messages created at or before `up_to`.

    Messages that already carry a read timestamp keep it, so repeating the
    call changes nothing.

    Returns:
        Number of messages newly marked read
    """
    from school_chat.models import ChatMessage, Direction
    from school_chat.conversations import get_conversation

    up_to = up_to or utc_now_iso()

    with transaction(db, commit=commit):
        get_conversation(db, conversation_id)
        result = db.execute(
            update(ChatMessage)
            .where(
                ChatMessage.conversation_id == conversation_id,
                ChatMessage.direction == Direction.INCOMING.value,
                ChatMessage.read_at.is_(None),
                ChatMessage.created_at <= up_to,
            )
            .values(read_at=up_to)
            .execution_options(synchronize_session=False)
        )
        marked = result.rowcount or 0

    logger.info(f"Marked {marked} messages read in conversation {conversation_id} up to {up_to}")
    return marked


def advance_message_status(
    db: Session,
    provider_message_id: str,
    status: str,
    at: Optional[str] = None,
    commit: bool = True,
) -> bool:
    """
    Move an outgoing message's delivery status forward.

    The update only applies when the new status ranks above the stored one,
    so late or repeated provider callbacks never move a message backwards.

    Returns:
        True if the status advanced, False otherwise
    """
    from school_chat.models import ChatMessage, Direction, MessageStatus, STATUS_RANK

    new_status = MessageStatus(status).value
    lower = [s for s, rank in STATUS_RANK.items() if rank < STATUS_RANK[new_status]]
    if not lower:
        logger.debug(f"Status {new_status} cannot advance any message")
        return False

    values = {"status": new_status}
    if new_status == MessageStatus.READ.value:
        values["read_at"] = func.coalesce(ChatMessage.read_at, at or utc_now_iso())

    with transaction(db, commit=commit):
        result = db.execute(
            update(ChatMessage)
            .where(
                ChatMessage.provider_message_id == provider_message_id,
                ChatMessage.direction == Direction.OUTGOING.value,
                ChatMessage.status.in_(lower),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        advanced = (result.rowcount or 0) > 0

    logger.info(f"Status update for {provider_message_id} -> {new_status}: {'advanced' if advanced else 'ignored'}")
    return advanced


def search_messages(
    db: Session,
    branch_id: str,
    q: str,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[list, int]:
    """
    Case-insensitive substring search over message content within a branch.

    Returns:
        Tuple of ([(message, conversation), ...] newest first, total matches)
    """
    from school_chat.models import ChatMessage, Conversation

    logger.info(f"Searching messages in branch {branch_id}: q={q}, limit={limit}, offset={offset}")

    query = (
        db.query(ChatMessage, Conversation)
        .join(Conversation, ChatMessage.conversation_id == Conversation.id)
        .filter(Conversation.branch_id == branch_id)
        .filter(ChatMessage.content.icontains(q, autoescape=True))
    )
    total = query.count()
    rows = query.order_by(ChatMessage.id.desc()).offset(offset).limit(limit).all()

    logger.debug(f"Search returned {len(rows)} of {total} matches")
    return [(row[0], row[1]) for row in rows], total
