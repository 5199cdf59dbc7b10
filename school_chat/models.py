"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy and the
enumerations stored in them. For Pydantic request/response schemas, see
schemas.py.
"""

import enum
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from school_chat.storage import Base


class ParticipantType(str, enum.Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    EMPLOYEE = "employee"
    PARENT = "parent"
    UNKNOWN = "unknown"


class Direction(str, enum.Enum):
    INCOMING = "INCOMING"
    OUTGOING = "OUTGOING"


class MessageType(str, enum.Enum):
    TEXT = "TEXT"
    IMAGE = "IMAGE"
    DOCUMENT = "DOCUMENT"
    AUDIO = "AUDIO"
    VIDEO = "VIDEO"
    LOCATION = "LOCATION"


class MessageStatus(str, enum.Enum):
    """Delivery status of outgoing messages, in the order it advances."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class TemplateStatus(str, enum.Enum):
    """Provider review state of a message template."""

    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


STATUS_RANK = {
    MessageStatus.SENT.value: 0,
    MessageStatus.DELIVERED.value: 1,
    MessageStatus.READ.value: 2,
}


def _new_id() -> str:
    return str(uuid.uuid4())


class Conversation(Base):
    """
    One conversation per external participant within a branch.

    Table: conversations
    Participant key: (branch_id, participant_phone)

    The last_message_*, unread_count and total_message_count columns are a
    cache over chat_messages, maintained in the same transaction as every
    message write.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("branch_id", "participant_phone", name="uq_conversation_participant"),
        Index("ix_conversations_branch_last_message", "branch_id", "last_message_at"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    branch_id = Column(String, nullable=False, index=True)
    participant_type = Column(String, nullable=False, default=ParticipantType.UNKNOWN.value)
    participant_id = Column(String, nullable=True)
    participant_name = Column(String, nullable=False)
    participant_phone = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    # 'metadata' is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)

    last_message_at = Column(String, nullable=True)  # ISO-8601 UTC string
    last_message_content = Column(Text, nullable=True)
    last_message_from = Column(String, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    total_message_count = Column(Integer, nullable=False, default=0)

    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class ChatMessage(Base):
    """
    A single inbound or outbound message.

    Table: chat_messages
    Primary Key: id, assigned in creation order
    """
    __tablename__ = "chat_messages"
    __table_args__ = (
        Index("ix_chat_messages_conversation_id_id", "conversation_id", "id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    direction = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String, nullable=False, default=MessageType.TEXT.value)
    status = Column(String, nullable=True)  # outgoing only
    read_at = Column(String, nullable=True)
    sent_by = Column(String, nullable=True)
    media_url = Column(String, nullable=True)
    media_type = Column(String, nullable=True)
    provider_message_id = Column(String, nullable=True, unique=True)
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(String, nullable=False, index=True)


class MessageTemplate(Base):
    """
    A pre-approved WhatsApp message template.

    Table: message_templates
    Templates with branch_id NULL are shared by every branch. `variables`
    lists the placeholder names in the order the provider expects them.
    """
    __tablename__ = "message_templates"
    __table_args__ = (
        UniqueConstraint("branch_id", "name", "language", name="uq_template_name"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    branch_id = Column(String, nullable=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    body = Column(Text, nullable=False)
    variables = Column(JSON, nullable=True)
    category = Column(String, nullable=False, default="UTILITY")
    language = Column(String, nullable=False, default="en")
    provider_template_name = Column(String, nullable=True)  # name registered with WhatsApp
    status = Column(String, nullable=False, default=TemplateStatus.PENDING.value)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
