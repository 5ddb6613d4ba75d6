"""
Outbox Message Model - Transactional Outbox Pattern

Notifications and domain events are written in the same commit as the change
that caused them and delivered later by the outbox worker.
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON

from app.db.database import Base


class MessageChannel(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    EVENT = "event"


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)

    channel = Column(
        SQLEnum(MessageChannel, values_callable=lambda x: [e.value for e in x]),
        nullable=False
    )
    recipient_id = Column(String(50), nullable=False)  # account id, or channel name for events

    message_type = Column(String(50), nullable=False)  # notification kind or event name
    message_content = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(MessageStatus, values_callable=lambda x: [e.value for e in x]),
        default=MessageStatus.PENDING,
        index=True
    )
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)

    created_at = Column(DateTime, default=datetime.utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
