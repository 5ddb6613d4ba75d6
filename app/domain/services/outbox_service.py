"""
Outbox Service - Transactional Outbox Pattern for notifications and domain events

Rows are added to the caller's session and committed with the change that
produced them. The Celery outbox worker delivers them afterwards.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import List
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, delete, or_

from app.core.config import settings
from app.core.logging import get_logger
from app.db.models.outbox_message import OutboxMessage, MessageChannel, MessageStatus
from app.domain.events import DomainEvent

logger = get_logger(__name__)


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    base_seconds * 2**retry_count, capped at max_backoff_seconds.

    The cap is found from the bit length of ceil(max / base) so a very large
    retry_count never computes a huge power.
    """
    if retry_count < 0:
        retry_count = 0

    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0

    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    required_multiplier = -(-max_backoff_seconds // base_seconds)
    threshold = (required_multiplier - 1).bit_length()

    if retry_count >= threshold:
        return max_backoff_seconds

    return min(base_seconds * (1 << retry_count), max_backoff_seconds)


class OutboxService:
    """Queue and track outbox rows (email, SMS and domain events)"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_message(
        self,
        channel: MessageChannel,
        recipient_id: str,
        message_type: str,
        message_content: dict
    ) -> OutboxMessage:
        message = OutboxMessage(
            channel=channel,
            recipient_id=str(recipient_id),
            message_type=message_type,
            message_content=message_content,
            status=MessageStatus.PENDING,
            retry_count=0,
            max_retries=3
        )
        self.db.add(message)
        return message

    async def queue_event(self, event: DomainEvent) -> OutboxMessage:
        """Store a domain event for publication on the external bus"""
        return await self.queue_message(
            channel=MessageChannel.EVENT,
            recipient_id=event.entity_type,
            message_type=event.name,
            message_content=event.to_dict(),
        )

    async def get_pending_messages(self, limit: int = 100) -> List[OutboxMessage]:
        """Pending rows whose retry delay (if any) has elapsed, oldest first"""
        now = datetime.utcnow()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at, OutboxMessage.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _get(self, message_id: int) -> OutboxMessage | None:
        result = await self.db.execute(
            select(OutboxMessage).where(OutboxMessage.id == message_id)
        )
        return result.scalar_one_or_none()

    async def mark_as_processing(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.PROCESSING
            await self.db.commit()

    async def mark_as_sent(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.SENT
            message.processed_at = datetime.utcnow()
            message.last_error = None
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """Count the failure; schedule a retry with backoff or give up after max_retries"""
        message = await self._get(message_id)
        if not message:
            return

        message.retry_count = (message.retry_count or 0) + 1
        message.last_error = error[:1000]

        if message.retry_count >= message.max_retries:
            message.status = MessageStatus.FAILED
            logger.warning(
                "Outbox message permanently failed",
                extra_data={
                    "message_id": message.id,
                    "channel": message.channel.value,
                    "message_type": message.message_type,
                    "retry_count": message.retry_count,
                }
            )
        else:
            message.status = MessageStatus.PENDING
            backoff_seconds = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.next_retry_at = datetime.utcnow() + timedelta(seconds=backoff_seconds)

        await self.db.commit()

    async def cleanup_old_messages(self, days: int = 7) -> int:
        """Delete sent and failed rows older than ``days``"""
        cutoff = datetime.utcnow() - timedelta(days=days)
        result = await self.db.execute(
            delete(OutboxMessage).where(
                OutboxMessage.status.in_([MessageStatus.SENT, MessageStatus.FAILED]),
                OutboxMessage.created_at < cutoff,
            )
        )
        await self.db.commit()
        return result.rowcount or 0
