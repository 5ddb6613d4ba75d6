from datetime import datetime, timedelta

import pytest

from app.core.config import settings
from app.db.models.outbox_message import MessageChannel, MessageStatus, OutboxMessage
from app.domain.services.outbox_service import OutboxService, _calculate_backoff_seconds


def test_calculate_backoff_seconds_doubles() -> None:
    base = 30
    max_backoff = 3600

    assert _calculate_backoff_seconds(0, base_seconds=base, max_backoff_seconds=max_backoff) == 30
    assert _calculate_backoff_seconds(1, base_seconds=base, max_backoff_seconds=max_backoff) == 60
    assert _calculate_backoff_seconds(6, base_seconds=base, max_backoff_seconds=max_backoff) == 1920


def test_calculate_backoff_seconds_is_capped() -> None:
    base = 30
    max_backoff = 3600

    # 30 * 2**7 = 3840 -> capped to 3600
    assert _calculate_backoff_seconds(7, base_seconds=base, max_backoff_seconds=max_backoff) == 3600
    assert _calculate_backoff_seconds(10_000, base_seconds=base, max_backoff_seconds=max_backoff) == 3600


def test_calculate_backoff_seconds_degenerate_inputs() -> None:
    assert _calculate_backoff_seconds(-3, base_seconds=30, max_backoff_seconds=3600) == 30
    assert _calculate_backoff_seconds(2, base_seconds=0, max_backoff_seconds=3600) == 0
    assert _calculate_backoff_seconds(2, base_seconds=7200, max_backoff_seconds=3600) == 3600


async def _queue(db_session, **overrides) -> OutboxMessage:
    fields = {
        "channel": MessageChannel.EMAIL,
        "recipient_id": "1",
        "message_type": "low_balance",
        "message_content": {"to": "tradie@example.com", "subject": "Low balance"},
        "status": MessageStatus.PENDING,
        "retry_count": 0,
        "max_retries": 3,
        **overrides,
    }
    msg = OutboxMessage(**fields)
    db_session.add(msg)
    await db_session.commit()
    await db_session.refresh(msg)
    return msg


@pytest.mark.asyncio
async def test_mark_as_failed_sets_next_retry_at_with_cap(db_session) -> None:
    # a huge retry_count must not compute 2**retry_count
    msg = await _queue(db_session, retry_count=10_000, max_retries=20_000)

    svc = OutboxService(db_session)
    before = datetime.utcnow()
    await svc.mark_as_failed(msg.id, "boom")
    after = datetime.utcnow()

    await db_session.refresh(msg)
    assert msg.status == MessageStatus.PENDING
    assert msg.next_retry_at is not None

    max_backoff = settings.OUTBOX_MAX_BACKOFF_SECONDS
    lower = before + timedelta(seconds=max_backoff) - timedelta(seconds=2)
    upper = after + timedelta(seconds=max_backoff) + timedelta(seconds=2)
    assert lower <= msg.next_retry_at <= upper


@pytest.mark.asyncio
async def test_mark_as_failed_gives_up_after_max_retries(db_session) -> None:
    msg = await _queue(db_session)
    svc = OutboxService(db_session)

    for attempt in range(3):
        await svc.mark_as_failed(msg.id, f"attempt {attempt}")

    await db_session.refresh(msg)
    assert msg.status == MessageStatus.FAILED
    assert msg.retry_count == 3
    assert msg.last_error == "attempt 2"


@pytest.mark.asyncio
async def test_pending_messages_wait_for_retry_delay(db_session) -> None:
    ready = await _queue(db_session)
    await _queue(db_session, next_retry_at=datetime.utcnow() + timedelta(minutes=5))
    await _queue(db_session, status=MessageStatus.SENT)

    pending = await OutboxService(db_session).get_pending_messages()

    assert [m.id for m in pending] == [ready.id]


@pytest.mark.asyncio
async def test_cleanup_removes_only_old_finished_rows(db_session) -> None:
    old = datetime.utcnow() - timedelta(days=10)
    await _queue(db_session, status=MessageStatus.SENT, created_at=old)
    await _queue(db_session, status=MessageStatus.FAILED, created_at=old)
    kept_pending = await _queue(db_session, created_at=old)
    kept_recent = await _queue(db_session, status=MessageStatus.SENT)

    deleted = await OutboxService(db_session).cleanup_old_messages(days=7)

    assert deleted == 2
    remaining = await OutboxService(db_session).get_pending_messages()
    assert [m.id for m in remaining] == [kept_pending.id]
    assert await db_session.get(OutboxMessage, kept_recent.id) is not None
