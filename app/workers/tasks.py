"""
Celery Tasks

Worker side of the transactional outbox (email, SMS and domain events) plus
the periodic sweeps: job expiry, auto-topup, credit expiry, expiring-credit
warnings and monthly summaries.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

from app.workers.celery_app import celery_app
from app.db.database import get_task_session
from app.db.models.outbox_message import MessageChannel, OutboxMessage
from app.domain.service_context import MarketplaceServices, ServiceContext
from app.domain.services.notification_service import NotificationDispatcher
from app.domain.services.outbox_service import OutboxService
from app.domain.services.payment_gateway import create_payment_gateway
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id
from app.core.redis_client import publish_event
from sqlalchemy import select

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Fresh event loop per task, closed with everything still pending on it.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # the Redis singleton is bound to this loop
            from app.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


def _task_services(db: "AsyncSession") -> MarketplaceServices:
    # asyncio locks bind to the running loop, so each task gets its own context
    context = ServiceContext(payment_gateway=create_payment_gateway(), auto_topup_inline=True)
    return context.services(db)


async def deliver_outbox_message(
    db: "AsyncSession", message: OutboxMessage, dispatcher: NotificationDispatcher
) -> tuple[bool, str]:
    """Deliver one outbox row; a failure is recorded on the row for retry"""
    outbox_service = OutboxService(db)
    await outbox_service.mark_as_processing(message.id)

    try:
        if message.channel == MessageChannel.EVENT:
            content = message.message_content
            receivers = await publish_event(content["entity_type"], content["to_state"], content)
            result = f"published to {receivers} receivers"
        else:
            await dispatcher.deliver(message)
            result = "sent"
    except Exception as e:
        logger.warning(
            "Outbox delivery failed",
            extra_data={
                "message_id": message.id,
                "channel": message.channel.value,
                "message_type": message.message_type,
                "error": str(e),
            }
        )
        await outbox_service.mark_as_failed(message.id, str(e))
        return False, str(e)

    await outbox_service.mark_as_sent(message.id)
    return True, result


@celery_app.task(name="app.workers.tasks.process_outbox_messages")
def process_outbox_messages():
    """
    Deliver pending outbox rows whose retry delay has elapsed.
    """

    async def _process():
        async with get_task_session() as db:
            outbox_service = OutboxService(db)
            messages = await outbox_service.get_pending_messages(limit=50)
            dispatcher = NotificationDispatcher()

            results = []
            for message in messages:
                success, result = await deliver_outbox_message(db, message, dispatcher)
                results.append({
                    "message_id": message.id,
                    "success": success,
                    "result": result
                })

            return results

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.send_message")
def send_message(message_id: int):
    """Deliver a specific outbox row by ID"""

    async def _send():
        async with get_task_session() as db:
            result = await db.execute(
                select(OutboxMessage).where(OutboxMessage.id == message_id)
            )
            message = result.scalar_one_or_none()

            if not message:
                return {"error": "Message not found"}

            success, result = await deliver_outbox_message(db, message, NotificationDispatcher())
            return {"success": success, "result": result}

    return run_async(_send())


@celery_app.task(name="app.workers.tasks.evaluate_auto_topup")
def evaluate_auto_topup(account_id: int):
    """Queued after a debit when AUTO_TOPUP_INLINE is off"""

    async def _evaluate():
        async with get_task_session() as db:
            services = _task_services(db)
            result = await services.auto_topup.trigger(account_id)
            return result.to_dict()

    return run_async(_evaluate())


@celery_app.task(name="app.workers.tasks.process_expired_jobs")
def process_expired_jobs():
    """Close available jobs past their expiry and refund their open applications"""

    async def _expire():
        async with get_task_session() as db:
            services = _task_services(db)
            expired = await services.jobs.process_expired_jobs()
            return {"expired": expired}

    return run_async(_expire())


@celery_app.task(name="app.workers.tasks.process_auto_topups")
def process_auto_topups():
    """
    Two passes: policies stuck in processing longer than
    AUTO_TOPUP_STALE_PROCESSING_MINUTES are settled or released, then every
    enabled policy at or under its trigger is charged.
    """

    async def _process():
        async with get_task_session() as db:
            services = _task_services(db)
            resumed = await services.auto_topup.resume_stalled_topups()
            triggered = await services.auto_topup.process_pending_topups()
            logger.info(
                "Auto-topup sweep finished",
                extra_data={"resumed": resumed, "triggered": triggered},
            )
            return {"resumed": resumed, "triggered": triggered}

    return run_async(_process())


@celery_app.task(name="app.workers.tasks.process_expired_credits")
def process_expired_credits():

    async def _expire():
        async with get_task_session() as db:
            services = _task_services(db)
            expired = await services.credits.process_expired_credits()
            return {"expired": expired}

    return run_async(_expire())


@celery_app.task(name="app.workers.tasks.send_expiring_credit_warnings")
def send_expiring_credit_warnings(days: int | None = None):

    async def _warn():
        async with get_task_session() as db:
            services = _task_services(db)
            notified = await services.credits.notify_expiring_credits(
                days or settings.CREDIT_EXPIRY_WARNING_DAYS
            )
            return {"notified": notified}

    return run_async(_warn())


@celery_app.task(name="app.workers.tasks.send_monthly_summaries")
def send_monthly_summaries():
    """Previous calendar month in BUSINESS_TIMEZONE"""

    async def _summarize():
        async with get_task_session() as db:
            services = _task_services(db)
            sent = await services.transactions.send_monthly_summaries()
            return {"sent": sent}

    return run_async(_summarize())


@celery_app.task(name="app.workers.tasks.cleanup_old_messages")
def cleanup_old_messages(days: int = 30):
    """Clean up old sent and failed rows from the outbox"""

    async def _cleanup():
        async with get_task_session() as db:
            deleted = await OutboxService(db).cleanup_old_messages(days=days)
            logger.info(
                "Cleaned up old outbox messages",
                extra_data={"deleted": deleted, "cutoff_days": days},
            )
            return {"deleted": deleted}

    return run_async(_cleanup())
