"""
Notification Service

send() resolves the account's contact details and queues email / SMS rows in
the outbox inside the caller's unit of work. Delivery happens later in the
outbox worker through NotificationDispatcher. Notifications are fire-and-forget:
a failure here is logged and never fails the credit or workflow operation.
"""
from __future__ import annotations

from enum import Enum
from typing import Any

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.circuit_breaker import get_email_circuit_breaker, get_sms_circuit_breaker
from app.core.config import settings
from app.core.exceptions import NotificationGatewayError
from app.core.logging import get_logger, get_correlation_id
from app.core.validation import PhoneNumberValidator
from app.db.models.account import Account
from app.db.models.outbox_message import MessageChannel, OutboxMessage
from app.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    LOW_BALANCE = "low_balance"
    CRITICAL_BALANCE = "critical_balance"
    PURCHASE_SUCCESS = "purchase_success"
    PURCHASE_FAILED = "purchase_failed"
    USAGE_FAILED = "usage_failed"
    REFUND_PROCESSED = "refund_processed"
    AUTO_TOPUP_SUCCESS = "auto_topup_success"
    AUTO_TOPUP_FAILED = "auto_topup_failed"
    AUTO_TOPUP_SUSPENDED = "auto_topup_suspended"
    CREDITS_EXPIRED = "credits_expired"
    CREDITS_EXPIRING = "credits_expiring"
    MONTHLY_SUMMARY = "monthly_summary"
    TRIAL_CREDITS = "trial_credits"
    APPLICATION_RECEIVED = "application_received"
    APPLICATION_SELECTED = "application_selected"
    APPLICATION_REJECTED = "application_rejected"
    APPLICATION_WITHDRAWN = "application_withdrawn"
    JOB_ASSIGNED = "job_assigned"
    JOB_COMPLETED = "job_completed"
    JOB_CANCELLED = "job_cancelled"
    JOB_EXPIRED = "job_expired"


# kinds that also go out by SMS when the account has a valid phone number
SMS_KINDS = frozenset({NotificationKind.CRITICAL_BALANCE, NotificationKind.AUTO_TOPUP_SUSPENDED})

_SUBJECTS: dict[NotificationKind, str] = {
    NotificationKind.LOW_BALANCE: "Your credit balance is running low",
    NotificationKind.CRITICAL_BALANCE: "Your credit balance is critically low",
    NotificationKind.PURCHASE_SUCCESS: "Credit purchase confirmed",
    NotificationKind.PURCHASE_FAILED: "Credit purchase failed",
    NotificationKind.USAGE_FAILED: "We could not use your credits",
    NotificationKind.REFUND_PROCESSED: "Credits refunded",
    NotificationKind.AUTO_TOPUP_SUCCESS: "Auto top-up completed",
    NotificationKind.AUTO_TOPUP_FAILED: "Auto top-up failed",
    NotificationKind.AUTO_TOPUP_SUSPENDED: "Auto top-up suspended",
    NotificationKind.CREDITS_EXPIRED: "Some of your credits have expired",
    NotificationKind.CREDITS_EXPIRING: "Credits expiring soon",
    NotificationKind.MONTHLY_SUMMARY: "Your monthly credit summary",
    NotificationKind.TRIAL_CREDITS: "Welcome! Your trial credits are ready",
    NotificationKind.APPLICATION_RECEIVED: "New application on your job",
    NotificationKind.APPLICATION_SELECTED: "Your application was selected",
    NotificationKind.APPLICATION_REJECTED: "Update on your application",
    NotificationKind.APPLICATION_WITHDRAWN: "An application was withdrawn",
    NotificationKind.JOB_ASSIGNED: "Your job has been assigned",
    NotificationKind.JOB_COMPLETED: "Job completed",
    NotificationKind.JOB_CANCELLED: "Job cancelled",
    NotificationKind.JOB_EXPIRED: "Job expired",
}


def notification_subject(kind: NotificationKind | str) -> str:
    return _SUBJECTS.get(NotificationKind(kind), "Account notification")


class NotificationService:
    """Queues notifications for an account into the outbox"""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.outbox = OutboxService(db)

    async def get_account(self, account_id: int) -> Account | None:
        result = await self.db.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one_or_none()

    async def send(
        self,
        account_id: int,
        kind: NotificationKind | str,
        data: dict[str, Any] | None = None
    ) -> list[OutboxMessage]:
        """Queue ``kind`` for ``account_id``; returns the queued rows (empty on failure)"""
        kind = NotificationKind(kind)
        try:
            account = await self.get_account(account_id)
            if account is None or not account.is_active:
                logger.debug(
                    "Notification skipped for missing or inactive account",
                    extra_data={"account_id": account_id, "kind": kind.value}
                )
                return []

            content = {
                "subject": notification_subject(kind),
                "template": kind.value,
                "data": data or {},
                "correlation_id": get_correlation_id(),
            }
            messages = [
                await self.outbox.queue_message(
                    channel=MessageChannel.EMAIL,
                    recipient_id=str(account.id),
                    message_type=kind.value,
                    message_content={**content, "to": account.email, "name": account.name},
                )
            ]
            if kind in SMS_KINDS and PhoneNumberValidator.validate(account.phone_number):
                messages.append(
                    await self.outbox.queue_message(
                        channel=MessageChannel.SMS,
                        recipient_id=str(account.id),
                        message_type=kind.value,
                        message_content={**content, "to": account.phone_number},
                    )
                )
            return messages
        except Exception as e:
            logger.error(
                "Failed to queue notification",
                extra_data={"account_id": account_id, "kind": kind.value, "error": str(e)},
                exc_info=True
            )
            return []


class NotificationDispatcher:
    """Delivers email / SMS outbox rows to the notification gateways"""

    def __init__(self, timeout_seconds: float = 10.0):
        self._timeout = timeout_seconds

    async def deliver(self, message: OutboxMessage) -> None:
        """Raises NotificationGatewayError (or a circuit breaker error) on failure"""
        if message.channel == MessageChannel.EMAIL:
            await self._send_email(message)
        elif message.channel == MessageChannel.SMS:
            await self._send_sms(message)
        else:
            raise ValueError(f"NotificationDispatcher cannot deliver channel {message.channel}")

    async def _post(self, channel: str, url: str, payload: dict) -> None:
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {settings.NOTIFICATION_GATEWAY_API_KEY}"},
                )
            except httpx.RequestError as exc:
                raise NotificationGatewayError(channel, f"network error: {exc}")
        if not response.is_success:
            raise NotificationGatewayError(
                channel,
                f"gateway returned status {response.status_code}",
                details={"status_code": response.status_code, "response_text": response.text[:500]},
            )

    async def _send_email(self, message: OutboxMessage) -> None:
        content = message.message_content
        payload = {
            "to": content.get("to"),
            "subject": content.get("subject"),
            "template": content.get("template", message.message_type),
            "data": content.get("data", {}),
        }
        await get_email_circuit_breaker().execute(
            self._post, "email", f"{settings.EMAIL_GATEWAY_URL}/send", payload,
            timeout_seconds=self._timeout,
        )

    async def _send_sms(self, message: OutboxMessage) -> None:
        content = message.message_content
        to = content.get("to") or ""
        payload = {
            "to": PhoneNumberValidator.normalize(to),
            "text": content.get("subject"),
            "template": content.get("template", message.message_type),
        }
        await get_sms_circuit_breaker().execute(
            self._post, "sms", f"{settings.SMS_GATEWAY_URL}/send", payload,
            timeout_seconds=self._timeout,
        )
        logger.debug("SMS delivered", extra_data={"to": PhoneNumberValidator.mask(to)})
