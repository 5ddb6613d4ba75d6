"""
Credit Transaction Service - history, summaries, cancellation and manual refunds
"""
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import AppException, ErrorCode, NotFoundException, ValidationException
from app.core.locks import account_lock_key
from app.core.logging import get_logger
from app.db.models.credit_transaction import (
    CreditTransaction,
    TransactionStatus,
    TransactionType,
    UsageType,
)
from app.domain.credit_policy import (
    MAX_CREDITS_PER_TRANSACTION,
    MIN_CREDITS_PER_TRANSACTION,
    previous_month_bounds,
)
from app.domain.results import ServiceResult
from app.domain.serializers import transaction_to_dict
from app.domain.services.credit_service import CreditService
from app.domain.services.notification_service import NotificationKind

logger = get_logger(__name__)

MAX_HISTORY_PAGE = 100


class CreditTransactionService:

    def __init__(self, db: AsyncSession, credits: CreditService):
        self.db = db
        self.credits = credits
        self.ledger = credits.ledger

    async def _owned_transaction(
        self, transaction_id: int, account_id: int | None, for_update: bool = False
    ) -> CreditTransaction:
        tx = await self.ledger.get_transaction(transaction_id, for_update=for_update)
        if tx is None or (account_id is not None and tx.account_id != account_id):
            raise NotFoundException("CreditTransaction", transaction_id)
        return tx

    async def get_transaction(self, transaction_id: int, account_id: int | None = None) -> ServiceResult:
        try:
            tx = await self._owned_transaction(transaction_id, account_id)
            return ServiceResult.ok("Transaction retrieved", transaction_to_dict(tx))
        except AppException as e:
            return ServiceResult.from_exception(e)

    async def get_transaction_history(
        self,
        account_id: int,
        transaction_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> ServiceResult:
        limit = max(1, min(limit, MAX_HISTORY_PAGE))
        offset = max(0, offset)
        conditions = [CreditTransaction.account_id == account_id]
        if transaction_type:
            try:
                conditions.append(CreditTransaction.transaction_type == TransactionType(transaction_type))
            except ValueError:
                return ServiceResult.fail(f"Unknown transaction type: {transaction_type}")

        total = await self.db.execute(select(func.count(CreditTransaction.id)).where(*conditions))
        rows = await self.db.execute(
            select(CreditTransaction)
            .where(*conditions)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return ServiceResult.ok(
            "Transaction history retrieved",
            {
                "transactions": [transaction_to_dict(tx) for tx in rows.scalars().all()],
                "total": total.scalar_one(),
                "limit": limit,
                "offset": offset,
            }
        )

    async def _summarize(self, account_id: int, since: datetime, until: datetime | None = None) -> dict[str, Any]:
        conditions = [
            CreditTransaction.account_id == account_id,
            CreditTransaction.status == TransactionStatus.COMPLETED,
            CreditTransaction.created_at >= since,
        ]
        if until is not None:
            conditions.append(CreditTransaction.created_at < until)
        result = await self.db.execute(
            select(
                CreditTransaction.transaction_type,
                func.count(CreditTransaction.id),
                func.coalesce(func.sum(CreditTransaction.credits), 0),
            )
            .where(*conditions)
            .group_by(CreditTransaction.transaction_type)
        )
        by_type = {t.value: {"count": 0, "credits": 0} for t in TransactionType}
        net = 0
        for tx_type, count, credits in result.all():
            tx_type = TransactionType(tx_type)
            by_type[tx_type.value] = {"count": count, "credits": int(credits)}
            net += -int(credits) if tx_type in (TransactionType.USAGE, TransactionType.EXPIRY) else int(credits)
        return {"by_type": by_type, "net_change": net}

    async def get_transaction_summary(self, account_id: int, days: int = 30) -> ServiceResult:
        since = datetime.utcnow() - timedelta(days=days)
        summary = await self._summarize(account_id, since)
        return ServiceResult.ok("Transaction summary retrieved", {"days": days, **summary})

    async def cancel_transaction(
        self, transaction_id: int, account_id: int | None = None, reason: str | None = None
    ) -> ServiceResult:
        """Cancel a pending transaction; it never touched the balance"""
        try:
            tx = await self._owned_transaction(transaction_id, account_id)
            async with self.credits.locks.hold(account_lock_key(tx.account_id)):
                tx = await self._owned_transaction(transaction_id, account_id, for_update=True)
                if tx.status != TransactionStatus.PENDING:
                    raise ValidationException(
                        f"Only pending transactions can be cancelled (status: {tx.status.value})",
                        error_code=ErrorCode.TRANSACTION_NOT_CANCELLABLE,
                    )
                tx.status = TransactionStatus.CANCELLED
                tx.failure_reason = reason or "cancelled"
                await self.db.commit()
        except AppException as e:
            await self.db.rollback()
            return ServiceResult.from_exception(e)

        logger.info(
            "Pending transaction cancelled",
            extra_data={"transaction_id": transaction_id, "account_id": tx.account_id}
        )
        return ServiceResult.ok("Transaction cancelled", transaction_to_dict(tx))

    async def refunded_total(self, transaction_id: int) -> int:
        result = await self.db.execute(
            select(func.coalesce(func.sum(CreditTransaction.credits), 0)).where(
                CreditTransaction.related_transaction_id == transaction_id,
                CreditTransaction.transaction_type == TransactionType.REFUND,
                CreditTransaction.status == TransactionStatus.COMPLETED,
            )
        )
        return int(result.scalar_one() or 0)

    async def refund_transaction(
        self,
        transaction_id: int,
        credits: int | None = None,
        reason: str | None = None,
        account_id: int | None = None,
    ) -> ServiceResult:
        """
        Refund all or part of a completed usage transaction. Refunds are only
        allowed within REFUND_WINDOW_DAYS and never exceed the original amount.
        """
        try:
            tx = await self._owned_transaction(transaction_id, account_id)
            async with self.credits.locks.hold(account_lock_key(tx.account_id)):
                tx = await self._owned_transaction(transaction_id, account_id, for_update=True)
                if tx.transaction_type != TransactionType.USAGE or tx.status != TransactionStatus.COMPLETED:
                    raise ValidationException(
                        "Only completed usage transactions can be refunded",
                        error_code=ErrorCode.TRANSACTION_NOT_REFUNDABLE,
                    )
                if tx.created_at < datetime.utcnow() - timedelta(days=settings.REFUND_WINDOW_DAYS):
                    raise ValidationException(
                        f"Refund window of {settings.REFUND_WINDOW_DAYS} days has passed",
                        error_code=ErrorCode.TRANSACTION_NOT_REFUNDABLE,
                    )

                already = await self.refunded_total(tx.id)
                remaining = tx.credits - already
                amount = remaining if credits is None else credits
                if amount <= 0 or amount > remaining:
                    raise ValidationException(
                        f"Refund of {amount} credits exceeds the refundable {remaining}",
                        field="credits",
                        details={"original": tx.credits, "already_refunded": already},
                        error_code=ErrorCode.TRANSACTION_NOT_REFUNDABLE,
                    )

                refund = await self.credits.refund_in_unit_of_work(
                    tx.account_id,
                    amount,
                    description=reason or f"Refund of transaction #{tx.id}",
                    reference_id=tx.reference_id,
                    reference_type=tx.reference_type,
                    related_transaction_id=tx.id,
                )
                await self.credits.notifications.send(
                    tx.account_id,
                    NotificationKind.REFUND_PROCESSED,
                    {"credits": amount, "reason": reason, "new_balance": refund.balance_after},
                )
                await self.db.commit()
        except AppException as e:
            await self.db.rollback()
            return ServiceResult.from_exception(e)
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "refund_transaction failed",
                extra_data={"transaction_id": transaction_id, "error": str(e)},
                exc_info=True
            )
            return ServiceResult.system_error()

        result = ServiceResult.ok(
            "Transaction refunded",
            {"refund": transaction_to_dict(refund), "new_balance": refund.balance_after}
        )
        await self.credits.after_balance_change(tx.account_id, debited=False)
        return result

    def validate_transaction_request(
        self,
        transaction_type: str,
        credits: Any,
        usage_type: str | None = None,
    ) -> ServiceResult:
        """Pre-flight validation for API callers; collects every problem"""
        errors: list[str] = []
        try:
            tx_type = TransactionType(transaction_type)
        except ValueError:
            tx_type = None
            errors.append(f"Unknown transaction type: {transaction_type}")

        if not isinstance(credits, int) or isinstance(credits, bool):
            errors.append("Credits must be an integer")
        elif not MIN_CREDITS_PER_TRANSACTION <= credits <= MAX_CREDITS_PER_TRANSACTION:
            errors.append(
                f"Credits must be between {MIN_CREDITS_PER_TRANSACTION} and {MAX_CREDITS_PER_TRANSACTION}"
            )

        if tx_type == TransactionType.USAGE:
            if not usage_type:
                errors.append("Usage transactions require a usage type")
            else:
                try:
                    UsageType(usage_type)
                except ValueError:
                    errors.append(f"Unknown usage type: {usage_type}")
        elif usage_type:
            errors.append("Usage type is only valid for usage transactions")

        if errors:
            return ServiceResult.fail("Invalid transaction request", errors=errors)
        return ServiceResult.ok("Transaction request is valid")

    async def send_monthly_summaries(self, now: datetime | None = None) -> int:
        """Queue a monthly_summary for every account with activity last month"""
        start, end = previous_month_bounds(now or datetime.utcnow(), settings.business_tz)
        result = await self.db.execute(
            select(CreditTransaction.account_id)
            .where(CreditTransaction.created_at >= start, CreditTransaction.created_at < end)
            .distinct()
        )
        account_ids = list(result.scalars().all())
        sent = 0
        for account_id in account_ids:
            summary = await self._summarize(account_id, start, end)
            balance = await self.ledger.get_balance_row(account_id)
            messages = await self.credits.notifications.send(
                account_id,
                NotificationKind.MONTHLY_SUMMARY,
                {
                    "period_start": start.isoformat(),
                    "period_end": end.isoformat(),
                    "current_balance": balance.current_balance if balance else 0,
                    **summary,
                },
            )
            if messages:
                sent += 1
        await self.db.commit()
        logger.info("Monthly summaries queued", extra_data={"accounts": sent})
        return sent

