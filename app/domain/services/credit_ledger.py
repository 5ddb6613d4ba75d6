"""
Credit Ledger - balance row and transaction rows, written together

Low-level building block shared by the credit, auto-topup and marketplace
services. Nothing here commits or takes the per-account asyncio lock: callers
hold ``account:{id}`` from the KeyedLockRegistry and own the unit of work, so a
balance change and the CreditTransaction explaining it always land in the same
commit.
"""
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import InsufficientBalanceError, InvalidAmountError, UsageLimitExceededError
from app.core.logging import get_logger
from app.db.models.credit_balance import CreditBalance
from app.db.models.credit_transaction import (
    CreditTransaction,
    TransactionStatus,
    TransactionType,
    UsageType,
)
from app.domain.credit_policy import get_usage_policy, usage_window_bounds

logger = get_logger(__name__)


class CreditLedger:

    def __init__(self, db: AsyncSession, business_tz):
        self.db = db
        self.business_tz = business_tz

    # ---- balance rows ----

    async def get_balance_row(self, account_id: int, for_update: bool = False) -> CreditBalance | None:
        query = select(CreditBalance).where(CreditBalance.account_id == account_id)
        if for_update:
            # refresh identity-map copies; another session may have committed since
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def ensure_balance_row(self, account_id: int, for_update: bool = False) -> CreditBalance:
        """Fetch the balance row, creating an empty one (flushed, not committed) if missing"""
        balance = await self.get_balance_row(account_id, for_update=for_update)
        if balance is None:
            balance = CreditBalance(
                account_id=account_id,
                current_balance=0,
                total_purchased=0,
                total_used=0,
                total_refunded=0,
                low_balance_alerted=False,
                critical_balance_alerted=False,
            )
            self.db.add(balance)
            await self.db.flush()
        return balance

    # ---- lookups ----

    async def find_by_idempotency_key(self, key: str | None) -> CreditTransaction | None:
        if not key:
            return None
        result = await self.db.execute(
            select(CreditTransaction).where(CreditTransaction.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def get_transaction(self, transaction_id: int, for_update: bool = False) -> CreditTransaction | None:
        query = select(CreditTransaction).where(CreditTransaction.id == transaction_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def usage_since(self, account_id: int, usage_type: UsageType, since: datetime) -> int:
        """Units of ``usage_type`` consumed by completed usage rows since ``since``"""
        result = await self.db.execute(
            select(func.coalesce(func.sum(CreditTransaction.quantity), 0)).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.transaction_type == TransactionType.USAGE,
                CreditTransaction.usage_type == usage_type,
                CreditTransaction.status == TransactionStatus.COMPLETED,
                CreditTransaction.created_at >= since,
            )
        )
        return int(result.scalar_one() or 0)

    async def usage_counts(self, account_id: int, usage_type: UsageType | str, now: datetime | None = None) -> dict:
        usage_type = UsageType(usage_type)
        day_start, month_start = usage_window_bounds(now or datetime.utcnow(), self.business_tz)
        return {
            "today": await self.usage_since(account_id, usage_type, day_start),
            "this_month": await self.usage_since(account_id, usage_type, month_start),
        }

    async def check_usage_limits(
        self,
        account_id: int,
        usage_type: UsageType | str,
        quantity: int = 1,
        now: datetime | None = None
    ) -> None:
        """Raise UsageLimitExceededError if ``quantity`` more units would pass a daily or monthly cap"""
        policy = get_usage_policy(usage_type)
        counts = await self.usage_counts(account_id, policy.usage_type, now)

        if counts["today"] + quantity > policy.max_per_day:
            raise UsageLimitExceededError(
                account_id,
                policy.usage_type.value,
                f"Daily limit exceeded for {policy.name}. Maximum {policy.max_per_day} per day.",
                period="day",
                limit=policy.max_per_day,
                used=counts["today"],
            )
        if counts["this_month"] + quantity > policy.max_per_month:
            raise UsageLimitExceededError(
                account_id,
                policy.usage_type.value,
                f"Monthly limit exceeded for {policy.name}. Maximum {policy.max_per_month} per month.",
                period="month",
                limit=policy.max_per_month,
                used=counts["this_month"],
            )

    # ---- mutations ----

    def _apply_to_balance(self, balance: CreditBalance, tx_type: TransactionType, credits: int, now: datetime) -> None:
        if tx_type in (TransactionType.PURCHASE, TransactionType.BONUS):
            balance.current_balance += credits
            balance.total_purchased += credits
            if tx_type == TransactionType.PURCHASE:
                balance.last_purchase_at = now
        elif tx_type == TransactionType.REFUND:
            balance.current_balance += credits
            balance.total_refunded += credits
        else:
            balance.current_balance -= credits
            balance.total_used += credits
            if tx_type == TransactionType.USAGE:
                balance.last_usage_at = now

    async def post(
        self,
        account_id: int,
        tx_type: TransactionType,
        credits: int,
        *,
        description: str | None = None,
        reference_id: Any = None,
        reference_type: str | None = None,
        usage_type: UsageType | None = None,
        quantity: int = 1,
        idempotency_key: str | None = None,
        related_transaction_id: int | None = None,
        metadata: dict | None = None,
        expires_at: datetime | None = None,
    ) -> CreditTransaction:
        """
        Append a completed transaction and apply it to the locked balance row.

        A repeated idempotency key returns the earlier completed row untouched.
        A debit larger than the balance writes a failed usage row (no balance
        change) and raises InsufficientBalanceError; the caller decides whether
        to commit that row.
        """
        if not isinstance(credits, int) or isinstance(credits, bool) or credits <= 0:
            raise InvalidAmountError(credits, minimum=1)

        existing = await self.find_by_idempotency_key(idempotency_key)
        if existing is not None and existing.status == TransactionStatus.COMPLETED:
            logger.info(
                "Idempotent replay, transaction already applied",
                extra_data={
                    "account_id": account_id,
                    "transaction_id": existing.id,
                    "idempotency_key": idempotency_key,
                }
            )
            return existing

        balance = await self.ensure_balance_row(account_id, for_update=True)
        now = datetime.utcnow()

        transaction = existing or CreditTransaction(account_id=account_id, idempotency_key=idempotency_key)
        transaction.transaction_type = tx_type
        transaction.usage_type = usage_type
        transaction.quantity = quantity
        transaction.credits = credits
        transaction.description = description
        transaction.reference_id = str(reference_id) if reference_id is not None else None
        transaction.reference_type = reference_type
        transaction.related_transaction_id = related_transaction_id
        transaction.metadata_ = metadata or {}
        transaction.expires_at = expires_at

        if tx_type == TransactionType.USAGE and balance.current_balance < credits:
            transaction.status = TransactionStatus.FAILED
            transaction.failure_reason = "insufficient_balance"
            transaction.balance_after = balance.current_balance
            # a failed row must not block a later retry with the same key
            transaction.idempotency_key = None
            if existing is None:
                self.db.add(transaction)
            await self.db.flush()
            logger.warning(
                "Debit rejected, insufficient balance",
                extra_data={
                    "account_id": account_id,
                    "transaction_id": transaction.id,
                    "credits": credits,
                    "balance_after": balance.current_balance,
                }
            )
            raise InsufficientBalanceError(account_id, balance.current_balance, credits)

        if tx_type == TransactionType.EXPIRY and credits > balance.current_balance:
            raise InsufficientBalanceError(account_id, balance.current_balance, credits, reason="expiry")

        self._apply_to_balance(balance, tx_type, credits, now)
        transaction.status = TransactionStatus.COMPLETED
        transaction.completed_at = now
        transaction.balance_after = balance.current_balance
        if existing is None:
            self.db.add(transaction)
        await self.db.flush()

        logger.info(
            "Credit transaction applied",
            extra_data={
                "account_id": account_id,
                "transaction_id": transaction.id,
                "transaction_type": tx_type.value,
                "credits": credits,
                "balance_after": balance.current_balance,
            }
        )
        return transaction

    async def complete_pending(self, transaction: CreditTransaction, metadata: dict | None = None) -> CreditTransaction:
        """Apply a pending crediting row (e.g. a purchase awaiting its charge)"""
        if transaction.status == TransactionStatus.COMPLETED:
            return transaction

        balance = await self.ensure_balance_row(transaction.account_id, for_update=True)
        now = datetime.utcnow()
        self._apply_to_balance(balance, transaction.transaction_type, transaction.credits, now)
        transaction.status = TransactionStatus.COMPLETED
        transaction.completed_at = now
        transaction.balance_after = balance.current_balance
        if metadata:
            transaction.metadata_ = {**(transaction.metadata_ or {}), **metadata}
        await self.db.flush()

        logger.info(
            "Pending credit transaction completed",
            extra_data={
                "account_id": transaction.account_id,
                "transaction_id": transaction.id,
                "credits": transaction.credits,
                "balance_after": balance.current_balance,
            }
        )
        return transaction
