"""
Credit Service - balance queries, debits, credits, purchases and the credit dashboard

All mutations run under the per-account asyncio lock (``account:{id}``) and a
``SELECT ... FOR UPDATE`` on the balance row; the CreditTransaction and the
balance change are committed together. Payment gateway calls are made with no
lock held. After every committed change the balance alerts are evaluated and,
after a debit, the auto-topup hook is called; both are fire-and-forget.
"""
import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    CircuitBreakerOpenError,
    ErrorCode,
    InsufficientBalanceError,
    InvalidAmountError,
    LockTimeoutError,
    NotFoundException,
    PaymentFailedError,
    PaymentGatewayError,
    ServiceTimeoutError,
    ValidationException,
)
from app.core.locks import KeyedLockRegistry, account_lock_key
from app.core.logging import get_logger, log_async_operation
from app.db.models.account import Account
from app.db.models.auto_topup_policy import AutoTopupPolicy
from app.db.models.credit_balance import CreditBalance
from app.db.models.credit_transaction import (
    CreditTransaction,
    TransactionStatus,
    TransactionType,
    UsageType,
)
from app.domain.credit_policy import (
    MAX_CREDITS_PER_TRANSACTION,
    MIN_CREDITS_PER_TRANSACTION,
    USAGE_POLICIES,
    CreditPackage,
    RoleLimits,
    get_package,
    get_role_limits,
    get_usage_policy,
    usage_window_bounds,
)
from app.domain.results import ServiceResult
from app.domain.serializers import auto_topup_to_dict, balance_to_dict, transaction_to_dict
from app.domain.services.balance_alert_service import BalanceAlertService
from app.domain.services.credit_ledger import CreditLedger
from app.domain.services.notification_service import NotificationKind, NotificationService
from app.domain.services.payment_gateway import BasePaymentGateway

logger = get_logger(__name__)

AutoTopupTrigger = Callable[[int], Awaitable[Any]]

_GATEWAY_UNAVAILABLE = (PaymentGatewayError, ServiceTimeoutError, CircuitBreakerOpenError)


class CreditService:
    """Orchestrates the ledger, the account lock, alerts and the auto-topup hook"""

    def __init__(
        self,
        db: AsyncSession,
        locks: KeyedLockRegistry,
        payment_gateway: BasePaymentGateway | None = None,
        notifications: NotificationService | None = None,
        operation_timeout: float | None = None,
    ):
        self.db = db
        self.locks = locks
        self.payment_gateway = payment_gateway
        self.notifications = notifications or NotificationService(db)
        self.ledger = CreditLedger(db, settings.business_tz)
        self.alerts = BalanceAlertService(db, self.notifications)
        self.operation_timeout = operation_timeout or settings.CREDIT_OPERATION_TIMEOUT_SECONDS
        # post-debit hook, wired by ServiceContext
        self.auto_topup_trigger: AutoTopupTrigger | None = None

    # ---- helpers ----

    async def get_account(self, account_id: int) -> Account | None:
        result = await self.db.execute(select(Account).where(Account.id == account_id))
        return result.scalar_one_or_none()

    async def _require_account(self, account_id: int) -> Account:
        account = await self.get_account(account_id)
        if account is None:
            raise NotFoundException("Account", account_id)
        return account

    async def limits_for(self, account_id: int) -> RoleLimits:
        account = await self.get_account(account_id)
        return get_role_limits(account.role if account else None)

    async def _read_with_retry(self, operation: str, read: Callable[[], Awaitable[Any]]) -> Any:
        """Retry an idempotent read on transient database errors"""
        attempts = settings.READ_RETRY_ATTEMPTS
        for attempt in range(1, attempts + 1):
            try:
                return await read()
            except OperationalError as e:
                await self.db.rollback()
                if attempt == attempts:
                    raise
                logger.warning(
                    "Transient database error on read, retrying",
                    extra_data={"operation": operation, "attempt": attempt, "error": str(e)}
                )
                await asyncio.sleep(0.05 * (2 ** (attempt - 1)))

    async def _fail(self, exc: AppException, **log_data: Any) -> ServiceResult:
        await self.db.rollback()
        logger.info(
            "Credit operation rejected",
            extra_data={"error_code": exc.error_code.value, "message": exc.message, **log_data}
        )
        return ServiceResult.from_exception(exc)

    async def _system_error(self, operation: str, error: Exception, **log_data: Any) -> ServiceResult:
        await self.db.rollback()
        logger.error(
            f"{operation} failed",
            extra_data={"error": str(error), **log_data},
            exc_info=True
        )
        return ServiceResult.system_error()

    @staticmethod
    def _validate_credits(credits: Any) -> None:
        if (
            not isinstance(credits, int)
            or isinstance(credits, bool)
            or not MIN_CREDITS_PER_TRANSACTION <= credits <= MAX_CREDITS_PER_TRANSACTION
        ):
            raise InvalidAmountError(
                credits,
                minimum=MIN_CREDITS_PER_TRANSACTION,
                maximum=MAX_CREDITS_PER_TRANSACTION,
            )

    async def after_balance_change(self, account_id: int, debited: bool) -> None:
        """Post-commit hooks: balance alerts, then (after a debit) the auto-topup trigger"""
        try:
            balance = await self.ledger.get_balance_row(account_id)
            if balance is not None:
                await self.alerts.evaluate(balance, await self.limits_for(account_id))
        except Exception as e:
            logger.error(
                "Balance alert hook failed",
                extra_data={"account_id": account_id, "error": str(e)},
                exc_info=True
            )

        if debited and self.auto_topup_trigger is not None:
            try:
                await self.auto_topup_trigger(account_id)
            except Exception as e:
                logger.error(
                    "Auto-topup trigger failed",
                    extra_data={"account_id": account_id, "error": str(e)},
                    exc_info=True
                )

    # ---- queries ----

    async def get_balance(self, account_id: int) -> ServiceResult:
        """Current balance and lifetime totals; creates the balance row on first read"""
        try:
            await self._require_account(account_id)

            async def _read() -> CreditBalance:
                balance = await self.ledger.ensure_balance_row(account_id)
                await self.db.commit()
                return balance

            balance = await self._read_with_retry("get_balance", _read)
            return ServiceResult.ok("Balance retrieved", balance_to_dict(balance))
        except AppException as e:
            return await self._fail(e, account_id=account_id)
        except Exception as e:
            return await self._system_error("get_balance", e, account_id=account_id)

    async def check_sufficiency(self, account_id: int, credits: int) -> ServiceResult:
        try:
            balance = await self._read_with_retry(
                "check_sufficiency", lambda: self.ledger.get_balance_row(account_id)
            )
            current = balance.current_balance if balance else 0
            return ServiceResult.ok(
                "Sufficiency checked",
                {
                    "sufficient": current >= credits,
                    "current_balance": current,
                    "required_credits": credits,
                    "shortfall": max(0, credits - current),
                }
            )
        except Exception as e:
            return await self._system_error("check_sufficiency", e, account_id=account_id)

    # ---- debits ----

    async def _lock_balance_and_check_limits(
        self,
        account_id: int,
        usage_type: UsageType | None,
        quantity: int,
    ) -> CreditBalance:
        balance = await self.ledger.ensure_balance_row(account_id, for_update=True)
        if usage_type is not None:
            await self.ledger.check_usage_limits(account_id, usage_type, quantity)
        return balance

    async def debit_in_unit_of_work(
        self,
        account_id: int,
        credits: int,
        *,
        usage_type: UsageType | None = None,
        quantity: int = 1,
        description: str | None = None,
        reference_id: Any = None,
        reference_type: str | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        """
        Limit check plus debit, bounded by the operation timeout. The caller
        holds the account lock and commits. A timeout fails closed as
        InsufficientBalanceError.
        """
        try:
            await asyncio.wait_for(
                self._lock_balance_and_check_limits(account_id, usage_type, quantity),
                timeout=self.operation_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Debit check timed out, failing closed",
                extra_data={"account_id": account_id, "timeout_seconds": self.operation_timeout}
            )
            raise InsufficientBalanceError(account_id, 0, credits, reason="operation_timeout")

        return await self.ledger.post(
            account_id,
            TransactionType.USAGE,
            credits,
            usage_type=usage_type,
            quantity=quantity,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            idempotency_key=idempotency_key,
        )

    async def deduct_credits(
        self,
        account_id: int,
        credits: int,
        *,
        usage_type: UsageType | str | None = None,
        quantity: int = 1,
        description: str | None = None,
        reference_id: Any = None,
        reference_type: str | None = None,
        idempotency_key: str | None = None,
    ) -> ServiceResult:
        """
        Debit ``credits`` as a usage transaction.

        An insufficient balance still commits the failed usage row so the
        attempt is visible in the ledger; the balance is left unchanged.
        """
        try:
            usage = UsageType(usage_type) if usage_type else None
        except ValueError:
            return ServiceResult.fail(f"Unknown usage type: {usage_type}")
        try:
            self._validate_credits(credits)
            await self._require_account(account_id)
            async with self.locks.hold(account_lock_key(account_id), timeout=self.operation_timeout):
                try:
                    tx = await self.debit_in_unit_of_work(
                        account_id,
                        credits,
                        usage_type=usage,
                        quantity=quantity,
                        description=description,
                        reference_id=reference_id,
                        reference_type=reference_type,
                        idempotency_key=idempotency_key,
                    )
                except InsufficientBalanceError as e:
                    if e.details.get("reason") == "operation_timeout":
                        await self.db.rollback()
                    else:
                        await self.db.commit()
                    await self.notifications.send(
                        account_id,
                        NotificationKind.USAGE_FAILED,
                        {"credits": credits, "usage_type": usage.value if usage else None},
                    )
                    await self.db.commit()
                    logger.info(
                        "Credit operation rejected",
                        extra_data={"account_id": account_id, "error_code": e.error_code.value}
                    )
                    return ServiceResult.from_exception(e)
                await self.db.commit()
        except LockTimeoutError:
            # fail closed
            return await self._fail(
                InsufficientBalanceError(account_id, 0, credits, reason="lock_timeout"),
                account_id=account_id,
            )
        except AppException as e:
            return await self._fail(e, account_id=account_id)
        except Exception as e:
            return await self._system_error("deduct_credits", e, account_id=account_id)

        result = ServiceResult.ok(
            "Credits deducted",
            {"transaction": transaction_to_dict(tx), "new_balance": tx.balance_after}
        )
        await self.after_balance_change(account_id, debited=True)
        return result

    async def consume_usage(
        self,
        account_id: int,
        usage_type: UsageType | str,
        quantity: int = 1,
        reference_id: Any = None,
        reference_type: str | None = None,
        idempotency_key: str | None = None,
    ) -> ServiceResult:
        try:
            policy = get_usage_policy(usage_type)
        except ValueError:
            return ServiceResult.fail(f"Unknown usage type: {usage_type}")
        if not isinstance(quantity, int) or quantity < 1:
            return ServiceResult.fail("Quantity must be a positive integer", ErrorCode.INVALID_AMOUNT)

        return await self.deduct_credits(
            account_id,
            policy.credits_required * quantity,
            usage_type=policy.usage_type,
            quantity=quantity,
            description=f"{policy.name} x{quantity}" if quantity > 1 else policy.name,
            reference_id=reference_id,
            reference_type=reference_type,
            idempotency_key=idempotency_key,
        )

    # ---- credits ----

    async def add_credits(
        self,
        account_id: int,
        credits: int,
        *,
        transaction_type: TransactionType = TransactionType.BONUS,
        description: str | None = None,
        reference_id: Any = None,
        reference_type: str | None = None,
        idempotency_key: str | None = None,
        metadata: dict | None = None,
        expires_at: datetime | None = None,
    ) -> ServiceResult:
        """Apply a crediting transaction (purchase or bonus) that needs no gateway call"""
        if transaction_type not in (TransactionType.PURCHASE, TransactionType.BONUS):
            return ServiceResult.fail(
                f"add_credits cannot post a {transaction_type.value} transaction"
            )
        try:
            await self._require_account(account_id)
            if not isinstance(credits, int) or isinstance(credits, bool) or credits <= 0:
                raise InvalidAmountError(credits, minimum=1)
            async with self.locks.hold(account_lock_key(account_id), timeout=self.operation_timeout):
                if transaction_type == TransactionType.PURCHASE:
                    await self._check_max_balance(account_id, credits)
                tx = await self.ledger.post(
                    account_id,
                    transaction_type,
                    credits,
                    description=description,
                    reference_id=reference_id,
                    reference_type=reference_type,
                    idempotency_key=idempotency_key,
                    metadata=metadata,
                    expires_at=expires_at,
                )
                await self.db.commit()
        except AppException as e:
            return await self._fail(e, account_id=account_id)
        except Exception as e:
            return await self._system_error("add_credits", e, account_id=account_id)

        result = ServiceResult.ok(
            "Credits added",
            {"transaction": transaction_to_dict(tx), "new_balance": tx.balance_after}
        )
        await self.after_balance_change(account_id, debited=False)
        return result

    async def refund_in_unit_of_work(
        self,
        account_id: int,
        credits: int,
        *,
        description: str | None = None,
        reference_id: Any = None,
        reference_type: str | None = None,
        related_transaction_id: int | None = None,
        idempotency_key: str | None = None,
    ) -> CreditTransaction:
        """Refund row for a caller that already holds the account lock and owns the commit"""
        return await self.ledger.post(
            account_id,
            TransactionType.REFUND,
            credits,
            description=description,
            reference_id=reference_id,
            reference_type=reference_type,
            related_transaction_id=related_transaction_id,
            idempotency_key=idempotency_key,
        )

    async def refund_credits(
        self,
        account_id: int,
        credits: int,
        *,
        description: str | None = None,
        reference_id: Any = None,
        reference_type: str | None = None,
        related_transaction_id: int | None = None,
        idempotency_key: str | None = None,
        notify: bool = True,
    ) -> ServiceResult:
        try:
            await self._require_account(account_id)
            async with self.locks.hold(account_lock_key(account_id), timeout=self.operation_timeout):
                tx = await self.refund_in_unit_of_work(
                    account_id,
                    credits,
                    description=description,
                    reference_id=reference_id,
                    reference_type=reference_type,
                    related_transaction_id=related_transaction_id,
                    idempotency_key=idempotency_key,
                )
                if notify:
                    await self.notifications.send(
                        account_id,
                        NotificationKind.REFUND_PROCESSED,
                        {"credits": credits, "reason": description, "new_balance": tx.balance_after},
                    )
                await self.db.commit()
        except AppException as e:
            return await self._fail(e, account_id=account_id)
        except Exception as e:
            return await self._system_error("refund_credits", e, account_id=account_id)

        result = ServiceResult.ok(
            "Credits refunded",
            {"transaction": transaction_to_dict(tx), "new_balance": tx.balance_after}
        )
        await self.after_balance_change(account_id, debited=False)
        return result

    async def award_trial_credits(self, account_id: int) -> ServiceResult:
        """One-off welcome bonus; a second call returns the original grant"""
        existing = await self.ledger.find_by_idempotency_key(f"trial:{account_id}")
        if existing is not None:
            return ServiceResult.ok(
                "Trial credits already awarded",
                {"transaction": transaction_to_dict(existing), "already_awarded": True}
            )
        result = await self.add_credits(
            account_id,
            settings.TRIAL_CREDITS_AMOUNT,
            transaction_type=TransactionType.BONUS,
            description="Trial credits",
            reference_type="trial",
            reference_id=account_id,
            idempotency_key=f"trial:{account_id}",
        )
        if result.success:
            await self.notifications.send(
                account_id,
                NotificationKind.TRIAL_CREDITS,
                {"credits": settings.TRIAL_CREDITS_AMOUNT},
            )
            await self.db.commit()
        return result

    # ---- purchases ----

    async def _check_max_balance(self, account_id: int, credits: int) -> None:
        limits = await self.limits_for(account_id)
        balance = await self.ledger.ensure_balance_row(account_id)
        if balance.current_balance + credits > limits.max_balance:
            raise ValidationException(
                f"Purchase would exceed the maximum balance of {limits.max_balance} credits",
                field="credits",
                details={"current_balance": balance.current_balance, "max_balance": limits.max_balance},
                error_code=ErrorCode.BALANCE_LIMIT_EXCEEDED,
            )

    async def purchase_totals(self, account_id: int, now: datetime | None = None) -> dict[str, Decimal]:
        """AUD spent on completed purchases today and this month (business timezone)"""
        day_start, month_start = usage_window_bounds(now or datetime.utcnow(), settings.business_tz)
        result = await self.db.execute(
            select(CreditTransaction).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.transaction_type == TransactionType.PURCHASE,
                CreditTransaction.status == TransactionStatus.COMPLETED,
                CreditTransaction.created_at >= month_start,
            )
        )
        today = Decimal("0")
        month = Decimal("0")
        for tx in result.scalars().all():
            amount = Decimal(str((tx.metadata_ or {}).get("amount", "0")))
            month += amount
            if tx.created_at >= day_start:
                today += amount
        return {"today": today, "this_month": month}

    async def _check_purchase_limits(self, account_id: int, package: CreditPackage) -> None:
        await self._check_max_balance(account_id, package.total_credits)
        limits = await self.limits_for(account_id)
        totals = await self.purchase_totals(account_id)
        if totals["today"] + package.price > limits.max_daily_purchase:
            raise ValidationException(
                f"Daily purchase limit of ${limits.max_daily_purchase} AUD exceeded",
                details={"spent_today": str(totals["today"]), "limit": str(limits.max_daily_purchase)},
                error_code=ErrorCode.PURCHASE_LIMIT_EXCEEDED,
            )
        if totals["this_month"] + package.price > limits.max_monthly_purchase:
            raise ValidationException(
                f"Monthly purchase limit of ${limits.max_monthly_purchase} AUD exceeded",
                details={"spent_this_month": str(totals["this_month"]), "limit": str(limits.max_monthly_purchase)},
                error_code=ErrorCode.PURCHASE_LIMIT_EXCEEDED,
            )

    async def purchase_credits(
        self,
        account_id: int,
        package_type: str,
        payment_method_id: str,
        idempotency_key: str | None = None,
    ) -> ServiceResult:
        """
        Buy a credit package.

        1. limits checked, a pending purchase row is committed (keyed by the
           idempotency key)
        2. the gateway is charged with no lock held
        3. on success the pending row is completed under the account lock; if
           that write fails the charge is refunded
        A gateway outage leaves the row pending; retrying with the same key
        resumes it without a second charge.
        """
        key = idempotency_key or f"purchase:{uuid4().hex}"
        if self.payment_gateway is None:
            return ServiceResult.fail(
                "Payment gateway is not configured",
                ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
                status_code=503,
            )
        if not payment_method_id:
            return ServiceResult.fail("Payment method is required", ErrorCode.VALIDATION_ERROR)
        try:
            package = get_package(package_type)
        except ValueError:
            return ServiceResult.fail(f"Unknown credit package: {package_type}")

        try:
            await self._require_account(account_id)
            async with self.locks.hold(account_lock_key(account_id), timeout=self.operation_timeout):
                tx = await self.ledger.find_by_idempotency_key(key)
                if tx is not None and tx.status == TransactionStatus.COMPLETED:
                    return ServiceResult.ok(
                        "Purchase already completed",
                        {"transaction": transaction_to_dict(tx), "new_balance": tx.balance_after}
                    )
                if tx is not None and tx.status != TransactionStatus.PENDING:
                    raise ValidationException(
                        f"Purchase {key} is {tx.status.value}; use a new idempotency key",
                        error_code=ErrorCode.ALREADY_EXISTS,
                    )
                if tx is None:
                    await self._check_purchase_limits(account_id, package)
                    expires_at = (
                        datetime.utcnow() + timedelta(days=package.validity_days)
                        if package.validity_days else None
                    )
                    tx = CreditTransaction(
                        account_id=account_id,
                        transaction_type=TransactionType.PURCHASE,
                        quantity=1,
                        credits=package.total_credits,
                        description=f"{package.name} purchase",
                        reference_type="purchase",
                        status=TransactionStatus.PENDING,
                        idempotency_key=key,
                        expires_at=expires_at,
                        metadata_={
                            "package_type": package.package_type.value,
                            "base_credits": package.credits,
                            "bonus_credits": package.bonus_credits,
                            "amount": str(package.price),
                            "currency": settings.PAYMENT_CURRENCY,
                        },
                    )
                    self.db.add(tx)
                    await self.db.commit()
        except AppException as e:
            return await self._fail(e, account_id=account_id)
        except Exception as e:
            return await self._system_error("purchase_credits", e, account_id=account_id)

        try:
            charge = await self.payment_gateway.create_charge(
                amount_cents=package.price_cents,
                currency=settings.PAYMENT_CURRENCY,
                payment_method_id=payment_method_id,
                metadata={
                    "account_id": account_id,
                    "purchaseId": tx.id,
                    "packageType": package.package_type.value,
                    "credits": package.total_credits,
                },
                idempotency_key=key,
            )
        except _GATEWAY_UNAVAILABLE as e:
            logger.warning(
                "Purchase charge could not be completed, transaction left pending",
                extra_data={"account_id": account_id, "transaction_id": tx.id, "error": e.message}
            )
            result = ServiceResult.from_exception(e)
            result.data = {**(result.data or {}), "transaction_id": tx.id, "idempotency_key": key}
            return result

        if not charge.succeeded:
            return await self._fail_purchase(tx, charge.id, charge.failure_reason or "declined")

        transaction_id = tx.id
        try:
            async with self.locks.hold(account_lock_key(account_id), timeout=self.operation_timeout):
                locked = await self.ledger.get_transaction(transaction_id, for_update=True)
                tx = await self.ledger.complete_pending(
                    locked, metadata={"charge_id": charge.id, "provider": self.payment_gateway.provider_name}
                )
                await self.notifications.send(
                    account_id,
                    NotificationKind.PURCHASE_SUCCESS,
                    {"credits": tx.credits, "amount": str(package.price), "new_balance": tx.balance_after},
                )
                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Ledger write failed after successful charge, refunding",
                extra_data={"account_id": account_id, "transaction_id": transaction_id, "charge_id": charge.id},
                exc_info=True
            )
            await self._compensate_charge(account_id, transaction_id, charge.id, package.price_cents, str(e))
            return ServiceResult.system_error("Purchase could not be recorded; the charge has been refunded")

        result = ServiceResult.ok(
            "Credits purchased",
            {"transaction": transaction_to_dict(tx), "new_balance": tx.balance_after, "charge_id": charge.id}
        )
        await self.after_balance_change(account_id, debited=False)
        return result

    async def _fail_purchase(self, tx: CreditTransaction, charge_id: str | None, reason: str) -> ServiceResult:
        transaction_id, account_id, credits = tx.id, tx.account_id, tx.credits
        try:
            locked = await self.ledger.get_transaction(transaction_id, for_update=True)
            locked.status = TransactionStatus.FAILED
            locked.failure_reason = reason[:500]
            await self.notifications.send(
                account_id,
                NotificationKind.PURCHASE_FAILED,
                {"reason": reason, "credits": credits},
            )
            await self.db.commit()
        except Exception as e:
            return await self._system_error("purchase_credits", e, account_id=account_id)

        logger.warning(
            "Purchase charge declined",
            extra_data={"account_id": account_id, "transaction_id": transaction_id, "reason": reason}
        )
        return ServiceResult.from_exception(PaymentFailedError(f"Payment declined: {reason}", charge_id))

    async def _compensate_charge(
        self, account_id: int, transaction_id: int, charge_id: str, amount_cents: int, error: str
    ) -> None:
        try:
            await self.payment_gateway.create_refund(charge_id, amount_cents, "ledger_write_failed")
        except Exception as refund_error:
            logger.critical(
                "Compensating refund failed; manual reconciliation required",
                extra_data={
                    "account_id": account_id,
                    "transaction_id": transaction_id,
                    "charge_id": charge_id,
                    "error": str(refund_error),
                },
                exc_info=True
            )
        try:
            locked = await self.ledger.get_transaction(transaction_id, for_update=True)
            if locked is not None and locked.status == TransactionStatus.PENDING:
                locked.status = TransactionStatus.FAILED
                locked.failure_reason = f"ledger_write_failed: {error}"[:500]
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.error(
                "Could not mark purchase failed after compensation",
                extra_data={"transaction_id": transaction_id},
                exc_info=True
            )

    # ---- dashboard & stats ----

    async def _usage_breakdown(self, account_id: int) -> dict[str, Any]:
        now = datetime.utcnow()
        breakdown = {}
        for usage_type, policy in USAGE_POLICIES.items():
            counts = await self.ledger.usage_counts(account_id, usage_type, now)
            breakdown[usage_type.value] = {
                "name": policy.name,
                "credits_required": policy.credits_required,
                "used_today": counts["today"],
                "used_this_month": counts["this_month"],
                "max_per_day": policy.max_per_day,
                "max_per_month": policy.max_per_month,
                "remaining_today": max(0, policy.max_per_day - counts["today"]),
                "remaining_this_month": max(0, policy.max_per_month - counts["this_month"]),
            }
        return breakdown

    async def get_dashboard(self, account_id: int, recent_limit: int = 10) -> ServiceResult:
        """Balance, recent transactions, usage breakdown and auto-topup status"""
        try:
            await self._require_account(account_id)

            async def _read() -> dict[str, Any]:
                balance = await self.ledger.ensure_balance_row(account_id)
                await self.db.commit()
                recent = await self.db.execute(
                    select(CreditTransaction)
                    .where(CreditTransaction.account_id == account_id)
                    .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
                    .limit(recent_limit)
                )
                policy = await self.db.execute(
                    select(AutoTopupPolicy).where(AutoTopupPolicy.account_id == account_id)
                )
                limits = await self.limits_for(account_id)
                return {
                    "balance": balance_to_dict(balance),
                    "recent_transactions": [transaction_to_dict(tx) for tx in recent.scalars().all()],
                    "usage": await self._usage_breakdown(account_id),
                    "auto_topup": auto_topup_to_dict(policy.scalar_one_or_none()),
                    "alerts": {
                        "low_balance": balance.current_balance <= limits.low_balance_threshold,
                        "critical_balance": balance.current_balance <= limits.critical_balance_threshold,
                    },
                }

            data = await self._read_with_retry("get_dashboard", _read)
            return ServiceResult.ok("Dashboard retrieved", data)
        except AppException as e:
            return await self._fail(e, account_id=account_id)
        except Exception as e:
            return await self._system_error("get_dashboard", e, account_id=account_id)

    async def get_credit_limits(self, account_id: int) -> ServiceResult:
        try:
            account = await self._require_account(account_id)
            limits = get_role_limits(account.role)
            totals = await self.purchase_totals(account_id)
            return ServiceResult.ok(
                "Credit limits retrieved",
                {
                    "role": account.role.value,
                    "low_balance_threshold": limits.low_balance_threshold,
                    "critical_balance_threshold": limits.critical_balance_threshold,
                    "max_balance": limits.max_balance,
                    "max_daily_purchase": str(limits.max_daily_purchase),
                    "max_monthly_purchase": str(limits.max_monthly_purchase),
                    "purchased_today": str(totals["today"]),
                    "purchased_this_month": str(totals["this_month"]),
                    "min_credits_per_transaction": MIN_CREDITS_PER_TRANSACTION,
                    "max_credits_per_transaction": MAX_CREDITS_PER_TRANSACTION,
                }
            )
        except AppException as e:
            return await self._fail(e, account_id=account_id)
        except Exception as e:
            return await self._system_error("get_credit_limits", e, account_id=account_id)

    async def get_usage_stats(self, account_id: int, usage_type: str | None = None) -> ServiceResult:
        try:
            await self._require_account(account_id)
            breakdown = await self._read_with_retry(
                "get_usage_stats", lambda: self._usage_breakdown(account_id)
            )
            if usage_type is not None:
                try:
                    key = UsageType(usage_type).value
                except ValueError:
                    raise ValidationException(f"Unknown usage type: {usage_type}", field="usage_type")
                breakdown = {key: breakdown[key]}
            return ServiceResult.ok("Usage statistics retrieved", breakdown)
        except AppException as e:
            return await self._fail(e, account_id=account_id)
        except Exception as e:
            return await self._system_error("get_usage_stats", e, account_id=account_id)

    # ---- expiry ----

    def _expiring_query(self, until: datetime, account_id: int | None = None, column=CreditTransaction):
        query = select(column).where(
            CreditTransaction.transaction_type.in_([TransactionType.PURCHASE, TransactionType.BONUS]),
            CreditTransaction.status == TransactionStatus.COMPLETED,
            CreditTransaction.expires_at.is_not(None),
            CreditTransaction.expires_at <= until,
            CreditTransaction.expired_processed.is_(False),
        )
        if account_id is not None:
            query = query.where(CreditTransaction.account_id == account_id)
        return query.order_by(CreditTransaction.expires_at)

    async def get_expiring_credits(self, account_id: int, days: int = 30) -> ServiceResult:
        try:
            now = datetime.utcnow()
            result = await self.db.execute(
                self._expiring_query(now + timedelta(days=days), account_id).where(
                    CreditTransaction.expires_at > now
                )
            )
            rows = list(result.scalars().all())
            return ServiceResult.ok(
                "Expiring credits retrieved",
                {
                    "days": days,
                    "total_expiring": sum(tx.credits for tx in rows),
                    "transactions": [transaction_to_dict(tx) for tx in rows],
                }
            )
        except Exception as e:
            return await self._system_error("get_expiring_credits", e, account_id=account_id)

    async def process_expired_credits(self, now: datetime | None = None) -> int:
        """
        Expiry sweep. Each expired purchase/bonus row yields one expiry debit of
        min(credits, current balance) and is marked processed. Returns the
        number of source rows processed.
        """
        now = now or datetime.utcnow()
        result = await self.db.execute(self._expiring_query(now, column=CreditTransaction.id))
        candidate_ids = list(result.scalars().all())
        processed = 0

        for tx_id in candidate_ids:
            amount = 0
            try:
                source = await self.ledger.get_transaction(tx_id)
                account_id = source.account_id
                async with self.locks.hold(account_lock_key(account_id), timeout=self.operation_timeout):
                    source = await self.ledger.get_transaction(tx_id, for_update=True)
                    if source.expired_processed:
                        continue
                    balance = await self.ledger.ensure_balance_row(account_id, for_update=True)
                    amount = min(source.credits, balance.current_balance)
                    if amount > 0:
                        await self.ledger.post(
                            account_id,
                            TransactionType.EXPIRY,
                            amount,
                            description=f"Expired credits from transaction #{source.id}",
                            reference_id=source.id,
                            reference_type="credit_transaction",
                            related_transaction_id=source.id,
                            idempotency_key=f"expiry:{source.id}",
                        )
                        await self.notifications.send(
                            account_id,
                            NotificationKind.CREDITS_EXPIRED,
                            {"credits": amount, "new_balance": balance.current_balance},
                        )
                    source.expired_processed = True
                    await self.db.commit()
                processed += 1
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Failed to expire credits",
                    extra_data={"transaction_id": tx_id, "error": str(e)},
                    exc_info=True
                )
                continue
            await self.after_balance_change(account_id, debited=amount > 0)

        if processed:
            logger.info("Expired credits processed", extra_data={"processed": processed})
        return processed

    @log_async_operation("notify_expiring_credits")
    async def notify_expiring_credits(self, days: int | None = None) -> int:
        """Queue a credits_expiring notice per account with credits expiring soon"""
        days = days or settings.CREDIT_EXPIRY_WARNING_DAYS
        now = datetime.utcnow()
        result = await self.db.execute(
            select(CreditTransaction.account_id, func.sum(CreditTransaction.credits))
            .where(
                CreditTransaction.transaction_type.in_([TransactionType.PURCHASE, TransactionType.BONUS]),
                CreditTransaction.status == TransactionStatus.COMPLETED,
                CreditTransaction.expired_processed.is_(False),
                CreditTransaction.expires_at > now,
                CreditTransaction.expires_at <= now + timedelta(days=days),
            )
            .group_by(CreditTransaction.account_id)
        )
        notified = 0
        for account_id, credits in result.all():
            await self.notifications.send(
                account_id,
                NotificationKind.CREDITS_EXPIRING,
                {"credits": int(credits or 0), "days": days},
            )
            notified += 1
        await self.db.commit()
        return notified
