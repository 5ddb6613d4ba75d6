"""
Auto-Topup Service

Buys the configured credit package when a debit leaves the balance at or
under the policy's trigger. The policy is moved to ``processing`` and the
charge's idempotency key is committed before the gateway is called; the
gateway call itself runs with no lock held, and the resulting credit is
applied under the account lock again. Three consecutive failures suspend the
policy until the payment method is updated.
"""
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    AppException,
    AutoTopupSuspendedError,
    CircuitBreakerOpenError,
    ErrorCode,
    NotFoundException,
    PaymentFailedError,
    PaymentGatewayError,
    ServiceTimeoutError,
    ValidationException,
)
from app.core.locks import account_lock_key
from app.core.logging import get_logger, log_async_operation
from app.db.models.auto_topup_policy import AutoTopupPolicy, AutoTopupStatus, PackageType
from app.db.models.credit_balance import CreditBalance
from app.db.models.credit_transaction import CreditTransaction, TransactionType
from app.domain.credit_policy import (
    AUTO_TOPUP_COOLDOWN,
    AUTO_TOPUP_DEFAULT_PACKAGE,
    AUTO_TOPUP_DEFAULT_TRIGGER,
    AUTO_TOPUP_MAX_FAILURES,
    AUTO_TOPUP_MAX_TRIGGER,
    AUTO_TOPUP_MIN_TRIGGER,
    CreditPackage,
    get_package,
)
from app.domain.events import DomainEvent, EventBus
from app.domain.results import ServiceResult
from app.domain.serializers import auto_topup_to_dict, transaction_to_dict
from app.domain.services.credit_service import CreditService
from app.domain.services.notification_service import NotificationKind
from app.domain.services.payment_gateway import BasePaymentGateway, ChargeResult
from app.state_machine import EntityType, state_manager

logger = get_logger(__name__)

_GATEWAY_UNAVAILABLE = (PaymentGatewayError, ServiceTimeoutError, CircuitBreakerOpenError)


class AutoTopupService:

    def __init__(
        self,
        db: AsyncSession,
        credits: CreditService,
        payment_gateway: BasePaymentGateway | None = None,
        events: EventBus | None = None,
    ):
        self.db = db
        self.credits = credits
        self.ledger = credits.ledger
        self.locks = credits.locks
        self.notifications = credits.notifications
        self.payment_gateway = payment_gateway or credits.payment_gateway
        self.events = events

    # ---- helpers ----

    async def get_policy(self, account_id: int, for_update: bool = False) -> AutoTopupPolicy | None:
        query = select(AutoTopupPolicy).where(AutoTopupPolicy.account_id == account_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _require_policy(self, account_id: int, for_update: bool = False) -> AutoTopupPolicy:
        policy = await self.get_policy(account_id, for_update=for_update)
        if policy is None:
            raise NotFoundException("AutoTopupPolicy", account_id)
        return policy

    async def _transition(
        self, policy: AutoTopupPolicy, target: AutoTopupStatus, actor_id: int | None = None, **payload: Any
    ) -> None:
        current = policy.status
        if current == target:
            return
        state_manager.ensure_transition(EntityType.AUTO_TOPUP, current, target, policy.id)
        policy.status = target
        if self.events is not None:
            await self.events.publish(
                self.db,
                DomainEvent(
                    entity_type=EntityType.AUTO_TOPUP.value,
                    entity_id=policy.id,
                    from_state=current.value,
                    to_state=target.value,
                    actor_id=actor_id,
                    payload={"account_id": policy.account_id, **payload},
                ),
            )

    @staticmethod
    def _validate_trigger(trigger_balance: Any) -> None:
        if (
            not isinstance(trigger_balance, int)
            or isinstance(trigger_balance, bool)
            or not AUTO_TOPUP_MIN_TRIGGER <= trigger_balance <= AUTO_TOPUP_MAX_TRIGGER
        ):
            raise ValidationException(
                f"Trigger balance must be between {AUTO_TOPUP_MIN_TRIGGER} and {AUTO_TOPUP_MAX_TRIGGER}",
                field="trigger_balance",
                error_code=ErrorCode.AUTO_TOPUP_INVALID,
            )

    @staticmethod
    def _validate_package(package_type: Any) -> PackageType:
        try:
            return PackageType(package_type)
        except ValueError:
            raise ValidationException(
                f"Unknown credit package: {package_type}",
                field="package_type",
                error_code=ErrorCode.AUTO_TOPUP_INVALID,
            )

    async def _rejected(self, exc: AppException, account_id: int) -> ServiceResult:
        await self.db.rollback()
        logger.info(
            "Auto-topup request rejected",
            extra_data={"account_id": account_id, "error_code": exc.error_code.value, "message": exc.message}
        )
        return ServiceResult.from_exception(exc)

    # ---- configuration ----

    async def setup_auto_topup(
        self,
        account_id: int,
        payment_method_id: str,
        trigger_balance: int = AUTO_TOPUP_DEFAULT_TRIGGER,
        package_type: str = AUTO_TOPUP_DEFAULT_PACKAGE.value,
    ) -> ServiceResult:
        """Create or replace the policy; always leaves it enabled with no failures"""
        try:
            await self.credits._require_account(account_id)
            self._validate_trigger(trigger_balance)
            package = self._validate_package(package_type)
            if not payment_method_id:
                raise ValidationException(
                    "A payment method is required for auto-topup",
                    field="payment_method_id",
                    error_code=ErrorCode.AUTO_TOPUP_INVALID,
                )

            async with self.locks.hold(account_lock_key(account_id)):
                policy = await self.get_policy(account_id, for_update=True)
                if policy is None:
                    policy = AutoTopupPolicy(
                        account_id=account_id,
                        status=AutoTopupStatus.DISABLED,
                        failure_count=0,
                    )
                    self.db.add(policy)
                    await self.db.flush()
                elif policy.status == AutoTopupStatus.PROCESSING:
                    raise ValidationException(
                        "An auto-topup payment is in progress; try again shortly",
                        error_code=ErrorCode.AUTO_TOPUP_INVALID,
                    )

                policy.trigger_balance = trigger_balance
                policy.package_type = package
                policy.payment_method_id = payment_method_id
                policy.failure_count = 0
                policy.last_failure_reason = None
                await self._transition(policy, AutoTopupStatus.ENABLED, actor_id=account_id)
                await self.db.commit()
        except AppException as e:
            return await self._rejected(e, account_id)

        logger.info(
            "Auto-topup configured",
            extra_data={
                "account_id": account_id,
                "trigger_balance": trigger_balance,
                "package_type": package.value,
            }
        )
        return ServiceResult.ok("Auto-topup enabled", auto_topup_to_dict(policy))

    async def enable(self, account_id: int) -> ServiceResult:
        try:
            async with self.locks.hold(account_lock_key(account_id)):
                policy = await self._require_policy(account_id, for_update=True)
                if policy.status == AutoTopupStatus.SUSPENDED:
                    raise AutoTopupSuspendedError(account_id, policy.failure_count)
                if not policy.payment_method_id:
                    raise ValidationException(
                        "A payment method is required for auto-topup",
                        field="payment_method_id",
                        error_code=ErrorCode.AUTO_TOPUP_INVALID,
                    )
                await self._transition(policy, AutoTopupStatus.ENABLED, actor_id=account_id)
                await self.db.commit()
        except AppException as e:
            return await self._rejected(e, account_id)
        return ServiceResult.ok("Auto-topup enabled", auto_topup_to_dict(policy))

    async def disable(self, account_id: int) -> ServiceResult:
        try:
            async with self.locks.hold(account_lock_key(account_id)):
                policy = await self._require_policy(account_id, for_update=True)
                await self._transition(policy, AutoTopupStatus.DISABLED, actor_id=account_id)
                await self.db.commit()
        except AppException as e:
            return await self._rejected(e, account_id)
        return ServiceResult.ok("Auto-topup disabled", auto_topup_to_dict(policy))

    async def get_status(self, account_id: int) -> ServiceResult:
        policy = await self.get_policy(account_id)
        data = auto_topup_to_dict(policy)
        if policy is not None:
            package = get_package(policy.package_type)
            data["package"] = {
                "name": package.name,
                "credits": package.total_credits,
                "price": str(package.price),
            }
            data["max_failures"] = AUTO_TOPUP_MAX_FAILURES
        return ServiceResult.ok("Auto-topup status retrieved", data)

    async def update_payment_method(self, account_id: int, payment_method_id: str) -> ServiceResult:
        """New payment method; clears the failure count and re-enables a suspended policy"""
        if not payment_method_id:
            return ServiceResult.fail(
                "A payment method is required for auto-topup", ErrorCode.AUTO_TOPUP_INVALID
            )
        try:
            async with self.locks.hold(account_lock_key(account_id)):
                policy = await self._require_policy(account_id, for_update=True)
                if policy.status == AutoTopupStatus.PROCESSING:
                    raise ValidationException(
                        "An auto-topup payment is in progress; try again shortly",
                        error_code=ErrorCode.AUTO_TOPUP_INVALID,
                    )
                was_suspended = policy.status == AutoTopupStatus.SUSPENDED
                policy.payment_method_id = payment_method_id
                policy.failure_count = 0
                policy.last_failure_reason = None
                await self._transition(policy, AutoTopupStatus.ENABLED, actor_id=account_id)
                await self.db.commit()
        except AppException as e:
            return await self._rejected(e, account_id)

        logger.info(
            "Auto-topup payment method updated",
            extra_data={"account_id": account_id, "was_suspended": was_suspended}
        )
        return ServiceResult.ok("Payment method updated", auto_topup_to_dict(policy))

    # ---- triggering ----

    async def _skip_reason(self, policy: AutoTopupPolicy | None, now: datetime) -> str | None:
        if policy is None:
            return "not_configured"
        if policy.status == AutoTopupStatus.PROCESSING:
            return "in_progress"
        if policy.status != AutoTopupStatus.ENABLED:
            return policy.status.value
        if not policy.payment_method_id:
            return "no_payment_method"

        balance = await self.ledger.ensure_balance_row(policy.account_id, for_update=True)
        if balance.current_balance > policy.trigger_balance:
            return "above_trigger"
        if policy.last_triggered_at and now - policy.last_triggered_at < AUTO_TOPUP_COOLDOWN:
            return "cooldown"

        package = get_package(policy.package_type)
        limits = await self.credits.limits_for(policy.account_id)
        if balance.current_balance + package.total_credits > limits.max_balance:
            return "max_balance"
        return None

    async def trigger(self, account_id: int) -> ServiceResult:
        """
        Evaluate the policy after a debit. A no-op (successful result with
        ``triggered`` False) unless the policy is enabled and the balance is at
        or under its trigger. A policy already in ``processing`` is left alone.
        """
        if self.payment_gateway is None:
            return ServiceResult.ok("Auto-topup not triggered", {"triggered": False, "reason": "no_gateway"})
        now = datetime.utcnow()
        try:
            async with self.locks.hold(account_lock_key(account_id)):
                policy = await self.get_policy(account_id, for_update=True)
                reason = await self._skip_reason(policy, now)
                if reason is not None:
                    # releases the row locks; nothing was changed
                    await self.db.commit()
                    return ServiceResult.ok("Auto-topup not triggered", {"triggered": False, "reason": reason})

                charge_key = f"auto-topup:{uuid4().hex}"
                await self._transition(policy, AutoTopupStatus.PROCESSING, charge_key=charge_key)
                policy.pending_charge_key = charge_key
                policy.processing_started_at = now
                payment_method_id = policy.payment_method_id
                package = get_package(policy.package_type)
                await self.db.commit()
        except AppException as e:
            return await self._rejected(e, account_id)

        logger.info(
            "Auto-topup triggered",
            extra_data={"account_id": account_id, "package_type": package.package_type.value}
        )
        return await self._charge_and_settle(account_id, charge_key, package, payment_method_id)

    async def _charge_and_settle(
        self, account_id: int, charge_key: str, package: CreditPackage, payment_method_id: str
    ) -> ServiceResult:
        try:
            charge = await self.payment_gateway.create_charge(
                amount_cents=package.price_cents,
                currency=settings.PAYMENT_CURRENCY,
                payment_method_id=payment_method_id,
                metadata={
                    "account_id": account_id,
                    "autoTopup": True,
                    "packageType": package.package_type.value,
                    "credits": package.total_credits,
                },
                idempotency_key=charge_key,
            )
        except _GATEWAY_UNAVAILABLE as e:
            return await self._record_failure(account_id, charge_key, e.message)

        if not charge.succeeded:
            return await self._record_failure(account_id, charge_key, charge.failure_reason or "declined")
        return await self._record_success(account_id, charge_key, package, charge)

    async def _record_success(
        self, account_id: int, charge_key: str, package: CreditPackage, charge: ChargeResult
    ) -> ServiceResult:
        try:
            async with self.locks.hold(account_lock_key(account_id)):
                policy = await self._require_policy(account_id, for_update=True)
                if policy.pending_charge_key != charge_key:
                    await self.db.commit()
                    return ServiceResult.ok(
                        "Auto-topup already settled", {"triggered": False, "reason": "already_settled"}
                    )

                expires_at = (
                    datetime.utcnow() + timedelta(days=package.validity_days)
                    if package.validity_days else None
                )
                tx = await self.ledger.post(
                    account_id,
                    TransactionType.PURCHASE,
                    package.total_credits,
                    description=f"Auto-topup: {package.name}",
                    reference_id=policy.id,
                    reference_type="auto_topup",
                    idempotency_key=charge_key,
                    expires_at=expires_at,
                    metadata={
                        "auto_topup": True,
                        "charge_id": charge.id,
                        "package_type": package.package_type.value,
                        "amount": str(package.price),
                        "currency": settings.PAYMENT_CURRENCY,
                    },
                )
                await self._transition(policy, AutoTopupStatus.ENABLED, charge_id=charge.id)
                policy.failure_count = 0
                policy.last_triggered_at = datetime.utcnow()
                policy.last_failure_reason = None
                policy.pending_charge_key = None
                policy.processing_started_at = None
                await self.notifications.send(
                    account_id,
                    NotificationKind.AUTO_TOPUP_SUCCESS,
                    {"credits": package.total_credits, "amount": str(package.price), "new_balance": tx.balance_after},
                )
                await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Auto-topup credit failed after successful charge, refunding",
                extra_data={"account_id": account_id, "charge_id": charge.id, "error": str(e)},
                exc_info=True
            )
            try:
                await self.payment_gateway.create_refund(charge.id, package.price_cents, "ledger_write_failed")
            except Exception as refund_error:
                logger.critical(
                    "Auto-topup compensating refund failed; manual reconciliation required",
                    extra_data={"account_id": account_id, "charge_id": charge.id, "error": str(refund_error)},
                    exc_info=True
                )
            return await self._record_failure(account_id, charge_key, "ledger_write_failed")

        logger.info(
            "Auto-topup completed",
            extra_data={"account_id": account_id, "credits": package.total_credits, "transaction_id": tx.id}
        )
        result = ServiceResult.ok(
            "Auto-topup completed",
            {"triggered": True, "transaction": transaction_to_dict(tx), "new_balance": tx.balance_after}
        )
        await self.credits.after_balance_change(account_id, debited=False)
        return result

    async def _record_failure(self, account_id: int, charge_key: str, reason: str) -> ServiceResult:
        try:
            async with self.locks.hold(account_lock_key(account_id)):
                policy = await self._require_policy(account_id, for_update=True)
                if policy.pending_charge_key != charge_key:
                    await self.db.commit()
                    return ServiceResult.ok(
                        "Auto-topup already settled", {"triggered": False, "reason": "already_settled"}
                    )

                policy.failure_count += 1
                policy.last_failure_at = datetime.utcnow()
                policy.last_failure_reason = reason[:500]
                policy.pending_charge_key = None
                policy.processing_started_at = None
                suspended = policy.failure_count >= AUTO_TOPUP_MAX_FAILURES
                await self._transition(
                    policy,
                    AutoTopupStatus.SUSPENDED if suspended else AutoTopupStatus.ENABLED,
                    failure_count=policy.failure_count,
                    reason=reason,
                )
                await self.notifications.send(
                    account_id,
                    NotificationKind.AUTO_TOPUP_SUSPENDED if suspended else NotificationKind.AUTO_TOPUP_FAILED,
                    {"reason": reason, "failure_count": policy.failure_count},
                )
                await self.db.commit()
        except AppException as e:
            return await self._rejected(e, account_id)

        logger.warning(
            "Auto-topup payment failed",
            extra_data={
                "account_id": account_id,
                "failure_count": policy.failure_count,
                "suspended": suspended,
                "reason": reason,
            }
        )
        result = ServiceResult.from_exception(PaymentFailedError(f"Auto-topup payment failed: {reason}"))
        result.data = {**(result.data or {}), **auto_topup_to_dict(policy), "triggered": True}
        return result

    # ---- sweeps ----

    @log_async_operation("process_pending_topups")
    async def process_pending_topups(self, limit: int = 100) -> int:
        """Trigger every enabled policy whose account sits at or under its trigger"""
        result = await self.db.execute(
            select(AutoTopupPolicy.account_id)
            .join(CreditBalance, CreditBalance.account_id == AutoTopupPolicy.account_id)
            .where(
                AutoTopupPolicy.status == AutoTopupStatus.ENABLED,
                CreditBalance.current_balance <= AutoTopupPolicy.trigger_balance,
            )
            .limit(limit)
        )
        account_ids = list(result.scalars().all())
        triggered = 0
        for account_id in account_ids:
            try:
                outcome = await self.trigger(account_id)
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Auto-topup sweep failed for account",
                    extra_data={"account_id": account_id, "error": str(e)},
                    exc_info=True
                )
                continue
            if outcome.data and outcome.data.get("triggered"):
                triggered += 1
        return triggered

    @log_async_operation("resume_stalled_topups")
    async def resume_stalled_topups(self, now: datetime | None = None) -> int:
        """
        Re-issue the charge for policies stuck in ``processing``. The persisted
        idempotency key makes the gateway return the original charge if it
        went through before the crash.
        """
        if self.payment_gateway is None:
            return 0
        cutoff = (now or datetime.utcnow()) - timedelta(minutes=settings.AUTO_TOPUP_STALE_PROCESSING_MINUTES)
        result = await self.db.execute(
            select(AutoTopupPolicy).where(
                AutoTopupPolicy.status == AutoTopupStatus.PROCESSING,
                AutoTopupPolicy.processing_started_at < cutoff,
            )
        )
        resumed = 0
        stalled = [
            (p.account_id, p.pending_charge_key, p.package_type, p.payment_method_id, p.processing_started_at)
            for p in result.scalars().all()
            if p.pending_charge_key
        ]
        for account_id, charge_key, package_type, payment_method_id, started_at in stalled:
            logger.warning(
                "Resuming stalled auto-topup",
                extra_data={"account_id": account_id, "started_at": started_at.isoformat()}
            )
            try:
                await self._charge_and_settle(account_id, charge_key, get_package(package_type), payment_method_id)
            except Exception as e:
                await self.db.rollback()
                logger.error(
                    "Stalled auto-topup could not be resumed",
                    extra_data={"account_id": account_id, "error": str(e)},
                    exc_info=True
                )
                continue
            resumed += 1
        return resumed

    async def get_history(self, account_id: int, limit: int = 20) -> ServiceResult:
        result = await self.db.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.transaction_type == TransactionType.PURCHASE,
                CreditTransaction.reference_type == "auto_topup",
            )
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
            .limit(limit)
        )
        return ServiceResult.ok(
            "Auto-topup history retrieved",
            [transaction_to_dict(tx) for tx in result.scalars().all()]
        )
