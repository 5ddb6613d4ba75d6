"""
Balance Alert Service - low / critical balance notifications

Evaluated after a balance change has been committed. Critical wins over low
when both thresholds are crossed, each alert is sent once per crossing, and
both flags are cleared when the balance climbs back above the low threshold.
"""
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.credit_balance import CreditBalance
from app.domain.credit_policy import RoleLimits
from app.domain.services.notification_service import NotificationKind, NotificationService

logger = get_logger(__name__)


def decide_alert(balance: CreditBalance, limits: RoleLimits) -> NotificationKind | None:
    """Pure decision used by evaluate(); also updates the alert flags on ``balance``"""
    current = balance.current_balance

    if current > limits.low_balance_threshold:
        balance.low_balance_alerted = False
        balance.critical_balance_alerted = False
        return None

    if current <= limits.critical_balance_threshold:
        if balance.critical_balance_alerted:
            return None
        balance.critical_balance_alerted = True
        # the critical alert also covers the low one
        balance.low_balance_alerted = True
        return NotificationKind.CRITICAL_BALANCE

    if balance.low_balance_alerted:
        return None
    balance.low_balance_alerted = True
    return NotificationKind.LOW_BALANCE


class BalanceAlertService:

    def __init__(self, db: AsyncSession, notifications: NotificationService):
        self.db = db
        self.notifications = notifications

    async def evaluate(self, balance: CreditBalance, limits: RoleLimits) -> NotificationKind | None:
        """
        Queue the alert (if any) and commit the flag change. Failures are
        logged and dropped; the credit operation has already been committed.
        """
        try:
            kind = decide_alert(balance, limits)
            if kind is not None:
                await self.notifications.send(
                    balance.account_id,
                    kind,
                    {
                        "current_balance": balance.current_balance,
                        "threshold": (
                            limits.critical_balance_threshold
                            if kind == NotificationKind.CRITICAL_BALANCE
                            else limits.low_balance_threshold
                        ),
                    },
                )
                logger.info(
                    "Balance alert queued",
                    extra_data={
                        "account_id": balance.account_id,
                        "kind": kind.value,
                        "current_balance": balance.current_balance,
                    }
                )
            await self.db.commit()
            return kind
        except Exception as e:
            await self.db.rollback()
            logger.error(
                "Balance alert evaluation failed",
                extra_data={"account_id": balance.account_id, "error": str(e)},
                exc_info=True
            )
            return None
