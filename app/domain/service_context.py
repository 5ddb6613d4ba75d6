"""
Service Context

Process-wide collaborators (lock registry, payment gateway, auto-topup
enqueuer) are created once and handed to every request or task. ``services()``
builds the per-session bundle and wires the event bus: the workflow
coordinator and the outbox relay subscribe to it, and the credit service's
post-debit hook points at auto-topup.
"""
from dataclasses import dataclass
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.locks import KeyedLockRegistry
from app.core.logging import get_logger
from app.domain.events import EventBus
from app.domain.services.application_service import ApplicationService
from app.domain.services.auto_topup_service import AutoTopupService
from app.domain.services.credit_service import CreditService
from app.domain.services.credit_transaction_service import CreditTransactionService
from app.domain.services.marketplace_job_service import MarketplaceJobService
from app.domain.services.payment_gateway import BasePaymentGateway
from app.domain.services.workflow_coordinator import WorkflowCoordinator, relay_event_to_outbox

logger = get_logger(__name__)


@dataclass
class MarketplaceServices:
    """Services sharing one session and one event bus"""

    db: AsyncSession
    events: EventBus
    credits: CreditService
    transactions: CreditTransactionService
    auto_topup: AutoTopupService
    coordinator: WorkflowCoordinator
    jobs: MarketplaceJobService
    applications: ApplicationService


class ServiceContext:

    def __init__(
        self,
        locks: KeyedLockRegistry | None = None,
        payment_gateway: BasePaymentGateway | None = None,
        auto_topup_inline: bool | None = None,
        auto_topup_enqueue: Callable[[int], None] | None = None,
        operation_timeout: float | None = None,
    ):
        if locks is None:
            locks = KeyedLockRegistry(default_timeout=settings.CREDIT_OPERATION_TIMEOUT_SECONDS)
        self.locks = locks
        self.payment_gateway = payment_gateway
        self.auto_topup_inline = (
            settings.AUTO_TOPUP_INLINE if auto_topup_inline is None else auto_topup_inline
        )
        self.auto_topup_enqueue = auto_topup_enqueue
        self.operation_timeout = operation_timeout

    def services(self, db: AsyncSession, record_events: bool = False) -> MarketplaceServices:
        events = EventBus()
        events.record_history = record_events

        credits = CreditService(
            db,
            self.locks,
            payment_gateway=self.payment_gateway,
            operation_timeout=self.operation_timeout,
        )
        auto_topup = AutoTopupService(db, credits, payment_gateway=self.payment_gateway, events=events)
        coordinator = WorkflowCoordinator(credits, events)

        events.subscribe(coordinator.handle)
        events.subscribe(relay_event_to_outbox)

        if self.auto_topup_inline or self.auto_topup_enqueue is None:
            credits.auto_topup_trigger = self._inline_trigger(auto_topup)
        else:
            credits.auto_topup_trigger = self._deferred_trigger(self.auto_topup_enqueue)

        return MarketplaceServices(
            db=db,
            events=events,
            credits=credits,
            transactions=CreditTransactionService(db, credits),
            auto_topup=auto_topup,
            coordinator=coordinator,
            jobs=MarketplaceJobService(db, credits, coordinator),
            applications=ApplicationService(db, credits, coordinator),
        )

    @staticmethod
    def _inline_trigger(auto_topup: AutoTopupService):
        async def trigger(account_id: int) -> None:
            result = await auto_topup.trigger(account_id)
            if not result.success:
                logger.warning(
                    "Inline auto-topup did not complete",
                    extra_data={"account_id": account_id, "message": result.message}
                )
        return trigger

    @staticmethod
    def _deferred_trigger(enqueue: Callable[[int], None]):
        async def trigger(account_id: int) -> None:
            enqueue(account_id)
            logger.debug("Auto-topup evaluation queued", extra_data={"account_id": account_id})
        return trigger


_service_context: ServiceContext | None = None


def get_service_context() -> ServiceContext:
    """The context installed by the process entry point (app startup)"""
    if _service_context is None:
        raise RuntimeError("Service context is not initialized; call set_service_context() at startup")
    return _service_context


def set_service_context(context: ServiceContext | None) -> None:
    global _service_context
    _service_context = context
