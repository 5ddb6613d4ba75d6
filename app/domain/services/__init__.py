"""
Domain Services
"""
from app.domain.services.credit_service import CreditService
from app.domain.services.credit_transaction_service import CreditTransactionService
from app.domain.services.auto_topup_service import AutoTopupService
from app.domain.services.marketplace_job_service import MarketplaceJobService
from app.domain.services.application_service import ApplicationService
from app.domain.services.workflow_coordinator import WorkflowCoordinator
from app.domain.services.outbox_service import OutboxService
from app.domain.services.notification_service import NotificationService, NotificationDispatcher

__all__ = [
    "CreditService",
    "CreditTransactionService",
    "AutoTopupService",
    "MarketplaceJobService",
    "ApplicationService",
    "WorkflowCoordinator",
    "OutboxService",
    "NotificationService",
    "NotificationDispatcher",
]
