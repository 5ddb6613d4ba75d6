"""
Database Models
"""
from app.db.models.account import Account, AccountRole
from app.db.models.credit_balance import CreditBalance
from app.db.models.credit_transaction import (
    CreditTransaction,
    TransactionStatus,
    TransactionType,
    UsageType,
)
from app.db.models.auto_topup_policy import AutoTopupPolicy, AutoTopupStatus, PackageType
from app.db.models.marketplace_job import JobStatus, JobType, MarketplaceJob, UrgencyLevel
from app.db.models.job_application import ApplicationStatus, JobApplication
from app.db.models.outbox_message import MessageChannel, MessageStatus, OutboxMessage

__all__ = [
    "Account",
    "AccountRole",
    "CreditBalance",
    "CreditTransaction",
    "TransactionStatus",
    "TransactionType",
    "UsageType",
    "AutoTopupPolicy",
    "AutoTopupStatus",
    "PackageType",
    "MarketplaceJob",
    "JobStatus",
    "JobType",
    "UrgencyLevel",
    "JobApplication",
    "ApplicationStatus",
    "OutboxMessage",
    "MessageChannel",
    "MessageStatus",
]
