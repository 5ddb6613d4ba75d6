"""
Credit Transaction Model - Append-only credit ledger
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum, JSON, Boolean, Index
)

from app.db.database import Base


class TransactionType(str, enum.Enum):
    PURCHASE = "purchase"
    USAGE = "usage"
    REFUND = "refund"
    BONUS = "bonus"
    EXPIRY = "expiry"


class TransactionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UsageType(str, enum.Enum):
    JOB_APPLICATION = "job_application"
    PROFILE_BOOST = "profile_boost"
    PREMIUM_JOB_UNLOCK = "premium_job_unlock"
    DIRECT_MESSAGE = "direct_message"
    FEATURED_LISTING = "featured_listing"
    MARKETPLACE_APPLICATION = "marketplace_application"


# positive balance effect per type; usage and expiry debit
CREDITING_TYPES = frozenset({TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND})
DEBITING_TYPES = frozenset({TransactionType.USAGE, TransactionType.EXPIRY})


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class CreditTransaction(Base):
    """
    Every balance-affecting event. A completed row is never edited again:
    refunds and cancellations are new compensating rows that point back
    through related_transaction_id.
    """

    __tablename__ = "credit_transactions"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    transaction_type = Column(SQLEnum(TransactionType, values_callable=_enum_values), nullable=False)
    usage_type = Column(SQLEnum(UsageType, values_callable=_enum_values), nullable=True)
    quantity = Column(Integer, default=1, nullable=False)
    credits = Column(Integer, nullable=False)  # always positive
    balance_after = Column(Integer, nullable=True)

    description = Column(String(500), nullable=True)
    reference_id = Column(String(100), nullable=True)
    reference_type = Column(String(50), nullable=True)  # job, application, purchase, auto_topup, ...
    related_transaction_id = Column(Integer, ForeignKey("credit_transactions.id"), nullable=True)

    status = Column(
        SQLEnum(TransactionStatus, values_callable=_enum_values),
        default=TransactionStatus.PENDING,
        nullable=False,
        index=True
    )
    idempotency_key = Column(String(255), unique=True, nullable=True)
    failure_reason = Column(String(500), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    expired_processed = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        Index("ix_credit_tx_usage_window", "account_id", "transaction_type", "usage_type", "created_at"),
        Index("ix_credit_tx_reference", "reference_type", "reference_id"),
    )

    @property
    def signed_credits(self) -> int:
        if self.transaction_type in DEBITING_TYPES:
            return -self.credits
        return self.credits
