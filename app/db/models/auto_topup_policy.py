"""
Auto-Topup Policy Model - Per-account automatic credit purchase
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Enum as SQLEnum

from app.db.database import Base


class AutoTopupStatus(str, enum.Enum):
    DISABLED = "disabled"
    ENABLED = "enabled"
    PROCESSING = "processing"
    SUSPENDED = "suspended"


class PackageType(str, enum.Enum):
    STARTER = "starter"
    STANDARD = "standard"
    PREMIUM = "premium"
    ENTERPRISE = "enterprise"


class AutoTopupPolicy(Base):
    """
    status == processing means a charge is in flight; pending_charge_key is the
    gateway idempotency key of that charge and is written before the charge is
    sent, so a crashed worker can resume it without charging twice.
    """

    __tablename__ = "auto_topup_policies"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), unique=True, nullable=False)

    status = Column(
        SQLEnum(AutoTopupStatus, values_callable=lambda x: [e.value for e in x]),
        default=AutoTopupStatus.DISABLED,
        nullable=False,
        index=True
    )
    trigger_balance = Column(Integer, default=5, nullable=False)
    package_type = Column(
        SQLEnum(PackageType, values_callable=lambda x: [e.value for e in x]),
        default=PackageType.STANDARD,
        nullable=False
    )
    payment_method_id = Column(String(100), nullable=True)

    failure_count = Column(Integer, default=0, nullable=False)
    last_triggered_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)
    last_failure_reason = Column(String(500), nullable=True)

    pending_charge_key = Column(String(100), nullable=True)
    processing_started_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
