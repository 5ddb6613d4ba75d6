"""
Marketplace Job Model - Jobs posted by clients
"""
import enum
from decimal import Decimal
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, ForeignKey, Numeric, Enum as SQLEnum
)

from app.db.database import Base


class JobStatus(str, enum.Enum):
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class JobType(str, enum.Enum):
    ELECTRICAL = "electrical"
    PLUMBING = "plumbing"
    CARPENTRY = "carpentry"
    PAINTING = "painting"
    ROOFING = "roofing"
    HVAC = "hvac"
    LANDSCAPING = "landscaping"
    CLEANING = "cleaning"
    HANDYMAN = "handyman"
    GENERAL = "general"


class UrgencyLevel(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


class MarketplaceJob(Base):
    """selected_tradie_id is set exactly when status is assigned or completed"""

    __tablename__ = "marketplace_jobs"

    id = Column(Integer, primary_key=True, index=True)
    client_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=False)
    job_type = Column(SQLEnum(JobType, values_callable=_enum_values), nullable=False, index=True)
    location = Column(String(100), nullable=False, index=True)
    urgency_level = Column(
        SQLEnum(UrgencyLevel, values_callable=_enum_values),
        default=UrgencyLevel.MEDIUM,
        nullable=False
    )
    estimated_budget = Column(Numeric(12, 2), nullable=True)

    status = Column(
        SQLEnum(JobStatus, values_callable=_enum_values),
        default=JobStatus.AVAILABLE,
        nullable=False,
        index=True
    )
    status_reason = Column(String(500), nullable=True)
    date_required = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)

    application_count = Column(Integer, default=0, nullable=False)
    selected_tradie_id = Column(Integer, ForeignKey("accounts.id"), nullable=True)
    selected_application_id = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)

    def is_past_expiry(self, now: datetime | None = None) -> bool:
        return (now or datetime.utcnow()) >= self.expires_at

    @property
    def budget(self) -> Decimal:
        return Decimal(self.estimated_budget or 0)
