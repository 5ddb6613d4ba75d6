"""
Job Application Model - A tradie's bid on a marketplace job
"""
import enum
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, Text, ForeignKey, Numeric, Boolean,
    Enum as SQLEnum, UniqueConstraint
)

from app.db.database import Base


class ApplicationStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    SELECTED = "selected"
    REJECTED = "rejected"
    WITHDRAWN = "withdrawn"


OPEN_APPLICATION_STATUSES = (ApplicationStatus.SUBMITTED, ApplicationStatus.UNDER_REVIEW)


class JobApplication(Base):
    """credits_used is fixed at submission and is the exact amount any refund returns"""

    __tablename__ = "job_applications"

    id = Column(Integer, primary_key=True, index=True)
    marketplace_job_id = Column(Integer, ForeignKey("marketplace_jobs.id"), nullable=False, index=True)
    tradie_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    custom_quote = Column(Numeric(12, 2), nullable=True)
    proposed_timeline = Column(String(200), nullable=True)
    cover_message = Column(Text, nullable=True)

    credits_used = Column(Integer, nullable=False)
    usage_transaction_id = Column(Integer, ForeignKey("credit_transactions.id"), nullable=True)
    credits_refunded = Column(Boolean, default=False, nullable=False)

    status = Column(
        SQLEnum(ApplicationStatus, values_callable=lambda x: [e.value for e in x]),
        default=ApplicationStatus.SUBMITTED,
        nullable=False,
        index=True
    )
    status_reason = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("marketplace_job_id", "tradie_id", name="uq_application_job_tradie"),
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_APPLICATION_STATUSES
