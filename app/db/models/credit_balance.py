"""
Credit Balance Model - Current balance and lifetime totals per account
"""
from datetime import datetime
from sqlalchemy import Column, Integer, DateTime, ForeignKey, Boolean, CheckConstraint
from sqlalchemy.orm import relationship

from app.db.database import Base


class CreditBalance(Base):
    """
    One row per account. Mutated only through the credit ledger, always in the
    same commit as the CreditTransaction that explains the change.

    current_balance == total_purchased + total_refunded - total_used
    """

    __tablename__ = "credit_balances"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), unique=True, nullable=False)

    current_balance = Column(Integer, default=0, nullable=False)
    total_purchased = Column(Integer, default=0, nullable=False)  # purchase + bonus
    total_used = Column(Integer, default=0, nullable=False)       # usage + expiry
    total_refunded = Column(Integer, default=0, nullable=False)

    last_purchase_at = Column(DateTime, nullable=True)
    last_usage_at = Column(DateTime, nullable=True)

    # one alert per threshold crossing; cleared once the balance recovers
    low_balance_alerted = Column(Boolean, default=False, nullable=False)
    critical_balance_alerted = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    account = relationship("Account")

    __table_args__ = (
        CheckConstraint("current_balance >= 0", name="ck_credit_balance_non_negative"),
    )

    @property
    def is_reconciled(self) -> bool:
        return self.current_balance == (
            self.total_purchased + self.total_refunded - self.total_used
        )
