"""
Account Model - Clients, Tradies and Enterprise accounts
"""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Boolean

from app.db.database import Base


class AccountRole(str, enum.Enum):
    CLIENT = "client"
    TRADIE = "tradie"
    ENTERPRISE = "enterprise"
    ADMIN = "admin"


class Account(Base):
    """Account holder of a credit balance; resolves contact details and role"""

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone_number = Column(String(20), nullable=True)
    name = Column(String(150), nullable=True)
    role = Column(
        SQLEnum(AccountRole, values_callable=lambda x: [e.value for e in x]),
        default=AccountRole.TRADIE,
        nullable=False
    )
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_client(self) -> bool:
        return self.role == AccountRole.CLIENT

    @property
    def is_tradie(self) -> bool:
        return self.role in (AccountRole.TRADIE, AccountRole.ENTERPRISE)
