"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- The service bundle wired with a fake payment gateway
- Test data factories (accounts, funded balances, jobs, applications)
"""
# settings are read at import time; the validator needs a gateway key when DEBUG is off
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("PAYMENT_GATEWAY_API_KEY", "test-payment-key")
os.environ.setdefault("AUTO_TOPUP_INLINE", "true")

import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401
from app.core.exceptions import PaymentGatewayError
from app.core.locks import KeyedLockRegistry
from app.db.database import Base, get_db
from app.db.models.account import Account, AccountRole
from app.db.models.credit_transaction import TransactionType
from app.db.models.marketplace_job import JobStatus, JobType, MarketplaceJob, UrgencyLevel
from app.db.models.outbox_message import MessageChannel, OutboxMessage
from app.domain.service_context import MarketplaceServices, ServiceContext, set_service_context
from app.domain.services.payment_gateway import (
    CHARGE_FAILED,
    CHARGE_SUCCEEDED,
    BasePaymentGateway,
    ChargeResult,
    RefundResult,
)
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory(async_engine):
    """Extra sessions on the test database, for concurrent callers"""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


# ============================================================================
# Fake payment gateway
# ============================================================================

class FakePaymentGateway(BasePaymentGateway):
    """
    In-memory gateway. ``decline_next`` / ``fail_next`` shape the next charges;
    charges with an idempotency key already seen return the original result.
    """

    def __init__(self) -> None:
        self.charges: list[dict[str, Any]] = []
        self.refunds: list[dict[str, Any]] = []
        self.decline_next = 0
        self.fail_next = 0
        self._by_key: dict[str, ChargeResult] = {}
        self._ids = itertools.count(1)

    @property
    def provider_name(self) -> str:
        return "fake"

    async def create_charge(
        self,
        amount_cents: int,
        currency: str,
        payment_method_id: str,
        metadata: dict[str, Any],
        idempotency_key: str,
    ) -> ChargeResult:
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        if self.fail_next:
            self.fail_next -= 1
            raise PaymentGatewayError("gateway unavailable", details={"status_code": 503})

        self.charges.append({
            "amount_cents": amount_cents,
            "currency": currency,
            "payment_method_id": payment_method_id,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        if self.decline_next:
            self.decline_next -= 1
            result = ChargeResult(
                id=f"ch_{next(self._ids)}",
                status=CHARGE_FAILED,
                amount_cents=amount_cents,
                currency=currency,
                failure_reason="card_declined",
            )
        else:
            result = ChargeResult(
                id=f"ch_{next(self._ids)}",
                status=CHARGE_SUCCEEDED,
                amount_cents=amount_cents,
                currency=currency,
            )
        self._by_key[idempotency_key] = result
        return result

    async def create_refund(self, charge_id: str, amount_cents: int, reason: str) -> RefundResult:
        self.refunds.append({"charge_id": charge_id, "amount_cents": amount_cents, "reason": reason})
        return RefundResult(id=f"re_{len(self.refunds)}", charge_id=charge_id, amount_cents=amount_cents)


@pytest.fixture
def payment_gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def service_context(payment_gateway: FakePaymentGateway) -> ServiceContext:
    return ServiceContext(
        locks=KeyedLockRegistry(default_timeout=2.0),
        payment_gateway=payment_gateway,
        auto_topup_inline=True,
    )


@pytest.fixture
def services(db_session: AsyncSession, service_context: ServiceContext) -> MarketplaceServices:
    """Service bundle on the test session; published events are recorded"""
    return service_context.services(db_session, record_events=True)


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, service_context: ServiceContext):
    """Create test client with database and service context overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    set_service_context(service_context)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
    set_service_context(None)


# ============================================================================
# Test Data Factories
# ============================================================================

_email_counter = itertools.count(1)


@pytest.fixture
def account_factory(db_session: AsyncSession):
    """Factory for creating test accounts"""
    async def _create_account(
        role: AccountRole = AccountRole.TRADIE,
        name: str = "Test Account",
        email: str | None = None,
        phone_number: str | None = "+61412345678",
        is_active: bool = True,
    ) -> Account:
        account = Account(
            email=email or f"account{next(_email_counter)}@example.com",
            name=name,
            role=role,
            phone_number=phone_number,
            is_active=is_active,
        )
        db_session.add(account)
        await db_session.commit()
        await db_session.refresh(account)
        return account

    return _create_account


@pytest.fixture
def fund_account(services: MarketplaceServices):
    """Credit an account through the ledger with a bonus transaction"""
    async def _fund(account_id: int, credits: int) -> int:
        result = await services.credits.add_credits(
            account_id, credits, transaction_type=TransactionType.BONUS, description="test funding"
        )
        assert result.success, result.message
        return result.data["new_balance"]

    return _fund


@pytest.fixture
def job_factory(db_session: AsyncSession):
    """Factory for creating marketplace jobs directly"""
    async def _create_job(
        client_id: int,
        title: str = "Replace kitchen tap",
        description: str = "Leaking mixer tap in the kitchen needs replacing this week.",
        job_type: JobType = JobType.PLUMBING,
        location: str = "Parramatta NSW",
        urgency_level: UrgencyLevel = UrgencyLevel.MEDIUM,
        estimated_budget: Decimal | None = Decimal("450.00"),
        status: JobStatus = JobStatus.AVAILABLE,
        expires_at: datetime | None = None,
    ) -> MarketplaceJob:
        job = MarketplaceJob(
            client_id=client_id,
            title=title,
            description=description,
            job_type=job_type,
            location=location,
            urgency_level=urgency_level,
            estimated_budget=estimated_budget,
            status=status,
            expires_at=expires_at or datetime.utcnow() + timedelta(days=30),
            application_count=0,
        )
        db_session.add(job)
        await db_session.commit()
        await db_session.refresh(job)
        return job

    return _create_job


@pytest.fixture
async def client_account(account_factory) -> Account:
    return await account_factory(role=AccountRole.CLIENT, name="Sample Client")


@pytest.fixture
async def tradie(account_factory, fund_account) -> Account:
    """A tradie holding 20 credits"""
    account = await account_factory(role=AccountRole.TRADIE, name="Sample Tradie")
    await fund_account(account.id, 20)
    return account


@pytest.fixture
async def admin_account(account_factory) -> Account:
    return await account_factory(role=AccountRole.ADMIN, name="Sample Admin")


@pytest.fixture
async def open_job(job_factory, client_account) -> MarketplaceJob:
    return await job_factory(client_id=client_account.id)


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """In-memory Redis stand-in; records published messages per channel"""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self.published: list[tuple[str, str]] = []

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        if nx and key in self._store:
            return None
        self._store[key] = value
        return True

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)

    async def publish(self, channel: str, message: str) -> int:
        self.published.append((channel, message))
        return 1

    async def aclose(self) -> None:
        self._store.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with FakeRedis for every test"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis), \
         patch("app.domain.services.health_service.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture
def outbox_messages(db_session: AsyncSession):
    """Query queued outbox rows, optionally filtered by type, channel and recipient"""
    async def _messages(
        message_type: str | None = None,
        channel: MessageChannel | None = None,
        recipient_id: int | str | None = None,
    ) -> list[OutboxMessage]:
        query = select(OutboxMessage)
        if message_type is not None:
            query = query.where(OutboxMessage.message_type == message_type)
        if channel is not None:
            query = query.where(OutboxMessage.channel == channel)
        if recipient_id is not None:
            query = query.where(OutboxMessage.recipient_id == str(recipient_id))
        result = await db_session.execute(query.order_by(OutboxMessage.id))
        return list(result.scalars().all())

    return _messages
