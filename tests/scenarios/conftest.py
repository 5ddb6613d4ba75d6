"""
Fixtures and helpers for end-to-end marketplace scenarios.

Provides:
- short API call helpers acting as a given account
- DB assertions (balance, ledger reconciliation, outbox rows)
"""
import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.account import Account, AccountRole
from app.db.models.credit_balance import CreditBalance
from app.db.models.credit_transaction import CreditTransaction, TransactionStatus, TransactionType
from app.db.models.outbox_message import MessageChannel, OutboxMessage

_CREDIT_TYPES = (TransactionType.PURCHASE, TransactionType.BONUS, TransactionType.REFUND)


# ============================================================================
# API helpers
# ============================================================================


async def call_as(
    client: AsyncClient,
    account: Account,
    method: str,
    path: str,
    json: dict | None = None,
    expected_status: int | None = None,
) -> dict:
    """Call the API as ``account`` and return the JSON body"""
    response = await client.request(
        method, path, json=json, headers={"X-Account-ID": str(account.id)}
    )
    if expected_status is not None:
        assert response.status_code == expected_status, response.text
    return response.json()


async def apply_as(client: AsyncClient, tradie: Account, job_id: int, **fields) -> dict:
    body = await call_as(client, tradie, "POST", f"/api/jobs/{job_id}/applications", json=fields)
    assert body["success"], body
    return body["data"]


# ============================================================================
# DB assertions
# ============================================================================


async def assert_balance(db: AsyncSession, account_id: int, expected: int) -> None:
    result = await db.execute(
        select(CreditBalance.current_balance).where(CreditBalance.account_id == account_id)
    )
    actual = result.scalar_one()
    assert actual == expected, f"balance {actual}, expected {expected}"


async def assert_ledger_reconciled(db: AsyncSession, account_id: int) -> None:
    """Completed ledger rows add up to the stored balance and its totals"""
    result = await db.execute(
        select(CreditTransaction.transaction_type, func.sum(CreditTransaction.credits))
        .where(
            CreditTransaction.account_id == account_id,
            CreditTransaction.status == TransactionStatus.COMPLETED,
        )
        .group_by(CreditTransaction.transaction_type)
    )
    sums = {tx_type: total for tx_type, total in result.all()}
    credited = sum(sums.get(t, 0) for t in _CREDIT_TYPES)
    debited = sum(v for t, v in sums.items() if t not in _CREDIT_TYPES)

    balance = (
        await db.execute(select(CreditBalance).where(CreditBalance.account_id == account_id))
    ).scalar_one()
    await db.refresh(balance)

    assert balance.current_balance == credited - debited
    assert balance.is_reconciled


async def assert_outbox_count(
    db: AsyncSession,
    message_type: str,
    expected: int,
    *,
    recipient_id: int | str | None = None,
    channel: MessageChannel = MessageChannel.EMAIL,
) -> None:
    query = select(func.count(OutboxMessage.id)).where(
        OutboxMessage.message_type == message_type,
        OutboxMessage.channel == channel,
    )
    if recipient_id is not None:
        query = query.where(OutboxMessage.recipient_id == str(recipient_id))
    actual = (await db.execute(query)).scalar_one()
    assert actual == expected, f"{message_type}: {actual} rows, expected {expected}"


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def tradie_factory(account_factory, fund_account):
    """Tradies with an optional starting balance"""
    async def _create(name: str, credits: int = 0) -> Account:
        account = await account_factory(role=AccountRole.TRADIE, name=name)
        if credits:
            await fund_account(account.id, credits)
        return account

    return _create
