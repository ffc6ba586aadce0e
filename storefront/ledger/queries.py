"""
Ledger Service: query handlers
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.errors import NotFoundError
from .tables import accounts, transactions


async def get_balance(session: AsyncSession, customer_id: str) -> dict:
    result = await session.execute(
        select(accounts).where(accounts.c.owner_id == customer_id, accounts.c.kind == "CUSTOMER")
    )
    row = result.first()
    if row is None:
        raise NotFoundError(f"Customer account not found: {customer_id}")
    return {
        "customer_id": customer_id,
        "account_number": row.account_number,
        "balance": row.balance,
        "currency": row.currency,
        "is_active": row.is_active,
    }


async def get_account(session: AsyncSession, account_number: str) -> dict | None:
    result = await session.execute(select(accounts).where(accounts.c.account_number == account_number))
    row = result.first()
    return dict(row._mapping) if row else None


async def list_transactions(session: AsyncSession, order_id: str | None = None) -> list[dict]:
    stmt = select(transactions).order_by(transactions.c.created_at, transactions.c.transaction_id)
    if order_id is not None:
        stmt = stmt.where(transactions.c.reference_id == order_id)
    result = await session.execute(stmt)
    return [dict(row._mapping) for row in result]
