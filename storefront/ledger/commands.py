"""
Ledger Service: command handlers

Double-entry transfer engine. ``transfer`` writes the PENDING row, the
debit, the credit and the SUCCESS mark inside the caller's database
transaction, so a crash in between is rolled back as a whole. Insufficient
balance is detected before anything is written.

  payment: customer ──amount──▶ store
  refund:  store ──amount──▶ customer   (new row, references the payment)
"""

import logging
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..shared.bus import EventBus
from ..shared.config import MONEY_QUANTUM
from ..shared.db import utcnow
from ..shared.errors import (
    InsufficientBalanceError,
    InsufficientResourceError,
    NotFoundError,
    ValidationError,
)
from .events import (
    PAYMENT_FAILURE,
    PAYMENT_SUCCESS,
    REFUND_SUCCESS,
    PaymentFailed,
    PaymentSucceeded,
    RefundSucceeded,
)
from .tables import accounts, transactions

logger = logging.getLogger(__name__)

PAYMENT = "PAYMENT"
REFUND = "REFUND"


def validate_amount(amount) -> Decimal:
    try:
        amount = Decimal(str(amount))
    except ArithmeticError as e:
        raise ValidationError(f"Invalid amount: {amount}") from e
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero")
    if amount != amount.quantize(MONEY_QUANTUM):
        raise ValidationError("Amount cannot have more than 2 decimal places")
    return amount.quantize(MONEY_QUANTUM)


def _transaction_id() -> str:
    millis = int(datetime.now(timezone.utc).timestamp() * 1000)
    return f"TXN-{millis}-{uuid.uuid4().hex[:8].upper()}"


async def _lock_accounts(session: AsyncSession, numbers: list[str]) -> dict[str, dict]:
    # Sorted so two opposite transfers never wait on each other.
    result = await session.execute(
        select(accounts)
        .where(accounts.c.account_number.in_(numbers))
        .order_by(accounts.c.account_number)
        .with_for_update()
    )
    return {row.account_number: dict(row._mapping) for row in result}


async def transfer(
    session: AsyncSession,
    from_account: str,
    to_account: str,
    amount,
    currency: str,
    transaction_type: str,
    reference_id: str,
    original_transaction_id: str | None = None,
    description: str = "",
) -> dict:
    """
    Move ``amount`` from one account to another.

    Runs inside the caller's transaction; the caller commits. Raises
    ``InsufficientBalanceError`` before touching any balance.
    """
    amount = validate_amount(amount)
    if from_account == to_account:
        raise ValidationError("Source and destination accounts must differ")

    locked = await _lock_accounts(session, [from_account, to_account])
    source = locked.get(from_account)
    destination = locked.get(to_account)
    for number, account in ((from_account, source), (to_account, destination)):
        if account is None or not account["is_active"]:
            raise NotFoundError(f"Account not found: {number}")
    if source["currency"] != currency or destination["currency"] != currency:
        raise ValidationError(f"Currency mismatch: {currency}")
    if source["balance"] < amount:
        raise InsufficientBalanceError(
            f"Insufficient balance: available {source['balance']}, required {amount}"
        )

    now = utcnow()
    transaction_id = _transaction_id()
    row = {
        "transaction_id": transaction_id,
        "from_account": from_account,
        "to_account": to_account,
        "amount": amount,
        "currency": currency,
        "transaction_type": transaction_type,
        "status": "PENDING",
        "reference_id": reference_id,
        "original_transaction_id": original_transaction_id,
        "description": description,
        "created_at": now,
        "processed_at": None,
    }
    await session.execute(insert(transactions).values(**row))

    await session.execute(
        update(accounts)
        .where(accounts.c.account_number == from_account)
        .values(balance=accounts.c.balance - amount, updated_at=now)
    )
    await session.execute(
        update(accounts)
        .where(accounts.c.account_number == to_account)
        .values(balance=accounts.c.balance + amount, updated_at=now)
    )

    await session.execute(
        update(transactions)
        .where(transactions.c.transaction_id == transaction_id)
        .values(status="SUCCESS", processed_at=now)
    )
    row.update(status="SUCCESS", processed_at=now)
    return row


async def open_account(
    session: AsyncSession,
    owner_id: str,
    kind: str,
    balance,
    currency: str,
    account_number: str | None = None,
    holder_name: str = "",
) -> dict:
    now = utcnow()
    row = {
        "account_number": account_number or f"ACC-{uuid.uuid4().hex[:10].upper()}",
        "owner_id": owner_id,
        "holder_name": holder_name,
        "kind": kind,
        "balance": Decimal(str(balance)).quantize(MONEY_QUANTUM),
        "currency": currency,
        "is_active": True,
        "created_at": now,
        "updated_at": now,
    }
    await session.execute(insert(accounts).values(**row))
    await session.commit()
    return row


async def _customer_account(session: AsyncSession, customer_id: str) -> dict:
    result = await session.execute(
        select(accounts)
        .where(
            accounts.c.owner_id == customer_id,
            accounts.c.kind == "CUSTOMER",
            accounts.c.is_active.is_(True),
        )
        .with_for_update()
    )
    row = result.first()
    if row is None:
        raise NotFoundError(f"Customer account not found: {customer_id}")
    return dict(row._mapping)


async def _successful_payment(session: AsyncSession, order_id: str) -> dict | None:
    result = await session.execute(
        select(transactions).where(
            transactions.c.reference_id == order_id,
            transactions.c.transaction_type == PAYMENT,
            transactions.c.status == "SUCCESS",
        )
    )
    row = result.first()
    return dict(row._mapping) if row else None


async def process_payment(
    session: AsyncSession,
    bus: EventBus,
    store_account: str,
    customer_id: str,
    order_id: str,
    amount,
    currency: str,
    description: str = "",
) -> dict:
    """
    Customer → store payment for an order.

    The order id is the idempotency key: paying an order that already has a
    successful payment returns that payment instead of charging twice.
    """
    logger.info("Processing payment for order: %s", order_id)
    try:
        customer = await _customer_account(session, customer_id)
        existing = await _successful_payment(session, order_id)
        if existing is not None:
            logger.info("Order %s already paid by %s", order_id, existing["transaction_id"])
            await session.commit()
            return existing
        txn = await transfer(
            session,
            customer["account_number"],
            store_account,
            amount,
            currency,
            PAYMENT,
            order_id,
            description=description or f"Order payment for {order_id}",
        )
        await session.commit()
    except (InsufficientResourceError, ValidationError) as e:
        await session.rollback()
        logger.warning("Payment failed for order %s: %s", order_id, e)
        await _record_failed_payment(session, customer_id, store_account, order_id, amount, currency, str(e))
        await bus.publish(
            PAYMENT_FAILURE,
            PaymentFailed(
                order_id=order_id,
                customer_id=customer_id,
                amount=amount,
                note=str(e),
                timestamp=utcnow(),
            ).model_dump(mode="json"),
        )
        raise

    logger.info("Payment processed for order %s, transaction %s", order_id, txn["transaction_id"])
    await bus.publish(
        PAYMENT_SUCCESS,
        PaymentSucceeded(
            transaction_id=txn["transaction_id"],
            order_id=order_id,
            customer_id=customer_id,
            amount=txn["amount"],
            currency=currency,
            note="Payment processed successfully",
            timestamp=txn["processed_at"],
        ).model_dump(mode="json"),
    )
    return txn


async def _record_failed_payment(
    session: AsyncSession,
    customer_id: str,
    store_account: str,
    order_id: str,
    amount,
    currency: str,
    reason: str,
) -> None:
    """Keep an audit row for the attempt. Only recorded for a well-formed amount."""
    try:
        amount = validate_amount(amount)
    except ValidationError:
        return
    result = await session.execute(
        select(accounts.c.account_number).where(
            accounts.c.owner_id == customer_id, accounts.c.kind == "CUSTOMER"
        )
    )
    from_account = result.scalar() or customer_id
    now = utcnow()
    await session.execute(
        insert(transactions).values(
            transaction_id=_transaction_id(),
            from_account=from_account,
            to_account=store_account,
            amount=amount,
            currency=currency,
            transaction_type=PAYMENT,
            status="FAILED",
            reference_id=order_id,
            description=f"Order payment for {order_id}",
            failure_reason=reason,
            created_at=now,
            processed_at=now,
        )
    )
    await session.commit()


async def process_refund(
    session: AsyncSession,
    bus: EventBus,
    transaction_id: str,
    order_id: str,
    amount,
    reason: str,
) -> dict:
    """
    Store → customer refund of (part of) a payment.

    Capped at the original amount minus earlier refunds. Repeating a refund
    that no longer fits returns the earlier refund of the same amount, so a
    compensation can be retried safely.
    """
    logger.info("Processing refund for order: %s", order_id)
    amount = validate_amount(amount)

    result = await session.execute(
        select(transactions)
        .where(transactions.c.transaction_id == transaction_id)
        .with_for_update()
    )
    original = result.first()
    if original is None:
        raise NotFoundError(f"Original transaction not found: {transaction_id}")
    if original.reference_id != order_id:
        raise ValidationError("Order ID mismatch")
    if original.transaction_type != PAYMENT or original.status != "SUCCESS":
        raise ValidationError(f"Transaction {transaction_id} is not a successful payment")

    result = await session.execute(
        select(transactions).where(
            transactions.c.original_transaction_id == transaction_id,
            transactions.c.transaction_type == REFUND,
            transactions.c.status == "SUCCESS",
        )
    )
    prior = [dict(row._mapping) for row in result]
    refunded = sum((r["amount"] for r in prior), Decimal("0"))
    if refunded + amount > original.amount:
        replay = next((r for r in prior if r["amount"] == amount), None)
        if replay is not None:
            logger.info("Refund for %s already processed: %s", transaction_id, replay["transaction_id"])
            await session.commit()
            return replay
        await session.rollback()
        raise ValidationError("Refund amount cannot exceed original payment amount")

    try:
        refund = await transfer(
            session,
            original.to_account,
            original.from_account,
            amount,
            original.currency,
            REFUND,
            order_id,
            original_transaction_id=transaction_id,
            description=f"Refund for order: {order_id}, Reason: {reason}",
        )
        await session.commit()
    except Exception:
        await session.rollback()
        logger.error("Refund processing failed for order: %s", order_id)
        raise

    logger.info("Refund processed for order %s, refund %s", order_id, refund["transaction_id"])
    await bus.publish(
        REFUND_SUCCESS,
        RefundSucceeded(
            refund_id=refund["transaction_id"],
            original_transaction_id=transaction_id,
            order_id=order_id,
            amount=amount,
            currency=original.currency,
            note=reason,
            timestamp=refund["processed_at"],
        ).model_dump(mode="json"),
    )
    return refund
