"""
Ledger Service: tables

Balances only change through ``commands.transfer``. A transaction row is
immutable once it is SUCCESS or FAILED; a refund is a new row.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_number", String(32), nullable=False, unique=True),
    Column("owner_id", String(64), nullable=False, index=True),
    Column("holder_name", String(128), nullable=False, default=""),
    Column("kind", String(16), nullable=False),  # CUSTOMER | STORE
    Column("balance", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("transaction_id", String(40), primary_key=True),
    Column("from_account", String(32), nullable=False),
    Column("to_account", String(32), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("transaction_type", String(16), nullable=False),  # PAYMENT | REFUND
    Column("status", String(16), nullable=False),  # PENDING | SUCCESS | FAILED
    Column("reference_id", String(64), nullable=False, index=True),
    Column("original_transaction_id", String(40), nullable=True, index=True),
    Column("description", Text, nullable=False, default=""),
    Column("failure_reason", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
)
