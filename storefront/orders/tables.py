"""
Order Service: tables

``order_number`` is the identity other services see. ``order_status_history``
is append-only.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
)

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("sku", String(64), nullable=False, unique=True),
    Column("name", String(256), nullable=False),
    Column("price", Numeric(12, 2), nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
)

orders = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_number", String(32), nullable=False, unique=True),
    Column("owner_id", Integer, nullable=False, index=True),
    Column("total_amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("status", String(20), nullable=False),
    Column("payment_status", String(16), nullable=False),
    Column("payment_method", String(32), nullable=False),
    Column("payment_reference", String(40), nullable=True),
    Column("delivery_id", String(16), nullable=True),
    Column("shipping_address", JSON, nullable=False),
    Column("billing_address", JSON, nullable=True),
    Column("notes", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

order_items = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("product_id", Integer, nullable=False),
    Column("product_name", String(256), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
    Column("line_total", Numeric(12, 2), nullable=False),
)

order_status_history = Table(
    "order_status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id"), nullable=False, index=True),
    Column("status", String(20), nullable=False),
    Column("note", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
)

abandoned_events = Table(
    "abandoned_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("queue", String(64), nullable=False),
    Column("topic", String(128), nullable=False),
    Column("order_number", String(32), nullable=True, index=True),
    Column("delivery_id", String(16), nullable=True),
    Column("status", String(20), nullable=True),
    Column("payload", JSON, nullable=False),
    Column("reason", Text, nullable=False),
    Column("attempts", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
