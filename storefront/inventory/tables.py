"""
Inventory Service: tables

  inventory.available + inventory.reserved == inventory.total   (at rest)

``total`` only shrinks on confirm; reserve and release move quantity between
``available`` and ``reserved``.
"""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

warehouses = Table(
    "warehouses",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("code", String(32), nullable=False, unique=True),
    Column("name", String(128), nullable=False),
    Column("location", String(256), nullable=False, default=""),
    Column("is_active", Boolean, nullable=False, default=True),
)

inventory = Table(
    "inventory",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("warehouse_id", Integer, ForeignKey("warehouses.id"), nullable=False),
    Column("product_id", Integer, nullable=False, index=True),
    Column("available", Integer, nullable=False, default=0),
    Column("reserved", Integer, nullable=False, default=0),
    Column("total", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("warehouse_id", "product_id", name="uq_inventory_warehouse_product"),
    CheckConstraint("available >= 0", name="ck_inventory_available"),
    CheckConstraint("reserved >= 0", name="ck_inventory_reserved"),
)

reservations = Table(
    "reservations",
    metadata,
    Column("reservation_id", String(16), primary_key=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("warehouse_id", Integer, ForeignKey("warehouses.id"), nullable=False),
    Column("product_id", Integer, nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("status", String(16), nullable=False),  # PENDING | CONFIRMED | CANCELLED
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("quantity > 0", name="ck_reservations_quantity"),
)

inventory_transactions = Table(
    "inventory_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("warehouse_id", Integer, nullable=False),
    Column("product_id", Integer, nullable=False),
    Column("transaction_type", String(16), nullable=False),  # RECEIVE | RESERVE | DEDUCT | RELEASE
    Column("quantity", Integer, nullable=False),
    Column("reference_id", String(64), nullable=False),
    Column("reference_type", String(32), nullable=False),
    Column("note", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
