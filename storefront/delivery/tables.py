"""
Delivery Service: tables
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, MetaData, String, Table, Text

metadata = MetaData()

deliveries = Table(
    "deliveries",
    metadata,
    Column("delivery_id", String(16), primary_key=True),
    Column("order_id", String(64), nullable=False, unique=True),
    Column("customer_id", String(64), nullable=False, index=True),
    Column("status", String(20), nullable=False, index=True),
    Column("tracking_number", String(64), nullable=False),
    Column("carrier", String(64), nullable=False),
    Column("shipping_address", Text, nullable=False),
    Column("warehouse_id", Integer, nullable=True),
    Column("estimated_pickup", DateTime(timezone=True), nullable=True),
    Column("estimated_delivery", DateTime(timezone=True), nullable=True),
    Column("actual_pickup", DateTime(timezone=True), nullable=True),
    Column("actual_delivery", DateTime(timezone=True), nullable=True),
    Column("notes", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

delivery_status_history = Table(
    "delivery_status_history",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("delivery_id", String(16), ForeignKey("deliveries.delivery_id"), nullable=False, index=True),
    Column("status", String(20), nullable=False),
    Column("note", Text, nullable=False, default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
)
