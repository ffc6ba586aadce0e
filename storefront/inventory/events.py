"""
Inventory Service: event definitions
"""

from datetime import datetime

from pydantic import BaseModel

STOCK_RESERVED = "warehouse.stock.reserved"
STOCK_INSUFFICIENT = "warehouse.stock.insufficient"
STOCK_DEDUCTED = "warehouse.stock.deducted"


class StockLine(BaseModel):
    reservation_id: str
    warehouse_id: int
    product_id: int
    quantity: int


class StockReserved(BaseModel):
    order_id: str
    reservations: list[StockLine]
    status: str = "RESERVED"
    note: str
    timestamp: datetime


class StockInsufficient(BaseModel):
    order_id: str
    product_id: int
    quantity_requested: int
    status: str = "INSUFFICIENT"
    note: str
    timestamp: datetime


class StockDeducted(BaseModel):
    order_id: str
    reservations: list[StockLine]
    status: str = "DEDUCTED"
    note: str
    timestamp: datetime
