"""
Order Service: event definitions

Published by the orchestrator (and ``order.completed`` by the delivery
status reconciler) after the order row is committed.
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

ORDER_CREATED = "order.created"
ORDER_PAID = "order.paid"
ORDER_CANCELLED = "order.cancelled"
ORDER_COMPLETED = "order.completed"


class OrderEvent(BaseModel):
    order_id: str
    owner_id: int
    status: str
    amount: Decimal | None = None
    payment_reference: str | None = None
    delivery_id: str | None = None
    note: str
    timestamp: datetime
