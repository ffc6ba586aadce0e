"""
Delivery Service: event definitions

Every status change is published on ``delivery.status.<lowercase status>``.
"""

from datetime import datetime

from pydantic import BaseModel


class DeliveryStatusChanged(BaseModel):
    delivery_id: str
    order_id: str
    status: str
    tracking_number: str
    note: str
    timestamp: datetime
