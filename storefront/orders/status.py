"""
Order Service: order and payment states

  PENDING ─┬─▶ INVENTORY_FAILED
           ├─▶ PAYMENT_FAILED
           └─▶ PAID ─▶ PROCESSING ─▶ PENDING_PICKUP ─▶ PICKED_UP ─▶ IN_TRANSIT ─┬─▶ DELIVERED
                                                                                  └─▶ LOST
  any non-delivered ──cancel──▶ CANCELLED
"""

from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    INVENTORY_FAILED = "INVENTORY_FAILED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAID = "PAID"
    PROCESSING = "PROCESSING"
    PENDING_PICKUP = "PENDING_PICKUP"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    LOST = "LOST"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    SIMULATED = "SIMULATED"
    REFUNDED = "REFUNDED"


# Delivery events never touch these again.
TERMINAL = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED, OrderStatus.LOST})

# Forward position in the fulfilment lifecycle; a delivery event mapping to a
# lower rank than the order's current status is stale.
RANK = {
    OrderStatus.PENDING: 0,
    OrderStatus.PAID: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.PENDING_PICKUP: 3,
    OrderStatus.PICKED_UP: 4,
    OrderStatus.IN_TRANSIT: 5,
    OrderStatus.DELIVERED: 6,
    OrderStatus.LOST: 6,
}


def from_delivery_status(delivery_status: str) -> OrderStatus:
    """Delivery status → order status. FAILED (explicit loss report) reads as LOST."""
    if delivery_status == "FAILED":
        return OrderStatus.LOST
    return OrderStatus(delivery_status)


def is_stale(current: str, incoming: str) -> bool:
    try:
        return RANK[OrderStatus(incoming)] < RANK[OrderStatus(current)]
    except (KeyError, ValueError):
        return False
