"""
Delivery Service: lifecycle state machine

  PENDING_PICKUP ──▶ PICKED_UP ──▶ IN_TRANSIT ──┬─▶ DELIVERED
                                                └─▶ LOST      (loss probability)

  any active ──report_lost──▶ FAILED
  any active ──order cancelled──▶ CANCELLED
"""

import random
from enum import Enum

from ..shared.errors import ValidationError


class DeliveryStatus(str, Enum):
    PENDING_PICKUP = "PENDING_PICKUP"
    PICKED_UP = "PICKED_UP"
    IN_TRANSIT = "IN_TRANSIT"
    DELIVERED = "DELIVERED"
    LOST = "LOST"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE = frozenset({DeliveryStatus.PENDING_PICKUP, DeliveryStatus.PICKED_UP, DeliveryStatus.IN_TRANSIT})
TERMINAL = frozenset(
    {DeliveryStatus.DELIVERED, DeliveryStatus.LOST, DeliveryStatus.FAILED, DeliveryStatus.CANCELLED}
)

_FORWARD = {
    DeliveryStatus.PENDING_PICKUP: DeliveryStatus.PICKED_UP,
    DeliveryStatus.PICKED_UP: DeliveryStatus.IN_TRANSIT,
}


def status_topic(status: str) -> str:
    return f"delivery.status.{DeliveryStatus(status).value.lower()}"


def next_status(current: str, loss_probability: float, rng: random.Random) -> DeliveryStatus | None:
    """One scanner hop from ``current``; None when nothing moves."""
    current = DeliveryStatus(current)
    if current in _FORWARD:
        return _FORWARD[current]
    if current is DeliveryStatus.IN_TRANSIT:
        return DeliveryStatus.LOST if rng.random() < loss_probability else DeliveryStatus.DELIVERED
    return None


class LossProbability:
    """
    Runtime-adjustable chance that an in-transit package is lost.

    Owned by the delivery app and read on every scan, so an admin change
    takes effect from the next tick.
    """

    def __init__(self, value: float = 0.01):
        self._value = self._validate(value)

    @staticmethod
    def _validate(value: float) -> float:
        value = float(value)
        if not 0.0 <= value <= 1.0:
            raise ValidationError("Probability must be between 0 and 1")
        return value

    def get(self) -> float:
        return self._value

    def set(self, value: float) -> float:
        self._value = self._validate(value)
        return self._value
