"""
Order Service: event bindings

  store.delivery.status  ◀── delivery.status.#                       (reconciler)
  store.delivery.lost    ◀── delivery.status.lost / .failed          (refund compensator)
"""

import logging

from ..shared.bus import EventBus
from .reconciler import DeliveryStatusReconciler, LostDeliveryCompensator

logger = logging.getLogger(__name__)


def bind(bus: EventBus, reconciler: DeliveryStatusReconciler, compensator: LostDeliveryCompensator) -> None:
    reconciler.bind(bus)
    compensator.bind(bus)
    logger.info("Bound %s and %s", reconciler.queue, compensator.queue)
