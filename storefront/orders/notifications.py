"""
Order Service: customer emails

Thin wrapper over the notification service. Every send is best effort: a
failure is logged and never reaches the saga or the event consumers.
"""

import logging

from ..shared.errors import StorefrontError
from .clients import NotificationClient

logger = logging.getLogger(__name__)

ORDER_CONFIRMATION = "order-confirmation"
REFUND_NOTIFICATION = "refund-notification"
SHIPPING_UPDATE = "shipping-update"
PACKAGE_LOST = "package-lost"

SHIPPING_MESSAGES = {
    "PICKED_UP": "Your package has been picked up by the carrier.",
    "IN_TRANSIT": "Your package is in transit.",
    "DELIVERED": "Your order has been delivered successfully!",
}


class OrderNotifier:
    def __init__(self, client: NotificationClient):
        self.client = client

    async def _send(self, template: str, order: dict, **payload) -> bool:
        body = {
            "order_id": order["order_number"],
            "order_number": order["order_number"],
            "owner_id": order["owner_id"],
            **payload,
        }
        try:
            await self.client.send(template, body)
        except StorefrontError as e:
            logger.error("Failed to send %s email for order %s: %s", template, order["order_number"], e)
            return False
        logger.info("Sent %s email for order %s", template, order["order_number"])
        return True

    async def order_confirmed(self, order: dict) -> bool:
        return await self._send(
            ORDER_CONFIRMATION,
            order,
            subject=f"Order Confirmation - {order['order_number']}",
            total_amount=str(order["total_amount"]),
            status="CONFIRMED",
            message="Your order has been confirmed and is being processed.",
        )

    async def inventory_unavailable(self, order: dict, reason: str) -> bool:
        return await self._send(
            REFUND_NOTIFICATION,
            order,
            subject=f"Inventory Unavailable - Order {order['order_number']}",
            status="INVENTORY_INSUFFICIENT",
            message=f"Your order could not be processed due to insufficient inventory. {reason}",
        )

    async def payment_failed(self, order: dict, reason: str) -> bool:
        insufficient = "insufficient" in reason.lower()
        if insufficient:
            subject = f"Payment Failed - Insufficient Balance - {order['order_number']}"
            message = (
                "Your payment failed due to insufficient account balance. "
                f"Order amount: {order['total_amount']}. Please add funds to your account and try again."
            )
        else:
            subject = f"Payment Failed - {order['order_number']}"
            message = f"Your payment failed: {reason}. Please try again or contact support."
        return await self._send(
            REFUND_NOTIFICATION, order, subject=subject, status="PAYMENT_FAILED", message=message
        )

    async def refunded(self, order: dict, refund_id: str) -> bool:
        return await self._send(
            REFUND_NOTIFICATION,
            order,
            subject=f"Refund Processed - {order['order_number']}",
            amount=str(order["total_amount"]),
            refund_transaction_id=refund_id,
            status="REFUNDED",
            message="Your refund has been processed successfully.",
        )

    async def cancelled(self, order: dict) -> bool:
        return await self._send(
            REFUND_NOTIFICATION,
            order,
            subject=f"Order Cancelled - {order['order_number']}",
            status="CANCELLED",
            message="Your order has been cancelled successfully.",
        )

    async def shipping_update(self, order: dict, stage: str, tracking_number: str | None) -> bool:
        message = SHIPPING_MESSAGES.get(stage)
        if message is None:
            return False
        return await self._send(
            SHIPPING_UPDATE,
            order,
            subject=f"Shipping Update - {stage} - {order['order_number']}",
            status=stage,
            tracking_number=tracking_number,
            message=message,
        )

    async def package_lost(self, order: dict, refund_id: str | None, reason: str) -> bool:
        return await self._send(
            PACKAGE_LOST,
            order,
            subject=f"Package Lost - {order['order_number']}",
            amount=str(order["total_amount"]),
            refund_transaction_id=refund_id,
            status="LOST",
            message=f"We regret to inform you that the package for your order was lost during delivery. {reason}",
        )
