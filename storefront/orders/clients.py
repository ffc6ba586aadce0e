"""
Order Service: clients for the remote collaborators

Every outbound call is treated as remote and fallible. Transport failures
and 5xx responses become ``RemoteUnavailableError``; error bodies from the
other services are turned back into the shared error taxonomy.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

import httpx

from ..shared.errors import RemoteUnavailableError, error_from_response


class ServiceClient:
    name = "service"

    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def _request(self, method: str, url: str, **kwargs) -> Any:
        try:
            resp = await self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteUnavailableError(f"{self.name} unreachable: {e}") from e
        if resp.is_error:
            try:
                body = resp.json()
            except ValueError:
                body = {"detail": resp.text}
            if not isinstance(body, dict):
                body = {"detail": str(body)}
            raise error_from_response(resp.status_code, body)
        if not resp.content:
            return None
        return resp.json()


class LedgerClient(ServiceClient):
    name = "ledger service"

    async def pay(
        self,
        customer_id: str,
        order_id: str,
        amount: Decimal,
        currency: str,
        payment_method: str,
    ) -> dict:
        return await self._request(
            "POST",
            "/payment",
            json={
                "customer_id": customer_id,
                "order_id": order_id,
                "amount": str(amount),
                "currency": currency,
                "payment_method": payment_method,
                "description": f"Order payment for {order_id}",
            },
        )

    async def refund(self, transaction_id: str, order_id: str, amount: Decimal, reason: str) -> dict:
        return await self._request(
            "POST",
            "/refund",
            json={
                "transaction_id": transaction_id,
                "order_id": order_id,
                "amount": str(amount),
                "reason": reason,
            },
        )


class InventoryClient(ServiceClient):
    name = "inventory service"

    async def stock(self, product_id: int) -> dict:
        return await self._request("GET", f"/inventory/{product_id}")

    async def reserve(self, order_id: str, items: list[tuple[int, int]]) -> dict:
        return await self._request(
            "POST",
            "/reserve",
            json={
                "order_id": order_id,
                "items": [{"product_id": p, "quantity": q} for p, q in items],
            },
        )

    async def confirm(self, order_id: str) -> dict:
        return await self._request("POST", f"/confirm/{order_id}")

    async def release(self, order_id: str) -> dict:
        return await self._request("POST", f"/release/{order_id}")


class DeliveryClient(ServiceClient):
    name = "delivery service"

    async def request_delivery(
        self,
        order_id: str,
        customer_id: str,
        shipping_address: str,
        carrier: str,
        notes: str = "",
    ) -> dict:
        return await self._request(
            "POST",
            "/delivery/request",
            json={
                "order_id": order_id,
                "customer_id": customer_id,
                "shipping_address": shipping_address,
                "carrier": carrier,
                "notes": notes,
            },
        )


class NotificationClient(ServiceClient):
    """Email service. Rendering and delivery happen on the other side."""

    name = "notification service"

    async def send(self, template: str, payload: dict) -> None:
        await self._request("POST", f"/email/{template}", json=payload)


@dataclass
class Collaborators:
    ledger: LedgerClient
    inventory: InventoryClient
    delivery: DeliveryClient
    notifier: NotificationClient
