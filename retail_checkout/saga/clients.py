"""
Saga Service — HTTP clients for the inventory, order and cart services

Each client turns the other service's error bodies back into the exception
that service raised, and any transport failure or 5xx into
DownstreamUnavailableError, so the orchestrator only ever deals with the
checkout error taxonomy. Every request carries the saga id as correlation id.
"""

from decimal import Decimal

import httpx

from ..errors import (
    CartNotFoundError,
    CheckoutError,
    DownstreamUnavailableError,
    NotFoundError,
    OrderNotFoundError,
    ReservationNotFoundError,
    ValidationError,
    error_from_body,
)
from ..logs import CORRELATION_HEADER
from ..models import Cart, Order, OrderLine, Reservation


class ServiceClient:
    service = "service"
    not_found: type[NotFoundError] = NotFoundError

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        correlation_id: str | None = None,
    ) -> httpx.Response:
        headers = {CORRELATION_HEADER: correlation_id} if correlation_id else {}
        try:
            resp = await self.client.request(method, path, json=json, headers=headers)
        except httpx.HTTPError as e:
            raise DownstreamUnavailableError(
                f"{self.service} unreachable: {e!r}", service=self.service
            ) from e
        if resp.status_code >= 500:
            raise DownstreamUnavailableError(
                f"{self.service} returned {resp.status_code}",
                service=self.service,
                status=resp.status_code,
            )
        if resp.status_code >= 400:
            raise self._error(resp)
        return resp

    def _error(self, resp: httpx.Response) -> CheckoutError:
        try:
            body = resp.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or "errorKind" not in body:
            # FastAPI's own 404/422 bodies carry no errorKind
            kind = "ValidationError" if resp.status_code in (400, 422) else ""
            body = {"errorKind": kind, "message": resp.text, "details": {"status": resp.status_code}}
        if resp.status_code == 404:
            return self.not_found.from_body(body)
        return error_from_body(body, default=ValidationError if resp.status_code == 422 else CheckoutError)


class InventoryClient(ServiceClient):
    service = "inventory-service"
    not_found = ReservationNotFoundError

    async def reserve(
        self, sku: str, quantity: int, reservation_id: str, correlation_id: str | None = None
    ) -> Reservation:
        resp = await self._request(
            "POST",
            f"/inventory/{sku}/reserve",
            json={"reservationId": reservation_id, "quantity": quantity},
            correlation_id=correlation_id,
        )
        return Reservation.model_validate(resp.json())

    async def commit(self, sku: str, reservation_id: str, correlation_id: str | None = None) -> Reservation:
        resp = await self._request(
            "POST",
            f"/inventory/{sku}/commit",
            json={"reservationId": reservation_id},
            correlation_id=correlation_id,
        )
        return Reservation.model_validate(resp.json())

    async def release(self, sku: str, reservation_id: str, correlation_id: str | None = None) -> bool:
        resp = await self._request(
            "POST",
            f"/inventory/{sku}/release",
            json={"reservationId": reservation_id},
            correlation_id=correlation_id,
        )
        return bool(resp.json().get("released"))

    async def get_reservation(self, reservation_id: str, correlation_id: str | None = None) -> Reservation | None:
        try:
            resp = await self._request(
                "GET", f"/inventory/reservations/{reservation_id}", correlation_id=correlation_id
            )
        except NotFoundError:
            return None
        return Reservation.model_validate(resp.json())


class OrderClient(ServiceClient):
    service = "order-service"
    not_found = OrderNotFoundError

    async def create(
        self,
        order_id: str,
        customer_id: str,
        lines: list[OrderLine],
        total: Decimal,
        currency: str = "GBP",
        payment_transaction_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Order:
        resp = await self._request(
            "POST",
            "/orders",
            json={
                "orderId": order_id,
                "customerId": customer_id,
                "lines": [line.to_json() for line in lines],
                "total": str(total),
                "status": "Paid",
                "currency": currency,
                "paymentTransactionId": payment_transaction_id,
            },
            correlation_id=correlation_id,
        )
        return Order.model_validate(resp.json())

    async def get(self, order_id: str, correlation_id: str | None = None) -> Order | None:
        try:
            resp = await self._request("GET", f"/orders/{order_id}", correlation_id=correlation_id)
        except NotFoundError:
            return None
        return Order.model_validate(resp.json())

    async def mark_failed(self, order_id: str, reason: str, correlation_id: str | None = None) -> Order:
        resp = await self._request(
            "POST", f"/orders/{order_id}/fail", json={"reason": reason}, correlation_id=correlation_id
        )
        return Order.model_validate(resp.json())


class CartClient(ServiceClient):
    service = "cart-service"
    not_found = CartNotFoundError

    async def get(self, customer_id: str, correlation_id: str | None = None) -> Cart | None:
        try:
            resp = await self._request("GET", f"/carts/{customer_id}", correlation_id=correlation_id)
        except NotFoundError:
            return None
        return Cart.model_validate(resp.json())

    async def clear(self, customer_id: str, correlation_id: str | None = None) -> bool:
        resp = await self._request("DELETE", f"/carts/{customer_id}", correlation_id=correlation_id)
        return bool(resp.json().get("cleared"))
