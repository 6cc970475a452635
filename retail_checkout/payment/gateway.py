"""
Payment Service — client for the external charge API

The processor deduplicates by the idempotency key we send, so a retried
charge must always reuse the key of the first attempt. A declined charge is a
normal result (``succeeded=False``); only an unreachable processor raises.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from uuid import uuid4

import httpx

from ..errors import DownstreamUnavailableError
from ..logs import CORRELATION_HEADER

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentRequest:
    amount: Decimal
    currency: str
    idempotency_key: str
    token: str


@dataclass(frozen=True)
class PaymentResult:
    succeeded: bool
    transaction_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RefundResult:
    succeeded: bool
    refund_id: str | None = None
    error: str | None = None


class HttpPaymentGateway:
    """Talks to a processor exposing ``POST /charges`` and ``POST /refunds``."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def charge(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        token: str,
        correlation_id: str | None = None,
    ) -> PaymentResult:
        body = await self._post(
            "/charges",
            {"amount": str(amount), "currency": currency, "token": token},
            idempotency_key,
            correlation_id,
        )
        return PaymentResult(
            succeeded=bool(body.get("succeeded")),
            transaction_id=body.get("transactionId"),
            error=body.get("error"),
        )

    async def refund(
        self,
        idempotency_key: str,
        transaction_id: str | None = None,
        charge_key: str | None = None,
        correlation_id: str | None = None,
    ) -> RefundResult:
        """Refund by transaction id, or by the charge's idempotency key when the id is unknown."""
        body = await self._post(
            "/refunds",
            {"transactionId": transaction_id, "chargeIdempotencyKey": charge_key},
            idempotency_key,
            correlation_id,
        )
        return RefundResult(
            succeeded=bool(body.get("succeeded")),
            refund_id=body.get("refundId"),
            error=body.get("error"),
        )

    async def _post(self, path: str, payload: dict, idempotency_key: str, correlation_id: str | None) -> dict:
        headers = {"Idempotency-Key": idempotency_key}
        if correlation_id:
            headers[CORRELATION_HEADER] = correlation_id
        try:
            resp = await self.client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise DownstreamUnavailableError(f"Payment processor unreachable: {e}") from e
        if resp.status_code >= 500:
            raise DownstreamUnavailableError(
                f"Payment processor error {resp.status_code}", status=resp.status_code
            )
        # 4xx from the processor carries a decline/refusal body, not an outage.
        try:
            return resp.json()
        except ValueError:
            return {"succeeded": False, "error": resp.text or f"HTTP {resp.status_code}"}


@dataclass
class _Charge:
    request: PaymentRequest
    result: PaymentResult
    refunded: bool = False


class MockPaymentGateway:
    """
    In-process stand-in for the processor.

    Behaves like a real one with respect to idempotency: a repeated key
    returns the first result without charging again. ``decline_reason``
    makes every new charge fail with that reason.
    """

    def __init__(self, decline_reason: str | None = None):
        self.decline_reason = decline_reason
        self.charges: dict[str, _Charge] = {}
        self.refunds: dict[str, RefundResult] = {}
        self.calls: list[PaymentRequest] = []

    @property
    def charge_count(self) -> int:
        """Charges that actually moved money (successful, not deduplicated)."""
        return sum(1 for c in self.charges.values() if c.result.succeeded)

    async def charge(
        self,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        token: str,
        correlation_id: str | None = None,
    ) -> PaymentResult:
        request = PaymentRequest(amount=amount, currency=currency, idempotency_key=idempotency_key, token=token)
        self.calls.append(request)
        if idempotency_key in self.charges:
            return self.charges[idempotency_key].result

        if self.decline_reason:
            result = PaymentResult(succeeded=False, error=self.decline_reason)
        else:
            result = PaymentResult(succeeded=True, transaction_id=f"MOCK-{uuid4().hex[:12].upper()}")
        self.charges[idempotency_key] = _Charge(request=request, result=result)
        logger.info(
            "Mock charge %s %s key=%s -> %s",
            amount, currency, idempotency_key, "ok" if result.succeeded else result.error,
        )
        return result

    async def refund(
        self,
        idempotency_key: str,
        transaction_id: str | None = None,
        charge_key: str | None = None,
        correlation_id: str | None = None,
    ) -> RefundResult:
        if idempotency_key in self.refunds:
            return self.refunds[idempotency_key]

        charge = self._find_charge(transaction_id, charge_key)
        if charge is None or not charge.result.succeeded:
            result = RefundResult(succeeded=False, error="no such charge")
        else:
            charge.refunded = True
            result = RefundResult(succeeded=True, refund_id=f"REF-{uuid4().hex[:12].upper()}")
        self.refunds[idempotency_key] = result
        return result

    def _find_charge(self, transaction_id: str | None, charge_key: str | None) -> _Charge | None:
        if charge_key is not None:
            return self.charges.get(charge_key)
        for charge in self.charges.values():
            if charge.result.transaction_id == transaction_id:
                return charge
        return None
