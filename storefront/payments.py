"""
Payment gateway clients.

The storefront does not implement a payment protocol. HttpPaymentGateway
posts a charge request to an external gateway and maps its JSON answer to
a ChargeResult; SimulatedPaymentGateway stands in when no gateway URL is
configured (local development and demos).
"""
import logging
import random
import uuid
from decimal import Decimal
from typing import Optional

import httpx
from pydantic import BaseModel

from shared.utils import settings

logger = logging.getLogger(__name__)


class ChargeResult(BaseModel):
    success: bool
    reference: Optional[str] = None
    reason: Optional[str] = None


class HttpPaymentGateway:
    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def charge(self, amount: Decimal, currency: str, metadata: dict) -> ChargeResult:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if metadata.get("request_id"):
            headers["X-Request-ID"] = metadata["request_id"]

        payload = {"amount": str(amount), "currency": currency, "metadata": metadata}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(f"{self.base_url}/charges", json=payload, headers=headers)
            except httpx.RequestError as exc:
                logger.error("Payment gateway unreachable", extra={"reason": str(exc)})
                return ChargeResult(success=False, reason="Payment gateway unavailable")

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.status_code >= 500:
            return ChargeResult(success=False, reason="Payment gateway error")
        if response.is_success and data.get("success"):
            return ChargeResult(success=True, reference=data.get("reference"))
        return ChargeResult(success=False, reason=data.get("reason") or "Payment declined")


class SimulatedPaymentGateway:
    def __init__(self, success_rate: float = 1.0):
        self.success_rate = success_rate

    async def charge(self, amount: Decimal, currency: str, metadata: dict) -> ChargeResult:
        if random.random() < self.success_rate:
            return ChargeResult(success=True, reference=f"sim_{uuid.uuid4().hex}")
        return ChargeResult(success=False, reason="Card declined")


def get_payment_gateway():
    if settings.PAYMENT_GATEWAY_URL:
        return HttpPaymentGateway(
            settings.PAYMENT_GATEWAY_URL,
            api_key=settings.PAYMENT_GATEWAY_API_KEY,
            timeout=settings.PAYMENT_TIMEOUT_SECONDS,
        )
    return SimulatedPaymentGateway(settings.SIMULATED_PAYMENT_SUCCESS_RATE)
