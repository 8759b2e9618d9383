import logging
import time

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import CURRENCY, PAYMENT_GATEWAY_KEY, PAYMENT_GATEWAY_URL
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 5.0


def to_minor_units(amount: float) -> int:
    # gateways take the smallest currency unit
    return int(round(amount * 100))


class PaymentGateway:
    """HTTP client for the external payment provider, guarded by a circuit breaker."""

    def __init__(
        self,
        base_url: str | None = PAYMENT_GATEWAY_URL,
        api_key: str = PAYMENT_GATEWAY_KEY,
        breaker: CircuitBreaker | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.breaker = breaker or CircuitBreaker("payment-gateway", failure_threshold=5, reset_timeout_seconds=10)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _headers(self, request_id: str | None = None) -> dict:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if request_id:
            headers["X-Request-Id"] = request_id
        return headers

    async def _call(self, method: str, path: str, payload: dict | None, request_id: str | None = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            raise ExternalServiceError(f"Payment gateway unavailable: {e}")

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method=method, url=url, json=payload, headers=self._headers(request_id))
                resp.raise_for_status()
        except httpx.TimeoutException:
            await self.breaker.record_failure()
            raise ExternalServiceError(f"Timeout calling payment gateway: {path}")
        except httpx.HTTPStatusError as e:
            await self.breaker.record_failure()
            logger.warning("payment gateway %s %s -> %s: %s", method, path, e.response.status_code, e.response.text)
            raise ExternalServiceError(f"Payment gateway rejected {path} with {e.response.status_code}")
        except httpx.HTTPError as e:
            await self.breaker.record_failure()
            raise ExternalServiceError(f"Bad gateway calling payment provider: {e}")

        await self.breaker.record_success()
        return resp.json() if resp.content else {}

    async def create_order(self, amount: float, receipt: str | None = None, request_id: str | None = None) -> str | None:
        """Open a gateway order for the amount; returns None when no gateway is configured."""
        if not self.enabled:
            return None
        data = await self._call(
            "POST",
            "/orders",
            {
                "amount": to_minor_units(amount),
                "currency": CURRENCY,
                "receipt": receipt or f"rcpt_{int(time.time() * 1000)}",
                "payment_capture": 1,
            },
            request_id,
        )
        order_id = data.get("id")
        if not order_id:
            raise ExternalServiceError("Payment gateway returned no order id")
        return order_id

    async def refund(self, transaction_id: str, amount: float, request_id: str | None = None) -> str | None:
        if not self.enabled:
            return None
        data = await self._call(
            "POST",
            f"/payments/{transaction_id}/refund",
            {"amount": to_minor_units(amount), "speed": "normal"},
            request_id,
        )
        refund_id = data.get("id")
        if not refund_id:
            raise ExternalServiceError("Payment gateway returned no refund id")
        return refund_id


payment_gateway = PaymentGateway()


def get_payment_gateway() -> PaymentGateway:
    return payment_gateway
