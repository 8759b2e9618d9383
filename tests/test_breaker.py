import time

import httpx
import pytest

from booking_service.breaker import CLOSED, HALF_OPEN, OPEN, CircuitBreaker, CircuitBreakerOpen
from booking_service.errors import ExternalServiceError
from booking_service.gateway import PaymentGateway, to_minor_units


async def test_breaker_opens_after_threshold(fake_redis):
    breaker = CircuitBreaker("svc", failure_threshold=2, client=fake_redis)

    await breaker.record_failure()
    assert await breaker.state() == CLOSED
    await breaker.record_failure()
    assert await breaker.state() == OPEN

    with pytest.raises(CircuitBreakerOpen):
        await breaker.allow_request()


async def test_breaker_half_opens_after_timeout_and_closes_on_success(fake_redis):
    breaker = CircuitBreaker("svc", failure_threshold=1, reset_timeout_seconds=10, client=fake_redis)
    await breaker.record_failure()

    fake_redis.store["cb:svc:opened_at"] = str(time.time() - 11)
    await breaker.allow_request()
    assert await breaker.state() == HALF_OPEN

    await breaker.record_success()
    assert await breaker.state() == CLOSED
    assert (await breaker.status())["failures"] == 0


async def test_failed_probe_reopens(fake_redis):
    breaker = CircuitBreaker("svc", failure_threshold=5, client=fake_redis)
    fake_redis.store["cb:svc:state"] = HALF_OPEN

    await breaker.record_failure()
    assert await breaker.state() == OPEN


def test_minor_units():
    assert to_minor_units(1150) == 115000
    assert to_minor_units(862.5) == 86250


async def test_disabled_gateway_skips_calls(fake_redis):
    gateway = PaymentGateway(base_url=None, breaker=CircuitBreaker("pg", client=fake_redis))
    assert not gateway.enabled
    assert await gateway.create_order(100) is None
    assert await gateway.refund("txn", 100) is None


async def test_gateway_errors_become_external_service_errors(monkeypatch, fake_redis):
    gateway = PaymentGateway(base_url="http://gateway.test", breaker=CircuitBreaker("pg", client=fake_redis))

    async def timeout(self, method, url, **kwargs):
        raise httpx.ConnectTimeout("too slow")

    monkeypatch.setattr(httpx.AsyncClient, "request", timeout)

    with pytest.raises(ExternalServiceError):
        await gateway.create_order(100)
    assert fake_redis.store["cb:pg:failures"] == 1


async def test_gateway_returns_order_id(monkeypatch, fake_redis):
    gateway = PaymentGateway(base_url="http://gateway.test", breaker=CircuitBreaker("pg", client=fake_redis))
    seen = {}

    async def respond(self, method, url, **kwargs):
        seen.update(method=method, url=url, json=kwargs["json"])
        return httpx.Response(200, json={"id": "order_abc"}, request=httpx.Request(method, url))

    monkeypatch.setattr(httpx.AsyncClient, "request", respond)

    assert await gateway.create_order(862.5, receipt="bk_1") == "order_abc"
    assert seen["url"] == "http://gateway.test/orders"
    assert seen["json"]["amount"] == 86250
    assert seen["json"]["receipt"] == "bk_1"
