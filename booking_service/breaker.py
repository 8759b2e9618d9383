import time

from .redis_client import redis_client

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker guarding an outbound dependency, shared by
    every booking-service replica.

    States:
      - CLOSED: allow calls, count failures inside a 60s window
      - OPEN: reject calls for reset_timeout_seconds
      - HALF_OPEN: after the timeout, let a probe call through
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
        client=None,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self._redis = client or redis_client

    def _key(self, suffix: str) -> str:
        return f"cb:{self.name}:{suffix}"

    async def state(self) -> str:
        return await self._redis.get(self._key("state")) or CLOSED

    async def allow_request(self) -> None:
        state = await self.state()

        if state != OPEN:
            return

        opened_at = await self._redis.get(self._key("opened_at"))
        if not opened_at:
            # no timestamp to measure against
            await self.close()
            return

        if (time.time() - float(opened_at)) >= self.reset_timeout_seconds:
            await self._redis.set(self._key("state"), HALF_OPEN)
            return

        raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

    async def record_success(self) -> None:
        await self.close()

    async def record_failure(self) -> None:
        if await self.state() == HALF_OPEN:
            await self.open()
            return

        failures = await self._redis.incr(self._key("failures"))
        if failures == 1:
            await self._redis.expire(self._key("failures"), 60)

        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        ttl = self.reset_timeout_seconds + 30
        pipe = self._redis.pipeline()
        pipe.set(self._key("state"), OPEN, ex=ttl)
        pipe.set(self._key("opened_at"), str(time.time()), ex=ttl)
        await pipe.execute()

    async def close(self) -> None:
        pipe = self._redis.pipeline()
        pipe.set(self._key("state"), CLOSED, ex=3600)
        pipe.delete(self._key("failures"))
        pipe.delete(self._key("opened_at"))
        await pipe.execute()

    async def status(self) -> dict:
        failures = await self._redis.get(self._key("failures"))
        return {
            "name": self.name,
            "state": await self.state(),
            "failures": int(failures or 0),
        }
