import time


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Redis-backed circuit breaker guarding an outbound dependency
    (shared across session-service instances).

    States:
      - CLOSED: allow calls, count failures
      - OPEN: reject calls for reset_timeout seconds
      - HALF_OPEN: after timeout, allow a trial call
    """

    def __init__(
        self,
        redis_client,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
    ):
        self.redis = redis_client
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds

    def _key_state(self):
        return f"cb:{self.name}:state"

    def _key_failures(self):
        return f"cb:{self.name}:failures"

    def _key_opened_at(self):
        return f"cb:{self.name}:opened_at"

    async def _get_state(self) -> str:
        state = await self.redis.get(self._key_state())
        return state or "CLOSED"

    async def allow_request(self) -> None:
        state = await self._get_state()

        if state == "OPEN":
            opened_at = await self.redis.get(self._key_opened_at())
            if not opened_at:
                await self.close()
                return

            if (time.time() - float(opened_at)) >= self.reset_timeout_seconds:
                await self.redis.set(self._key_state(), "HALF_OPEN")
                return

            raise CircuitBreakerOpen(f"Circuit breaker OPEN for {self.name}")

    async def record_success(self) -> None:
        await self.close()

    async def record_failure(self) -> None:
        state = await self._get_state()

        # a failed trial call re-opens immediately
        if state == "HALF_OPEN":
            await self.open()
            return

        failures = await self.redis.incr(self._key_failures())
        if failures == 1:
            await self.redis.expire(self._key_failures(), 60)

        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key_state(), "OPEN")
        pipe.set(self._key_opened_at(), str(time.time()))
        pipe.expire(self._key_state(), self.reset_timeout_seconds + 30)
        pipe.expire(self._key_opened_at(), self.reset_timeout_seconds + 30)
        await pipe.execute()

    async def close(self) -> None:
        pipe = self.redis.pipeline()
        pipe.set(self._key_state(), "CLOSED")
        pipe.delete(self._key_failures())
        pipe.delete(self._key_opened_at())
        pipe.expire(self._key_state(), 3600)
        await pipe.execute()

    async def status(self) -> dict:
        state = await self._get_state()
        failures = await self.redis.get(self._key_failures())
        return {"name": self.name, "state": state, "failures": int(failures or 0)}
