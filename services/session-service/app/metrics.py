import logging

from .config import SERVICE_NAME

logger = logging.getLogger(__name__)


class Metrics:
    """
    Redis-backed counters (shared across service instances).
    Counting is best effort: a Redis outage never fails the caller.
    """

    def __init__(self, redis_client, namespace: str = SERVICE_NAME):
        self.redis = redis_client
        self.namespace = namespace

    def _key(self, name: str) -> str:
        return f"metrics:{self.namespace}:{name}"

    async def incr(self, name: str, amount: int = 1) -> None:
        try:
            await self.redis.incrby(self._key(name), amount)
        except Exception as e:
            logger.warning("metrics increment failed for %s: %s", name, e)

    async def get(self, name: str) -> int:
        value = await self.redis.get(self._key(name))
        return int(value or 0)

    async def snapshot(self, names: list[str]) -> dict[str, int]:
        values = await self.redis.mget([self._key(n) for n in names])
        return {n: int(v or 0) for n, v in zip(names, values)}


COUNTERS = [
    "refund_failures",
    "credit_failures",
    "projection_write_failures",
    "milestone_failures",
    "extensions_expired",
    "account_status_failures",
    "settlements_completed",
]
