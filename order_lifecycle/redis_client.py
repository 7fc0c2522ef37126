"""
Redis helpers: webhook redelivery cache and the sweeper leader lease.
Both are optimisations on top of the store; the store's idempotency keys and version CAS remain authoritative.
"""
import uuid

import redis.asyncio as redis

from order_lifecycle.config import settings

_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis | None:
    global _redis
    if _redis is None and settings.redis_url:
        _redis = redis.from_url(settings.redis_url, decode_responses=True)
    return _redis


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


class WebhookCache:
    """
    Remembers idempotency keys of webhooks that were fully applied.
    The key is written only after the transition commits, so a failed delivery can still be retried.
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int = settings.webhook_idempotency_ttl_seconds):
        self._client = client
        self._ttl = ttl_seconds

    @staticmethod
    def _key(idempotency_key: str) -> str:
        return f"idempotency:webhook:{idempotency_key}"

    async def seen(self, idempotency_key: str) -> bool:
        return bool(await self._client.exists(self._key(idempotency_key)))

    async def remember(self, idempotency_key: str) -> None:
        await self._client.set(self._key(idempotency_key), "1", nx=True, ex=self._ttl)


_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class SweepLease:
    """
    SET NX PX lease so only one sweeper instance runs a cycle at a time.
    Losing the lease only skips a cycle; correctness never depends on it.
    """

    def __init__(self, client: redis.Redis, key: str = "lease:auto_cancel_sweeper", ttl_ms: int = 60_000):
        self._client = client
        self._key = key
        self._ttl_ms = ttl_ms
        self._token: str | None = None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        acquired = await self._client.set(self._key, token, nx=True, px=self._ttl_ms)
        if acquired:
            self._token = token
        return bool(acquired)

    async def release(self) -> None:
        if self._token is None:
            return
        await self._client.eval(_RELEASE_SCRIPT, 1, self._key, self._token)
        self._token = None
