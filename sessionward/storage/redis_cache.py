from __future__ import annotations

from datetime import timedelta
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessionward.storage.common import token_fingerprint
from sessionward.storage.errors import StorageUnavailable


class RedisCache:
    """Thin Redis wrapper holding the short-lived access-token blacklist.

    Entries are keyed by token fingerprint and expire with the token itself,
    so Redis does the garbage collection.
    """

    KEY_PREFIX = "sessionward:blacklist:"

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        client: Optional[aioredis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    def _key(self, token: str) -> str:
        return f"{self.KEY_PREFIX}{token_fingerprint(token)}"

    async def blacklist_access_token(self, token: str, ttl: timedelta) -> None:
        seconds = int(ttl.total_seconds())
        if seconds <= 0:
            return
        try:
            await self.client.set(self._key(token), "1", ex=seconds)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def is_access_token_blacklisted(self, token: str) -> bool:
        try:
            return bool(await self.client.exists(self._key(token)))
        except (RedisConnectionError, RedisTimeoutError) as exc:
            raise StorageUnavailable(str(exc)) from exc

    async def close(self) -> None:
        await self.client.aclose()
