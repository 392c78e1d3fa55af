from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from tokengate.logging import get_logger
from tokengate.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for state shared between worker processes."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Clamp to at least one second so Redis never rejects the TTL."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a throwaway loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_oauth_state(
        self, state: str, provider: str, return_url: str, expires_at: datetime
    ) -> None:
        payload = {
            "provider": provider,
            "return_url": return_url,
            "expires_at": expires_at.astimezone(timezone.utc).isoformat(),
        }
        try:
            await self.client.set(
                f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
            )
        except RedisError as exc:
            logger.error("redis_unavailable", operation="set_oauth_state", error=str(exc))
            raise StoreUnavailable("oauth state store unavailable") from exc

    async def pop_oauth_state(
        self, state: str
    ) -> Optional[tuple[str, str, datetime]]:
        """Atomically get and delete OAuth state so a callback cannot be replayed.

        Returns:
            Tuple of (provider, return_url, expires_at) or None if not found
        """
        try:
            cached = await self.client.getdel(f"auth:oauth:{state}")
        except RedisError as exc:
            logger.error("redis_unavailable", operation="pop_oauth_state", error=str(exc))
            raise StoreUnavailable("oauth state store unavailable") from exc
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            return None
        return data.get("provider"), data.get("return_url"), expires_at

    async def close(self) -> None:
        await self.client.aclose()
