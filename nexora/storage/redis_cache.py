from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis


class RedisCache:
    """Thin Redis wrapper for short-lived one-time tokens."""

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
        """Seconds until ``expires_at``, clamped to at least one."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    @staticmethod
    def _token_key(kind: str, token_digest: str) -> str:
        return f"auth:{kind}:{token_digest}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def stash_token(
        self, kind: str, token_digest: str, user_id: str, expires_at: datetime
    ) -> None:
        payload = {"user_id": user_id, "expires_at": expires_at.isoformat()}
        await self.client.set(
            self._token_key(kind, token_digest),
            json.dumps(payload),
            ex=self._ttl_seconds(expires_at),
        )

    async def pop_token(self, kind: str, token_digest: str) -> Optional[str]:
        """Atomically fetch and delete a one-time token, returning its user id.

        GETDEL guarantees that two concurrent consumers cannot both redeem
        the same token.
        """

        cached = await self.client.getdel(self._token_key(kind, token_digest))
        if cached is None:
            return None
        try:
            data = json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None
        return data.get("user_id")

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
