from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _revoked_key(user_id: str, jti: str) -> str:
    return f"auth:revoked:{user_id}:{jti}"


def _oauth_key(state: str) -> str:
    return f"auth:oauth:{state}"


def _decode_oauth_state(cached: Optional[str]) -> Optional[Tuple[str, datetime]]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        # Corrupted entry is already deleted
        return None
    expires_at = datetime.now(timezone.utc)
    expires_raw = data.get("expires_at")
    if isinstance(expires_raw, str):
        try:
            expires_at = datetime.fromisoformat(expires_raw)
        except ValueError:
            pass
    return data.get("provider"), expires_at


def _encode_oauth_state(provider: str, expires_at: datetime) -> Tuple[str, int]:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = expires_at.astimezone(timezone.utc)
    payload = {"provider": provider, "expires_at": expires_at.isoformat()}
    return json.dumps(payload), RedisCache._ttl_seconds(expires_at)


class RedisCache:
    """Thin Redis wrapper for revocation hot-path lookups and OAuth state."""

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
        """Seconds until ``expires_at``, clamped to at least 1 so Redis accepts it."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def mark_token_revoked(self, user_id: str, jti: str, ttl_seconds: int) -> None:
        await self.client.set(_revoked_key(user_id, jti), "1", ex=max(1, ttl_seconds))

    async def is_token_revoked(self, user_id: str, jti: str) -> bool:
        return bool(await self.client.exists(_revoked_key(user_id, jti)))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload, ttl = _encode_oauth_state(provider, expires_at)
        await self.client.set(_oauth_key(state), payload, ex=ttl)

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        """Atomically get and delete OAuth state so a callback cannot be replayed."""
        key = _oauth_key(state)
        try:
            cached = await self.client.getdel(key)
        except AttributeError:
            cached = await self.client.eval(_GETDEL_SCRIPT, 1, key)
        return _decode_oauth_state(cached)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues in
    pytest, but exposes async methods so it can be awaited like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    async def mark_token_revoked(self, user_id: str, jti: str, ttl_seconds: int) -> None:
        self._sync_client.set(_revoked_key(user_id, jti), "1", ex=max(1, ttl_seconds))

    async def is_token_revoked(self, user_id: str, jti: str) -> bool:
        return bool(self._sync_client.exists(_revoked_key(user_id, jti)))

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload, ttl = _encode_oauth_state(provider, expires_at)
        self._sync_client.set(_oauth_key(state), payload, ex=ttl)

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        key = _oauth_key(state)
        try:
            cached = self._sync_client.getdel(key)
        except AttributeError:
            cached = self._sync_client.get(key)
            if cached:
                self._sync_client.delete(key)
        return _decode_oauth_state(cached)

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
