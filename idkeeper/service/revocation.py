from __future__ import annotations

from datetime import timedelta
from typing import Optional, Protocol, Union

from idkeeper.logging import get_logger
from idkeeper.storage.models import RevocationEntry
from idkeeper.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class RevocationStore(Protocol):
    def add_revocation(self, user_id: str, jti: str) -> RevocationEntry: ...

    def is_token_revoked(self, user_id: str, jti: str) -> bool: ...


class RevocationLedger:
    """Append-only record of session tokens revoked before their expiry.

    The store is the source of truth and entries never expire there. When a
    cache is configured, revocations are mirrored into it with a TTL equal to
    the session lifetime so the hot-path check usually avoids the store; after
    that TTL the token has expired on its own.
    """

    def __init__(
        self,
        store: RevocationStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        session_ttl: timedelta = timedelta(hours=72),
    ) -> None:
        self.store = store
        self.cache = cache
        self.session_ttl = session_ttl

    async def revoke(self, user_id: str, jti: str) -> RevocationEntry:
        entry = self.store.add_revocation(user_id, jti)
        if self.cache:
            try:
                await self.cache.mark_token_revoked(
                    user_id, jti, int(self.session_ttl.total_seconds())
                )
            except Exception as exc:
                # The store already holds the entry; the cache is only a fast path
                logger.warning("revocation_cache_write_failed", error=str(exc))
        logger.info("session_revoked", user_id=user_id)
        return entry

    async def is_revoked(self, user_id: str, jti: str) -> bool:
        if self.cache:
            try:
                if await self.cache.is_token_revoked(user_id, jti):
                    return True
            except Exception as exc:
                logger.warning("revocation_cache_read_failed", error=str(exc))
        revoked = self.store.is_token_revoked(user_id, jti)
        if revoked and self.cache:
            try:
                await self.cache.mark_token_revoked(
                    user_id, jti, int(self.session_ttl.total_seconds())
                )
            except Exception as exc:
                logger.warning("revocation_cache_write_failed", error=str(exc))
        return revoked
