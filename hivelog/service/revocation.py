from __future__ import annotations

import hashlib
from typing import Optional, Protocol

from hivelog.logging import get_logger
from hivelog.service.tokens import TokenService

logger = get_logger(__name__)


class RevocationCache(Protocol):
    async def revoke(self, token_key: str, ttl_seconds: int) -> None: ...

    async def is_revoked(self, token_key: str) -> bool: ...


def revocation_key(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class RevocationService:
    """Records tokens revoked before their natural expiry.

    An entry lives exactly as long as the token it blocks: the TTL is the
    token's remaining lifetime, or ``max_token_lifetime_seconds`` when the
    expiry cannot be read.
    """

    def __init__(
        self,
        cache: RevocationCache,
        tokens: TokenService,
        *,
        max_token_lifetime_seconds: int,
    ) -> None:
        self.cache = cache
        self.tokens = tokens
        self.max_token_lifetime_seconds = max_token_lifetime_seconds

    def ttl_for(self, token: str) -> int:
        remaining = self.tokens.remaining_seconds(token)
        if remaining is None:
            logger.info(
                "revocation_ttl_fallback", ttl_seconds=self.max_token_lifetime_seconds
            )
            return self.max_token_lifetime_seconds
        return remaining

    async def revoke_token(self, token: str) -> Optional[int]:
        """Revoke ``token``; returns the TTL written, or None if it had already expired.

        Cache errors propagate so the caller can report a failed logout.
        """
        key = revocation_key(token)
        ttl = self.ttl_for(token)
        if ttl <= 0:
            logger.info("revocation_skipped_expired", key_prefix=key[:12])
            return None
        await self.cache.revoke(key, ttl)
        logger.info("token_revoked", key_prefix=key[:12], ttl_seconds=ttl)
        return ttl

    async def is_revoked(self, token: str) -> bool:
        key = revocation_key(token)
        try:
            return await self.cache.is_revoked(key)
        except Exception as exc:
            # Default to revoked so an outage cannot resurrect a logged-out token
            logger.warning(
                "revocation_check_failed_defaulting_to_revoked",
                key_prefix=key[:12],
                error=str(exc),
            )
            return True
