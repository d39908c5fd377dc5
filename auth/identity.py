"""
auth/identity.py -- Cache-assisted identity lookup and cache invalidation.

resolve() is the hot path of every authenticated request:

    1. cache read  user:{id}            hit  -> done, no store I/O
    2. store read  (on miss OR on any cache error)
    3. cache write user:{id}, short TTL (best-effort, failure swallowed)
    4. identity must exist and be active, else Unauthorized

The cache holds Identity.public_projection() only -- never the password hash,
the refresh-token list or a two-factor code hash. An identity that comes back
from the cache is therefore good for authorization decisions and response
bodies, not for credential checks; flows that need secrets read the store.

Invalidation is best-effort too. A failed delete leaves a stale entry that
lives at most cache_ttl_short seconds.

Layer rule: imports from cache/ are allowed here (this module is the seam
between auth and the cache); no imports from api/, audit/, or documents/.
"""

from __future__ import annotations

import logging
from typing import Optional

from auth.models import AccessClaims, Identity
from auth.store import IdentityStore
from cache.store import Cache, CacheKeys, CacheTTL
from core.errors import Unauthorized

logger = logging.getLogger("techpacker.auth.identity")


class IdentityResolver:
    """Resolve verified access-token claims to a live Identity."""

    def __init__(self, store: IdentityStore, cache: Optional[Cache], ttl_seconds: int = CacheTTL.SHORT) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def resolve(self, claims: AccessClaims) -> Identity:
        identity = await self._cached(claims.subject_id)
        if identity is None:
            identity = await self.store.get_by_id(claims.subject_id)
            if identity is not None:
                await self._remember(identity)
        if identity is None or not identity.is_active:
            raise Unauthorized("User not found or is inactive.")
        return identity

    async def _cached(self, identity_id: int) -> Identity | None:
        if self.cache is None:
            return None
        try:
            data = await self.cache.get(CacheKeys.user(identity_id))
            return Identity.from_projection(data) if data else None
        except Exception as exc:  # noqa: BLE001 -- any cache fault is a miss
            logger.warning("Cache read failed for user %s; falling back to store: %s", identity_id, exc)
            return None

    async def _remember(self, identity: Identity) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(CacheKeys.user(identity.id), identity.public_projection(), self.ttl_seconds)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Cache write failed for user %s: %s", identity.id, exc)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    async def invalidate_identity(self, identity_id: int) -> None:
        """Drop every cached entry for an identity. Call after any identity write."""
        await self._drop(CacheKeys.user(identity_id), CacheKeys.user_pattern(identity_id))

    async def invalidate_document(self, document_id: int) -> None:
        """Drop authorization-adjacent entries for a document. Call after any share-table write."""
        await self._drop(CacheKeys.document_access(document_id), CacheKeys.document_pattern(document_id))

    async def _drop(self, key: str, pattern: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.delete(key)
            await self.cache.delete_pattern(pattern)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Cache invalidation failed for %s: %s", key, exc)
