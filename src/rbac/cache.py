"""
Permission Cache - process-level caching of resolved principals.

The authorization engine resolves a principal (role + grants) on every
check. Resolved principals are cached here, keyed by principal id, for a
bounded TTL.

Cache Invalidation:
- Per principal (user changed role, deactivated, ...)
- Per role (a permission was assigned to or removed from the role)
- Global (seed / bulk changes)
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from rbac.store import PrincipalRecord

logger = logging.getLogger(__name__)


# =============================================================================
# CACHE ENTRY
# =============================================================================

@dataclass
class CacheEntry:
    """Cached principal resolution."""
    principal: PrincipalRecord
    cached_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


# =============================================================================
# PROCESS-LEVEL CACHE (LRU with TTL)
# =============================================================================

class TTLCache:
    """
    Thread-safe LRU cache with TTL expiration.

    ``clock`` returns seconds; it defaults to ``time.monotonic``.
    """

    def __init__(
        self,
        maxsize: int = 1000,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.maxsize = maxsize
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, CacheEntry] = {}
        self._access_order: List[str] = []
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> Optional[CacheEntry]:
        """Get a live entry, dropping it if expired."""
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._clock()):
                self._remove(key)
                self._misses += 1
                return None

            # Move to end (LRU)
            self._access_order.remove(key)
            self._access_order.append(key)

            self._hits += 1
            return entry

    def set(self, key: str, principal: PrincipalRecord) -> CacheEntry:
        """Store ``principal`` under ``key`` with a fresh TTL."""
        now = self._clock()
        entry = CacheEntry(principal=principal, cached_at=now, expires_at=now + self.ttl_seconds)
        with self._lock:
            if key in self._cache:
                self._remove(key)
            while len(self._cache) >= self.maxsize and self._access_order:
                oldest = self._access_order.pop(0)
                self._cache.pop(oldest, None)

            self._cache[key] = entry
            self._access_order.append(key)
        return entry

    def invalidate(self, key: str) -> bool:
        """Remove an entry; True if it was present."""
        with self._lock:
            present = key in self._cache
            self._remove(key)
            return present

    def invalidate_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        """Remove every entry matching ``predicate``."""
        with self._lock:
            keys_to_remove = [k for k, e in self._cache.items() if predicate(e)]
            for key in keys_to_remove:
                self._remove(key)
            return len(keys_to_remove)

    def clear(self) -> int:
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self._access_order.clear()
            return count

    def _remove(self, key: str) -> None:
        """Remove a key (must hold lock)."""
        self._cache.pop(key, None)
        if key in self._access_order:
            self._access_order.remove(key)

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            return {
                "size": len(self._cache),
                "maxsize": self.maxsize,
                "ttl_seconds": self.ttl_seconds,
                "hits": self._hits,
                "misses": self._misses,
            }


# =============================================================================
# PERMISSION CACHE SERVICE
# =============================================================================

class PermissionCache:
    """
    Principal cache used by ``RbacService``.

    Cache keys: "principal:{principal_id}"

    Every invalidation bumps ``generation``. A caller that read the store
    under an older generation passes it to ``set`` and the stale principal
    is dropped instead of cached.
    """

    def __init__(
        self,
        maxsize: int = 1000,
        ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache = TTLCache(maxsize=maxsize, ttl_seconds=ttl_seconds, clock=clock)
        self._lock = threading.Lock()
        self._generation = 0

    @staticmethod
    def get_cache_key(principal_id: str) -> str:
        return f"principal:{principal_id}"

    @property
    def generation(self) -> int:
        return self._generation

    def get(self, principal_id: str) -> Optional[PrincipalRecord]:
        entry = self._cache.get(self.get_cache_key(principal_id))
        return entry.principal if entry else None

    def set(self, principal: PrincipalRecord, generation: Optional[int] = None) -> bool:
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug(f"Skipped caching principal {principal.id}: invalidated during lookup")
                return False
            self._cache.set(self.get_cache_key(principal.id), principal)
            return True

    def invalidate_principal(self, principal_id: str) -> bool:
        with self._lock:
            self._generation += 1
            removed = self._cache.invalidate(self.get_cache_key(principal_id))
        logger.debug(f"Invalidated cache entry for principal {principal_id}: {removed}")
        return removed

    def invalidate_role(self, role_id: str) -> int:
        """Drop every cached principal holding ``role_id``."""
        with self._lock:
            self._generation += 1
            count = self._cache.invalidate_where(lambda e: e.principal.role_id == role_id)
        logger.debug(f"Invalidated {count} cache entries for role {role_id}")
        return count

    def invalidate_all(self) -> int:
        with self._lock:
            self._generation += 1
            count = self._cache.clear()
        logger.info(f"Invalidated all {count} permission cache entries")
        return count

    def stats(self) -> Dict[str, Any]:
        return self._cache.stats()
