"""
Read-through cache for match queries.

Wraps MatchOperations.get_feed_matches and get_active_match with a TTL
cache owned by the calling layer. Writers are expected to call
invalidate_user() for every user whose view changed.
"""

import time
from typing import Any, Callable, Dict, Hashable, List, Optional, Tuple, Union

from dapaint.config import Config
from dapaint.constants import CacheConstants
from dapaint.database.models import Match
from dapaint.operations.feed_selector import FeedMode
from dapaint.utils.logger import setup_logger

logger = setup_logger(__name__)


class CachedMatchQueries:
    """Wrapper for MatchOperations read paths with TTL-based caching."""

    def __init__(
        self,
        operations,
        ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        max_size: int = CacheConstants.DEFAULT_MAX_CACHE_SIZE
    ):
        self.operations = operations
        self.ttl = Config.FEED_CACHE_TTL_SECONDS if ttl is None else ttl
        self.clock = clock
        self._cache: Dict[Hashable, Tuple[float, Any]] = {}  # key -> (timestamp, data)
        self._cache_max_size = max_size

    def _lookup(self, key: Hashable) -> Tuple[bool, Any]:
        entry = self._cache.get(key)
        if entry is not None:
            timestamp, data = entry
            if self.clock() - timestamp < self.ttl:
                logger.debug(f"Cache hit for {key}")
                return True, data
            self._cache.pop(key, None)
        logger.debug(f"Cache miss for {key}")
        return False, None

    def _store(self, key: Hashable, data: Any) -> None:
        self._cache[key] = (self.clock(), data)

        # Cleanup old entries if cache too large
        if len(self._cache) > self._cache_max_size:
            self._cleanup_cache()

    async def get_feed_matches(
        self,
        user_id: str,
        mode: Union[FeedMode, str] = FeedMode.STRICT,
        limit: Optional[int] = None
    ) -> List[Match]:
        """Feed for a user and mode, served from cache while fresh."""
        mode = FeedMode(mode)
        key = ('feed', user_id, mode, limit)
        hit, data = self._lookup(key)
        if hit:
            return list(data)

        matches = await self.operations.get_feed_matches(user_id, mode, limit=limit)
        self._store(key, list(matches))
        return matches

    async def get_active_match(self, user_id: str) -> Optional[Match]:
        """Active match for a user, served from cache while fresh (None included)."""
        key = ('active', user_id)
        hit, data = self._lookup(key)
        if hit:
            return data

        match = await self.operations.get_active_match(user_id)
        self._store(key, match)
        return match

    def invalidate_user(self, user_id: str):
        """Invalidate every cached entry for a specific user."""
        keys = [key for key in self._cache if key[1] == user_id]
        if keys:
            logger.debug(f"Invalidating {len(keys)} cache entries for user {user_id}")
        for key in keys:
            self._cache.pop(key, None)

    def invalidate_all(self):
        """Clear entire cache."""
        logger.info("Clearing entire match query cache")
        self._cache.clear()

    def _cleanup_cache(self):
        """Remove oldest cache entries to stay within size limit."""
        # Sort by timestamp and keep newest entries
        sorted_items = sorted(self._cache.items(), key=lambda x: x[1][0], reverse=True)
        self._cache = dict(sorted_items[:self._cache_max_size])
        logger.debug(f"Cleaned match query cache, kept {len(self._cache)} entries")
