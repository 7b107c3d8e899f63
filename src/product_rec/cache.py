"""
Time-bounded cache of ranked recommendation sets.

One active set exists per (user_id, context). Writing a new set replaces the
old one wholesale, and a set past its expiry is never served even if the
backing store still holds it.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Protocol

from . import database
from .config import CACHE_TTL_HOURS
from .recommender import Recommendation

logger = logging.getLogger(__name__)


@dataclass
class CachedRecommendationSet:
    user_id: str
    context: str
    results: list[Recommendation]
    generated_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CacheStore(Protocol):
    def upsert(self, entry: CachedRecommendationSet) -> None:
        ...

    def get_if_not_expired(self, user_id: str, context: str, now: datetime) -> CachedRecommendationSet | None:
        ...

    def delete_by_key(self, user_id: str, context: str) -> bool:
        ...

    def purge_expired(self, now: datetime) -> int:
        ...


class InMemoryCacheStore:
    """Process-local store; entries are only dropped on overwrite, delete or purge."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: dict[tuple[str, str], CachedRecommendationSet] = {}

    def upsert(self, entry: CachedRecommendationSet) -> None:
        with self._lock:
            self._entries[(entry.user_id, entry.context)] = entry

    def get_if_not_expired(self, user_id: str, context: str, now: datetime) -> CachedRecommendationSet | None:
        with self._lock:
            entry = self._entries.get((user_id, context))
        if entry is None or entry.is_expired(now):
            return None
        return entry

    def delete_by_key(self, user_id: str, context: str) -> bool:
        with self._lock:
            return self._entries.pop((user_id, context), None) is not None

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.is_expired(now)]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)


class SqliteCacheStore:
    """Store backed by the ``recommendation_cache`` table."""

    def upsert(self, entry: CachedRecommendationSet) -> None:
        database.replace_cached_recommendations(
            entry.user_id,
            entry.context,
            [rec.to_dict() for rec in entry.results],
            entry.generated_at,
            entry.expires_at,
        )

    def get_if_not_expired(self, user_id: str, context: str, now: datetime) -> CachedRecommendationSet | None:
        row = database.load_cached_recommendations(user_id, context, now)
        if row is None:
            return None
        return CachedRecommendationSet(
            user_id=row['user_id'],
            context=row['context'],
            results=[Recommendation.from_dict(r) for r in row['results']],
            generated_at=row['generated_at'],
            expires_at=row['expires_at'],
        )

    def delete_by_key(self, user_id: str, context: str) -> bool:
        return database.delete_cached_recommendations(user_id, context) > 0

    def purge_expired(self, now: datetime) -> int:
        return database.purge_expired_recommendations(now)


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    writes: int = 0
    errors: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def incr(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def as_dict(self) -> dict:
        lookups = self.hits + self.misses
        return {
            'hits': self.hits,
            'misses': self.misses,
            'writes': self.writes,
            'errors': self.errors,
            'hit_rate': self.hits / lookups if lookups else 0.0,
        }


class RecommendationCache:
    """
    Expiry-aware access to a cache store.

    Store failures are logged and treated as a miss (reads) or a no-op
    (writes) so they can never block a fresh computation.
    """

    def __init__(
        self,
        store: CacheStore,
        ttl: timedelta = timedelta(hours=CACHE_TTL_HOURS),
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.backend = store
        self.ttl = ttl
        self.clock = clock
        self._stats = CacheStats()

    def store(
        self,
        user_id: str,
        context: str,
        results: list[Recommendation],
        ttl: timedelta | None = None,
    ) -> bool:
        """Replace the cached set for (user_id, context). Returns False if the write failed."""
        now = self.clock()
        entry = CachedRecommendationSet(
            user_id=user_id,
            context=context,
            results=list(results),
            generated_at=now,
            expires_at=now + (ttl if ttl is not None else self.ttl),
        )
        try:
            self.backend.upsert(entry)
        except Exception as e:
            self._stats.incr('errors')
            logger.warning(f"Failed to cache recommendations for {user_id}/{context}: {e}")
            return False
        self._stats.incr('writes')
        logger.debug(f"Cached {len(results)} recommendations for {user_id}/{context} until {entry.expires_at}")
        return True

    def retrieve(self, user_id: str, context: str) -> list[Recommendation] | None:
        """Cached results for (user_id, context), or None when absent or expired."""
        now = self.clock()
        try:
            entry = self.backend.get_if_not_expired(user_id, context, now)
        except Exception as e:
            self._stats.incr('errors')
            logger.warning(f"Failed to read cached recommendations for {user_id}/{context}: {e}")
            return None

        # Re-check expiry: a store may hand back a row it has not yet purged
        if entry is None or entry.is_expired(now):
            self._stats.incr('misses')
            return None
        self._stats.incr('hits')
        return list(entry.results)

    def invalidate(self, user_id: str, context: str) -> bool:
        try:
            return self.backend.delete_by_key(user_id, context)
        except Exception as e:
            self._stats.incr('errors')
            logger.warning(f"Failed to invalidate cache for {user_id}/{context}: {e}")
            return False

    def purge_expired(self) -> int:
        try:
            removed = self.backend.purge_expired(self.clock())
        except Exception as e:
            self._stats.incr('errors')
            logger.warning(f"Failed to purge expired recommendations: {e}")
            return 0
        if removed:
            logger.info(f"Purged {removed} expired recommendation sets")
        return removed

    def stats(self) -> dict:
        return self._stats.as_dict()
