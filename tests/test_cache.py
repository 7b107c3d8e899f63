from datetime import timedelta

from product_rec.cache import (
    CachedRecommendationSet,
    InMemoryCacheStore,
    RecommendationCache,
    SqliteCacheStore,
)
from product_rec.recommender import Recommendation


def _recs(*item_ids: str) -> list[Recommendation]:
    return [
        Recommendation(item_id=item_id, score=float(len(item_ids) - i), reason="r", strategy="hybrid")
        for i, item_id in enumerate(item_ids)
    ]


class BrokenStore:
    def upsert(self, entry):
        raise ConnectionError("store offline")

    def get_if_not_expired(self, user_id, context, now):
        raise ConnectionError("store offline")

    def delete_by_key(self, user_id, context):
        raise ConnectionError("store offline")

    def purge_expired(self, now):
        raise ConnectionError("store offline")


def test_store_then_retrieve_within_ttl(clock):
    cache = RecommendationCache(InMemoryCacheStore(), ttl=timedelta(hours=24), clock=clock)

    assert cache.store("u1", "general", _recs("a", "b"))
    clock.advance(hours=23, minutes=59)

    assert [r.item_id for r in cache.retrieve("u1", "general")] == ["a", "b"]


def test_retrieve_after_ttl_is_absent_without_delete(clock):
    store = InMemoryCacheStore()
    cache = RecommendationCache(store, ttl=timedelta(hours=24), clock=clock)
    cache.store("u1", "general", _recs("a"))

    clock.advance(hours=24)

    assert cache.retrieve("u1", "general") is None
    # Entry is still physically present until purged
    assert len(store) == 1


def test_expired_entry_served_by_store_is_rejected(clock):
    class StaleStore(InMemoryCacheStore):
        def get_if_not_expired(self, user_id, context, now):
            return self._entries.get((user_id, context))

    cache = RecommendationCache(StaleStore(), ttl=timedelta(hours=1), clock=clock)
    cache.store("u1", "general", _recs("a"))
    clock.advance(hours=2)

    assert cache.retrieve("u1", "general") is None


def test_store_replaces_previous_set(clock):
    cache = RecommendationCache(InMemoryCacheStore(), clock=clock)
    cache.store("u1", "general", _recs("a", "b", "c"))
    cache.store("u1", "general", _recs("z"))

    assert [r.item_id for r in cache.retrieve("u1", "general")] == ["z"]


def test_contexts_are_independent(clock):
    cache = RecommendationCache(InMemoryCacheStore(), clock=clock)
    cache.store("u1", "general", _recs("a"))
    cache.store("u1", "checkout", _recs("b"))

    assert cache.retrieve("u1", "general")[0].item_id == "a"
    assert cache.retrieve("u1", "checkout")[0].item_id == "b"
    assert cache.retrieve("u2", "general") is None


def test_store_failures_are_miss_and_no_op(clock):
    cache = RecommendationCache(BrokenStore(), clock=clock)

    assert cache.store("u1", "general", _recs("a")) is False
    assert cache.retrieve("u1", "general") is None
    assert cache.invalidate("u1", "general") is False
    assert cache.purge_expired() == 0
    assert cache.stats()["errors"] == 4


def test_stats_track_hits_and_misses(clock):
    cache = RecommendationCache(InMemoryCacheStore(), clock=clock)
    cache.retrieve("u1", "general")
    cache.store("u1", "general", _recs("a"))
    cache.retrieve("u1", "general")

    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["writes"] == 1
    assert stats["hit_rate"] == 0.5


def test_in_memory_purge_and_invalidate(clock):
    store = InMemoryCacheStore()
    cache = RecommendationCache(store, ttl=timedelta(hours=1), clock=clock)
    cache.store("u1", "general", _recs("a"))
    cache.store("u2", "general", _recs("b"), ttl=timedelta(hours=5))
    clock.advance(hours=2)

    assert cache.purge_expired() == 1
    assert cache.invalidate("u2", "general") is True
    assert cache.invalidate("u2", "general") is False
    assert len(store) == 0


def test_cached_set_expiry_boundary(clock):
    entry = CachedRecommendationSet("u1", "general", [], clock(), clock() + timedelta(hours=1))

    assert not entry.is_expired(clock())
    assert entry.is_expired(clock() + timedelta(hours=1))


def test_sqlite_store_round_trip(fresh_db, clock):
    fresh_db.init_db()
    cache = RecommendationCache(SqliteCacheStore(), clock=clock)

    cache.store("u1", "general", _recs("a", "b"))
    cached = cache.retrieve("u1", "general")

    assert [r.item_id for r in cached] == ["a", "b"]
    assert cached[0].score == 2.0
    assert cached[0].strategy == "hybrid"


def test_sqlite_store_replaces_and_expires(fresh_db, clock):
    fresh_db.init_db()
    cache = RecommendationCache(SqliteCacheStore(), ttl=timedelta(hours=24), clock=clock)

    cache.store("u1", "general", _recs("a", "b"))
    cache.store("u1", "general", _recs("c"))
    with fresh_db.get_db() as conn:
        count = conn.execute("SELECT COUNT(*) FROM recommendation_cache").fetchone()[0]
    assert count == 1

    clock.advance(hours=25)
    # The stale row is still in the table but must not be served
    assert cache.retrieve("u1", "general") is None
    assert fresh_db.get_stats()["cached_sets"] == 1

    assert cache.purge_expired() == 1
    assert fresh_db.get_stats()["cached_sets"] == 0
