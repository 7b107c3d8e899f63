"""
Recommendation engine entry point.

Ties the window snapshot (matrix, item-item table, TF-IDF vectors), the
ranking strategies and the recommendation cache together behind
``get_recommendations``.
"""
import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from functools import partial
from typing import AbstractSet, Callable

from .cache import RecommendationCache
from .config import (
    ALGORITHMS,
    ALGORITHM_USER_BASED,
    ALGORITHM_ITEM_BASED,
    ALGORITHM_CONTENT_BASED,
    ALGORITHM_HYBRID,
    ALGORITHM_POPULAR,
    DEFAULT_ALGORITHM,
    DEFAULT_CONTEXT,
    DEFAULT_TOP_N,
)
from .engine_config import EngineConfig
from .errors import DataUnavailableError, InvalidConfigurationError
from .hybrid import StrategyFunc, run_hybrid
from .matrix import AffinityMatrix, build_affinity_matrix, matrix_fingerprint
from .preferences import RecommendationPreferences
from .recommender import (
    ContentRecommender,
    ItemBasedRecommender,
    PopularityRecommender,
    Recommendation,
    TfidfEmbedder,
    UserBasedRecommender,
)
from .similarity import SimilarityScore
from .sources import CatalogSource, InteractionSource, ItemDescriptor
from .utils import run_with_deadline

logger = logging.getLogger(__name__)


class WindowSnapshot:
    """
    Read-mostly artifacts for one processing window.

    The affinity matrix is built up front; the item-item similarity table and
    TF-IDF vectors are built on first use and then shared by every request
    served from this snapshot.
    """

    def __init__(
        self,
        matrix: AffinityMatrix,
        items: list[ItemDescriptor],
        config: EngineConfig,
        degraded: bool = False,
        built_at: float | None = None,
    ):
        self.matrix = matrix
        self.items = items
        self.config = config
        self.degraded = degraded
        self.built_at = time.monotonic() if built_at is None else built_at
        self._lock = threading.Lock()
        self._item_based: ItemBasedRecommender | None = None
        self._content_based: ContentRecommender | None = None
        self.user_based = UserBasedRecommender(matrix, k_neighbors=config.k_neighbors)
        self.popular = PopularityRecommender(matrix)

    def age(self) -> float:
        return time.monotonic() - self.built_at

    def with_items(self, items: list[ItemDescriptor]) -> "WindowSnapshot":
        """
        Same window with a freshly fetched catalog.

        Matrix-only artifacts are shared and the age is kept, so the window
        still expires on its original schedule.
        """
        snapshot = WindowSnapshot(self.matrix, items, self.config, built_at=self.built_at)
        snapshot.user_based = self.user_based
        snapshot.popular = self.popular
        snapshot._item_based = self._item_based
        return snapshot

    def blocked_items(self, preferences: RecommendationPreferences | None) -> frozenset[str]:
        if preferences is None:
            return frozenset()
        return preferences.blocked_items(self.items)

    @property
    def item_based(self) -> ItemBasedRecommender:
        if self._item_based is None:
            with self._lock:
                if self._item_based is None:
                    recommender = ItemBasedRecommender(self.matrix)
                    recommender.item_similarities  # build once, under the lock
                    self._item_based = recommender
        return self._item_based

    @property
    def content_based(self) -> ContentRecommender:
        if self._content_based is None:
            with self._lock:
                if self._content_based is None:
                    embedder = TfidfEmbedder(self.items, min_token_length=self.config.min_token_length)
                    self._content_based = ContentRecommender(self.matrix, embedder)
        return self._content_based

    def strategies(self, blocked: AbstractSet[str] = frozenset()) -> dict[str, StrategyFunc]:
        return {
            ALGORITHM_USER_BASED: lambda user_id, n: self.user_based.recommend(user_id, n, blocked),
            ALGORITHM_ITEM_BASED: lambda user_id, n: self.item_based.recommend(user_id, n, blocked),
            ALGORITHM_CONTENT_BASED: lambda user_id, n: self.content_based.recommend(user_id, n, blocked),
            ALGORITHM_POPULAR: lambda user_id, n: self.popular.recommend(user_id, n, blocked),
        }


class RecommendationEngine:
    """
    Personalized product recommendations with a read-through cache.

    Args:
        interactions: Source of interaction events
        catalog: Source of item descriptors
        cache: Recommendation cache; None disables caching entirely
        config: Engine tunables
    """

    def __init__(
        self,
        interactions: InteractionSource,
        catalog: CatalogSource,
        cache: RecommendationCache | None = None,
        config: EngineConfig | None = None,
        max_workers: int = 8,
    ):
        self.interactions = interactions
        self.catalog = catalog
        self.config = config or EngineConfig()
        self.cache = cache
        self._cache_ttl = (
            timedelta(hours=self.config.cache_ttl_hours)
            if self.config.cache_ttl_hours is not None
            else None
        )

        self._snapshot: WindowSnapshot | None = None
        self._snapshot_lock = threading.Lock()
        # Own pool so an abandoned computation never blocks event loop shutdown
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="product-rec")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # Snapshot management ---------------------------------------------

    def _build_snapshot(self) -> WindowSnapshot:
        window_days = self.config.window_days
        try:
            events = self.interactions.fetch_interactions(window_days)
        except DataUnavailableError:
            raise
        except Exception as e:
            raise DataUnavailableError("interaction source", e) from e

        items = self._fetch_catalog()
        degraded = items is None
        if degraded:
            items = []

        matrix = build_affinity_matrix(events, max_weight=self.config.max_interaction_weight)
        fingerprint = matrix_fingerprint(matrix)
        logger.info(
            f"Built window snapshot ({window_days}d, config {self.config.fingerprint}): "
            f"{fingerprint['n_users']} users, {fingerprint['n_items']} items, "
            f"{fingerprint['n_interactions']} interactions, {len(items)} catalog items"
        )
        return WindowSnapshot(matrix, items, self.config, degraded=degraded)

    def _fetch_catalog(self) -> list[ItemDescriptor] | None:
        """Catalog items, or None when the catalog cannot be read."""
        try:
            return self.catalog.fetch_item_descriptors()
        except Exception as e:
            # Collaborative strategies still work without the catalog
            logger.warning(f"Catalog unavailable, content-based scoring disabled for this window: {e}")
            return None

    def snapshot(self) -> WindowSnapshot:
        """
        Current window snapshot, rebuilt when older than ``snapshot_ttl_seconds``.

        A snapshot built without the catalog keeps its matrix until it
        expires; only the catalog is fetched again on each call until it
        succeeds.
        """
        current = self._snapshot
        if self._is_fresh(current) and not current.degraded:
            return current
        with self._snapshot_lock:
            current = self._snapshot
            if not self._is_fresh(current):
                self._snapshot = self._build_snapshot()
            elif current.degraded:
                items = self._fetch_catalog()
                if items is not None:
                    logger.info(f"Catalog recovered, {len(items)} catalog items attached to current window")
                    self._snapshot = current.with_items(items)
            return self._snapshot

    def _is_fresh(self, snapshot: WindowSnapshot | None) -> bool:
        if snapshot is None:
            return False
        return snapshot.age() < self.config.snapshot_ttl_seconds

    def refresh(self) -> WindowSnapshot:
        """Drop the current snapshot and build a new one."""
        with self._snapshot_lock:
            self._snapshot = self._build_snapshot()
            return self._snapshot

    # Public API --------------------------------------------------------

    def _validate(self, top_n: int, algorithm: str) -> None:
        if algorithm not in ALGORITHMS:
            raise InvalidConfigurationError(
                f"Unknown algorithm '{algorithm}'",
                details={"algorithm": algorithm, "available": list(ALGORITHMS)},
            )
        if not isinstance(top_n, int) or top_n < 0:
            raise InvalidConfigurationError(
                f"top_n must be a non-negative integer, got {top_n!r}",
                details={"top_n": top_n},
            )

    async def _run_blocking(self, func: Callable, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, partial(func, *args))

    async def _compute(
        self,
        user_id: str,
        top_n: int,
        algorithm: str,
        preferences: RecommendationPreferences | None = None,
    ) -> list[Recommendation]:
        snapshot = await self._run_blocking(self.snapshot)
        strategies = snapshot.strategies(snapshot.blocked_items(preferences))
        if algorithm == ALGORITHM_HYBRID:
            results = await run_hybrid(
                strategies,
                user_id,
                top_n,
                weights=self.config.hybrid_weights,
                candidate_multiplier=self.config.candidate_multiplier,
                executor=self._executor,
            )
        else:
            results = await self._run_blocking(strategies[algorithm], user_id, top_n)

        if not results and self.config.popular_fallback and algorithm != ALGORITHM_POPULAR:
            logger.debug(f"No {algorithm} signal for {user_id}, serving popular items")
            results = await self._run_blocking(strategies[ALGORITHM_POPULAR], user_id, top_n)
        return results

    async def get_recommendations_async(
        self,
        user_id: str,
        top_n: int = DEFAULT_TOP_N,
        algorithm: str = DEFAULT_ALGORITHM,
        context: str = DEFAULT_CONTEXT,
        use_cache: bool = True,
        preferences: RecommendationPreferences | None = None,
    ) -> list[Recommendation]:
        """
        Ranked recommendations for ``user_id``.

        Tries the cache first when ``use_cache`` is set; on a miss runs the
        named strategy and stores the fresh result. Unknown algorithms and
        negative ``top_n`` raise InvalidConfigurationError; unreadable data
        or a blown deadline degrade to cached or empty results.

        Requests carrying non-empty ``preferences`` are filtered per request
        and never read or write the cache.
        """
        self._validate(top_n, algorithm)
        user_id = str(user_id)
        filtered = preferences is not None and not preferences.is_empty
        cacheable = self.cache is not None and not filtered

        if use_cache and cacheable:
            cached = await self._run_blocking(self.cache.retrieve, user_id, context)
            if cached is not None:
                logger.debug(f"Cache hit for {user_id}/{context}")
                return cached[:top_n]

        try:
            results = await run_with_deadline(
                self._compute(user_id, top_n, algorithm, preferences),
                timeout=self.config.deadline_seconds,
                fallback=None,
            )
        except DataUnavailableError as e:
            logger.warning(f"Recommendations unavailable for {user_id}: {e.message}")
            return []

        if results is None:
            if not cacheable:
                logger.warning(f"Deadline exceeded for {user_id}, no usable cached set")
                return []
            return await self._deadline_fallback(user_id, context, top_n)

        if cacheable and (results or self.config.cache_empty_results):
            await self._run_blocking(self.cache.store, user_id, context, results, self._cache_ttl)

        logger.debug(f"Computed {len(results)} {algorithm} recommendations for {user_id}")
        return results

    async def _deadline_fallback(self, user_id: str, context: str, top_n: int) -> list[Recommendation]:
        if self.cache is None:
            return []
        cached = await self._run_blocking(self.cache.retrieve, user_id, context)
        return (cached or [])[:top_n]

    def get_recommendations(
        self,
        user_id: str,
        top_n: int = DEFAULT_TOP_N,
        algorithm: str = DEFAULT_ALGORITHM,
        context: str = DEFAULT_CONTEXT,
        use_cache: bool = True,
        preferences: RecommendationPreferences | None = None,
    ) -> list[Recommendation]:
        """Synchronous wrapper around ``get_recommendations_async``."""
        return asyncio.run(
            self.get_recommendations_async(
                user_id,
                top_n=top_n,
                algorithm=algorithm,
                context=context,
                use_cache=use_cache,
                preferences=preferences,
            )
        )

    def similar_users(self, user_id: str, k: int | None = None) -> list[SimilarityScore]:
        try:
            snapshot = self.snapshot()
        except DataUnavailableError as e:
            logger.warning(f"Similar users unavailable for {user_id}: {e.message}")
            return []
        return snapshot.user_based.find_neighbors(str(user_id), k)

    def similar_items(self, item_id: str, top_n: int = DEFAULT_TOP_N) -> list[Recommendation]:
        if not isinstance(top_n, int) or top_n < 0:
            raise InvalidConfigurationError(f"top_n must be a non-negative integer, got {top_n!r}")
        try:
            snapshot = self.snapshot()
        except DataUnavailableError as e:
            logger.warning(f"Similar items unavailable for {item_id}: {e.message}")
            return []
        return snapshot.item_based.similar_items(str(item_id), top_n)
