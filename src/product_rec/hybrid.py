"""
Hybrid score fusion.

Runs the user-based, item-based and content-based strategies side by side and
merges their ranked lists with a weighted sum of scores.
"""
import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Callable

from .config import (
    ALGORITHM_USER_BASED,
    ALGORITHM_ITEM_BASED,
    ALGORITHM_CONTENT_BASED,
    ALGORITHM_HYBRID,
    CANDIDATE_MULTIPLIER,
    HYBRID_WEIGHTS,
    REASON_DEFAULT,
)
from .errors import InvalidConfigurationError
from .recommender import Recommendation, rank_scores

logger = logging.getLogger(__name__)

# Reasons are taken from the first strategy in this order that scored an item
STRATEGY_ORDER = (ALGORITHM_USER_BASED, ALGORITHM_ITEM_BASED, ALGORITHM_CONTENT_BASED)

StrategyFunc = Callable[[str, int], list[Recommendation]]


@dataclass(frozen=True)
class HybridWeights:
    user_based: float = HYBRID_WEIGHTS[ALGORITHM_USER_BASED]
    item_based: float = HYBRID_WEIGHTS[ALGORITHM_ITEM_BASED]
    content_based: float = HYBRID_WEIGHTS[ALGORITHM_CONTENT_BASED]

    def __post_init__(self) -> None:
        weights = self.as_dict()
        if any(w < 0 for w in weights.values()):
            raise InvalidConfigurationError("hybrid weights must be non-negative", details=weights)
        if sum(weights.values()) <= 0:
            raise InvalidConfigurationError("hybrid weights must contain at least one positive weight", details=weights)

    def as_dict(self) -> dict[str, float]:
        return {
            ALGORITHM_USER_BASED: self.user_based,
            ALGORITHM_ITEM_BASED: self.item_based,
            ALGORITHM_CONTENT_BASED: self.content_based,
        }

    def weight_for(self, strategy: str) -> float:
        return self.as_dict().get(strategy, 0.0)

    def renormalized(self) -> "HybridWeights":
        """Same relative weights, scaled to sum to 1."""
        total = self.user_based + self.item_based + self.content_based
        return HybridWeights(
            user_based=self.user_based / total,
            item_based=self.item_based / total,
            content_based=self.content_based / total,
        )


def combine(
    strategy_results: dict[str, list[Recommendation]],
    weights: HybridWeights,
    top_n: int,
) -> list[Recommendation]:
    """
    Weighted-sum fusion of per-strategy result lists.

    An item missing from a strategy's list gets 0 from that strategy.
    Strategies weighted 0 are ignored entirely, so they neither add
    candidates nor supply reasons.
    """
    combined: dict[str, float] = {}
    reasons: dict[str, str] = {}

    for strategy in STRATEGY_ORDER:
        weight = weights.weight_for(strategy)
        if weight <= 0:
            continue
        for rec in strategy_results.get(strategy, []):
            combined[rec.item_id] = combined.get(rec.item_id, 0.0) + rec.score * weight
            reasons.setdefault(rec.item_id, rec.reason)

    ranked = rank_scores(combined, top_n, REASON_DEFAULT, ALGORITHM_HYBRID)
    for rec in ranked:
        rec.reason = reasons.get(rec.item_id) or REASON_DEFAULT
    return ranked


async def run_hybrid(
    strategies: dict[str, StrategyFunc],
    user_id: str,
    top_n: int,
    weights: HybridWeights | None = None,
    candidate_multiplier: int = CANDIDATE_MULTIPLIER,
    executor: Executor | None = None,
) -> list[Recommendation]:
    """
    Run the base strategies concurrently and fuse their output.

    Each strategy runs in a worker thread (``executor`` if given, otherwise
    the loop's default one) and is asked for ``top_n * candidate_multiplier``
    candidates. A strategy that raises is logged and contributes nothing;
    the others still complete.
    """
    weights = weights or HybridWeights()
    if top_n <= 0:
        return []

    names = [
        name for name in STRATEGY_ORDER
        if name in strategies and weights.weight_for(name) > 0
    ]
    n_candidates = top_n * candidate_multiplier
    loop = asyncio.get_running_loop()

    def _launch(name: str):
        if executor is None:
            return asyncio.to_thread(strategies[name], user_id, n_candidates)
        return loop.run_in_executor(executor, strategies[name], user_id, n_candidates)

    results = await asyncio.gather(*[_launch(name) for name in names], return_exceptions=True)

    strategy_results: dict[str, list[Recommendation]] = {}
    for name, result in zip(names, results):
        if isinstance(result, Exception):
            logger.warning(f"{name} strategy failed for user {user_id}: {result}")
            strategy_results[name] = []
        else:
            strategy_results[name] = result

    logger.debug(
        f"Hybrid candidates for {user_id}: "
        + ", ".join(f"{name}={len(recs)}" for name, recs in strategy_results.items())
    )
    return combine(strategy_results, weights, top_n)
