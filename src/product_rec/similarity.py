"""
Similarity metrics over sparse vectors and sets.

All metrics are pure, symmetric functions. Vectors are dicts mapping a key
(item id, term, ...) to a weight; sets are plain Python sets of ids.
"""
import logging
import math
from dataclasses import dataclass
from typing import Callable, Mapping

import numpy as np
from scipy.sparse import csr_matrix

from .errors import InvalidConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimilarityScore:
    entity_id_1: str
    entity_id_2: str
    score: float


def _clamp_unit(value: float) -> float:
    return max(-1.0, min(1.0, value))


def cosine_similarity(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """
    Cosine similarity of two sparse vectors.

    The dot product runs over shared keys only, but each norm covers the
    vector's full key set. Returns 0 when either norm is 0 or nothing overlaps.
    """
    if not a or not b:
        return 0.0
    if len(a) > len(b):
        small, large = b, a
    else:
        small, large = a, b
    common = sorted(k for k in small if k in large)
    if not common:
        return 0.0

    dot = 0.0
    for key in common:
        dot += a[key] * b[key]

    norm_a = math.sqrt(sum(v * v for v in a.values()))
    norm_b = math.sqrt(sum(v * v for v in b.values()))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return _clamp_unit(dot / (norm_a * norm_b))


def pearson_correlation(a: Mapping[str, float], b: Mapping[str, float]) -> float:
    """
    Pearson correlation restricted to the keys both vectors share.

    Each side is centered on its mean over the common keys only. Fewer than
    two common keys cannot establish a correlation and yield 0.
    """
    common = sorted(k for k in a if k in b)
    if len(common) < 2:
        return 0.0

    mean_a = sum(a[k] for k in common) / len(common)
    mean_b = sum(b[k] for k in common) / len(common)

    numerator = 0.0
    denom_a = 0.0
    denom_b = 0.0
    for key in common:
        diff_a = a[key] - mean_a
        diff_b = b[key] - mean_b
        numerator += diff_a * diff_b
        denom_a += diff_a * diff_a
        denom_b += diff_b * diff_b

    if denom_a == 0 or denom_b == 0:
        return 0.0
    return _clamp_unit(numerator / (math.sqrt(denom_a) * math.sqrt(denom_b)))


def jaccard_similarity(a: set, b: set) -> float:
    """|a & b| / |a | b|, with two empty sets scoring 0."""
    union = len(a | b)
    if union == 0:
        return 0.0
    return len(a & b) / union


METRICS: dict[str, Callable] = {
    "cosine": cosine_similarity,
    "pearson": pearson_correlation,
    "jaccard": jaccard_similarity,
}


def get_metric(name: str) -> Callable:
    try:
        return METRICS[name]
    except KeyError:
        raise InvalidConfigurationError(
            f"Unknown similarity metric '{name}'",
            details={"metric": name, "available": sorted(METRICS)},
        ) from None


def top_k_neighbors(
    target_id: str,
    target,
    candidates: Mapping[str, object],
    metric: Callable,
    k: int,
) -> list[SimilarityScore]:
    """
    Score every candidate against ``target`` and keep the k best positive ones.

    Ties are broken by candidate id so repeated calls return the same order.
    """
    scored = []
    for other_id, other in candidates.items():
        if other_id == target_id:
            continue
        sim = metric(target, other)
        if sim > 0:
            scored.append(SimilarityScore(target_id, other_id, sim))
    scored.sort(key=lambda s: (-s.score, s.entity_id_2))
    return scored[:k]


def build_item_similarity_matrix(item_users: Mapping[str, set[str]]) -> dict[str, dict[str, float]]:
    """
    Pairwise Jaccard similarity between all items, keyed both directions.

    Uses a binary item x user sparse matrix so intersection counts for every
    pair come from a single ``B @ B.T`` product; unions follow from the row
    sizes. Only pairs that share at least one user are stored.
    """
    if not item_users:
        return {}

    item_ids = sorted(item_users)
    user_index: dict[str, int] = {}
    rows: list[int] = []
    cols: list[int] = []
    for i, item_id in enumerate(item_ids):
        for user_id in item_users[item_id]:
            j = user_index.setdefault(user_id, len(user_index))
            rows.append(i)
            cols.append(j)

    binary = csr_matrix(
        (np.ones(len(rows), dtype=np.float64), (rows, cols)),
        shape=(len(item_ids), max(1, len(user_index))),
    )
    sizes = np.asarray(binary.sum(axis=1)).ravel()
    overlap = (binary @ binary.T).tocoo()

    similarities: dict[str, dict[str, float]] = {item_id: {} for item_id in item_ids}
    for i, j, inter in zip(overlap.row, overlap.col, overlap.data):
        if i == j or inter <= 0:
            continue
        union = sizes[i] + sizes[j] - inter
        similarities[item_ids[i]][item_ids[j]] = float(inter) / float(union)

    n_pairs = sum(len(v) for v in similarities.values()) // 2
    logger.debug(f"Item similarity matrix: {len(item_ids)} items, {n_pairs} similar pairs")
    return similarities
