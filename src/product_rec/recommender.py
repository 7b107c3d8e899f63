from dataclasses import dataclass, asdict
import logging
import math
import re
from collections import Counter
from typing import AbstractSet

from .config import (
    ALGORITHM_USER_BASED,
    ALGORITHM_ITEM_BASED,
    ALGORITHM_CONTENT_BASED,
    ALGORITHM_POPULAR,
    DEFAULT_K_NEIGHBORS,
    MIN_TOKEN_LENGTH,
    REASON_USER_BASED,
    REASON_ITEM_BASED,
    REASON_CONTENT_BASED,
    REASON_SIMILAR_ITEM,
    REASON_POPULAR,
)
from .matrix import AffinityMatrix, build_item_user_index
from .similarity import (
    SimilarityScore,
    build_item_similarity_matrix,
    cosine_similarity,
    pearson_correlation,
    top_k_neighbors,
)
from .sources import ItemDescriptor

logger = logging.getLogger(__name__)


@dataclass
class Recommendation:
    item_id: str
    score: float
    reason: str
    strategy: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "Recommendation":
        return cls(
            item_id=str(data['item_id']),
            score=float(data['score']),
            reason=data.get('reason', ''),
            strategy=data.get('strategy', ''),
        )


def rank_scores(scores: dict[str, float], top_n: int, reason: str, strategy: str) -> list[Recommendation]:
    """Sort by score descending (item id ascending on ties) and keep top_n."""
    if top_n <= 0:
        return []
    ranked = sorted(scores.items(), key=lambda x: (-x[1], x[0]))
    return [
        Recommendation(item_id=item_id, score=score, reason=reason, strategy=strategy)
        for item_id, score in ranked[:top_n]
    ]


class UserBasedRecommender:
    """
    User-based collaborative filtering.

    Finds the users whose affinity patterns correlate with the target's and
    predicts each unseen item as the similarity-weighted average of the
    neighbors' affinities for it.
    """

    def __init__(self, matrix: AffinityMatrix, k_neighbors: int = DEFAULT_K_NEIGHBORS):
        self.matrix = matrix
        self.k_neighbors = k_neighbors

    def find_neighbors(self, user_id: str, k: int | None = None) -> list[SimilarityScore]:
        """
        Find the k most similar users by Pearson correlation.

        Only positively correlated users are returned; zero or negative
        correlation carries no usable signal.
        """
        target = self.matrix.get(user_id)
        if not target:
            return []
        return top_k_neighbors(user_id, target, self.matrix, pearson_correlation, k or self.k_neighbors)

    def recommend(
        self,
        user_id: str,
        top_n: int,
        blocked: AbstractSet[str] = frozenset(),
    ) -> list[Recommendation]:
        target = self.matrix.get(user_id)
        if not target:
            logger.debug(f"User {user_id} has no interactions, no user-based recommendations")
            return []

        neighbors = self.find_neighbors(user_id)
        if not neighbors:
            logger.debug(f"No positively correlated neighbors for {user_id}")
            return []

        scores: dict[str, float] = {}
        normalizers: dict[str, float] = {}
        for neighbor in neighbors:
            similarity = neighbor.score
            for item_id, weight in self.matrix[neighbor.entity_id_2].items():
                if item_id in target or item_id in blocked:
                    continue
                scores[item_id] = scores.get(item_id, 0.0) + weight * similarity
                normalizers[item_id] = normalizers.get(item_id, 0.0) + similarity

        averaged = {item_id: score / normalizers[item_id] for item_id, score in scores.items()}
        return rank_scores(averaged, top_n, REASON_USER_BASED, ALGORITHM_USER_BASED)


class ItemBasedRecommender:
    """
    Item-based collaborative filtering over Jaccard item-item similarity.

    The item-item table depends only on the window's matrix, so callers
    serving many users should build it once and pass it in.
    """

    def __init__(self, matrix: AffinityMatrix, item_similarities: dict[str, dict[str, float]] | None = None):
        self.matrix = matrix
        self._item_similarities = item_similarities

    @property
    def item_similarities(self) -> dict[str, dict[str, float]]:
        if self._item_similarities is None:
            logger.info("Computing item-item similarity matrix...")
            self._item_similarities = build_item_similarity_matrix(build_item_user_index(self.matrix))
        return self._item_similarities

    def recommend(
        self,
        user_id: str,
        top_n: int,
        blocked: AbstractSet[str] = frozenset(),
    ) -> list[Recommendation]:
        seen = self.matrix.get(user_id)
        if not seen:
            logger.debug(f"User {user_id} has no interactions, no item-based recommendations")
            return []

        similarities = self.item_similarities
        scores: dict[str, float] = {}
        normalizers: dict[str, float] = {}
        for seed_id in sorted(seen):
            affinity = seen[seed_id]
            neighbors = similarities.get(seed_id, {})
            for candidate_id in sorted(neighbors):
                if candidate_id in seen or candidate_id in blocked:
                    continue
                similarity = neighbors[candidate_id]
                scores[candidate_id] = scores.get(candidate_id, 0.0) + affinity * similarity
                normalizers[candidate_id] = normalizers.get(candidate_id, 0.0) + similarity

        averaged = {
            item_id: score / normalizers[item_id]
            for item_id, score in scores.items()
            if normalizers[item_id] > 0
        }
        return rank_scores(averaged, top_n, REASON_ITEM_BASED, ALGORITHM_ITEM_BASED)

    def similar_items(self, item_id: str, top_n: int) -> list[Recommendation]:
        """Items most often bought by the same customers as ``item_id``."""
        neighbors = dict(self.item_similarities.get(item_id, {}))
        neighbors.pop(item_id, None)
        return rank_scores(neighbors, top_n, REASON_SIMILAR_ITEM, ALGORITHM_ITEM_BASED)


_TOKEN_SPLIT = re.compile(r"\W+")


def tokenize(text: str, min_token_length: int = MIN_TOKEN_LENGTH) -> list[str]:
    """Lower-case word tokens, dropping anything shorter than min_token_length."""
    if not text:
        return []
    return [tok for tok in _TOKEN_SPLIT.split(text.lower()) if len(tok) >= min_token_length]


class TfidfEmbedder:
    """
    TF-IDF vectors for catalog item text.

    TF is the raw token count in an item's text and IDF is ln(N / df).
    Keeps everything in plain dicts; items without usable text get an empty
    vector and can never be matched on content.
    """

    def __init__(self, items: list[ItemDescriptor], min_token_length: int = MIN_TOKEN_LENGTH):
        self.min_token_length = min_token_length
        self.idf: dict[str, float] = {}
        self.vectors: dict[str, dict[str, float]] = {}
        self._build(items)

    def _build(self, items: list[ItemDescriptor]):
        term_counts: dict[str, Counter] = {}
        df_counts: Counter = Counter()
        for item in items:
            counts = Counter(tokenize(item.text, self.min_token_length))
            term_counts[item.item_id] = counts
            df_counts.update(counts.keys())

        n_docs = len(term_counts)
        if n_docs == 0:
            return
        self.idf = {tok: math.log(n_docs / df) for tok, df in df_counts.items()}

        for item_id, counts in term_counts.items():
            # Terms present in every document have idf 0 and are dropped
            self.vectors[item_id] = {
                tok: tf * self.idf[tok]
                for tok, tf in counts.items()
                if self.idf[tok] > 0
            }

        logger.debug(f"TF-IDF: {n_docs} items, {len(self.idf)} terms")

    def vector(self, item_id: str) -> dict[str, float]:
        return self.vectors.get(item_id, {})


class ContentRecommender:
    """Scores unseen items by cosine similarity to the user's taste profile."""

    def __init__(self, matrix: AffinityMatrix, embedder: TfidfEmbedder):
        self.matrix = matrix
        self.embedder = embedder

    def build_profile(self, user_id: str) -> dict[str, float]:
        """Sum of the user's item vectors, each scaled by the user's affinity for it."""
        profile: dict[str, float] = {}
        for item_id, affinity in sorted(self.matrix.get(user_id, {}).items()):
            for tok, value in self.embedder.vector(item_id).items():
                profile[tok] = profile.get(tok, 0.0) + value * affinity
        return profile

    def recommend(
        self,
        user_id: str,
        top_n: int,
        blocked: AbstractSet[str] = frozenset(),
    ) -> list[Recommendation]:
        seen = self.matrix.get(user_id)
        if not seen:
            return []

        profile = self.build_profile(user_id)
        if not profile:
            logger.debug(f"Empty content profile for {user_id}")
            return []

        scores: dict[str, float] = {}
        for item_id in sorted(self.embedder.vectors):
            if item_id in seen or item_id in blocked:
                continue
            similarity = cosine_similarity(profile, self.embedder.vectors[item_id])
            if similarity > 0:
                scores[item_id] = similarity

        return rank_scores(scores, top_n, REASON_CONTENT_BASED, ALGORITHM_CONTENT_BASED)


class PopularityRecommender:
    """
    Window-wide bestsellers.

    Items are ranked by their total affinity across all users in the window,
    with the number of distinct buyers breaking ties. Needs no history for
    the target user, so it also serves as the cold-start ranking.
    """

    def __init__(self, matrix: AffinityMatrix):
        self.matrix = matrix
        self.totals: dict[str, float] = {}
        self.buyers: Counter = Counter()
        for user_id in sorted(matrix):
            for item_id, weight in matrix[user_id].items():
                self.totals[item_id] = self.totals.get(item_id, 0.0) + weight
                self.buyers[item_id] += 1

    def recommend(
        self,
        user_id: str,
        top_n: int,
        blocked: AbstractSet[str] = frozenset(),
    ) -> list[Recommendation]:
        if top_n <= 0:
            return []
        seen = self.matrix.get(user_id, {})
        totals = self.totals
        candidates = [
            item_id for item_id, total in totals.items()
            if total > 0 and item_id not in seen and item_id not in blocked
        ]
        candidates.sort(key=lambda item_id: (-totals[item_id], -self.buyers[item_id], item_id))
        return [
            Recommendation(item_id=item_id, score=totals[item_id], reason=REASON_POPULAR, strategy=ALGORITHM_POPULAR)
            for item_id in candidates[:top_n]
        ]
