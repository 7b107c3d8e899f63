import hashlib
import json
from dataclasses import dataclass, field

from .config import (
    CACHE_EMPTY_RESULTS,
    CANDIDATE_MULTIPLIER,
    DEADLINE_SECONDS,
    DEFAULT_K_NEIGHBORS,
    INTERACTION_WINDOW_DAYS,
    MAX_INTERACTION_WEIGHT,
    MIN_TOKEN_LENGTH,
    POPULAR_FALLBACK,
    SNAPSHOT_TTL_SECONDS,
)
from .errors import InvalidConfigurationError
from .hybrid import HybridWeights


@dataclass
class EngineConfig:
    """
    Tunables for the recommendation engine.

    Defaults come from ``config`` (and therefore from the environment) so a
    bare ``EngineConfig()`` matches the deployed settings.
    """

    # Trailing interaction window fed into the affinity matrix
    window_days: int = INTERACTION_WINDOW_DAYS

    # Cap applied to each single event before accumulation
    max_interaction_weight: float = MAX_INTERACTION_WEIGHT

    # Neighborhood size for user-based filtering
    k_neighbors: int = DEFAULT_K_NEIGHBORS

    # Tokens shorter than this are ignored by the TF-IDF embedder
    min_token_length: int = MIN_TOKEN_LENGTH

    # Hybrid fusion
    hybrid_weights: HybridWeights = field(default_factory=HybridWeights)
    candidate_multiplier: int = CANDIDATE_MULTIPLIER

    # Cache policy; a None TTL defers to the cache's own
    cache_ttl_hours: float | None = None
    cache_empty_results: bool = CACHE_EMPTY_RESULTS

    # Cold start
    popular_fallback: bool = POPULAR_FALLBACK

    # Request path limits
    deadline_seconds: float = DEADLINE_SECONDS
    snapshot_ttl_seconds: float = SNAPSHOT_TTL_SECONDS

    def __post_init__(self) -> None:
        # Validate eagerly so mistakes fail fast.
        if isinstance(self.hybrid_weights, dict):
            self.hybrid_weights = HybridWeights(
                user_based=self.hybrid_weights.get("user-based", 0.0),
                item_based=self.hybrid_weights.get("item-based", 0.0),
                content_based=self.hybrid_weights.get("content-based", 0.0),
            )
        self.validate()

    def validate(self) -> None:
        if self.window_days <= 0:
            raise InvalidConfigurationError("window_days must be positive")
        if self.max_interaction_weight <= 0:
            raise InvalidConfigurationError("max_interaction_weight must be positive")
        if self.k_neighbors <= 0:
            raise InvalidConfigurationError("k_neighbors must be positive")
        if self.min_token_length <= 0:
            raise InvalidConfigurationError("min_token_length must be positive")
        if self.candidate_multiplier < 1:
            raise InvalidConfigurationError("candidate_multiplier must be at least 1")
        if self.cache_ttl_hours is not None and self.cache_ttl_hours < 0:
            raise InvalidConfigurationError("cache_ttl_hours must be non-negative")
        if self.deadline_seconds <= 0:
            raise InvalidConfigurationError("deadline_seconds must be positive")
        if self.snapshot_ttl_seconds < 0:
            raise InvalidConfigurationError("snapshot_ttl_seconds must be non-negative")
        if not isinstance(self.hybrid_weights, HybridWeights):
            raise InvalidConfigurationError("hybrid_weights must be HybridWeights or a dict of weights")

    @property
    def fingerprint(self) -> str:
        """Short hash of the settings that change what a snapshot contains."""
        payload = {
            "window_days": self.window_days,
            "max_interaction_weight": self.max_interaction_weight,
            "k_neighbors": self.k_neighbors,
            "min_token_length": self.min_token_length,
        }
        blob = json.dumps(payload, sort_keys=True)
        return hashlib.sha1(blob.encode("utf-8")).hexdigest()[:12]
