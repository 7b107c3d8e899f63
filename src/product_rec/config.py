"""
Configuration constants for the product recommender.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("PRODUCT_REC_DB", "data/product_rec.db"))

# Interaction window and weighting
INTERACTION_WINDOW_DAYS = _get_int_env("PRODUCT_REC_WINDOW_DAYS", 90, min_val=1)
MAX_INTERACTION_WEIGHT = _get_float_env("PRODUCT_REC_MAX_WEIGHT", 10.0, min_val=0.0)
PRICE_SCALE = 100.0       # Unit prices are divided by this before weighting
VIEW_EVENT_WEIGHT = 0.5   # Flat weight for a product view

# Neighborhoods
DEFAULT_K_NEIGHBORS = _get_int_env("PRODUCT_REC_K_NEIGHBORS", 20, min_val=1)

# Content features
MIN_TOKEN_LENGTH = 4

# Result sizing
DEFAULT_TOP_N = 10
CANDIDATE_MULTIPLIER = 2  # Each hybrid strategy is asked for top_n * this

# Strategy names
ALGORITHM_USER_BASED = "user-based"
ALGORITHM_ITEM_BASED = "item-based"
ALGORITHM_CONTENT_BASED = "content-based"
ALGORITHM_HYBRID = "hybrid"
ALGORITHM_POPULAR = "popular"
ALGORITHMS = (
    ALGORITHM_USER_BASED,
    ALGORITHM_ITEM_BASED,
    ALGORITHM_CONTENT_BASED,
    ALGORITHM_HYBRID,
    ALGORITHM_POPULAR,
)
DEFAULT_ALGORITHM = ALGORITHM_HYBRID

# Hybrid fusion weights
HYBRID_WEIGHTS = {
    ALGORITHM_USER_BASED: 0.4,
    ALGORITHM_ITEM_BASED: 0.4,
    ALGORITHM_CONTENT_BASED: 0.2,
}

# Explanations attached to results
REASON_USER_BASED = "based on similar users' preferences"
REASON_ITEM_BASED = "based on items you liked"
REASON_CONTENT_BASED = "based on your interests"
REASON_SIMILAR_ITEM = "frequently bought together"
REASON_DEFAULT = "recommended for you"
REASON_POPULAR = "popular right now"

# Cache Configuration
DEFAULT_CONTEXT = "general"
CACHE_TTL_HOURS = _get_float_env("PRODUCT_REC_CACHE_TTL_HOURS", 24.0, min_val=0.0)
CACHE_EMPTY_RESULTS = False

# Serve window bestsellers when a personalized strategy finds nothing
POPULAR_FALLBACK = False

# Request path limits
DEADLINE_SECONDS = _get_float_env("PRODUCT_REC_DEADLINE_SECONDS", 5.0, min_val=0.1)
SNAPSHOT_TTL_SECONDS = _get_float_env("PRODUCT_REC_SNAPSHOT_TTL_SECONDS", 900.0, min_val=0.0)

# Source reads
SOURCE_MAX_RETRIES = 3
SOURCE_RETRY_DELAY = 0.2
