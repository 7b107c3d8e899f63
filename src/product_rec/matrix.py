"""
Sparse user-item affinity matrices built from raw interaction events.

Matrices are nested dicts (user -> item -> weight). A missing item key means
the user never interacted with the item, which is different from a weight of 0.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta

from .config import MAX_INTERACTION_WEIGHT, PRICE_SCALE

logger = logging.getLogger(__name__)

AffinityMatrix = dict[str, dict[str, float]]


@dataclass(frozen=True)
class InteractionEvent:
    """A single user-item interaction (purchase line, product view, ...)."""
    user_id: str
    item_id: str
    weight: float
    timestamp: datetime | None = None


def purchase_weight(quantity: float, unit_price: float, price_scale: float = PRICE_SCALE) -> float:
    """
    Engagement strength of a purchase line: quantity times scaled unit price.

    The result is not capped here; the matrix builder clamps each event.
    """
    if quantity <= 0 or unit_price <= 0:
        return 0.0
    return quantity * (unit_price / price_scale)


def filter_window(
    events: list[InteractionEvent],
    window_days: int,
    now: datetime | None = None,
) -> list[InteractionEvent]:
    """Keep events inside the trailing window. Events without a timestamp are kept."""
    now = now or datetime.now()
    cutoff = now - timedelta(days=window_days)
    return [e for e in events if e.timestamp is None or e.timestamp >= cutoff]


def build_affinity_matrix(
    events: list[InteractionEvent],
    max_weight: float = MAX_INTERACTION_WEIGHT,
) -> AffinityMatrix:
    """
    Group events by user then item, summing clamped weights.

    Each event is clamped to [0, max_weight] before accumulation so a single
    outsized order cannot dominate magnitude-sensitive similarities.
    """
    matrix: AffinityMatrix = {}
    clamped = 0

    for event in events:
        weight = event.weight
        if weight > max_weight:
            weight = max_weight
            clamped += 1
        elif weight < 0:
            weight = 0.0

        user_row = matrix.setdefault(event.user_id, {})
        user_row[event.item_id] = user_row.get(event.item_id, 0.0) + weight

    if clamped:
        logger.debug(f"Clamped {clamped} interaction weights to {max_weight}")
    logger.debug(
        f"Built affinity matrix: {len(matrix)} users from {len(events)} events"
    )
    return matrix


def build_item_user_index(matrix: AffinityMatrix) -> dict[str, set[str]]:
    """Catalog-wide reverse index: item -> set of users who interacted with it."""
    item_users: dict[str, set[str]] = defaultdict(set)
    for user_id, row in matrix.items():
        for item_id in row:
            item_users[item_id].add(user_id)
    return dict(item_users)


def matrix_fingerprint(matrix: AffinityMatrix) -> dict:
    n_interactions = sum(len(row) for row in matrix.values())
    n_items = len({item for row in matrix.values() for item in row})
    return {
        "n_users": len(matrix),
        "n_items": n_items,
        "n_interactions": n_interactions,
    }
