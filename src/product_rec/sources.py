"""
Interaction and catalog sources.

The engine only depends on the two protocols below. The SQLite sources read
the tables created by ``database.init_db``; the static sources wrap in-memory
lists for embedding and tests.
"""
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Protocol

from . import database
from .config import SOURCE_MAX_RETRIES, SOURCE_RETRY_DELAY, VIEW_EVENT_WEIGHT
from .errors import DataUnavailableError
from .matrix import InteractionEvent, filter_window, purchase_weight
from .utils import retry_with_backoff

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ItemDescriptor:
    """Read-only catalog entry."""
    item_id: str
    name: str = ""
    category: str = ""
    price: float = 0.0
    tags: tuple[str, ...] = field(default_factory=tuple)
    description: str = ""

    @property
    def text(self) -> str:
        """All free-text fields joined for feature extraction."""
        parts = [self.name, self.category, " ".join(self.tags), self.description]
        return " ".join(p for p in parts if p)


class InteractionSource(Protocol):
    def fetch_interactions(self, window_days: int) -> list[InteractionEvent]:
        ...


class CatalogSource(Protocol):
    def fetch_item_descriptors(self) -> list[ItemDescriptor]:
        ...


class StaticInteractionSource:
    """Serves a fixed list of events, filtered to the requested window."""

    def __init__(self, events: list[InteractionEvent], clock: Callable[[], datetime] = datetime.now):
        self.events = list(events)
        self.clock = clock

    def fetch_interactions(self, window_days: int) -> list[InteractionEvent]:
        return filter_window(self.events, window_days, now=self.clock())


class StaticCatalogSource:
    def __init__(self, items: list[ItemDescriptor]):
        self.items = list(items)

    def fetch_item_descriptors(self) -> list[ItemDescriptor]:
        return list(self.items)


def event_from_row(row: dict) -> InteractionEvent:
    """
    Convert an ``interactions`` row to an event.

    An explicit weight wins; otherwise purchases are weighted by quantity and
    price and views get a flat weight.
    """
    weight = row.get('weight')
    if weight is None:
        if row.get('event_type') == 'view':
            weight = VIEW_EVENT_WEIGHT
        else:
            weight = purchase_weight(row.get('quantity') or 0, row.get('unit_price') or 0)

    occurred_at = row.get('occurred_at')
    return InteractionEvent(
        user_id=str(row['user_id']),
        item_id=str(row['item_id']),
        weight=float(weight),
        timestamp=database.parse_timestamp_naive(occurred_at) if occurred_at else None,
    )


def item_from_row(row: dict) -> ItemDescriptor:
    return ItemDescriptor(
        item_id=str(row['item_id']),
        name=row.get('name') or "",
        category=row.get('category') or "",
        price=float(row.get('price') or 0.0),
        tags=tuple(str(t) for t in row.get('tags') or []),
        description=row.get('description') or "",
    )


class SqliteInteractionSource:
    """Reads the trailing window of the ``interactions`` table."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self.clock = clock

    @retry_with_backoff(
        max_retries=SOURCE_MAX_RETRIES,
        initial_delay=SOURCE_RETRY_DELAY,
        exceptions=(sqlite3.OperationalError,),
    )
    def _load_rows(self, since: datetime) -> list[dict]:
        return database.load_interaction_rows(since)

    def fetch_interactions(self, window_days: int) -> list[InteractionEvent]:
        since = self.clock() - timedelta(days=window_days)
        try:
            rows = self._load_rows(since)
        except sqlite3.Error as e:
            raise DataUnavailableError("interactions table", e) from e
        return [event_from_row(row) for row in rows]


class SqliteCatalogSource:
    """Reads every row of the ``items`` table."""

    @retry_with_backoff(
        max_retries=SOURCE_MAX_RETRIES,
        initial_delay=SOURCE_RETRY_DELAY,
        exceptions=(sqlite3.OperationalError,),
    )
    def _load_rows(self) -> list[dict]:
        return database.load_item_rows()

    def fetch_item_descriptors(self) -> list[ItemDescriptor]:
        try:
            rows = self._load_rows()
        except sqlite3.Error as e:
            raise DataUnavailableError("items table", e) from e
        return [item_from_row(row) for row in rows]
