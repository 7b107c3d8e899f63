import sqlite3
from datetime import datetime, timedelta

import pytest

from product_rec import sources
from product_rec.errors import DataUnavailableError
from product_rec.matrix import InteractionEvent
from product_rec.sources import (
    ItemDescriptor,
    SqliteCatalogSource,
    SqliteInteractionSource,
    StaticInteractionSource,
    event_from_row,
    item_from_row,
)


def test_item_descriptor_text_joins_fields():
    item = ItemDescriptor("a", name="Desk Lamp", category="lighting", tags=("led", "dimmable"), description="")

    assert item.text == "Desk Lamp lighting led dimmable"


def test_event_from_row_weighting():
    purchase = event_from_row({"user_id": 1, "item_id": 2, "quantity": 2, "unit_price": 50.0})
    view = event_from_row({"user_id": "u", "item_id": "i", "event_type": "view"})
    explicit = event_from_row({"user_id": "u", "item_id": "i", "event_type": "view", "weight": 3.0})

    assert purchase.user_id == "1"
    assert purchase.weight == pytest.approx(1.0)
    assert view.weight == 0.5
    assert explicit.weight == 3.0


def test_item_from_row_defaults():
    item = item_from_row({"item_id": 7, "name": None, "tags": ["a", 1]})

    assert item.item_id == "7"
    assert item.name == ""
    assert item.tags == ("a", "1")
    assert item.price == 0.0


def test_static_source_applies_window(clock):
    events = [
        InteractionEvent("u", "recent", 1.0, clock() - timedelta(days=1)),
        InteractionEvent("u", "old", 1.0, clock() - timedelta(days=400)),
    ]

    fetched = StaticInteractionSource(events, clock=clock).fetch_interactions(90)

    assert [e.item_id for e in fetched] == ["recent"]


def test_sqlite_sources_read_window(fresh_db, clock):
    fresh_db.init_db()
    fresh_db.save_items([
        {"item_id": "a", "name": "Desk Lamp", "tags": ["led"]},
        {"item_id": "b", "name": "Office Chair"},
    ])
    fresh_db.save_interactions([
        {"user_id": "u1", "item_id": "a", "quantity": 1, "unit_price": 200.0,
         "occurred_at": (clock() - timedelta(days=5)).isoformat()},
        {"user_id": "u1", "item_id": "b", "event_type": "view",
         "occurred_at": (clock() - timedelta(days=200)).isoformat()},
    ])

    events = SqliteInteractionSource(clock=clock).fetch_interactions(90)
    items = SqliteCatalogSource().fetch_item_descriptors()

    assert [(e.item_id, e.weight) for e in events] == [("a", 2.0)]
    assert events[0].timestamp == clock() - timedelta(days=5)
    assert [i.item_id for i in items] == ["a", "b"]
    assert items[0].tags == ("led",)


def test_sqlite_source_retries_transient_errors(monkeypatch, clock):
    attempts = {"count": 0}

    def flaky(since):
        attempts["count"] += 1
        if attempts["count"] < 2:
            raise sqlite3.OperationalError("database is locked")
        return [{"user_id": "u", "item_id": "a", "weight": 1.0, "occurred_at": clock().isoformat()}]

    monkeypatch.setattr(sources.database, "load_interaction_rows", flaky)
    monkeypatch.setattr("product_rec.utils.time.sleep", lambda s: None)

    events = SqliteInteractionSource(clock=clock).fetch_interactions(30)

    assert attempts["count"] == 2
    assert len(events) == 1


def test_sqlite_source_failure_raises_data_unavailable(monkeypatch):
    def broken():
        raise sqlite3.DatabaseError("file is not a database")

    monkeypatch.setattr(sources.database, "load_item_rows", broken)

    with pytest.raises(DataUnavailableError) as exc_info:
        SqliteCatalogSource().fetch_item_descriptors()

    assert exc_info.value.details["error_type"] == "DatabaseError"
