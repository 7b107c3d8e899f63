import threading
from datetime import datetime, timedelta

from product_rec import database


def test_init_db_creates_tables(fresh_db):
    db = fresh_db
    db.init_db()

    with db.get_db(read_only=True) as conn:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")}

    assert {"items", "interactions", "recommendation_cache"} <= tables


def test_save_and_load_rows(fresh_db):
    db = fresh_db
    db.init_db()

    db.save_items([{"item_id": 1, "name": "Kettle", "price": 30.0, "tags": ["kitchen", "electric"]}])
    db.save_interactions([
        {"user_id": "alice", "item_id": 1, "quantity": 1, "unit_price": 30.0},
        {"user_id": "bob", "item_id": 1, "event_type": "view"},
    ])

    items = db.load_item_rows()
    rows = db.load_interaction_rows(datetime.now() - timedelta(days=1))

    assert items[0]["item_id"] == "1"
    assert items[0]["tags"] == ["kitchen", "electric"]
    assert [r["user_id"] for r in rows] == ["alice", "bob"]
    assert rows[1]["event_type"] == "view"
    assert db.load_user_ids() == ["alice", "bob"]


def test_save_items_replaces_existing(fresh_db):
    db = fresh_db
    db.init_db()

    db.save_items([{"item_id": "a", "name": "Old"}])
    db.save_items([{"item_id": "a", "name": "New"}])

    items = db.load_item_rows()
    assert len(items) == 1
    assert items[0]["name"] == "New"


def test_cached_recommendations_respect_expiry(fresh_db):
    db = fresh_db
    db.init_db()
    now = datetime(2024, 1, 1, 12, 0, 0)

    db.replace_cached_recommendations("u1", "general", [{"item_id": "a", "score": 1.0}], now, now + timedelta(hours=1))

    assert db.load_cached_recommendations("u1", "general", now)["results"][0]["item_id"] == "a"
    assert db.load_cached_recommendations("u1", "general", now + timedelta(hours=1)) is None
    assert db.delete_cached_recommendations("u1", "general") == 1
    assert db.delete_cached_recommendations("u1", "general") == 0


def test_stats_and_maintenance(fresh_db):
    db = fresh_db
    db.init_db()
    db.save_interactions([{"user_id": "u1", "item_id": "a", "weight": 1.0}])

    stats = db.get_stats()
    db.run_maintenance(vacuum=True, analyze=True)

    assert stats == {"users": 1, "items": 0, "interactions": 1, "cached_sets": 0}


def test_each_thread_gets_its_own_connection(fresh_db):
    db = fresh_db
    db.init_db()
    pool = db._get_pool()
    seen = []
    barrier = threading.Barrier(3)

    def grab():
        seen.append(id(pool.get_connection()))
        # Keep all threads alive until each has its connection
        barrier.wait(timeout=5)

    threads = [threading.Thread(target=grab) for _ in range(3)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(seen)) == 3
    assert pool.get_connection() is pool.get_connection()


def test_load_json_tolerates_bad_values():
    assert database.load_json(None) == []
    assert database.load_json(["a"]) == ["a"]
    assert database.load_json('["a", "b"]') == ["a", "b"]
    assert database.load_json("{not json") == []


def test_save_interactions_normalizes_occurred_at(fresh_db):
    db = fresh_db
    db.init_db()
    db.save_interactions([
        {"user_id": "u1", "item_id": "a", "weight": 1.0, "occurred_at": "2024-05-30 12:00:00"},
        {"user_id": "u2", "item_id": "a", "weight": 1.0, "occurred_at": "2024-05-30T18:30:00+02:00"},
        {"user_id": "u3", "item_id": "a", "weight": 1.0, "occurred_at": datetime(2024, 5, 29, 8, 0)},
    ])

    rows = db.load_interaction_rows(datetime(2024, 5, 30, 9, 0))

    assert [r["user_id"] for r in rows] == ["u1", "u2"]
    assert rows[0]["occurred_at"] == "2024-05-30T12:00:00"
    assert rows[1]["occurred_at"] == "2024-05-30T18:30:00"


def test_space_separated_timestamp_on_window_boundary_is_kept(fresh_db):
    db = fresh_db
    db.init_db()
    # "2024-05-30 12:00:00" sorts before "2024-05-30T00:00:00" as raw text
    db.save_interactions([
        {"user_id": "u1", "item_id": "a", "weight": 1.0, "occurred_at": "2024-05-30 12:00:00"},
    ])

    rows = db.load_interaction_rows(datetime(2024, 5, 30))

    assert len(rows) == 1
