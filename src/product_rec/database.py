import sqlite3
import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from .config import DB_PATH

logger = logging.getLogger(__name__)


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse an ISO timestamp into a naive datetime.

    Offsets are dropped so stored values compare cleanly against
    ``datetime.now()``.
    """
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


@dataclass
class _ThreadConnection:
    conn: sqlite3.Connection
    checked_at: float
    depth: int = 0


class ConnectionPool:
    """
    One SQLite connection per thread.

    Connections are re-validated with ``SELECT 1`` after ``health_check_interval``
    seconds and connections owned by finished threads are closed lazily.
    Each slot also tracks how deeply ``get_db`` contexts are nested on that
    thread so only the outermost one commits.
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval
        self._lock = threading.Lock()
        self._slots: dict[int, _ThreadConnection] = {}
        self._pruned_at = time.time()
        self._prune_interval = 60

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    @staticmethod
    def _close_quietly(conn: sqlite3.Connection, thread_id: int) -> None:
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error closing connection for thread {thread_id}: {e}")

    def _prune_dead_threads(self, force: bool = False) -> None:
        now = time.time()
        if not force and now - self._pruned_at < self._prune_interval:
            return
        self._pruned_at = now

        alive = {t.ident for t in threading.enumerate()}
        dead = [tid for tid in self._slots if tid not in alive]
        for tid in dead:
            self._close_quietly(self._slots.pop(tid).conn, tid)
        if dead:
            logger.debug(f"Closed {len(dead)} connections from finished threads")

    def acquire(self) -> _ThreadConnection:
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._prune_dead_threads()
            slot = self._slots.get(thread_id)

            if slot is not None and now - slot.checked_at > self._health_check_interval:
                try:
                    slot.conn.execute("SELECT 1").fetchone()
                    slot.checked_at = now
                except sqlite3.Error:
                    logger.warning(f"Connection for thread {thread_id} failed health check, reconnecting")
                    self._close_quietly(slot.conn, thread_id)
                    slot = None

            if slot is None:
                if len(self._slots) >= self._max_size:
                    self._prune_dead_threads(force=True)
                if len(self._slots) >= self._max_size:
                    raise RuntimeError(f"Connection pool exhausted ({self._max_size} connections)")
                slot = _ThreadConnection(conn=self._connect(), checked_at=now)
                self._slots[thread_id] = slot

            return slot

    def get_connection(self) -> sqlite3.Connection:
        """Connection owned by the calling thread, created on first use."""
        return self.acquire().conn

    def close_all(self):
        """Close every connection (application shutdown)."""
        with self._lock:
            for thread_id, slot in self._slots.items():
                self._close_quietly(slot.conn, thread_id)
            self._slots.clear()
            logger.debug("Connection pool closed")


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS items (
                item_id TEXT PRIMARY KEY,
                name TEXT,
                category TEXT,
                price REAL,
                tags TEXT,          -- JSON list
                description TEXT
            );

            CREATE TABLE IF NOT EXISTS interactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                event_type TEXT NOT NULL DEFAULT 'purchase',
                quantity REAL,
                unit_price REAL,
                weight REAL,        -- explicit weight overrides the derived one
                occurred_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_interactions_user ON interactions(user_id);
            CREATE INDEX IF NOT EXISTS idx_interactions_occurred ON interactions(occurred_at);

            -- One ranked set per (user, context); replaced wholesale on write
            CREATE TABLE IF NOT EXISTS recommendation_cache (
                user_id TEXT NOT NULL,
                context TEXT NOT NULL,
                results TEXT NOT NULL,  -- JSON list of recommendations, in rank order
                generated_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                PRIMARY KEY (user_id, context)
            );

            CREATE INDEX IF NOT EXISTS idx_cache_expires ON recommendation_cache(expires_at);
        """)


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts
    share its transaction.
    """
    slot = _get_pool().acquire()
    is_outermost = slot.depth == 0
    slot.depth += 1

    try:
        yield slot.conn
        if is_outermost and not read_only:
            slot.conn.commit()
    except Exception:
        if is_outermost:
            slot.conn.rollback()
        raise
    finally:
        slot.depth -= 1


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val):
    """Safely load a JSON list from a db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{val[:50]}...': {e}")
        return []


def save_items(items: list[dict]) -> int:
    """Insert or replace catalog items. Returns the number of rows written."""
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO items (item_id, name, category, price, tags, description)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [(
            str(item['item_id']),
            item.get('name'),
            item.get('category'),
            item.get('price'),
            json.dumps(item.get('tags') or []),
            item.get('description'),
        ) for item in items])
    return len(items)


def normalize_timestamp(value) -> str:
    """
    Canonical stored form of a timestamp: naive ISO with a ``T`` separator.

    ``occurred_at`` is compared as text, so every stored value must share
    one format.
    """
    if isinstance(value, datetime):
        dt = value.replace(tzinfo=None) if value.tzinfo else value
    else:
        dt = parse_timestamp_naive(str(value))
    return dt.isoformat()


def save_interactions(rows: list[dict]) -> int:
    """Append interaction rows. ``occurred_at`` defaults to now."""
    now = datetime.now().isoformat()
    with get_db() as conn:
        conn.executemany("""
            INSERT INTO interactions
            (user_id, item_id, event_type, quantity, unit_price, weight, occurred_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, [(
            str(row['user_id']),
            str(row['item_id']),
            row.get('event_type', 'purchase'),
            row.get('quantity'),
            row.get('unit_price'),
            row.get('weight'),
            normalize_timestamp(row['occurred_at']) if row.get('occurred_at') else now,
        ) for row in rows])
    return len(rows)


def load_interaction_rows(since: datetime) -> list[dict]:
    """Load every interaction that happened at or after ``since``."""
    with get_db(read_only=True) as conn:
        cursor = conn.execute("""
            SELECT user_id, item_id, event_type, quantity, unit_price, weight, occurred_at
            FROM interactions
            WHERE occurred_at >= ?
            ORDER BY id
        """, (since.isoformat(),))
        return [dict(row) for row in cursor.fetchall()]


def load_item_rows() -> list[dict]:
    with get_db(read_only=True) as conn:
        cursor = conn.execute("""
            SELECT item_id, name, category, price, tags, description
            FROM items
            ORDER BY item_id
        """)
        rows = [dict(row) for row in cursor.fetchall()]
    for row in rows:
        row['tags'] = load_json(row.get('tags'))
    return rows


def load_user_ids() -> list[str]:
    with get_db(read_only=True) as conn:
        cursor = conn.execute("SELECT DISTINCT user_id FROM interactions ORDER BY user_id")
        return [row[0] for row in cursor.fetchall()]


def replace_cached_recommendations(
    user_id: str,
    context: str,
    results: list[dict],
    generated_at: datetime,
    expires_at: datetime,
) -> None:
    """Replace the cached set for (user_id, context): delete then insert, one transaction."""
    with get_db() as conn:
        conn.execute(
            "DELETE FROM recommendation_cache WHERE user_id = ? AND context = ?",
            (user_id, context),
        )
        conn.execute("""
            INSERT INTO recommendation_cache (user_id, context, results, generated_at, expires_at)
            VALUES (?, ?, ?, ?, ?)
        """, (user_id, context, json.dumps(results), generated_at.isoformat(), expires_at.isoformat()))


def load_cached_recommendations(user_id: str, context: str, now: datetime) -> dict | None:
    """Load the cached set for (user_id, context) unless it has expired."""
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT user_id, context, results, generated_at, expires_at
            FROM recommendation_cache
            WHERE user_id = ? AND context = ?
        """, (user_id, context)).fetchone()

    if not row:
        return None

    expires_at = parse_timestamp_naive(row['expires_at'])
    if expires_at <= now:
        logger.debug(f"Cached recommendations for {user_id}/{context} expired at {expires_at}")
        return None

    return {
        'user_id': row['user_id'],
        'context': row['context'],
        'results': json.loads(row['results']),
        'generated_at': parse_timestamp_naive(row['generated_at']),
        'expires_at': expires_at,
    }


def delete_cached_recommendations(user_id: str, context: str) -> int:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM recommendation_cache WHERE user_id = ? AND context = ?",
            (user_id, context),
        )
        return cursor.rowcount


def purge_expired_recommendations(now: datetime) -> int:
    """
    Delete all cached sets past their expiry.

    Returns:
        Count of cached sets deleted
    """
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM recommendation_cache WHERE expires_at <= ?",
            (now.isoformat(),),
        )
        return cursor.rowcount


def get_stats() -> dict:
    with get_db(read_only=True) as conn:
        return {
            'users': conn.execute("SELECT COUNT(DISTINCT user_id) FROM interactions").fetchone()[0],
            'items': conn.execute("SELECT COUNT(*) FROM items").fetchone()[0],
            'interactions': conn.execute("SELECT COUNT(*) FROM interactions").fetchone()[0],
            'cached_sets': conn.execute("SELECT COUNT(*) FROM recommendation_cache").fetchone()[0],
        }


def run_maintenance(vacuum: bool = True, analyze: bool = True) -> None:
    """
    Run optional VACUUM/ANALYZE after bulk loads or purges.
    Uses a dedicated connection to avoid interfering with pooled transactions.
    """
    if not vacuum and not analyze:
        return

    conn = sqlite3.connect(DB_PATH)
    try:
        if vacuum:
            conn.execute("VACUUM")
        if analyze:
            conn.execute("ANALYZE")
        conn.commit()
    finally:
        conn.close()
