import asyncio
import sqlite3
import logging
import threading
import time
from contextlib import contextmanager
from datetime import date, timedelta
from typing import Any

from .config import (
    AVAILABLE_STATUS,
    BLOCKING_BOOKING_STATUSES,
    DB_PATH,
    FEEDBACK_TOP_CARS,
    FEEDBACK_WINDOW_DAYS,
    MAX_PEERS,
    MAX_SEARCHES_CONSIDERED,
    MIN_COMMON_CARS,
)
from .data_access import (
    CandidateItem,
    DataAccess,
    PeerCoBooking,
    PeerItemAggregate,
    SearchRecord,
    UserAggregates,
)
from .utils import retry_with_backoff, utcnow_naive

logger = logging.getLogger(__name__)

# SQLite caps bound parameters at 999 on older builds
CHUNK_SIZE = 900


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    SQLite connections must not be shared across threads, so each thread
    (including asyncio.to_thread workers) gets its own connection. Connections
    of threads that have exited are closed on the next periodic sweep.
    """

    def __init__(self, db_path, max_size: int = 50):
        self._db_path = db_path
        self._max_size = max_size

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._transaction_depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _maybe_cleanup(self):
        """Close connections belonging to threads that no longer exist."""
        now = time.time()
        if now - self._last_cleanup < self._cleanup_interval:
            return

        self._last_cleanup = now
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections) - alive_threads

        for thread_id in dead_threads:
            conn = self._connections.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)
            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._last_cleanup = 0
                    self._maybe_cleanup()
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections). "
                            f"Possible connection leak or too many threads."
                        )
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")
            return conn

    def enter_transaction(self) -> bool:
        """Bump this thread's nesting depth; True for the outermost context."""
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 0)
            self._transaction_depth[thread_id] = depth + 1
            return depth == 0

    def exit_transaction(self):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")
            self._connections.clear()
            self._transaction_depth.clear()
            logger.debug("Connection pool closed")


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


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
    Database connection with transaction handling.

    Only the outermost context on a thread commits (or rolls back on error);
    nested contexts share its transaction.
    """
    pool = _get_pool()
    conn = pool.get_connection()
    is_outermost = pool.enter_transaction()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.exit_transaction()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY,
                name TEXT,
                email TEXT,
                age INTEGER,
                preferred_location TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS cars (
                id INTEGER PRIMARY KEY,
                owner_id INTEGER,
                make TEXT,
                model TEXT,
                category TEXT,
                price_per_hour REAL,
                fuel_efficiency REAL,
                availability_score REAL,
                location TEXT,
                status TEXT DEFAULT 'available',
                has_promotion INTEGER DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS bookings (
                id INTEGER PRIMARY KEY,
                user_id INTEGER NOT NULL,
                car_id INTEGER NOT NULL,
                pickup_date TEXT,
                return_date TEXT,
                total_cost REAL,
                status TEXT DEFAULT 'pending',
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS reviews (
                id INTEGER PRIMARY KEY,
                user_id INTEGER,
                car_id INTEGER,
                booking_id INTEGER,
                rating REAL,
                comment TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS user_searches (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                category TEXT,
                price_range TEXT,
                location TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS recommendation_feedback (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                car_id INTEGER NOT NULL,
                feedback REAL NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_cars_status ON cars(status);
            CREATE INDEX IF NOT EXISTS idx_cars_location ON cars(location);
            CREATE INDEX IF NOT EXISTS idx_bookings_user ON bookings(user_id);
            CREATE INDEX IF NOT EXISTS idx_bookings_car ON bookings(car_id);
            CREATE INDEX IF NOT EXISTS idx_bookings_car_status ON bookings(car_id, status);
            CREATE INDEX IF NOT EXISTS idx_reviews_car ON reviews(car_id);
            CREATE INDEX IF NOT EXISTS idx_reviews_booking ON reviews(booking_id);
            CREATE INDEX IF NOT EXISTS idx_searches_user_time ON user_searches(user_id, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_feedback_time ON recommendation_feedback(created_at);
        """)
    logger.debug(f"Initialized database at {DB_PATH}")


def load_user_aggregates(user_id: Any) -> UserAggregates:
    """Booking/review statistics for one user; unknown users get empty aggregates."""
    with get_db(read_only=True) as conn:
        user = conn.execute(
            "SELECT id, age, preferred_location FROM users WHERE id = ?", (user_id,)
        ).fetchone()
        if user is None:
            return UserAggregates(user_id=user_id)

        bookings = conn.execute("""
            SELECT
                COUNT(*) as total_bookings,
                AVG(total_cost) as avg_spending,
                AVG(julianday(return_date) - julianday(pickup_date)) as avg_duration
            FROM bookings
            WHERE user_id = ?
        """, (user_id,)).fetchone()

        categories = conn.execute("""
            SELECT c.category
            FROM bookings b
            JOIN cars c ON b.car_id = c.id
            WHERE b.user_id = ? AND c.category IS NOT NULL
            GROUP BY c.category
            ORDER BY MIN(b.id)
        """, (user_id,)).fetchall()

        given = conn.execute(
            "SELECT AVG(rating) FROM reviews WHERE user_id = ?", (user_id,)
        ).fetchone()[0]
        received = conn.execute("""
            SELECT AVG(r.rating)
            FROM reviews r
            JOIN bookings b ON r.booking_id = b.id
            WHERE b.user_id = ?
        """, (user_id,)).fetchone()[0]

    row = dict(user)
    row.update(dict(bookings))
    row['preferred_categories'] = [r['category'] for r in categories]
    row['given_rating'] = given
    row['received_rating'] = received
    return UserAggregates.from_row(user_id, row)


def load_recent_searches(user_id: Any, max_results: int = MAX_SEARCHES_CONSIDERED) -> list[SearchRecord]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT category, price_range, location, created_at
            FROM user_searches
            WHERE user_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        """, (user_id, max_results)).fetchall()
    return [SearchRecord.from_row(r) for r in rows]


def load_available_cars(
    location_hint: str | None,
    date_range: tuple[date, date] | None = None,
) -> list[CandidateItem]:
    """
    Available cars with rating/review/booking aggregates.

    With a date range, cars holding a confirmed or active booking that
    overlaps it (start <= requested end AND end >= requested start) are
    excluded.
    """
    params: list[Any] = [location_hint or None, AVAILABLE_STATUS]
    query = """
        SELECT
            c.*,
            (SELECT AVG(r.rating) FROM reviews r WHERE r.car_id = c.id) as rating,
            (SELECT COUNT(*) FROM reviews r WHERE r.car_id = c.id) as review_count,
            (SELECT COUNT(*) FROM bookings b WHERE b.car_id = c.id) as booking_count,
            CASE WHEN c.location = ? THEN 1 ELSE 0 END as location_match
        FROM cars c
        WHERE c.status = ?
    """

    if date_range:
        placeholders = ','.join('?' * len(BLOCKING_BOOKING_STATUSES))
        query += f"""
            AND c.id NOT IN (
                SELECT car_id FROM bookings
                WHERE status IN ({placeholders})
                AND date(pickup_date) <= date(?)
                AND date(return_date) >= date(?)
            )
        """
        requested_start, requested_end = date_range
        params.extend(BLOCKING_BOOKING_STATUSES)
        params.extend([requested_end.isoformat(), requested_start.isoformat()])

    query += " ORDER BY c.id"

    with get_db(read_only=True) as conn:
        rows = conn.execute(query, params).fetchall()
    return [CandidateItem.from_row(r) for r in rows]


def load_peer_co_bookings(user_id: Any) -> list[PeerCoBooking]:
    """Users sharing at least MIN_COMMON_CARS distinct booked cars, most overlap first."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT b2.user_id as user_id, COUNT(DISTINCT b2.car_id) as common_cars
            FROM bookings b1
            JOIN bookings b2 ON b1.car_id = b2.car_id
            WHERE b1.user_id = ? AND b2.user_id != ?
            GROUP BY b2.user_id
            HAVING common_cars >= ?
            ORDER BY common_cars DESC, b2.user_id
            LIMIT ?
        """, (user_id, user_id, MIN_COMMON_CARS, MAX_PEERS)).fetchall()
    return [PeerCoBooking.from_row(r) for r in rows]


def load_peer_item_aggregates(peer_user_ids: list[Any], car_ids: list[Any]) -> list[PeerItemAggregate]:
    """Per-car booking counts and average review rating across the given peers."""
    if not peer_user_ids or not car_ids:
        return []

    results = []
    peer_placeholders = ','.join('?' * len(peer_user_ids))
    with get_db(read_only=True) as conn:
        for i in range(0, len(car_ids), CHUNK_SIZE):
            chunk = car_ids[i:i + CHUNK_SIZE]
            car_placeholders = ','.join('?' * len(chunk))
            rows = conn.execute(f"""
                SELECT b.car_id as car_id, COUNT(DISTINCT b.id) as booking_count, AVG(r.rating) as avg_rating
                FROM bookings b
                LEFT JOIN reviews r ON b.id = r.booking_id
                WHERE b.user_id IN ({peer_placeholders})
                AND b.car_id IN ({car_placeholders})
                GROUP BY b.car_id
            """, [*peer_user_ids, *chunk]).fetchall()
            results.extend(PeerItemAggregate.from_row(r) for r in rows)
    return results


@retry_with_backoff(max_retries=3, initial_delay=0.5, exceptions=(sqlite3.OperationalError,))
def record_feedback(user_id: Any, car_id: Any, feedback: float) -> int:
    """Store one feedback signal for a recommended car; returns the row id."""
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO recommendation_feedback (user_id, car_id, feedback, created_at)
            VALUES (?, ?, ?, ?)
        """, (user_id, car_id, float(feedback), utcnow_naive().isoformat()))
        return cursor.lastrowid


def feedback_summary(days: int = FEEDBACK_WINDOW_DAYS, top_n: int = FEEDBACK_TOP_CARS) -> dict:
    """
    Feedback activity over the last ``days`` days.

    Returns totals, unique users, average feedback value and the cars that
    collected the most feedback.
    """
    since = (utcnow_naive() - timedelta(days=days)).isoformat()
    with get_db(read_only=True) as conn:
        totals = conn.execute("""
            SELECT
                COUNT(*) as total_feedback,
                COUNT(DISTINCT user_id) as unique_users,
                AVG(feedback) as avg_feedback
            FROM recommendation_feedback
            WHERE created_at > ?
        """, (since,)).fetchone()

        top_cars = conn.execute("""
            SELECT c.id as id, c.make as make, c.model as model, COUNT(*) as feedback_count
            FROM recommendation_feedback rf
            JOIN cars c ON rf.car_id = c.id
            WHERE rf.created_at > ?
            GROUP BY c.id
            ORDER BY feedback_count DESC, c.id
            LIMIT ?
        """, (since, top_n)).fetchall()

    return {
        'window_days': days,
        'total_feedback': totals['total_feedback'],
        'unique_users': totals['unique_users'],
        'avg_feedback': totals['avg_feedback'],
        'top_cars': [dict(r) for r in top_cars],
    }


def get_stats() -> dict[str, int]:
    """Row counts per table."""
    tables = ('users', 'cars', 'bookings', 'reviews', 'user_searches', 'recommendation_feedback')
    with get_db(read_only=True) as conn:
        return {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in tables}


class SqliteDataAccess(DataAccess):
    """DataAccess over the local SQLite store; queries run in worker threads."""

    async def get_user_aggregates(self, user_id: Any) -> UserAggregates:
        return await asyncio.to_thread(load_user_aggregates, user_id)

    async def get_user_recent_searches(
        self, user_id: Any, max_results: int = MAX_SEARCHES_CONSIDERED
    ) -> list[SearchRecord]:
        return await asyncio.to_thread(load_recent_searches, user_id, max_results)

    async def get_available_candidates(
        self,
        location_hint: str | None,
        date_range: tuple[date, date] | None = None,
    ) -> list[CandidateItem]:
        return await asyncio.to_thread(load_available_cars, location_hint, date_range)

    async def get_peer_co_bookings(self, user_id: Any) -> list[PeerCoBooking]:
        return await asyncio.to_thread(load_peer_co_bookings, user_id)

    async def get_peer_item_aggregates(
        self, peer_user_ids: list[Any], car_ids: list[Any]
    ) -> list[PeerItemAggregate]:
        return await asyncio.to_thread(load_peer_item_aggregates, list(peer_user_ids), list(car_ids))

    async def record_feedback(self, user_id: Any, car_id: Any, feedback: float) -> None:
        await asyncio.to_thread(record_feedback, user_id, car_id, feedback)
