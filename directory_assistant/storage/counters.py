"""
Rate-limit counter stores.

Counters are kept per (identifier, window) in calendar-aligned UTC buckets.
Checking all windows and incrementing them is one atomic step, so two
concurrent requests from the same identifier can never both take the last
slot of a window.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Dict, Iterable, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import RateLimitCounter

WINDOWS = ("minute", "hour", "day")


def window_reset_at(window: str, now: datetime) -> datetime:
    """End of the bucket of ``window`` that contains ``now``.

    Raises:
        ValueError: If window is not minute, hour or day
    """
    now = now.astimezone(timezone.utc)
    if window == "minute":
        return now.replace(second=0, microsecond=0) + timedelta(minutes=1)
    if window == "hour":
        return now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    if window == "day":
        return now.replace(hour=0, minute=0, second=0, microsecond=0) + timedelta(days=1)
    raise ValueError(f"Unsupported window: {window}")


@dataclass(frozen=True)
class CounterDecision:
    """Outcome of one check-and-increment over every window."""
    allowed: bool
    window: Optional[str] = None
    reset_at: Optional[datetime] = None


def _evaluate(
    existing: Dict[str, Tuple[int, datetime]],
    limits: Dict[str, int],
    now: datetime
) -> Tuple[CounterDecision, Dict[str, Tuple[int, datetime]]]:
    """Decide admission and compute the incremented counters.

    Windows are checked in the order of ``limits``; the first exhausted one
    denies and nothing is incremented.
    """
    incremented: Dict[str, Tuple[int, datetime]] = {}
    for window, limit in limits.items():
        count, reset_at = existing.get(window, (0, None))
        if reset_at is None or reset_at <= now:
            count, reset_at = 0, window_reset_at(window, now)
        if count >= limit:
            return CounterDecision(allowed=False, window=window, reset_at=reset_at), {}
        incremented[window] = (count + 1, reset_at)
    return CounterDecision(allowed=True), incremented


class SQLiteCounterStore:
    """Counters shared by every process using the same database file."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def acquire(self, identifier: str, limits: Dict[str, int], now: datetime) -> CounterDecision:
        """Atomically check every window and take one slot in each.

        ``BEGIN IMMEDIATE`` takes the database write lock before the counters
        are read, so concurrent callers are serialized.

        Raises:
            sqlite3.Error: If the database is unreachable or stays locked
        """
        conn = get_connection(self.db_path)
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                rows = conn.execute(
                    "SELECT window_kind, count, reset_at FROM rate_limit_counter WHERE identifier = ?",
                    (identifier,)
                ).fetchall()
                existing = {row[0]: (row[1], datetime.fromisoformat(row[2])) for row in rows}
                decision, incremented = _evaluate(existing, limits, now)
                for window, (count, reset_at) in incremented.items():
                    conn.execute("""
                        INSERT INTO rate_limit_counter (identifier, window_kind, count, reset_at)
                        VALUES (?, ?, ?, ?)
                        ON CONFLICT (identifier, window_kind)
                        DO UPDATE SET count = excluded.count, reset_at = excluded.reset_at
                    """, (identifier, window, count, reset_at.isoformat()))
                conn.execute("COMMIT")
                return decision
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def release(self, identifier: str, windows: Iterable[str], now: datetime) -> None:
        """Give back one slot in each still-open window."""
        windows = list(windows)
        if not windows:
            return
        conn = get_connection(self.db_path)
        try:
            conn.executemany("""
                UPDATE rate_limit_counter
                SET count = count - 1
                WHERE identifier = ? AND window_kind = ? AND count > 0 AND reset_at > ?
            """, [(identifier, window, now.astimezone(timezone.utc).isoformat()) for window in windows])
            conn.commit()
        finally:
            conn.close()

    def get_counters(self, identifier: str) -> List[RateLimitCounter]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT window_kind, count, reset_at FROM rate_limit_counter WHERE identifier = ?",
                (identifier,)
            ).fetchall()
        finally:
            conn.close()
        return [
            RateLimitCounter(identifier=identifier, window=row[0], count=row[1],
                             reset_at=datetime.fromisoformat(row[2]))
            for row in rows
        ]


class InMemoryCounterStore:
    """Process-local counters for single-process deployments and tests."""

    def __init__(self) -> None:
        self._counters: Dict[Tuple[str, str], Tuple[int, datetime]] = {}
        self._lock = Lock()

    def acquire(self, identifier: str, limits: Dict[str, int], now: datetime) -> CounterDecision:
        with self._lock:
            existing = {
                window: self._counters[(identifier, window)]
                for window in limits
                if (identifier, window) in self._counters
            }
            decision, incremented = _evaluate(existing, limits, now)
            for window, value in incremented.items():
                self._counters[(identifier, window)] = value
            return decision

    def release(self, identifier: str, windows: Iterable[str], now: datetime) -> None:
        with self._lock:
            for window in windows:
                entry = self._counters.get((identifier, window))
                if entry is None:
                    continue
                count, reset_at = entry
                if count > 0 and reset_at > now:
                    self._counters[(identifier, window)] = (count - 1, reset_at)

    def get_counters(self, identifier: str) -> List[RateLimitCounter]:
        with self._lock:
            return [
                RateLimitCounter(identifier=identifier, window=window, count=count, reset_at=reset_at)
                for (ident, window), (count, reset_at) in sorted(self._counters.items())
                if ident == identifier
            ]
