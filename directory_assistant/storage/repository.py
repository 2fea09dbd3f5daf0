"""
Repository pattern for data access.

Handles database operations and data persistence logic.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from directory_assistant.config.loader import AssistantSettings

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ActivityEvent,
    Category,
    Listing,
    Review,
    ServiceOffering,
    UsageRecord,
    UsageSource,
    UsageStats,
)

STATS_PERIODS = {"today", "week", "month"}

_USAGE_COLUMNS = """
    usage_id, timestamp, session_id, identifier, question, answer,
    input_tokens, output_tokens, cost_usd, latency_ms, source, error, useful
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every table the assistant reads or writes, if missing.

    The marketplace tables belong to the directory's CRUD side; they are
    created here so a fresh database (tests, demo) is usable on its own.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS assistant_usage (
                usage_id TEXT PRIMARY KEY,
                timestamp TEXT NOT NULL,
                session_id TEXT NOT NULL,
                identifier TEXT NOT NULL,
                question TEXT NOT NULL,
                answer TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                cost_usd REAL NOT NULL,
                latency_ms INTEGER NOT NULL,
                source TEXT NOT NULL,
                error TEXT,
                useful INTEGER
            );
            CREATE INDEX IF NOT EXISTS idx_assistant_usage_timestamp
                ON assistant_usage (timestamp);

            CREATE TABLE IF NOT EXISTS assistant_settings (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                enabled INTEGER NOT NULL,
                daily_budget_usd REAL NOT NULL,
                monthly_budget_usd REAL NOT NULL,
                rate_limit_per_minute INTEGER NOT NULL,
                rate_limit_per_hour INTEGER NOT NULL,
                rate_limit_per_day INTEGER NOT NULL,
                max_tokens_per_question INTEGER NOT NULL,
                max_conversation_turns INTEGER NOT NULL,
                welcome_message TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS rate_limit_counter (
                identifier TEXT NOT NULL,
                window_kind TEXT NOT NULL,
                count INTEGER NOT NULL,
                reset_at TEXT NOT NULL,
                PRIMARY KEY (identifier, window_kind)
            );

            CREATE TABLE IF NOT EXISTS providers (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                city TEXT,
                is_premium INTEGER NOT NULL DEFAULT 0,
                featured INTEGER NOT NULL DEFAULT 0,
                is_verified INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                description TEXT,
                whatsapp TEXT
            );
            CREATE TABLE IF NOT EXISTS categories (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                slug TEXT NOT NULL,
                display_order INTEGER NOT NULL DEFAULT 0
            );
            CREATE TABLE IF NOT EXISTS provider_reviews (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider_id TEXT NOT NULL,
                rating INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS provider_analytics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS provider_services (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                provider_id TEXT NOT NULL,
                category_id TEXT,
                service_name TEXT,
                price_min REAL,
                price_max REAL,
                price_range TEXT,
                description TEXT
            );
        """)
        conn.commit()
    finally:
        conn.close()


def _utc_iso(moment: datetime) -> str:
    """Serialize a timestamp as UTC ISO text so string order is time order."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


def _parse_ts(raw: str) -> datetime:
    parsed = datetime.fromisoformat(raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def period_start(period: str, now: datetime) -> datetime:
    """Start of an admin reporting period ending at ``now``.

    Raises:
        ValueError: If period is not one of today, week, month
    """
    if period not in STATS_PERIODS:
        raise ValueError(f"period must be one of: {sorted(STATS_PERIODS)}")
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        return day_start
    if period == "week":
        return day_start - timedelta(days=6)
    return day_start.replace(day=1)


class UsageRepository:
    """Usage ledger: one row per question/answer exchange."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, record: UsageRecord) -> None:
        """Append a usage record.

        Args:
            record: The exchange to store
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO assistant_usage ({_USAGE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.usage_id,
                _utc_iso(record.timestamp),
                record.session_id,
                record.identifier,
                record.question,
                record.answer,
                record.input_tokens,
                record.output_tokens,
                record.cost_usd,
                record.latency_ms,
                record.source.value,
                record.error,
                None if record.useful is None else int(record.useful)
            ))
            conn.commit()
        finally:
            conn.close()

    def attach_feedback(self, usage_id: str, useful: bool) -> bool:
        """Set the feedback flag of one usage row.

        Idempotent: repeating the call with the same value is harmless.

        Returns:
            True if a row with ``usage_id`` exists
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE assistant_usage SET useful = ? WHERE usage_id = ?",
                (int(useful), usage_id)
            )
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def get(self, usage_id: str) -> Optional[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_USAGE_COLUMNS} FROM assistant_usage WHERE usage_id = ?",
                (usage_id,)
            ).fetchone()
            return _row_to_usage(row) if row else None
        finally:
            conn.close()

    def fetch_recent(self, identifier: Optional[str] = None, limit: int = 100) -> List[UsageRecord]:
        """Fetch recent usage records, newest first.

        Args:
            identifier: Optional filter for one requester
            limit: Maximum number of records to return
        """
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {_USAGE_COLUMNS} FROM assistant_usage"
            params: List[Any] = []
            if identifier:
                query += " WHERE identifier = ?"
                params.append(identifier)
            query += " ORDER BY timestamp DESC LIMIT ?"
            params.append(limit)
            return [_row_to_usage(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def total_cost_since(self, start: datetime) -> float:
        """Cumulative spend of every exchange at or after ``start``."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT SUM(cost_usd) FROM assistant_usage WHERE timestamp >= ?",
                (_utc_iso(start),)
            ).fetchone()
            return float(row[0] or 0)
        finally:
            conn.close()

    def get_usage_stats(self, period: str, now: Optional[datetime] = None, top_n: int = 5) -> UsageStats:
        """Aggregate usage for the admin panel.

        Args:
            period: One of "today", "week", "month"
            now: Reference time (defaults to the current UTC time)
            top_n: Number of most frequent questions to include

        Returns:
            UsageStats for the period
        """
        now = now or datetime.now(timezone.utc)
        cutoff = _utc_iso(period_start(period, now))
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT
                    COUNT(*),
                    SUM(cost_usd),
                    AVG(latency_ms),
                    SUM(input_tokens),
                    SUM(output_tokens),
                    COUNT(DISTINCT identifier)
                FROM assistant_usage
                WHERE timestamp >= ?
            """, (cutoff,)).fetchone()
            top_rows = conn.execute("""
                SELECT LOWER(TRIM(question)) AS q, COUNT(*) AS frequency
                FROM assistant_usage
                WHERE timestamp >= ?
                GROUP BY q
                ORDER BY frequency DESC, q ASC
                LIMIT ?
            """, (cutoff, top_n)).fetchall()
        finally:
            conn.close()

        return UsageStats(
            period=period,
            total_questions=row[0] or 0,
            total_cost_usd=float(row[1] or 0),
            avg_latency_ms=float(row[2] or 0),
            total_input_tokens=row[3] or 0,
            total_output_tokens=row[4] or 0,
            unique_identifiers=row[5] or 0,
            top_questions=[(question, frequency) for question, frequency in top_rows]
        )


def _row_to_usage(row) -> UsageRecord:
    return UsageRecord(
        usage_id=row[0],
        timestamp=_parse_ts(row[1]),
        session_id=row[2],
        identifier=row[3],
        question=row[4],
        answer=row[5],
        input_tokens=row[6],
        output_tokens=row[7],
        cost_usd=row[8],
        latency_ms=row[9],
        source=UsageSource(row[10]),
        error=row[11],
        useful=None if row[12] is None else bool(row[12])
    )


_SETTINGS_COLUMNS = [
    "enabled", "daily_budget_usd", "monthly_budget_usd",
    "rate_limit_per_minute", "rate_limit_per_hour", "rate_limit_per_day",
    "max_tokens_per_question", "max_conversation_turns", "welcome_message",
]


class SettingsRepository:
    """The single assistant settings row.

    ``get_settings`` is what the assistant reads on every question;
    ``update_settings`` is reserved for the admin panel.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_settings(self) -> AssistantSettings:
        """Return the active settings, or the defaults when no row exists."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {', '.join(_SETTINGS_COLUMNS)} FROM assistant_settings WHERE id = 1"
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return AssistantSettings()
        values = dict(zip(_SETTINGS_COLUMNS, row))
        values["enabled"] = bool(values["enabled"])
        return AssistantSettings(**values)

    def update_settings(self, partial: Dict[str, Any]) -> AssistantSettings:
        """Apply a partial update in place and return the resulting settings.

        Raises:
            ValueError: If a key is unknown or a value is invalid
        """
        updated = self.get_settings().with_updates(partial)
        values = [getattr(updated, column) for column in _SETTINGS_COLUMNS]
        values[0] = int(updated.enabled)
        placeholders = ", ".join("?" for _ in range(len(_SETTINGS_COLUMNS) + 1))
        assignments = ", ".join(f"{column} = excluded.{column}" for column in _SETTINGS_COLUMNS)
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT INTO assistant_settings (id, {', '.join(_SETTINGS_COLUMNS)}, updated_at)
                VALUES (1, {placeholders})
                ON CONFLICT (id) DO UPDATE SET {assignments}, updated_at = excluded.updated_at
            """, (*values, _utc_iso(datetime.now(timezone.utc))))
            conn.commit()
        finally:
            conn.close()
        return updated


class MarketplaceRepository:
    """Read access to the directory tables the assistant summarizes.

    Each method is an independent query so the context builder can run
    them concurrently.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def fetch_active_listings(self) -> List[Listing]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT id, name, city, is_premium, featured, is_verified, description, whatsapp
                FROM providers
                WHERE is_active = 1
                ORDER BY featured DESC, is_premium DESC, name ASC
            """).fetchall()
        finally:
            conn.close()
        return [
            Listing(
                id=row[0], name=row[1], city=row[2],
                is_premium=bool(row[3]), featured=bool(row[4]), is_verified=bool(row[5]),
                description=row[6], whatsapp=row[7]
            )
            for row in rows
        ]

    def fetch_categories(self) -> List[Category]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT id, name, slug, display_order FROM categories ORDER BY display_order, name"
            ).fetchall()
        finally:
            conn.close()
        return [Category(id=row[0], name=row[1], slug=row[2], display_order=row[3]) for row in rows]

    def fetch_recent_reviews(self, limit: int = 50) -> List[Review]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT provider_id, rating, created_at FROM provider_reviews "
                "ORDER BY created_at DESC LIMIT ?",
                (limit,)
            ).fetchall()
        finally:
            conn.close()
        return [Review(provider_id=row[0], rating=row[1], created_at=_parse_ts(row[2])) for row in rows]

    def fetch_activity_since(self, since: datetime, limit: int = 100) -> List[ActivityEvent]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT provider_id, event_type, created_at FROM provider_analytics "
                "WHERE created_at >= ? ORDER BY created_at DESC LIMIT ?",
                (_utc_iso(since), limit)
            ).fetchall()
        finally:
            conn.close()
        return [
            ActivityEvent(provider_id=row[0], event_type=row[1], created_at=_parse_ts(row[2]))
            for row in rows
        ]

    def fetch_service_catalog(self, limit: int = 200) -> List[ServiceOffering]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT provider_id, category_id, service_name, price_min, price_max,
                       price_range, description
                FROM provider_services
                ORDER BY id
                LIMIT ?
            """, (limit,)).fetchall()
        finally:
            conn.close()
        return [
            ServiceOffering(
                provider_id=row[0], category_id=row[1], service_name=row[2],
                price_min=row[3], price_max=row[4], price_range=row[5], description=row[6]
            )
            for row in rows
        ]
