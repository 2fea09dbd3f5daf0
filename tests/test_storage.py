"""
Unit tests for storage layer.

Tests schema creation, usage ledger writes and reads, feedback, admin
stats, the settings row and the marketplace reads.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from directory_assistant.demo.seed_demo_data import seed_demo_data
from directory_assistant.storage.db import get_connection
from directory_assistant.storage.models import UsageRecord, UsageSource
from directory_assistant.storage.repository import (
    MarketplaceRepository,
    SettingsRepository,
    UsageRepository,
    initialize_schema,
    period_start,
)

NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_record(usage_id="u1", timestamp=NOW, identifier="203.0.113.5", question="¿Qué fotógrafos hay?",
                cost=0.001, source=UsageSource.MODEL, **overrides):
    """Create a test usage record."""
    values = dict(
        usage_id=usage_id,
        timestamp=timestamp,
        session_id="s1",
        identifier=identifier,
        question=question,
        answer="Te recomiendo a Charlie Production.",
        input_tokens=800,
        output_tokens=150,
        cost_usd=cost,
        latency_ms=420,
        source=source
    )
    values.update(overrides)
    return UsageRecord(**values)


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify every table is created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)

            conn = get_connection(db_path)
            try:
                tables = {
                    row[0] for row in
                    conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
                }
            finally:
                conn.close()

            for table in ("assistant_usage", "assistant_settings", "rate_limit_counter",
                          "providers", "categories", "provider_reviews",
                          "provider_analytics", "provider_services"):
                assert table in tables

    def test_schema_creation_is_idempotent(self):
        """Verify initializing twice keeps existing rows."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            initialize_schema(db_path)
            UsageRepository(db_path).insert(make_record())
            initialize_schema(db_path)

            assert len(UsageRepository(db_path).fetch_recent()) == 1


class TestUsageRepository:
    """Test usage ledger operations."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = UsageRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_insert_and_get(self):
        """Test inserting a usage record and reading it back."""
        self.repository.insert(make_record(error=None))

        record = self.repository.get("u1")

        assert record is not None
        assert record.identifier == "203.0.113.5"
        assert record.input_tokens == 800
        assert record.output_tokens == 150
        assert record.cost_usd == 0.001
        assert record.source == UsageSource.MODEL
        assert record.useful is None
        assert record.timestamp == NOW

    def test_get_missing_returns_none(self):
        assert self.repository.get("nope") is None

    def test_fallback_record_keeps_error(self):
        """Test that a failed generation stores its error text."""
        self.repository.insert(make_record(
            source=UsageSource.FALLBACK, cost=0.0, error="provider timed out after 15s"
        ))

        record = self.repository.get("u1")

        assert record.source == UsageSource.FALLBACK
        assert record.cost_usd == 0.0
        assert record.error == "provider timed out after 15s"

    def test_duplicate_usage_id_rejected(self):
        """Test that usage ids are unique."""
        import sqlite3
        self.repository.insert(make_record())
        with pytest.raises(sqlite3.IntegrityError):
            self.repository.insert(make_record())

    def test_fetch_recent_newest_first(self):
        """Test ordering and identifier filter."""
        self.repository.insert(make_record("u1", NOW - timedelta(minutes=5)))
        self.repository.insert(make_record("u2", NOW, identifier="user-42"))
        self.repository.insert(make_record("u3", NOW - timedelta(minutes=1)))

        records = self.repository.fetch_recent()
        assert [r.usage_id for r in records] == ["u2", "u3", "u1"]

        filtered = self.repository.fetch_recent(identifier="user-42")
        assert [r.usage_id for r in filtered] == ["u2"]

        assert len(self.repository.fetch_recent(limit=1)) == 1

    def test_attach_feedback(self):
        """Test feedback is stored and is idempotent."""
        self.repository.insert(make_record())

        assert self.repository.attach_feedback("u1", True) is True
        assert self.repository.attach_feedback("u1", True) is True
        assert self.repository.get("u1").useful is True

        assert self.repository.attach_feedback("u1", False) is True
        assert self.repository.get("u1").useful is False

    def test_attach_feedback_unknown_id(self):
        """Test feedback for an unknown usage id reports not found."""
        assert self.repository.attach_feedback("missing", True) is False

    def test_total_cost_since(self):
        """Test spend is summed from the start time onward."""
        self.repository.insert(make_record("u1", NOW - timedelta(days=1), cost=0.5))
        self.repository.insert(make_record("u2", NOW, cost=0.25))
        self.repository.insert(make_record("u3", NOW + timedelta(minutes=1), cost=0.25))

        day_start = NOW.replace(hour=0)
        assert self.repository.total_cost_since(day_start) == 0.5
        assert self.repository.total_cost_since(NOW - timedelta(days=2)) == 1.0

    def test_total_cost_of_empty_ledger(self):
        assert self.repository.total_cost_since(NOW) == 0.0

    def test_naive_timestamps_are_treated_as_utc(self):
        """Test that naive datetimes are stored as UTC."""
        self.repository.insert(make_record(timestamp=datetime(2026, 3, 15, 12, 0, 0)))

        assert self.repository.get("u1").timestamp == NOW


class TestUsageStats:
    """Test admin panel aggregation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = UsageRepository(self.db_path)
        self.repository.insert(make_record("u1", NOW - timedelta(hours=1), cost=0.001, question="Hola"))
        self.repository.insert(make_record("u2", NOW, cost=0.002, question="hola ", identifier="user-7"))
        self.repository.insert(make_record("u3", NOW - timedelta(days=3), cost=0.004, question="¿Hay DJ?"))
        self.repository.insert(make_record("u4", NOW - timedelta(days=20), cost=0.008))

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_today(self):
        """Test today's totals."""
        stats = self.repository.get_usage_stats("today", now=NOW)

        assert stats.period == "today"
        assert stats.total_questions == 2
        assert stats.total_cost_usd == pytest.approx(0.003)
        assert stats.avg_latency_ms == 420
        assert stats.total_input_tokens == 1600
        assert stats.total_output_tokens == 300
        assert stats.unique_identifiers == 2

    def test_top_questions_are_grouped_case_insensitively(self):
        """Test that question variants are counted together."""
        stats = self.repository.get_usage_stats("today", now=NOW)

        assert stats.top_questions == [("hola", 2)]

    def test_week_and_month(self):
        """Test the longer reporting periods."""
        assert self.repository.get_usage_stats("week", now=NOW).total_questions == 3
        # 20 days back falls in the previous calendar month
        assert self.repository.get_usage_stats("month", now=NOW).total_questions == 3

    def test_empty_period(self):
        """Test stats when nothing was asked."""
        stats = self.repository.get_usage_stats("today", now=NOW + timedelta(days=2))

        assert stats.total_questions == 0
        assert stats.total_cost_usd == 0.0
        assert stats.top_questions == []

    def test_invalid_period_raises_error(self):
        with pytest.raises(ValueError, match="period must be one of"):
            self.repository.get_usage_stats("year", now=NOW)

    def test_period_start(self):
        assert period_start("today", NOW) == datetime(2026, 3, 15, tzinfo=timezone.utc)
        assert period_start("week", NOW) == datetime(2026, 3, 9, tzinfo=timezone.utc)
        assert period_start("month", NOW) == datetime(2026, 3, 1, tzinfo=timezone.utc)


class TestSettingsRepository:
    """Test the single settings row."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.repository = SettingsRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults_without_row(self):
        """Test that a fresh database yields default settings."""
        settings = self.repository.get_settings()

        assert settings.enabled is True
        assert settings.rate_limit_per_minute == 2

    def test_update_settings_persists(self):
        """Test partial updates are stored in place."""
        self.repository.update_settings({"enabled": False, "daily_budget_usd": 3.5})
        self.repository.update_settings({"rate_limit_per_hour": 30})

        settings = self.repository.get_settings()
        assert settings.enabled is False
        assert settings.daily_budget_usd == 3.5
        assert settings.rate_limit_per_hour == 30

        conn = get_connection(self.db_path)
        try:
            assert conn.execute("SELECT COUNT(*) FROM assistant_settings").fetchone()[0] == 1
        finally:
            conn.close()

    def test_invalid_update_is_not_stored(self):
        """Test that a rejected update leaves the row unchanged."""
        self.repository.update_settings({"rate_limit_per_day": 10})

        with pytest.raises(ValueError):
            self.repository.update_settings({"rate_limit_per_day": 0})

        assert self.repository.get_settings().rate_limit_per_day == 10


class TestMarketplaceRepository:
    """Test marketplace reads over the demo directory."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        seed_demo_data(self.db_path)
        self.repository = MarketplaceRepository(self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_active_listings(self):
        """Test listings are read with featured providers first."""
        listings = self.repository.fetch_active_listings()

        assert len(listings) == 5
        assert listings[0].featured is True

    def test_inactive_listings_are_excluded(self):
        """Test that deactivated providers are not listed."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE providers SET is_active = 0 WHERE id = 'p-ritmo'")
            conn.commit()
        finally:
            conn.close()

        names = [listing.name for listing in self.repository.fetch_active_listings()]
        assert "DJ Ritmo" not in names

    def test_categories_in_display_order(self):
        categories = self.repository.fetch_categories()

        assert [c.id for c in categories] == ["cat-foto", "cat-musica", "cat-banquetes", "cat-snacks"]

    def test_recent_reviews(self):
        reviews = self.repository.fetch_recent_reviews()

        assert len(reviews) == 8
        assert len(self.repository.fetch_recent_reviews(limit=3)) == 3

    def test_activity_since(self):
        """Test activity is filtered by time."""
        since = datetime.now(timezone.utc) - timedelta(days=7)
        assert len(self.repository.fetch_activity_since(since)) == 25
        assert self.repository.fetch_activity_since(datetime.now(timezone.utc) + timedelta(hours=1)) == []

    def test_service_catalog(self):
        """Test the priced service catalog."""
        catalog = self.repository.fetch_service_catalog()

        assert len(catalog) == 5
        sabor = next(o for o in catalog if o.provider_id == "p-sabor")
        assert sabor.price_min is None
        assert sabor.price_range == "$250 - $450 MXN por persona"
