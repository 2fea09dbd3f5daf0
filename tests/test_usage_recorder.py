"""
Unit tests for best-effort usage recording.
"""

import asyncio
import os
import sqlite3
import tempfile
from datetime import datetime, timezone
from unittest.mock import Mock

from directory_assistant.core.usage_recorder import UsageRecorder
from directory_assistant.storage.models import UsageRecord, UsageSource
from directory_assistant.storage.repository import UsageRepository, initialize_schema


def make_record(usage_id="u1"):
    """Create a test usage record."""
    return UsageRecord(
        usage_id=usage_id,
        timestamp=datetime.now(timezone.utc),
        session_id="s1",
        identifier="user-1",
        question="hola",
        answer="¡Hola!",
        input_tokens=0,
        output_tokens=0,
        cost_usd=0.0,
        latency_ms=3,
        source=UsageSource.CANNED
    )


class TestUsageRecorder:
    """Test the background ledger writer."""

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

    def test_records_are_written(self):
        recorder = UsageRecorder(self.repository)

        async def run():
            recorder.record(make_record("u1"))
            recorder.record(make_record("u2"))
            await recorder.close()

        asyncio.run(run())

        assert {r.usage_id for r in self.repository.fetch_recent()} == {"u1", "u2"}
        assert recorder.dropped == 0

    def test_feedback_waits_for_queued_record(self):
        """Test feedback on a record still in the queue finds it."""
        recorder = UsageRecorder(self.repository)

        async def run():
            recorder.record(make_record("u1"))
            found = await recorder.record_feedback("u1", False)
            await recorder.close()
            return found

        assert asyncio.run(run()) is True
        assert self.repository.get("u1").useful is False

    def test_feedback_unknown_or_empty_id(self):
        recorder = UsageRecorder(self.repository)

        assert asyncio.run(recorder.record_feedback("missing", True)) is False
        assert asyncio.run(recorder.record_feedback("", True)) is False

    def test_write_failure_is_logged_not_raised(self, caplog):
        """Test a failing ledger never fails the caller."""
        repository = Mock()
        repository.insert.side_effect = sqlite3.OperationalError("disk I/O error")
        recorder = UsageRecorder(repository)

        async def run():
            recorder.record(make_record("u1"))
            await recorder.close()

        asyncio.run(run())

        assert recorder.dropped == 1
        assert "usage record write failed" in caplog.text

    def test_full_queue_drops_record(self):
        """Test records beyond the queue bound are dropped."""
        recorder = UsageRecorder(self.repository, max_queue_size=1)

        async def run():
            recorder.record(make_record("u1"))
            recorder.record(make_record("u2"))
            await recorder.close()

        asyncio.run(run())

        assert recorder.dropped == 1
        assert [r.usage_id for r in self.repository.fetch_recent()] == ["u1"]

    def test_record_outside_event_loop_is_dropped(self, caplog):
        """Test recording from synchronous code drops the record without raising."""
        recorder = UsageRecorder(self.repository)

        recorder.record(make_record("u1"))

        assert recorder.dropped == 1
        assert "no running event loop" in caplog.text
        assert self.repository.fetch_recent() == []

    def test_feedback_failure_returns_false(self):
        repository = Mock()
        repository.attach_feedback.side_effect = sqlite3.OperationalError("database is locked")
        recorder = UsageRecorder(repository)

        assert asyncio.run(recorder.record_feedback("u1", True)) is False

    def test_recorder_survives_a_new_event_loop(self):
        """Test records are written when used from successive event loops."""
        recorder = UsageRecorder(self.repository)

        async def write(usage_id):
            recorder.record(make_record(usage_id))
            await recorder.flush()

        asyncio.run(write("u1"))
        asyncio.run(write("u2"))

        assert {r.usage_id for r in self.repository.fetch_recent()} == {"u1", "u2"}
