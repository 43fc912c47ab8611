"""
Unit tests for storage layer.

Tests schema creation, idempotent insertion, range queries and cursors.
"""

import os
import sqlite3
import tempfile
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest

from ai_spend_meter.core.token_counter import TokenCounts
from ai_spend_meter.storage.db import get_connection
from ai_spend_meter.storage.models import CostSource, FileCursor, FileSignature, UsageRecord
from ai_spend_meter.storage.repository import InsertOutcome, StoreError, UsageRepository

BASE = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)


def _record(identity: str, minutes: int = 0, model: str = "claude-sonnet-4-20250514",
            cost: str = "0.01", content_hash: str = None) -> UsageRecord:
    return UsageRecord(
        identity=identity,
        timestamp=BASE + timedelta(minutes=minutes),
        model=model,
        tokens=TokenCounts(input=100, output=50),
        cost=None if cost is None else Decimal(cost),
        cost_source=CostSource.UNPRICED if cost is None else CostSource.CALCULATED,
        content_hash=content_hash or f"hash-{identity}",
        source_file="/logs/session.jsonl",
    )


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self):
        """Verify tables and indexes are created."""
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = os.path.join(temp_dir, "test.db")
            UsageRepository(db_path).initialize_schema()

            conn = get_connection(db_path)
            try:
                tables = {row[0] for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                )}
                assert {"usage_record", "file_cursor"} <= tables

                indexes = {row[0] for row in conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='index'"
                )}
                assert "idx_usage_record_timestamp" in indexes
            finally:
                conn.close()

    def test_schema_creation_is_idempotent(self):
        """Verify initializing twice is harmless."""
        with tempfile.TemporaryDirectory() as temp_dir:
            repository = UsageRepository(os.path.join(temp_dir, "test.db"))
            repository.initialize_schema()
            repository.initialize_schema()
            assert repository.record_count() == 0

    def test_wal_mode(self):
        """Verify connections use write-ahead logging."""
        with tempfile.TemporaryDirectory() as temp_dir:
            conn = get_connection(os.path.join(temp_dir, "test.db"))
            try:
                assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
            finally:
                conn.close()


class TestInsertion:
    """Test insert-if-absent semantics."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.repository = UsageRepository(os.path.join(self.temp_dir, "test.db"))
        self.repository.initialize_schema()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_insert_then_duplicate(self):
        """Verify a second insert of the same identity is a no-op."""
        assert self.repository.insert_if_absent(_record("a")) == InsertOutcome.INSERTED
        assert self.repository.insert_if_absent(_record("a")) == InsertOutcome.ALREADY_PRESENT
        assert self.repository.record_count() == 1

    def test_duplicate_within_batch(self):
        """Verify duplicates inside one batch collapse to one record."""
        outcomes = self.repository.commit_batch([_record("a"), _record("a"), _record("b")])
        assert outcomes == [InsertOutcome.INSERTED, InsertOutcome.ALREADY_PRESENT, InsertOutcome.INSERTED]
        assert self.repository.record_count() == 2

    def test_conflicting_content_keeps_first(self, caplog):
        """Verify an identity clash with different content is logged and the first copy kept."""
        self.repository.insert_if_absent(_record("a", cost="0.01"))
        outcome = self.repository.insert_if_absent(_record("a", cost="9.99", content_hash="other"))

        assert outcome == InsertOutcome.CONFLICT
        assert "Identity conflict" in caplog.text
        stored = self.repository.query(BASE, BASE + timedelta(hours=1))
        assert [r.cost for r in stored] == [Decimal("0.01")]

    def test_round_trip_fields(self):
        """Verify stored records come back with their fields."""
        record = replace(_record("a"), precomputed_cost=Decimal("0.01"), session_id="s1",
                         project_path="/p", cost_source=CostSource.PRECOMPUTED)
        self.repository.insert_if_absent(record)

        stored = self.repository.query(BASE, BASE + timedelta(minutes=1))[0]
        assert stored.identity == "a"
        assert stored.timestamp == BASE
        assert stored.tokens == record.tokens
        assert stored.precomputed_cost == Decimal("0.01")
        assert stored.cost_source == CostSource.PRECOMPUTED
        assert stored.session_id == "s1"

    def test_unpriced_record_stores_null_cost(self):
        """Verify an unpriced record is stored without a cost."""
        self.repository.insert_if_absent(_record("a", cost=None))
        stored = self.repository.query(BASE, BASE + timedelta(minutes=1))[0]
        assert stored.cost is None
        assert stored.cost_source == CostSource.UNPRICED

    def test_commit_failure_raises_store_error(self):
        """Verify sqlite errors during commit surface as StoreError."""
        with patch.object(UsageRepository, "_insert", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(StoreError):
                self.repository.commit_batch([_record("a")])
        assert self.repository.record_count() == 0

    def test_integer_overflow_raises_store_error(self):
        """Verify a value sqlite cannot bind surfaces as StoreError and rolls back."""
        huge = replace(_record("huge"), tokens=TokenCounts(input=2 ** 64))

        with pytest.raises(StoreError):
            self.repository.commit_batch([_record("a"), huge])
        assert self.repository.record_count() == 0


class TestQueries:
    """Test range and aggregate queries."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.repository = UsageRepository(os.path.join(self.temp_dir, "test.db"))
        self.repository.initialize_schema()
        self.repository.commit_batch([
            _record("a", minutes=0),
            _record("b", minutes=30, model="claude-3-opus-20240229", cost="0.10"),
            _record("c", minutes=60),
            _record("d", minutes=90, model="mystery", cost=None),
        ])

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_range_is_half_open(self):
        """Verify start is inclusive and end exclusive."""
        records = self.repository.query(BASE, BASE + timedelta(minutes=60))
        assert sorted(r.identity for r in records) == ["a", "b"]

    def test_range_accepts_other_timezones(self):
        """Verify bounds in a non-UTC zone select the same instants."""
        tz = timezone(timedelta(hours=-5))
        records = self.repository.query(BASE.astimezone(tz), (BASE + timedelta(minutes=31)).astimezone(tz))
        assert sorted(r.identity for r in records) == ["a", "b"]

    def test_model_filter(self):
        """Verify the optional model filter."""
        records = self.repository.query(BASE, BASE + timedelta(hours=2), model="claude-3-opus-20240229")
        assert [r.identity for r in records] == ["b"]

    def test_totals_by_model(self):
        """Verify per-model sums and unpriced counts."""
        totals = {t.model: t for t in self.repository.totals_by_model(BASE, BASE + timedelta(hours=2))}

        sonnet = totals["claude-sonnet-4-20250514"]
        assert sonnet.record_count == 2
        assert sonnet.cost == pytest.approx(0.02)
        assert sonnet.tokens == TokenCounts(input=200, output=100)

        mystery = totals["mystery"]
        assert mystery.unpriced_count == 1
        assert mystery.cost == 0

    def test_earliest_timestamp(self):
        """Verify the oldest record time is reported."""
        assert self.repository.earliest_timestamp() == BASE

    def test_reset_clears_records_and_cursors(self):
        """Verify reset empties both tables."""
        self.repository.save_cursor(FileCursor("/logs/x.jsonl", 10, FileSignature(10, 1)))
        self.repository.reset()
        assert self.repository.record_count() == 0
        assert self.repository.list_cursors() == []

    def test_reprice_unpriced(self):
        """Verify unpriced records gain a cost once their model is priced."""
        updated = self.repository.reprice_unpriced(
            lambda model, tokens: Decimal("0.5") if model == "mystery" else None
        )
        assert updated == 1
        assert self.repository.unpriced_models() == []
        record = self.repository.query(BASE, BASE + timedelta(hours=2), model="mystery")[0]
        assert record.cost == Decimal("0.5")
        assert record.cost_source == CostSource.CALCULATED

    def test_reprice_skips_still_unknown_models(self):
        """Verify records stay unpriced while no price exists."""
        assert self.repository.reprice_unpriced(lambda model, tokens: None) == 0
        assert self.repository.unpriced_models() == ["mystery"]


class TestCursors:
    """Test file cursor persistence."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.repository = UsageRepository(os.path.join(self.temp_dir, "test.db"))
        self.repository.initialize_schema()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_cursor_saved_with_records(self):
        """Verify records and cursor commit together."""
        cursor = FileCursor("/logs/a.jsonl", 120, FileSignature(size=150, mtime_ns=42))
        self.repository.commit_batch([_record("a")], cursor)

        assert self.repository.get_cursor("/logs/a.jsonl") == cursor
        assert self.repository.record_count() == 1

    def test_cursor_update(self):
        """Verify saving again replaces the cursor."""
        self.repository.save_cursor(FileCursor("/logs/a.jsonl", 10, FileSignature(10, 1)))
        self.repository.save_cursor(FileCursor("/logs/a.jsonl", 20, FileSignature(25, 2)))
        assert self.repository.get_cursor("/logs/a.jsonl").offset == 20
        assert len(self.repository.list_cursors()) == 1

    def test_failed_commit_leaves_cursor(self):
        """Verify a failed batch does not advance the cursor."""
        first = FileCursor("/logs/a.jsonl", 10, FileSignature(10, 1))
        self.repository.save_cursor(first)
        with patch.object(UsageRepository, "_insert", side_effect=sqlite3.OperationalError("boom")):
            with pytest.raises(StoreError):
                self.repository.commit_batch([_record("a")], FileCursor("/logs/a.jsonl", 99, FileSignature(99, 2)))
        assert self.repository.get_cursor("/logs/a.jsonl") == first

    def test_delete_cursor(self):
        """Verify cursors can be dropped."""
        self.repository.save_cursor(FileCursor("/logs/a.jsonl", 10, FileSignature(10, 1)))
        self.repository.delete_cursor("/logs/a.jsonl")
        assert self.repository.get_cursor("/logs/a.jsonl") is None

    def test_offset_beyond_size_rejected(self):
        """Verify a cursor cannot point past the observed file size."""
        with pytest.raises(ValueError):
            FileCursor("/logs/a.jsonl", 11, FileSignature(10, 1))
