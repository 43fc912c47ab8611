"""
Repository pattern for data access.

The deduplication store: a persistent archive of usage records keyed by
record identity, plus the per-file cursors of the ingestion coordinator.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from ai_spend_meter.core.token_counter import TokenCounts
from .db import DEFAULT_DB_PATH, get_connection
from .models import CostSource, FileCursor, FileSignature, UsageRecord, format_timestamp

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS usage_record (
    identity TEXT PRIMARY KEY,
    timestamp TEXT NOT NULL,
    model TEXT NOT NULL,
    input_tokens INTEGER NOT NULL DEFAULT 0,
    output_tokens INTEGER NOT NULL DEFAULT 0,
    cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    cost REAL,
    cost_source TEXT NOT NULL,
    precomputed_cost TEXT,
    session_id TEXT,
    project_path TEXT,
    source_file TEXT,
    content_hash TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_usage_record_timestamp ON usage_record(timestamp);
CREATE INDEX IF NOT EXISTS idx_usage_record_model_timestamp ON usage_record(model, timestamp);
CREATE INDEX IF NOT EXISTS idx_usage_record_cost_source ON usage_record(cost_source, model);

CREATE TABLE IF NOT EXISTS file_cursor (
    path TEXT PRIMARY KEY,
    byte_offset INTEGER NOT NULL,
    size INTEGER NOT NULL,
    mtime_ns INTEGER NOT NULL
);
"""

_RECORD_COLUMNS = """
    identity, timestamp, model, input_tokens, output_tokens,
    cache_creation_tokens, cache_read_tokens, cost, cost_source,
    precomputed_cost, session_id, project_path, source_file, content_hash
"""


class StoreError(Exception):
    """Raised when the store cannot persist or read records."""


class InsertOutcome(Enum):
    """Result of an insert-if-absent attempt."""
    INSERTED = "inserted"
    ALREADY_PRESENT = "already_present"
    CONFLICT = "conflict"  # same identity, different content; first kept


@dataclass(frozen=True)
class ModelTotals:
    """Summed usage for one model over a time range."""
    model: str
    record_count: int
    unpriced_count: int
    cost: float
    tokens: TokenCounts


class UsageRepository:
    """Deduplication store backed by SQLite.

    Each public method opens its own connection, so the ingestion worker and
    query callers never share one. WAL journaling gives readers the last
    committed snapshot while a write transaction is open.
    """

    def __init__(self, db_path: str = str(DEFAULT_DB_PATH)):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = str(db_path)

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StoreError(f"Cannot open usage store {self.db_path}: {e}") from e

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        conn = self._connect()
        try:
            conn.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"Cannot initialize schema: {e}") from e
        finally:
            conn.close()

    def insert_if_absent(self, record: UsageRecord) -> InsertOutcome:
        """Insert a single record unless its identity is already stored.

        Args:
            record: Priced usage record

        Returns:
            Outcome of the attempt

        Raises:
            StoreError: If the insert cannot be committed
        """
        return self.commit_batch([record])[0]

    def commit_batch(
        self,
        records: Sequence[UsageRecord],
        cursor: Optional[FileCursor] = None,
    ) -> List[InsertOutcome]:
        """Insert records and optionally save a file cursor in one transaction.

        Either every record and the cursor become visible together or none
        of them do.

        Args:
            records: Priced usage records
            cursor: Cursor to save alongside the records

        Returns:
            One outcome per input record, in order

        Raises:
            StoreError: If the transaction cannot be committed
        """
        if not records and cursor is None:
            return []

        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            outcomes = [self._insert(conn, record) for record in records]
            if cursor is not None:
                self._save_cursor(conn, cursor)
            conn.execute("COMMIT")
            return outcomes
        except (sqlite3.Error, OverflowError) as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreError(f"Failed to commit {len(records)} record(s): {e}") from e
        finally:
            conn.close()

    def _insert(self, conn: sqlite3.Connection, record: UsageRecord) -> InsertOutcome:
        cost_source = record.cost_source or (
            CostSource.UNPRICED if record.cost is None else CostSource.CALCULATED
        )
        cursor = conn.execute(
            f"INSERT OR IGNORE INTO usage_record ({_RECORD_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.identity,
                format_timestamp(record.timestamp),
                record.model,
                record.tokens.input,
                record.tokens.output,
                record.tokens.cache_creation,
                record.tokens.cache_read,
                None if record.cost is None else float(record.cost),
                cost_source.value,
                None if record.precomputed_cost is None else str(record.precomputed_cost),
                record.session_id,
                record.project_path,
                record.source_file,
                record.content_hash,
            ),
        )
        if cursor.rowcount == 1:
            return InsertOutcome.INSERTED

        row = conn.execute(
            "SELECT content_hash, source_file FROM usage_record WHERE identity = ?",
            (record.identity,),
        ).fetchone()
        if row is not None and row[0] != record.content_hash:
            logger.warning(
                "Identity conflict for %s: %s differs from the copy stored from %s; keeping the stored copy",
                record.identity, record.source_file, row[1],
            )
            return InsertOutcome.CONFLICT
        return InsertOutcome.ALREADY_PRESENT

    def query(
        self,
        start: datetime,
        end: datetime,
        model: Optional[str] = None,
    ) -> List[UsageRecord]:
        """Fetch records with start <= timestamp < end.

        Args:
            start: Inclusive lower bound (timezone-aware)
            end: Exclusive upper bound (timezone-aware)
            model: Optional filter for a specific model

        Returns:
            Matching records, in no particular order
        """
        sql = f"SELECT {_RECORD_COLUMNS} FROM usage_record WHERE timestamp >= ? AND timestamp < ?"
        params: List[object] = [format_timestamp(start), format_timestamp(end)]
        if model is not None:
            sql += " AND model = ?"
            params.append(model)
        rows = self._fetch_all(sql, params)
        return [_row_to_record(row) for row in rows]

    def totals_by_model(self, start: datetime, end: datetime) -> List[ModelTotals]:
        """Sum cost and tokens per model for start <= timestamp < end."""
        rows = self._fetch_all(
            """
            SELECT model,
                   COUNT(*),
                   SUM(CASE WHEN cost IS NULL THEN 1 ELSE 0 END),
                   TOTAL(cost),
                   SUM(input_tokens), SUM(output_tokens),
                   SUM(cache_creation_tokens), SUM(cache_read_tokens)
            FROM usage_record
            WHERE timestamp >= ? AND timestamp < ?
            GROUP BY model
            """,
            [format_timestamp(start), format_timestamp(end)],
        )
        return [
            ModelTotals(
                model=row[0],
                record_count=row[1],
                unpriced_count=row[2] or 0,
                cost=float(row[3] or 0),
                tokens=TokenCounts(
                    input=row[4] or 0,
                    output=row[5] or 0,
                    cache_creation=row[6] or 0,
                    cache_read=row[7] or 0,
                ),
            )
            for row in rows
        ]

    def cost_points(self, start: datetime, end: datetime) -> List[Tuple[datetime, float]]:
        """Return (timestamp, cost) for priced records in the range."""
        rows = self._fetch_all(
            "SELECT timestamp, cost FROM usage_record "
            "WHERE timestamp >= ? AND timestamp < ? AND cost IS NOT NULL",
            [format_timestamp(start), format_timestamp(end)],
        )
        return [(datetime.fromisoformat(row[0]), row[1]) for row in rows]

    def tokens_between(self, start: datetime, end: datetime) -> int:
        """Total tokens of every category for start <= timestamp < end."""
        rows = self._fetch_all(
            "SELECT COALESCE(SUM(input_tokens + output_tokens + cache_creation_tokens + cache_read_tokens), 0) "
            "FROM usage_record WHERE timestamp >= ? AND timestamp < ?",
            [format_timestamp(start), format_timestamp(end)],
        )
        return rows[0][0]

    def record_count(self) -> int:
        return self._fetch_all("SELECT COUNT(*) FROM usage_record", [])[0][0]

    def earliest_timestamp(self) -> Optional[datetime]:
        row = self._fetch_all("SELECT MIN(timestamp) FROM usage_record", [])[0]
        return datetime.fromisoformat(row[0]) if row[0] else None

    def reset(self) -> None:
        """Clear all records and all file cursors in one transaction."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM usage_record")
            conn.execute("DELETE FROM file_cursor")
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreError(f"Failed to reset store: {e}") from e
        finally:
            conn.close()
        logger.info("Usage store cleared")

    def get_cursor(self, path: str) -> Optional[FileCursor]:
        rows = self._fetch_all(
            "SELECT path, byte_offset, size, mtime_ns FROM file_cursor WHERE path = ?",
            [path],
        )
        if not rows:
            return None
        path, offset, size, mtime_ns = rows[0]
        return FileCursor(path=path, offset=offset, signature=FileSignature(size=size, mtime_ns=mtime_ns))

    def list_cursors(self) -> List[FileCursor]:
        rows = self._fetch_all("SELECT path, byte_offset, size, mtime_ns FROM file_cursor ORDER BY path", [])
        return [
            FileCursor(path=row[0], offset=row[1], signature=FileSignature(size=row[2], mtime_ns=row[3]))
            for row in rows
        ]

    def save_cursor(self, cursor: FileCursor) -> None:
        self.commit_batch([], cursor)

    def delete_cursor(self, path: str) -> None:
        conn = self._connect()
        try:
            conn.execute("DELETE FROM file_cursor WHERE path = ?", (path,))
        except sqlite3.Error as e:
            raise StoreError(f"Failed to delete cursor for {path}: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def _save_cursor(conn: sqlite3.Connection, cursor: FileCursor) -> None:
        conn.execute(
            """
            INSERT INTO file_cursor (path, byte_offset, size, mtime_ns) VALUES (?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                byte_offset = excluded.byte_offset,
                size = excluded.size,
                mtime_ns = excluded.mtime_ns
            """,
            (cursor.path, cursor.offset, cursor.signature.size, cursor.signature.mtime_ns),
        )

    def unpriced_models(self) -> List[str]:
        rows = self._fetch_all(
            "SELECT DISTINCT model FROM usage_record WHERE cost_source = ? ORDER BY model",
            [CostSource.UNPRICED.value],
        )
        return [row[0] for row in rows]

    def reprice_unpriced(
        self,
        price: Callable[[str, TokenCounts], Optional[Decimal]],
        batch_size: int = 500,
    ) -> int:
        """Recompute cost for unpriced records whose model now has a price.

        Precomputed costs are never touched; only records stored as unpriced
        are candidates.

        Args:
            price: Returns the cost for a model and token counts, or None
            batch_size: Rows updated per transaction

        Returns:
            Number of records that received a cost
        """
        updated = 0
        for model in self.unpriced_models():
            rows = self._fetch_all(
                "SELECT identity, input_tokens, output_tokens, cache_creation_tokens, cache_read_tokens "
                "FROM usage_record WHERE cost_source = ? AND model = ?",
                [CostSource.UNPRICED.value, model],
            )
            changes: List[Tuple[float, str]] = []
            for identity, input_tokens, output_tokens, cache_creation, cache_read in rows:
                tokens = TokenCounts(input_tokens, output_tokens, cache_creation, cache_read)
                cost = price(model, tokens)
                if cost is None:
                    break
                changes.append((float(cost), identity))
            for i in range(0, len(changes), batch_size):
                self._apply_costs(changes[i:i + batch_size])
            updated += len(changes)
        if updated:
            logger.info("Priced %d previously unpriced record(s)", updated)
        return updated

    def _apply_costs(self, changes: Iterable[Tuple[float, str]]) -> None:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.executemany(
                "UPDATE usage_record SET cost = ?, cost_source = ? WHERE identity = ? AND cost_source = ?",
                [(cost, CostSource.CALCULATED.value, identity, CostSource.UNPRICED.value) for cost, identity in changes],
            )
            conn.execute("COMMIT")
        except (sqlite3.Error, OverflowError) as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreError(f"Failed to update costs: {e}") from e
        finally:
            conn.close()

    def _fetch_all(self, sql: str, params: Sequence[object]) -> List[tuple]:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Query failed: {e}") from e
        finally:
            conn.close()


def _row_to_record(row: tuple) -> UsageRecord:
    return UsageRecord(
        identity=row[0],
        timestamp=datetime.fromisoformat(row[1]),
        model=row[2],
        tokens=TokenCounts(input=row[3], output=row[4], cache_creation=row[5], cache_read=row[6]),
        cost=None if row[7] is None else Decimal(str(row[7])),
        cost_source=CostSource(row[8]),
        precomputed_cost=None if row[9] is None else Decimal(row[9]),
        session_id=row[10],
        project_path=row[11],
        source_file=row[12],
        content_hash=row[13],
    )

