"""
Database connection management.

Provides SQLite connections for the usage archive.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = Path.home() / ".ai-spend-meter" / "usage.db"

# Seconds a connection waits on a locked database before failing
BUSY_TIMEOUT = 10.0


def get_connection(db_path: str = str(DEFAULT_DB_PATH)) -> sqlite3.Connection:
    """Create and return a SQLite connection in WAL mode.

    WAL lets readers keep working against the last committed snapshot while
    the ingestion worker holds a write transaction. The connection runs in
    autocommit mode; callers open explicit transactions for batches.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection with WAL journaling and a bounded busy timeout
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    return conn
