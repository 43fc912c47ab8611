"""
Data models for storage layer.

Defines the usage record archived by the deduplication store and the
per-file cursor used for incremental reads.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from ai_spend_meter.core.token_counter import TokenCounts


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC ISO-8601 form; lexical order equals time order."""
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class CostSource(Enum):
    """Where the monetary cost of a record came from."""
    PRECOMPUTED = "precomputed"  # costUSD present in the log line
    CALCULATED = "calculated"    # resolved from the pricing table
    UNPRICED = "unpriced"        # model unknown to every pricing tier


@dataclass(frozen=True)
class UsageRecord:
    """One cost-bearing log entry.

    ``identity`` is the deduplication key and is unique across the store.
    ``timestamp`` is always timezone-aware UTC. ``cost`` stays ``None`` until
    the record has been priced, and remains ``None`` for unpriced records.
    """
    identity: str
    timestamp: datetime
    model: str
    tokens: TokenCounts
    precomputed_cost: Optional[Decimal] = None
    cost: Optional[Decimal] = None
    cost_source: Optional[CostSource] = None
    session_id: Optional[str] = None
    project_path: Optional[str] = None
    source_file: Optional[str] = None
    content_hash: str = ""

    def __post_init__(self):
        """Validate timestamp is timezone-aware."""
        if self.timestamp.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")


@dataclass(frozen=True)
class FileSignature:
    """Modification signature of a log file (size + mtime)."""
    size: int
    mtime_ns: int


@dataclass(frozen=True)
class FileCursor:
    """Incremental-read bookkeeping for one log file.

    ``offset`` is the byte position just past the last fully-consumed line.
    ``signature`` is the file's size/mtime observed when the cursor was saved.
    """
    path: str
    offset: int
    signature: FileSignature

    def __post_init__(self):
        """Validate offset lies within the observed file."""
        if self.offset < 0:
            raise ValueError("offset cannot be negative")
        if self.offset > self.signature.size:
            raise ValueError("offset cannot exceed file size")
