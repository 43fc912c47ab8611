"""
Incremental ingestion of usage logs.

Reads only the unprocessed tail of each changed log file, parses complete
lines, prices the records and commits them together with the file's cursor.
"""

import json
import logging
import os
import stat as stat_module
import threading
import time
from collections import Counter
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Union

from ai_spend_meter.storage.models import CostSource, FileCursor, FileSignature, UsageRecord
from ai_spend_meter.storage.repository import InsertOutcome, UsageRepository
from .parser import Rejected, RejectReason, parse_line
from .pricing_resolver import CostMode, PricingResolver

logger = logging.getLogger(__name__)

# Bytes read per chunk; each chunk is committed with its own cursor advance
DEFAULT_CHUNK_SIZE = 4 * 1024 * 1024


@dataclass
class IngestionReport:
    """Counters for one ingestion pass."""
    parsed: int = 0
    rejected: int = 0
    inserted: int = 0
    duplicates: int = 0
    conflicts: int = 0
    unpriced: int = 0
    files_read: int = 0
    files_skipped: int = 0
    files_truncated: int = 0
    files_missing: int = 0
    files_failed: int = 0
    rejected_by_reason: Counter = field(default_factory=Counter)
    absorbed: bool = False     # another pass was already running
    interrupted: bool = False  # stopped between files on request

    def reject(self, rejection: Rejected) -> None:
        self.rejected += 1
        self.rejected_by_reason[rejection.reason] += 1

    @property
    def malformed(self) -> int:
        return self.rejected_by_reason[RejectReason.MALFORMED_STRUCTURE]


PathLike = Union[str, Path]


class IngestionCoordinator:
    """Runs ingestion passes over candidate log files.

    Passes are serialized: a pass requested while another is running is
    absorbed and returns immediately with ``absorbed`` set.
    """

    def __init__(
        self,
        repository: UsageRepository,
        resolver: PricingResolver,
        tail_grace: timedelta = timedelta(seconds=30),
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        cost_mode: CostMode = CostMode.AUTO,
        wall_clock: Callable[[], float] = time.time,
    ):
        """Initialize the coordinator.

        Args:
            repository: Deduplication store that also holds file cursors
            resolver: Pricing resolver used for records without a cost
            tail_grace: How long an unterminated last line must sit unchanged
                before it is taken as complete
            chunk_size: Maximum bytes read per commit
            cost_mode: How precomputed costs in the logs are treated
            wall_clock: Source of the current epoch time in seconds
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.repository = repository
        self.resolver = resolver
        self.tail_grace = tail_grace
        self.chunk_size = chunk_size
        self.cost_mode = cost_mode
        self._wall_clock = wall_clock
        self._pass_lock = threading.Lock()

    def run_ingestion_pass(
        self,
        candidate_files: Iterable[PathLike],
        cancel: Optional[threading.Event] = None,
    ) -> IngestionReport:
        """Ingest new content from the candidate files.

        Args:
            candidate_files: Paths that may have changed
            cancel: When set, the pass stops before starting the next file

        Returns:
            IngestionReport for the pass

        Raises:
            StoreError: If committing to the store fails; the failing file's
                cursor is left where it was
        """
        report = IngestionReport()
        if not self._pass_lock.acquire(blocking=False):
            logger.debug("Ingestion pass already running; trigger absorbed")
            report.absorbed = True
            return report
        try:
            paths = sorted({os.path.abspath(str(path)) for path in candidate_files})
            for path in paths:
                if cancel is not None and cancel.is_set():
                    report.interrupted = True
                    break
                self._ingest_file(path, report)
        finally:
            self._pass_lock.release()

        if report.inserted or report.rejected or report.files_failed:
            logger.info(
                "Ingestion pass: %d file(s) read, %d parsed, %d inserted, %d duplicate(s), %d rejected",
                report.files_read, report.parsed, report.inserted, report.duplicates, report.rejected,
            )
        return report

    def reprice_unpriced(self) -> int:
        """Price stored records whose model has gained a price since ingestion."""
        with self._pass_lock:
            return self.repository.reprice_unpriced(
                lambda model, tokens: self.resolver.resolve(model, tokens).amount
            )

    def _ingest_file(self, path: str, report: IngestionReport) -> None:
        cursor = self.repository.get_cursor(path)
        try:
            st = os.stat(path)
        except FileNotFoundError:
            if cursor is not None:
                self.repository.delete_cursor(path)
            report.files_missing += 1
            return
        except OSError as e:
            logger.warning("Cannot stat %s: %s", path, e)
            report.files_failed += 1
            return
        if not stat_module.S_ISREG(st.st_mode):
            return

        signature = FileSignature(size=st.st_size, mtime_ns=st.st_mtime_ns)
        offset = 0
        flush_tail = False
        if cursor is not None:
            if cursor.signature == signature:
                if cursor.offset == signature.size or not self._tail_is_stale(st.st_mtime):
                    report.files_skipped += 1
                    return
                # Unchanged since last pass and quiet long enough: take the tail as written
                flush_tail = True
                offset = cursor.offset
            elif signature.size < cursor.signature.size:
                logger.info("%s shrank from %d to %d bytes; re-reading from start",
                            path, cursor.signature.size, signature.size)
                report.files_truncated += 1
            else:
                offset = cursor.offset

        try:
            self._read_from(path, offset, signature, flush_tail, report)
        except OSError as e:
            logger.warning("Cannot read %s: %s", path, e)
            report.files_failed += 1
            return
        report.files_read += 1

    def _read_from(
        self,
        path: str,
        offset: int,
        signature: FileSignature,
        flush_tail: bool,
        report: IngestionReport,
    ) -> None:
        remaining = signature.size - offset
        pending = b""
        with open(path, "rb") as f:
            f.seek(offset)
            while remaining > 0:
                chunk = f.read(min(self.chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                pending += chunk
                end = pending.rfind(b"\n")
                if end < 0:
                    continue
                complete, pending = pending[:end + 1], pending[end + 1:]
                offset += len(complete)
                self._commit(path, complete.splitlines(), offset, signature, report)

        if flush_tail and _is_complete_record(pending):
            offset += len(pending)
            self._commit(path, [pending], offset, signature, report)
            return

        # Record the new signature even when nothing was consumed, so an
        # unchanged file is skipped next time
        self.repository.commit_batch([], FileCursor(path=path, offset=offset, signature=signature))

    def _commit(
        self,
        path: str,
        lines: List[bytes],
        offset: int,
        signature: FileSignature,
        report: IngestionReport,
    ) -> None:
        records = self._parse_lines(path, lines, report)
        outcomes = self.repository.commit_batch(
            records,
            FileCursor(path=path, offset=offset, signature=signature),
        )
        for record, outcome in zip(records, outcomes):
            if outcome is InsertOutcome.INSERTED:
                report.inserted += 1
                if record.cost_source is CostSource.UNPRICED:
                    report.unpriced += 1
            else:
                report.duplicates += 1
                if outcome is InsertOutcome.CONFLICT:
                    report.conflicts += 1

    def _parse_lines(
        self,
        path: str,
        lines: List[bytes],
        report: IngestionReport,
    ) -> List[UsageRecord]:
        records: List[UsageRecord] = []
        for raw in lines:
            if not raw.strip():
                continue
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                report.reject(Rejected(RejectReason.MALFORMED_STRUCTURE, str(e)))
                continue
            result = parse_line(text, source_file=path)
            if isinstance(result, Rejected):
                if result.reason is not RejectReason.UNSUPPORTED_RECORD_TYPE:
                    logger.debug("Rejected line in %s: %s (%s)", path, result.reason.value, result.detail)
                report.reject(result)
                continue
            report.parsed += 1
            records.append(self._price(result))
        return records

    def _price(self, record: UsageRecord) -> UsageRecord:
        resolution = self.resolver.cost_for(
            record.model, record.tokens, record.precomputed_cost, self.cost_mode
        )
        if resolution.is_unpriced:
            return replace(record, cost=None, cost_source=CostSource.UNPRICED)
        if self.cost_mode is CostMode.CALCULATE or record.precomputed_cost is None:
            source = CostSource.CALCULATED
        else:
            source = CostSource.PRECOMPUTED
        return replace(record, cost=resolution.amount, cost_source=source)

    def _tail_is_stale(self, mtime: float) -> bool:
        return self._wall_clock() - mtime >= self.tail_grace.total_seconds()


def _is_complete_record(tail: bytes) -> bool:
    if not tail.strip():
        return False
    try:
        json.loads(tail.decode("utf-8"))
    except ValueError:
        return False
    return True
