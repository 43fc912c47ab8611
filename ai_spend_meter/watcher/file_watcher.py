"""
Log directory watching.

Wraps a watchdog observer: raw change notifications are filtered down to
session log files, coalesced by a debounce window and handed to a callback
as sorted, de-duplicated batches of paths. File contents are never read here.
"""

import logging
import os
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

logger = logging.getLogger(__name__)

LOG_SUFFIX = ".jsonl"

# Access-only notifications; nothing was written
_IGNORED_EVENT_TYPES = frozenset({"opened", "closed_no_write"})


def is_log_file(path: str) -> bool:
    """True for a non-hidden ``*.jsonl`` file name."""
    name = os.path.basename(path)
    return name.endswith(LOG_SUFFIX) and not name.startswith(".")


def discover_log_files(directories: Iterable[str]) -> List[str]:
    """Find every log file below the given directories.

    Hidden files and hidden directories are skipped. Missing directories
    are ignored.

    Args:
        directories: Root directories to walk

    Returns:
        Sorted list of absolute file paths
    """
    found = set()
    for directory in directories:
        if not os.path.isdir(directory):
            continue
        for dirpath, dirnames, filenames in os.walk(directory):
            dirnames[:] = [d for d in dirnames if not d.startswith(".")]
            for filename in filenames:
                if is_log_file(filename):
                    found.add(os.path.abspath(os.path.join(dirpath, filename)))
    return sorted(found)


class Debouncer:
    """Collects paths until the event stream has been quiet for ``window`` seconds.

    A stream that never goes quiet is still flushed once ``max_delay`` seconds
    have passed since the oldest pending path arrived.
    """

    def __init__(self, window: float = 0.5, max_delay: float = 5.0):
        if window < 0:
            raise ValueError("window cannot be negative")
        if max_delay < window:
            raise ValueError("max_delay must be >= window")
        self.window = window
        self.max_delay = max_delay
        self._lock = threading.Lock()
        self._pending: Dict[str, None] = {}
        self._first_at: Optional[float] = None
        self._last_at: Optional[float] = None

    def add(self, path: str, now: float) -> None:
        with self._lock:
            if not self._pending:
                self._first_at = now
            self._pending[path] = None
            self._last_at = now

    def due_batch(self, now: float) -> List[str]:
        """Return and clear the pending batch if it is due, else an empty list."""
        with self._lock:
            if not self._pending:
                return []
            quiet = now - self._last_at >= self.window
            overdue = now - self._first_at >= self.max_delay
            if not (quiet or overdue):
                return []
            batch = sorted(self._pending)
            self._pending.clear()
            self._first_at = self._last_at = None
            return batch

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)


class WatcherState(Enum):
    """Lifecycle of a FileWatcher."""
    IDLE = "idle"
    WATCHING = "watching"
    UNAVAILABLE = "unavailable"  # notification channel lost; terminal
    STOPPED = "stopped"


class _LogEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: "FileWatcher", root: str):
        super().__init__()
        self._watcher = watcher
        self._root = root

    def on_any_event(self, event: FileSystemEvent) -> None:
        self._watcher._handle_event(event, self._root)


class FileWatcher:
    """Watches log directories and emits debounced batches of changed files.

    Directories that do not exist yet are attached once they appear. Batches
    are delivered on the watcher's own dispatch thread; ``on_batch`` should
    hand them off rather than do heavy work.
    """

    def __init__(
        self,
        directories: Iterable[str],
        on_batch: Callable[[List[str]], None],
        on_unavailable: Optional[Callable[[str], None]] = None,
        debounce_seconds: float = 0.5,
        max_delay_seconds: float = 5.0,
        attach_retry_seconds: float = 5.0,
        observer_factory: Callable[[], Observer] = Observer,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the watcher.

        Args:
            directories: Log directories to watch recursively
            on_batch: Receives each sorted batch of changed log file paths
            on_unavailable: Called once with a reason if notifications are lost
            debounce_seconds: Quiet period that closes a batch
            max_delay_seconds: Upper bound on how long a path may wait
            attach_retry_seconds: How often missing directories are re-checked
            observer_factory: Builds the watchdog observer
            clock: Monotonic time source in seconds
        """
        self.directories = sorted({os.path.abspath(os.path.expanduser(str(d))) for d in directories})
        self.on_batch = on_batch
        self.on_unavailable = on_unavailable
        self.debouncer = Debouncer(debounce_seconds, max(max_delay_seconds, debounce_seconds))
        self.attach_retry_seconds = attach_retry_seconds
        self._observer_factory = observer_factory
        self._clock = clock

        self._state = WatcherState.IDLE
        self._state_lock = threading.Lock()
        self._observer = None
        self._watches: Dict[str, object] = {}
        self._stop_event = threading.Event()
        self._dispatch_thread: Optional[threading.Thread] = None
        self._last_attach_attempt = 0.0

    @property
    def state(self) -> WatcherState:
        return self._state

    @property
    def attached_directories(self) -> List[str]:
        return sorted(self._watches)

    def start(self, dispatch: bool = True) -> None:
        """Attach to existing directories and start delivering batches.

        Args:
            dispatch: Run the dispatch thread; when False the caller drives
                delivery by calling poll()
        """
        with self._state_lock:
            if self._state is not WatcherState.IDLE:
                raise RuntimeError(f"Cannot start watcher in state {self._state.value}")
            self._observer = self._observer_factory()
            self._state = WatcherState.WATCHING

        self._attach_missing()
        self._observer.start()
        if dispatch:
            self._dispatch_thread = threading.Thread(
                target=self._dispatch_loop, name="file-watcher", daemon=True
            )
            self._dispatch_thread.start()
        logger.info("Watching %d of %d log directories", len(self._watches), len(self.directories))

    def stop(self, timeout: float = 5.0) -> None:
        """Release all OS watches and stop the dispatch thread."""
        self._stop_event.set()
        observer = self._observer
        if observer is not None:
            observer.unschedule_all()
            observer.stop()
            if observer.is_alive():
                observer.join(timeout)
        if self._dispatch_thread is not None and self._dispatch_thread is not threading.current_thread():
            self._dispatch_thread.join(timeout)
        self._watches.clear()
        with self._state_lock:
            if self._state is not WatcherState.UNAVAILABLE:
                self._state = WatcherState.STOPPED

    def poll(self) -> None:
        """One dispatch step: health check, lazy attach and batch delivery."""
        if self._state is not WatcherState.WATCHING:
            return
        if self._observer is not None and not self._observer.is_alive():
            self._mark_unavailable("file notification observer stopped")
            return
        for directory in list(self._watches):
            if os.path.isdir(directory) and not os.access(directory, os.R_OK | os.X_OK):
                self._mark_unavailable(f"read access to {directory} was withdrawn")
                return

        now = self._clock()
        if now - self._last_attach_attempt >= self.attach_retry_seconds:
            self._attach_missing()

        batch = self.debouncer.due_batch(now)
        if batch and self._state is WatcherState.WATCHING:
            logger.debug("Emitting batch of %d changed file(s)", len(batch))
            self.on_batch(batch)

    def _dispatch_loop(self) -> None:
        tick = max(min(self.debouncer.window / 2, 0.25), 0.05)
        while not self._stop_event.wait(tick):
            try:
                self.poll()
            except Exception:
                logger.exception("File watcher dispatch failed")
            if self._state is not WatcherState.WATCHING:
                break

    def _attach_missing(self) -> None:
        self._last_attach_attempt = self._clock()
        for directory in self.directories:
            if directory in self._watches:
                if not os.path.isdir(directory):
                    # Root removed; re-attach when it comes back
                    self._observer.unschedule(self._watches.pop(directory))
                    logger.info("Log directory %s disappeared", directory)
                continue
            if not os.path.isdir(directory):
                continue
            try:
                watch = self._observer.schedule(
                    _LogEventHandler(self, directory), directory, recursive=True
                )
            except OSError as e:
                logger.warning("Cannot watch %s: %s", directory, e)
                continue
            self._watches[directory] = watch
            logger.info("Attached watch to %s", directory)
            if self._observer.is_alive():
                # Files written before the watch attached would otherwise be missed
                self._add_existing(directory)

    def _add_existing(self, directory: str) -> None:
        now = self._clock()
        for path in discover_log_files([directory]):
            self.debouncer.add(path, now)

    def _handle_event(self, event: FileSystemEvent, root: str) -> None:
        if self._state is not WatcherState.WATCHING or event.event_type in _IGNORED_EVENT_TYPES:
            return
        paths = [os.fsdecode(event.src_path)]
        dest = getattr(event, "dest_path", "")
        if dest:
            paths.append(os.fsdecode(dest))

        if event.is_directory:
            if event.event_type in ("created", "moved") and not _has_hidden_part(paths[-1], root):
                # Recursive watches pick up new subdirectories, but files
                # created inside them before that happened need a scan
                self._add_existing(paths[-1])
            return

        now = self._clock()
        for path in paths:
            if is_log_file(path) and not _has_hidden_part(path, root):
                self.debouncer.add(os.path.abspath(path), now)

    def _mark_unavailable(self, reason: str) -> None:
        with self._state_lock:
            if self._state is not WatcherState.WATCHING:
                return
            self._state = WatcherState.UNAVAILABLE
        logger.error("File watching unavailable: %s", reason)
        if self.on_unavailable is not None:
            self.on_unavailable(reason)


def _has_hidden_part(path: str, root: str) -> bool:
    try:
        relative = Path(path).relative_to(root)
    except ValueError:
        return False
    return any(part.startswith(".") for part in relative.parts)
