"""
Pricing resolution with remote refresh and offline fallback.

The resolver owns the active pricing snapshot. Loading walks the tiers
remote -> cached -> bundled; resolving a cost only ever reads the last ready
snapshot and never touches the network.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Set

import requests

from .pricing import (
    BUNDLED_PRICING_TABLE,
    ModelPricing,
    PricingTable,
    Provenance,
    calculate_cost,
    parse_remote_pricing,
)
from .token_counter import TokenCounts

logger = logging.getLogger(__name__)

DEFAULT_PRICING_URL = (
    "https://raw.githubusercontent.com/BerriAI/litellm/main/"
    "model_prices_and_context_window.json"
)
DEFAULT_CACHE_PATH = Path.home() / ".ai-spend-meter" / "pricing_cache.json"


class PricingState(Enum):
    """Lifecycle of the pricing table."""
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"


class CostMode(Enum):
    """How a record's precomputed cost is treated."""
    AUTO = "auto"            # precomputed when present, calculated otherwise
    CALCULATE = "calculate"  # always calculate from tokens
    DISPLAY = "display"      # precomputed only, zero when absent


class PricingFetchError(Exception):
    """Raised when the remote pricing document cannot be obtained."""


@dataclass(frozen=True)
class CostResolution:
    """Result of resolving a cost.

    ``amount`` is None for an unpriced model, which is distinct from a
    zero-cost result.
    """
    amount: Optional[Decimal]
    provenance: Optional[Provenance]

    @property
    def is_unpriced(self) -> bool:
        return self.amount is None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PricingResolver:
    """Resolves model + token counts to a monetary cost.

    The snapshot is swapped by a single reference assignment, so concurrent
    ``resolve`` callers see either the old table or the new one, never a mix.
    """

    def __init__(
        self,
        url: str = DEFAULT_PRICING_URL,
        cache_path: Path = DEFAULT_CACHE_PATH,
        timeout: float = 10.0,
        cache_expiry: timedelta = timedelta(hours=4),
        refresh_interval: timedelta = timedelta(hours=4),
        unknown_model_retry: timedelta = timedelta(seconds=60),
        bundled: PricingTable = BUNDLED_PRICING_TABLE,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the resolver.

        Args:
            url: Remote pricing document URL
            cache_path: Where the last fetched table is persisted
            timeout: Bound on the remote fetch, in seconds
            cache_expiry: How long a cached table stays usable
            refresh_interval: Background refresh period
            unknown_model_retry: Shorter refresh period used while unpriced
                models are waiting for prices
            bundled: Static table used when nothing else is available
            clock: Source of the current UTC time
        """
        self.url = url
        self.cache_path = Path(cache_path)
        self.timeout = timeout
        self.cache_expiry = cache_expiry
        self.refresh_interval = refresh_interval
        self.unknown_model_retry = unknown_model_retry
        self._bundled = bundled
        self._clock = clock

        self._snapshot: Optional[PricingTable] = None
        self._state = PricingState.UNINITIALIZED
        self._load_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending_models: Set[str] = set()
        self._listeners: List[Callable[[PricingTable], None]] = []

        self._stop_event = threading.Event()
        self._refresh_thread: Optional[threading.Thread] = None

    @property
    def state(self) -> PricingState:
        return self._state

    def snapshot(self) -> PricingTable:
        """Return the active table, loading offline tiers on first use."""
        table = self._snapshot
        if table is None:
            self.load_offline()
            table = self._snapshot
        return table

    def current_provenance(self) -> Provenance:
        """Tier that supplied the active pricing table."""
        return self.snapshot().provenance

    def add_listener(self, listener: Callable[[PricingTable], None]) -> None:
        """Register a callback invoked after every snapshot swap."""
        self._listeners.append(listener)

    def pending_unknown_models(self) -> Set[str]:
        """Models that resolved as unpriced since the last table swap."""
        with self._pending_lock:
            return set(self._pending_models)

    def resolve(self, model: str, tokens: TokenCounts) -> CostResolution:
        """Resolve the cost of a token-usage vector for a model.

        Falls back to the bundled table when the active table lacks the model.
        An unknown model yields an unpriced resolution and is remembered so
        the background refresh can retry sooner.

        Args:
            model: Model identifier
            tokens: Token counts

        Returns:
            CostResolution with the exact cost, or unpriced
        """
        table = self.snapshot()
        pricing = table.lookup(model)
        provenance = table.provenance
        if pricing is None and table.provenance is not Provenance.BUNDLED:
            pricing = self._bundled.lookup(model)
            provenance = Provenance.BUNDLED
        if pricing is None:
            with self._pending_lock:
                if model not in self._pending_models:
                    logger.warning("No pricing for model %s; recording as unpriced", model)
                self._pending_models.add(model)
            return CostResolution(amount=None, provenance=None)
        return CostResolution(amount=calculate_cost(pricing, tokens), provenance=provenance)

    def cost_for(
        self,
        model: str,
        tokens: TokenCounts,
        precomputed_cost: Optional[Decimal],
        mode: CostMode = CostMode.AUTO,
    ) -> CostResolution:
        """Resolve a record's cost honoring the cost mode."""
        if mode is CostMode.DISPLAY:
            return CostResolution(amount=precomputed_cost or Decimal("0"), provenance=None)
        if mode is CostMode.AUTO and precomputed_cost is not None:
            return CostResolution(amount=precomputed_cost, provenance=None)
        return self.resolve(model, tokens)

    def load(self) -> Provenance:
        """Run the full fallback chain: remote, then cache, then bundled.

        The network fetch runs without holding the load lock, so a first
        ``resolve`` during a slow fetch serves offline tiers immediately.

        Returns:
            Provenance of the table now active
        """
        if self._snapshot is None:
            self._state = PricingState.LOADING
        try:
            fetched: Optional[PricingTable] = self._fetch_remote()
        except PricingFetchError as e:
            logger.warning("Remote pricing fetch failed: %s", e)
            fetched = None

        with self._load_lock:
            if fetched is not None:
                self._write_cache(fetched)
                table = fetched
            else:
                table = self._offline_table()
            self._swap(table)
            return table.provenance

    def load_offline(self) -> Provenance:
        """Load cache or bundled pricing without network access.

        Only acts while uninitialized; an existing snapshot is kept.
        """
        with self._load_lock:
            if self._snapshot is None:
                self._state = PricingState.LOADING
                self._swap(self._offline_table())
            return self._snapshot.provenance

    def start_background_refresh(self) -> None:
        """Start refreshing from the remote source on a schedule.

        The first attempt happens immediately on the background thread.
        """
        if self._refresh_thread is not None and self._refresh_thread.is_alive():
            return
        self._stop_event.clear()
        self._refresh_thread = threading.Thread(
            target=self._refresh_loop, name="pricing-refresh", daemon=True
        )
        self._refresh_thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the background refresh thread."""
        self._stop_event.set()
        thread = self._refresh_thread
        if thread is not None:
            thread.join(timeout if timeout is not None else self.timeout + 1)
        self._refresh_thread = None

    def next_refresh_interval(self) -> timedelta:
        """Short retry while unpriced models are pending, normal otherwise."""
        if self.pending_unknown_models():
            return min(self.unknown_model_retry, self.refresh_interval)
        return self.refresh_interval

    def _refresh_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.load()
            except Exception:
                # A broken listener must not end the refresh schedule
                logger.exception("Pricing refresh failed")
            if self._stop_event.wait(self.next_refresh_interval().total_seconds()):
                break

    def _swap(self, table: PricingTable) -> None:
        previous = self._snapshot
        self._snapshot = table
        self._state = PricingState.READY
        with self._pending_lock:
            resolved = {model for model in self._pending_models if table.lookup(model)}
            self._pending_models -= resolved
        if resolved:
            logger.info("Resolved pricing for %d previously unknown model(s)", len(resolved))
        if previous is None or previous.provenance != table.provenance:
            logger.info("Pricing table ready from %s tier (%d models)", table.provenance.value, len(table))
        for listener in list(self._listeners):
            listener(table)

    def _fetch_remote(self) -> PricingTable:
        logger.debug("Fetching pricing document from %s", self.url)
        try:
            response = requests.get(self.url, timeout=self.timeout)
            response.raise_for_status()
            document = response.json()
        except (requests.RequestException, ValueError) as e:
            raise PricingFetchError(str(e)) from e

        try:
            prices = parse_remote_pricing(document)
        except ValueError as e:
            raise PricingFetchError(str(e)) from e
        if not prices:
            raise PricingFetchError("Pricing document contained no usable models")
        logger.info("Fetched pricing for %d models", len(prices))
        return PricingTable(prices, Provenance.REMOTE, fetched_at=self._clock())

    def _offline_table(self) -> PricingTable:
        cached = self._read_cache()
        if cached is not None:
            return cached
        logger.info("Using bundled pricing table")
        return self._bundled

    def _read_cache(self) -> Optional[PricingTable]:
        if not self.cache_path.exists():
            return None
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
            fetched_at = datetime.fromisoformat(data["fetched_at"])
            prices = {
                model: ModelPricing.from_dict(entry)
                for model, entry in data["models"].items()
            }
        except (OSError, ValueError, KeyError, TypeError, ArithmeticError) as e:
            logger.warning("Ignoring unreadable pricing cache %s: %s", self.cache_path, e)
            return None

        if fetched_at.tzinfo is None:
            fetched_at = fetched_at.replace(tzinfo=timezone.utc)
        age = self._clock() - fetched_at
        if age > self.cache_expiry:
            logger.info("Pricing cache expired (%s old)", age)
            return None
        return PricingTable(prices, Provenance.CACHED, fetched_at=fetched_at)

    def _write_cache(self, table: PricingTable) -> None:
        payload = {
            "fetched_at": (table.fetched_at or self._clock()).isoformat(),
            "models": {model: pricing.to_dict() for model, pricing in table.prices.items()},
        }
        tmp_path = self.cache_path.with_suffix(".tmp")
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload), encoding="utf-8")
            os.replace(tmp_path, self.cache_path)
        except OSError as e:
            # The fetched table is still used; only persistence is lost
            logger.warning("Could not write pricing cache %s: %s", self.cache_path, e)
