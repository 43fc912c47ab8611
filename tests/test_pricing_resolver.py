"""
Unit tests for the pricing resolver.

Tests the remote -> cached -> bundled fallback chain, the cache file,
unpriced models and listener notification.
"""

import json
import os
import tempfile
import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from ai_spend_meter.core.pricing import Provenance
from ai_spend_meter.core.pricing_resolver import (
    CostMode,
    PricingFetchError,
    PricingResolver,
    PricingState,
)
from ai_spend_meter.core.token_counter import TokenCounts

NOW = datetime(2025, 6, 15, 12, 0, tzinfo=timezone.utc)

REMOTE_DOCUMENT = {
    "claude-sonnet-4-20250514": {
        "input_cost_per_token": 4e-06,
        "output_cost_per_token": 2e-05,
    },
    "brand-new-model": {
        "input_cost_per_token": 1e-06,
        "output_cost_per_token": 2e-06,
    },
}


def _response(document):
    response = MagicMock()
    response.json.return_value = document
    response.raise_for_status.return_value = None
    return response


class TestFallbackChain:
    """Test remote, cached and bundled tiers."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.cache_path = os.path.join(self.temp_dir, "pricing_cache.json")
        self.resolver = PricingResolver(cache_path=self.cache_path, clock=lambda: NOW)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_cache(self, fetched_at: datetime):
        with open(self.cache_path, "w", encoding="utf-8") as f:
            json.dump({
                "fetched_at": fetched_at.isoformat(),
                "models": {
                    "claude-sonnet-4-20250514": {
                        "input": "0.000005", "output": "0.000025",
                        "cache_creation": None, "cache_read": None,
                    }
                },
            }, f)

    def test_starts_uninitialized(self):
        """Verify no table is loaded until first use."""
        assert self.resolver.state == PricingState.UNINITIALIZED

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_remote_success(self, mock_get):
        """Verify a successful fetch yields remote provenance and writes the cache."""
        mock_get.return_value = _response(REMOTE_DOCUMENT)

        assert self.resolver.load() == Provenance.REMOTE
        assert self.resolver.state == PricingState.READY
        assert self.resolver.current_provenance() == Provenance.REMOTE
        assert os.path.exists(self.cache_path)
        mock_get.assert_called_once_with(self.resolver.url, timeout=self.resolver.timeout)

        cost = self.resolver.resolve("claude-sonnet-4-20250514", TokenCounts(input=1000))
        assert cost.amount == Decimal("0.004")
        assert cost.provenance == Provenance.REMOTE

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_remote_failure_without_cache_uses_bundled(self, mock_get):
        """Verify fetch failure with no cache falls back to bundled."""
        mock_get.side_effect = requests.ConnectionError("offline")

        assert self.resolver.load() == Provenance.BUNDLED
        assert self.resolver.current_provenance() == Provenance.BUNDLED

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_remote_failure_with_fresh_cache_uses_cache(self, mock_get):
        """Verify fetch failure with an unexpired cache uses the cache."""
        mock_get.side_effect = requests.Timeout("slow")
        self._write_cache(NOW - timedelta(hours=1))

        assert self.resolver.load() == Provenance.CACHED
        cost = self.resolver.resolve("claude-sonnet-4-20250514", TokenCounts(input=1000))
        assert cost.amount == Decimal("0.005")

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_expired_cache_ignored(self, mock_get):
        """Verify a cache older than the expiry window is not used."""
        mock_get.side_effect = requests.ConnectionError("offline")
        self._write_cache(NOW - timedelta(hours=5))

        assert self.resolver.load() == Provenance.BUNDLED

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_corrupt_cache_ignored(self, mock_get):
        """Verify an unreadable cache falls through to bundled."""
        mock_get.side_effect = requests.ConnectionError("offline")
        with open(self.cache_path, "w", encoding="utf-8") as f:
            f.write("{not json")

        assert self.resolver.load() == Provenance.BUNDLED

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_http_error_is_failure(self, mock_get):
        """Verify a non-2xx status degrades the tier."""
        response = MagicMock()
        response.raise_for_status.side_effect = requests.HTTPError("503")
        mock_get.return_value = response

        assert self.resolver.load() == Provenance.BUNDLED

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_invalid_document_is_failure(self, mock_get):
        """Verify a document with no usable models is treated as a failed fetch."""
        mock_get.return_value = _response({"sample_spec": {}})
        with pytest.raises(PricingFetchError):
            self.resolver._fetch_remote()

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_resolve_never_fetches(self, mock_get):
        """Verify resolving before any load uses offline tiers only."""
        cost = self.resolver.resolve("claude-sonnet-4-20250514", TokenCounts(input=1000, output=500))

        mock_get.assert_not_called()
        assert cost.amount == Decimal("0.0105")
        assert self.resolver.current_provenance() == Provenance.BUNDLED

    def test_load_offline_keeps_existing_snapshot(self):
        """Verify an offline load does not replace a ready table."""
        self._write_cache(NOW)
        assert self.resolver.load_offline() == Provenance.CACHED
        os.remove(self.cache_path)
        assert self.resolver.load_offline() == Provenance.CACHED

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_resolve_does_not_wait_for_slow_fetch(self, mock_get):
        """Verify a first resolve during an in-flight fetch uses offline tiers at once."""
        fetch_started = threading.Event()
        release_fetch = threading.Event()

        def slow_get(url, timeout):
            fetch_started.set()
            release_fetch.wait(10)
            raise requests.ConnectionError("unreachable")

        mock_get.side_effect = slow_get
        self.resolver.start_background_refresh()
        try:
            assert fetch_started.wait(5)

            started = time.monotonic()
            cost = self.resolver.resolve("claude-sonnet-4-20250514", TokenCounts(input=1000, output=500))
            elapsed = time.monotonic() - started

            assert elapsed < 1.0
            assert cost.amount == Decimal("0.0105")
            assert self.resolver.current_provenance() == Provenance.BUNDLED
        finally:
            release_fetch.set()
            self.resolver.stop(timeout=5)


class TestUnpricedModels:
    """Test handling of models with no known price."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.resolver = PricingResolver(
            cache_path=os.path.join(self.temp_dir, "cache.json"),
            clock=lambda: NOW,
        )

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_unknown_model_is_unpriced_not_free(self):
        """Verify an unknown model yields an unpriced result distinct from zero."""
        cost = self.resolver.resolve("brand-new-model", TokenCounts(input=1000))
        assert cost.is_unpriced
        assert cost.amount is None
        assert "brand-new-model" in self.resolver.pending_unknown_models()

    def test_pending_models_shorten_refresh_interval(self):
        """Verify the short retry interval applies while models are unpriced."""
        assert self.resolver.next_refresh_interval() == timedelta(hours=4)
        self.resolver.resolve("brand-new-model", TokenCounts(input=1))
        assert self.resolver.next_refresh_interval() == timedelta(seconds=60)

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_refresh_clears_resolved_models_and_notifies(self, mock_get):
        """Verify a new table clears pending models and notifies listeners."""
        mock_get.return_value = _response(REMOTE_DOCUMENT)
        listener = MagicMock()
        self.resolver.add_listener(listener)
        self.resolver.resolve("brand-new-model", TokenCounts(input=1))

        self.resolver.load()

        assert self.resolver.pending_unknown_models() == set()
        listener.assert_called()
        assert self.resolver.resolve("brand-new-model", TokenCounts(input=1)).amount == Decimal("0.000001")

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_remote_table_falls_back_to_bundled_per_model(self, mock_get):
        """Verify a model missing from the remote table uses bundled prices."""
        mock_get.return_value = _response(REMOTE_DOCUMENT)
        self.resolver.load()

        cost = self.resolver.resolve("claude-3-opus-20240229", TokenCounts(input=1_000_000))
        assert cost.amount == Decimal("15")
        assert cost.provenance == Provenance.BUNDLED


class TestCostModes:
    """Test how precomputed costs are treated."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.resolver = PricingResolver(cache_path=os.path.join(self.temp_dir, "cache.json"))
        self.tokens = TokenCounts(input=1000, output=500)

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_auto_prefers_precomputed(self):
        """Verify a precomputed cost is authoritative in auto mode."""
        cost = self.resolver.cost_for("claude-sonnet-4-20250514", self.tokens, Decimal("9.99"))
        assert cost.amount == Decimal("9.99")

    def test_auto_calculates_without_precomputed(self):
        """Verify auto mode calculates when no cost is present."""
        cost = self.resolver.cost_for("claude-sonnet-4-20250514", self.tokens, None)
        assert cost.amount == Decimal("0.0105")

    def test_calculate_ignores_precomputed(self):
        """Verify calculate mode always uses the pricing table."""
        cost = self.resolver.cost_for("claude-sonnet-4-20250514", self.tokens, Decimal("9.99"), CostMode.CALCULATE)
        assert cost.amount == Decimal("0.0105")

    def test_display_uses_precomputed_or_zero(self):
        """Verify display mode never calculates."""
        assert self.resolver.cost_for("x", self.tokens, None, CostMode.DISPLAY).amount == 0
        assert self.resolver.cost_for("x", self.tokens, Decimal("1.5"), CostMode.DISPLAY).amount == Decimal("1.5")
