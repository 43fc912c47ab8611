"""
Unit tests for the service layer.

Tests access gating, the single ingestion lane, manual refresh, reset,
timer ticks and re-pricing after a pricing swap.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from ai_spend_meter.config.loader import AppConfig, PricingConfig, SessionConfig, StoreConfig
from ai_spend_meter.core.aggregation import Period, SessionLevel
from ai_spend_meter.core.pricing import Provenance
from ai_spend_meter.service import AccessDeniedError, AccessGuard, SpendMeterService
from ai_spend_meter.storage.repository import StoreError
from ai_spend_meter.watcher.file_watcher import WatcherState

NOW = datetime(2025, 6, 15, 18, 0, tzinfo=timezone.utc)


def _line(n: int, model: str = "claude-sonnet-4-20250514") -> str:
    return json.dumps({
        "type": "assistant",
        "timestamp": f"2025-06-15T10:{n:02d}:00Z",
        "sessionId": "session-1",
        "requestId": f"req_{n}",
        "message": {
            "id": f"msg_{n}",
            "model": model,
            "usage": {"input_tokens": 1000, "output_tokens": 500},
        },
    }) + "\n"


class TestAccessGuard:
    """Test the access grant holder."""

    def test_grant_and_revoke(self):
        """Verify the grant can be toggled."""
        guard = AccessGuard(granted=False)
        assert not guard.is_granted
        guard.grant()
        assert guard.is_granted
        guard.revoke()
        assert not guard.is_granted


class ServiceTestCase:
    """Shared setup: a temporary log root, store and pricing cache."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.root = os.path.join(self.temp_dir, "claude")
        self.log_dir = os.path.join(self.root, "projects", "demo")
        os.makedirs(self.log_dir)
        self.config = AppConfig(
            roots=(self.root,),
            store=StoreConfig(path=os.path.join(self.temp_dir, "usage.db")),
            pricing=PricingConfig(cache_path=os.path.join(self.temp_dir, "pricing.json")),
            session=SessionConfig(token_limit=4000, window_hours=12),
        )
        self.access = AccessGuard()
        self.watchers = []
        self.service = SpendMeterService(
            self.config,
            access=self.access,
            clock=lambda: NOW,
            tz=timezone.utc,
            watcher_factory=self._fake_watcher,
        )

    def teardown_method(self):
        """Clean up test environment."""
        self.service.stop()
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _fake_watcher(self, directories, **kwargs):
        watcher = MagicMock()
        watcher.directories = directories
        watcher.state = WatcherState.WATCHING
        self.watchers.append(watcher)
        return watcher

    def _write(self, *lines: str, name: str = "session.jsonl") -> str:
        path = os.path.join(self.log_dir, name)
        with open(path, "a", encoding="utf-8") as f:
            f.writelines(lines)
        return path


class TestServiceLifecycle(ServiceTestCase):
    """Test starting, scanning and querying."""

    def test_start_requires_access(self):
        """Verify nothing starts without read access."""
        self.access.revoke()
        with pytest.raises(AccessDeniedError):
            self.service.start(watch=False, refresh_pricing=False)
        assert not self.service.worker.is_running

    def test_initial_scan_ingests_existing_logs(self):
        """Verify the first scan picks up logs already on disk."""
        self._write(_line(1), _line(2))

        report = self.service.start(watch=False, refresh_pricing=False).result(10)

        assert report.inserted == 2
        assert self.service.record_count() == 2
        assert self.service.current_pricing_provenance() == Provenance.BUNDLED

    def test_summary_after_ingest(self):
        """Verify ingested usage shows up in today's summary."""
        self._write(_line(1))
        self.service.start(watch=False, refresh_pricing=False).result(10)

        summary = self.service.summarize(Period.TODAY)

        assert summary.record_count == 1
        assert summary.total_cost == pytest.approx(0.0105)
        assert summary.per_model[0].model == "claude-sonnet-4-20250514"

    def test_session_usage_uses_configured_window(self):
        """Verify session usage counts the configured window against its limit."""
        self._write(_line(1), _line(2))
        self.service.start(watch=False, refresh_pricing=False).result(10)

        usage = self.service.session_usage()

        assert usage.tokens_used == 3000
        assert usage.token_limit == 4000
        assert usage.level == SessionLevel.WARNING

    def test_manual_refresh_picks_up_appended_lines(self):
        """Verify a manual refresh ingests lines written after start."""
        self._write(_line(1))
        self.service.start(watch=False, refresh_pricing=False).result(10)
        self._write(_line(2), _line(3))

        report = self.service.trigger_manual_refresh(timeout=10)

        assert report.inserted == 2
        assert self.service.record_count() == 3

    def test_manual_refresh_starts_worker_on_demand(self):
        """Verify a refresh works before start() was called."""
        self._write(_line(1))
        report = self.service.trigger_manual_refresh(timeout=10)
        assert report.inserted == 1

    def test_reset_reingests_from_scratch(self):
        """Verify reset clears the store and rebuilds it from the logs."""
        self._write(_line(1), _line(2))
        self.service.start(watch=False, refresh_pricing=False).result(10)

        report = self.service.reset(timeout=10)

        assert report.inserted == 2
        assert report.duplicates == 0
        assert self.service.record_count() == 2

    def test_start_with_watch_creates_watcher(self):
        """Verify watching starts a watcher over the log directories."""
        self.service.start(watch=True, refresh_pricing=False).result(10)

        assert len(self.watchers) == 1
        assert self.watchers[0].directories == self.config.log_directories
        self.watchers[0].start.assert_called_once()

    def test_stop_releases_watcher(self):
        """Verify stop shuts the watcher down."""
        self.service.start(watch=True, refresh_pricing=False).result(10)
        watcher = self.watchers[0]

        self.service.stop()

        watcher.stop.assert_called_once()
        assert self.service.watcher is None
        assert not self.service.worker.is_running


class TestWorkerFailures(ServiceTestCase):
    """Test that failures do not end the ingestion lane."""

    def test_store_error_recorded_and_worker_survives(self):
        """Verify a failed pass surfaces its error and later passes still run."""
        self._write(_line(1))
        self.service.start(watch=False, refresh_pricing=False, initial_scan=False)

        with patch.object(self.service.coordinator, "run_ingestion_pass", side_effect=StoreError("disk full")):
            with pytest.raises(StoreError):
                self.service.trigger_manual_refresh(timeout=10)

        assert isinstance(self.service.worker.last_error, StoreError)
        assert self.service.worker.is_running

        report = self.service.trigger_manual_refresh(timeout=10)
        assert report.inserted == 1
        assert self.service.worker.last_error is None

    def test_revoked_access_rejects_queued_scan(self):
        """Verify a scan queued after revocation fails with AccessDeniedError."""
        self.service.start(watch=False, refresh_pricing=False, initial_scan=False)
        self.access.revoke()

        with pytest.raises(AccessDeniedError):
            self.service.worker.request_full_scan().result(10)
        with pytest.raises(AccessDeniedError):
            self.service.trigger_manual_refresh(timeout=10)


class TestTimerTick(ServiceTestCase):
    """Test the periodic tick."""

    def test_tick_starts_missing_watcher_and_scans(self):
        """Verify a tick attaches a watcher and queues a full scan."""
        self._write(_line(1))
        self.service.start(watch=False, refresh_pricing=False, initial_scan=False)

        self.service.tick()
        self.service.worker.request_full_scan().result(10)

        assert len(self.watchers) == 1
        assert self.service.record_count() == 1

    def test_tick_after_revocation_stops_watcher(self):
        """Verify withdrawing access stops the watcher and skips scanning."""
        self.service.start(watch=False, refresh_pricing=False, initial_scan=False)
        self.service.tick()
        watcher = self.watchers[0]

        self.access.revoke()
        self._write(_line(1))
        self.service.tick()

        watcher.stop.assert_called_once()
        assert self.service.watcher is None
        assert self.service.record_count() == 0

    def test_tick_keeps_scanning_when_watcher_unavailable(self):
        """Verify timer scans continue after file watching is lost."""
        self.service.start(watch=False, refresh_pricing=False, initial_scan=False)
        self.service.tick()
        self.watchers[0].state = WatcherState.UNAVAILABLE
        self._write(_line(1))

        self.service.tick()
        self.service.worker.request_full_scan().result(10)

        assert len(self.watchers) == 1
        assert self.service.record_count() == 1


class TestPricingSwap(ServiceTestCase):
    """Test re-pricing when a new pricing table arrives."""

    @patch("ai_spend_meter.core.pricing_resolver.requests.get")
    def test_unpriced_records_repriced_after_refresh(self, mock_get):
        """Verify records of a newly priced model gain a cost."""
        self._write(_line(1, model="claude-future-5"))
        self.service.start(watch=False, refresh_pricing=False).result(10)
        assert self.service.summarize(Period.TODAY).unpriced_count == 1

        response = MagicMock()
        response.json.return_value = {
            "claude-future-5": {"input_cost_per_token": 0.000001, "output_cost_per_token": 0.000002},
        }
        mock_get.return_value = response

        assert self.service.resolver.load() == Provenance.REMOTE
        self.service.worker.submit(lambda: None).result(10)

        summary = self.service.summarize(Period.TODAY)
        assert summary.unpriced_count == 0
        assert summary.total_cost == pytest.approx(0.002)
