"""Unit tests for SyncScheduler."""
import threading
from unittest.mock import Mock

import pytest

from gcal.errors import AuthenticationError
from processor.models import SyncResult
from sync.scheduler import SyncScheduler


@pytest.fixture
def engine():
    engine = Mock()
    engine.run_pass.return_value = SyncResult(created=1)
    return engine


class TestSyncScheduler:
    """Test cases for pass scheduling."""

    def test_run_once_returns_result(self, engine):
        scheduler = SyncScheduler(engine, interval_seconds=0)

        result = scheduler.run_once()

        assert result.created == 1
        assert scheduler.last_result is result
        assert scheduler.passes_run == 1

    def test_run_once_logs_and_swallows_pass_failure(self, engine):
        engine.run_pass.side_effect = AuthenticationError("expired")
        scheduler = SyncScheduler(engine, interval_seconds=0)

        assert scheduler.run_once() is None
        assert isinstance(scheduler.last_error, AuthenticationError)

    def test_start_runs_initial_pass(self, engine):
        scheduler = SyncScheduler(engine, interval_seconds=3600)
        scheduler.start()
        try:
            assert scheduler.wait_until_idle(timeout=5)
            assert engine.run_pass.call_count == 1
        finally:
            scheduler.stop(timeout=5)

    def test_triggers_during_pass_coalesce(self, engine):
        started = threading.Event()
        release = threading.Event()

        def slow_pass():
            if engine.run_pass.call_count == 1:
                started.set()
                release.wait(5)
            return SyncResult()

        engine.run_pass.side_effect = slow_pass
        scheduler = SyncScheduler(engine, interval_seconds=3600)
        scheduler.start()
        try:
            assert started.wait(5)
            scheduler.trigger('source change')
            scheduler.trigger('source change')
            scheduler.trigger('manual')
            release.set()

            assert scheduler.wait_until_idle(timeout=5)
            assert engine.run_pass.call_count == 2
        finally:
            scheduler.stop(timeout=5)

    def test_worker_survives_failed_pass(self, engine):
        engine.run_pass.side_effect = [RuntimeError("boom"), SyncResult(updated=2)]
        scheduler = SyncScheduler(engine, interval_seconds=3600)
        scheduler.start()
        try:
            assert scheduler.wait_until_idle(timeout=5)
            scheduler.trigger('retry')
            assert scheduler.wait_until_idle(timeout=5)

            assert engine.run_pass.call_count == 2
            assert scheduler.last_result.updated == 2
            assert scheduler.last_error is None
        finally:
            scheduler.stop(timeout=5)

    def test_interval_triggers_passes(self, engine):
        done = threading.Event()

        def counting_pass():
            if engine.run_pass.call_count >= 3:
                done.set()
            return SyncResult()

        engine.run_pass.side_effect = counting_pass
        scheduler = SyncScheduler(engine, interval_seconds=0.05)
        scheduler.start()
        try:
            assert done.wait(5)
        finally:
            scheduler.stop(timeout=5)

    def test_stop_is_idempotent(self, engine):
        scheduler = SyncScheduler(engine, interval_seconds=0)
        scheduler.stop()
        scheduler.start()
        scheduler.stop(timeout=5)
        scheduler.stop(timeout=5)
