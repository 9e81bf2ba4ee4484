"""
Tests for the background rollup scheduler.

This test module validates:
- Starting and stopping the background rollup job
- Parameter validation
- Synchronous passes, error accounting and raw rotation cadence
- Scheduler state management
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import FakeClock
from watcher_metrics.config import SchedulerConfig
from watcher_metrics.errors import FailedPreconditionError, InvalidArgumentError
from watcher_metrics.metrics.aggregators import aggregate_ping
from watcher_metrics.metrics.processor import RunStatus, TierRunResult
from watcher_metrics.metrics.scheduler import (
    DEFAULT_RAW_ROTATION_INTERVAL,
    DEFAULT_TICK_SECONDS,
    RollupScheduler,
    SchedulerState,
    SchedulerStatus,
)
from watcher_metrics.metrics.stream import MetricStream

NOW = 100_000

# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def stream(tmp_path: Path, clock: FakeClock) -> MetricStream:
    """A ping stream with a short raw retention."""
    clock.now = NOW
    return MetricStream(
        "ping", tmp_path / "ping", aggregate_ping, raw_retention_seconds=3600, clock=clock
    )


@pytest.fixture
def monotonic() -> FakeClock:
    """Clock driving the rotation cadence."""
    return FakeClock(500.0)


@pytest.fixture
def scheduler(stream: MetricStream, monotonic: FakeClock) -> RollupScheduler:
    """Create a RollupScheduler over one stream."""
    return RollupScheduler([stream], clock=monotonic)


# =============================================================================
# Tests for SchedulerState
# =============================================================================


class TestSchedulerState:
    """Tests for SchedulerState dataclass."""

    def test_default_values(self) -> None:
        """Test default state values."""
        state = SchedulerState()

        assert state.status == SchedulerStatus.STOPPED
        assert state.job_id is None
        assert state.tick_seconds == DEFAULT_TICK_SECONDS
        assert state.raw_rotation_interval_seconds == DEFAULT_RAW_ROTATION_INTERVAL
        assert state.run_count == 0
        assert state.error_count == 0

    def test_to_dict(self) -> None:
        """Test SchedulerState.to_dict() method."""
        state = SchedulerState(status=SchedulerStatus.RUNNING, job_id="test-123", tick_seconds=30)

        d = state.to_dict()

        assert d["status"] == "running"
        assert d["job_id"] == "test-123"
        assert d["tick_seconds"] == 30
        assert d["started_at"] is None

    def test_config_defaults(self, stream: MetricStream) -> None:
        """Test that SchedulerConfig seeds the cadence."""
        scheduler = RollupScheduler(
            [stream],
            SchedulerConfig(tick_seconds=15, raw_rotation_interval_seconds=600),
        )

        status = scheduler.get_status()

        assert status.tick_seconds == 15
        assert status.raw_rotation_interval_seconds == 600
        assert scheduler.streams == [stream]


# =============================================================================
# Tests for run_once
# =============================================================================


class TestRunOnce:
    """Tests for synchronous rollup passes."""

    def test_run_once_processes_streams(
        self, scheduler: RollupScheduler, stream: MetricStream
    ) -> None:
        """Test that a pass processes every tier and counts records."""
        stream.append(
            [{"timestamp": 99_900, "latency": 5.0, "status": "success"}]
        )

        results = scheduler.run_once()

        assert list(results) == ["ping"]
        assert [r.tier for r in results["ping"]] == ["1min", "5min", "30min", "2hour"]
        status = scheduler.get_status()
        assert status.run_count == 1
        assert status.emitted_records == 1
        assert status.last_run_at is not None
        assert status.last_rotation_at is None

    def test_run_once_counts_failures(
        self, scheduler: RollupScheduler, stream: MetricStream
    ) -> None:
        """Test that failed tier runs are recorded."""
        failed = TierRunResult(tier="1min", status=RunStatus.FAILED, error="disk full")

        with patch.object(stream, "process_all", return_value=[failed]):
            scheduler.run_once()

        status = scheduler.get_status()
        assert status.error_count == 1
        assert status.last_error == "ping/1min: disk full"

    def test_run_once_with_rotation(
        self, scheduler: RollupScheduler, stream: MetricStream
    ) -> None:
        """Test that raw logs are rotated on request."""
        stream.append([{"timestamp": NOW - 7200}, {"timestamp": NOW - 60}])

        scheduler.run_once(rotate_raw=True)

        assert [e["timestamp"] for e in stream.raw_log.read()] == [NOW - 60]
        assert scheduler.get_status().last_rotation_at is not None

    def test_rotation_cadence(
        self, scheduler: RollupScheduler, monotonic: FakeClock
    ) -> None:
        """Test that rotation is due first, then once per interval."""
        assert scheduler._rotation_due() is True

        scheduler.rotate_raw()
        assert scheduler._rotation_due() is False

        monotonic.advance(DEFAULT_RAW_ROTATION_INTERVAL - 1)
        assert scheduler._rotation_due() is False

        monotonic.advance(1)
        assert scheduler._rotation_due() is True


# =============================================================================
# Tests for Start/Stop
# =============================================================================


class TestSchedulerStartStop:
    """Tests for starting and stopping the scheduler."""

    @pytest.mark.asyncio
    async def test_start_creates_job(self, scheduler: RollupScheduler) -> None:
        """Test that start creates a new rollup job."""
        state = await scheduler.start(tick_seconds=5)

        try:
            assert state.status == SchedulerStatus.RUNNING
            assert state.job_id is not None
            assert state.started_at is not None
            assert state.tick_seconds == 5
            assert scheduler.is_running
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_first_pass_runs_immediately(self, scheduler: RollupScheduler) -> None:
        """Test that the first pass runs without waiting a tick, with rotation."""
        await scheduler.start(tick_seconds=60)

        try:
            await asyncio.sleep(0.3)
            status = scheduler.get_status()
            assert status.run_count == 1
            assert status.last_rotation_at is not None
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_stop_changes_status(self, scheduler: RollupScheduler) -> None:
        """Test that stop changes status to stopped."""
        await scheduler.start(tick_seconds=5)
        state = await scheduler.stop()

        assert state.status == SchedulerStatus.STOPPED
        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, scheduler: RollupScheduler) -> None:
        """Test that stop when not running returns stopped state."""
        state = await scheduler.stop()

        assert state.status == SchedulerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_double_start_raises_error(self, scheduler: RollupScheduler) -> None:
        """Test that starting twice raises an error."""
        await scheduler.start(tick_seconds=5)

        try:
            with pytest.raises(FailedPreconditionError) as exc_info:
                await scheduler.start()
            assert "already running" in exc_info.value.message
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, scheduler: RollupScheduler) -> None:
        """Test that the scheduler can be restarted after stopping."""
        state1 = await scheduler.start(tick_seconds=5)
        await scheduler.stop()
        state2 = await scheduler.start(tick_seconds=5)

        try:
            assert state2.status == SchedulerStatus.RUNNING
            assert state2.job_id != state1.job_id
        finally:
            await scheduler.stop()

    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, scheduler: RollupScheduler) -> None:
        """Test that a failing pass is counted and the loop keeps running."""
        with patch.object(scheduler, "run_once", side_effect=RuntimeError("boom")):
            await scheduler.start(tick_seconds=60)
            try:
                await asyncio.sleep(0.3)
                status = scheduler.get_status()
                assert status.error_count == 1
                assert status.last_error == "boom"
                assert scheduler.is_running
            finally:
                await scheduler.stop()


class TestSchedulerValidation:
    """Tests for start parameter validation."""

    @pytest.mark.asyncio
    async def test_tick_too_small(self, scheduler: RollupScheduler) -> None:
        """Test that a tick below one second is rejected."""
        with pytest.raises(InvalidArgumentError):
            await scheduler.start(tick_seconds=0)

        assert not scheduler.is_running

    @pytest.mark.asyncio
    async def test_rotation_interval_too_small(self, scheduler: RollupScheduler) -> None:
        """Test that a rotation interval below one second is rejected."""
        with pytest.raises(InvalidArgumentError):
            await scheduler.start(raw_rotation_interval_seconds=0)
