"""
Background rollup scheduler using asyncio.

This module implements the RollupScheduler class that:
- Runs a background asyncio task that processes every stream's tiers on a tick
- Rotates raw sample logs on a slower cadence
- Runs the blocking file work in the default executor

The storage components own no clock loop of their own; this scheduler (or
any other driver, e.g. a cron job calling ``run_once``) decides the cadence.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from watcher_metrics.errors import FailedPreconditionError, InvalidArgumentError
from watcher_metrics.logging import get_logger
from watcher_metrics.metrics.processor import RunStatus, TierRunResult
from watcher_metrics.metrics.stream import MetricStream

if TYPE_CHECKING:
    from watcher_metrics.config import SchedulerConfig

logger = get_logger(__name__)

DEFAULT_TICK_SECONDS = 60
DEFAULT_RAW_ROTATION_INTERVAL = 3600
STOP_TIMEOUT_SECONDS = 10.0


# =============================================================================
# Enums and Data Models
# =============================================================================


class SchedulerStatus(str, Enum):
    """Status of the rollup scheduler."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SchedulerState:
    """
    Current state of the rollup scheduler.

    Attributes:
        status: Current scheduler status.
        job_id: Unique identifier for the scheduler run.
        tick_seconds: Seconds between rollup passes.
        raw_rotation_interval_seconds: Seconds between raw log rotations.
        started_at: When the scheduler was started.
        last_run_at: When the last rollup pass finished.
        last_rotation_at: When raw logs were last rotated.
        run_count: Number of completed rollup passes.
        emitted_records: Rollup records written since start.
        error_count: Number of failed tier runs or passes.
        last_error: Last error message if any.
    """

    status: SchedulerStatus = SchedulerStatus.STOPPED
    job_id: str | None = None
    tick_seconds: int = DEFAULT_TICK_SECONDS
    raw_rotation_interval_seconds: int = DEFAULT_RAW_ROTATION_INTERVAL
    started_at: datetime | None = None
    last_run_at: datetime | None = None
    last_rotation_at: datetime | None = None
    run_count: int = 0
    emitted_records: int = 0
    error_count: int = 0
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "status": self.status.value,
            "job_id": self.job_id,
            "tick_seconds": self.tick_seconds,
            "raw_rotation_interval_seconds": self.raw_rotation_interval_seconds,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_rotation_at": (
                self.last_rotation_at.isoformat() if self.last_rotation_at else None
            ),
            "run_count": self.run_count,
            "emitted_records": self.emitted_records,
            "error_count": self.error_count,
            "last_error": self.last_error,
        }


# =============================================================================
# Scheduler
# =============================================================================


class RollupScheduler:
    """
    Background driver for rollup processing across streams.

    On every tick the scheduler runs ``process_all`` for each stream; every
    ``raw_rotation_interval_seconds`` it also rotates the raw logs. Tier
    throttling lives in the processor, so the tick only needs to be at least
    as frequent as the finest tier.

    Example:
        >>> scheduler = RollupScheduler([ping_stream, system_stream])
        >>> await scheduler.start(tick_seconds=60)
        >>> scheduler.get_status().status
        <SchedulerStatus.RUNNING: 'running'>
        >>> await scheduler.stop()
    """

    def __init__(
        self,
        streams: Iterable[MetricStream],
        config: SchedulerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize the RollupScheduler.

        Args:
            streams: Streams to drive.
            config: Optional SchedulerConfig for default settings.
            clock: Monotonic clock used for the rotation cadence.
        """
        self._streams = list(streams)
        self._state = SchedulerState()
        self._task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._lock = asyncio.Lock()
        self._clock = clock
        self._last_rotation: float | None = None

        if config:
            self._state.tick_seconds = config.tick_seconds
            self._state.raw_rotation_interval_seconds = (
                config.raw_rotation_interval_seconds
            )

    @property
    def streams(self) -> list[MetricStream]:
        return list(self._streams)

    @property
    def is_running(self) -> bool:
        """Check if the scheduler is currently running."""
        return self._state.status == SchedulerStatus.RUNNING

    def get_status(self) -> SchedulerState:
        """
        Get the current scheduler state.

        Returns:
            Copy of the current SchedulerState.
        """
        return SchedulerState(
            status=self._state.status,
            job_id=self._state.job_id,
            tick_seconds=self._state.tick_seconds,
            raw_rotation_interval_seconds=self._state.raw_rotation_interval_seconds,
            started_at=self._state.started_at,
            last_run_at=self._state.last_run_at,
            last_rotation_at=self._state.last_rotation_at,
            run_count=self._state.run_count,
            emitted_records=self._state.emitted_records,
            error_count=self._state.error_count,
            last_error=self._state.last_error,
        )

    def run_once(self, *, rotate_raw: bool = False) -> dict[str, list[TierRunResult]]:
        """
        Run one synchronous rollup pass over every stream.

        Args:
            rotate_raw: Also rotate each stream's raw log afterwards.

        Returns:
            Tier run results keyed by stream name.
        """
        results: dict[str, list[TierRunResult]] = {}
        for stream in self._streams:
            stream_results = stream.process_all()
            results[stream.name] = stream_results
            for result in stream_results:
                self._state.emitted_records += result.emitted_records
                if result.status == RunStatus.FAILED:
                    self._state.error_count += 1
                    self._state.last_error = f"{stream.name}/{result.tier}: {result.error}"

        if rotate_raw:
            self.rotate_raw()

        self._state.run_count += 1
        self._state.last_run_at = datetime.now()
        return results

    def rotate_raw(self) -> None:
        """Rotate every stream's raw log against its retention."""
        for stream in self._streams:
            result = stream.rotate_raw()
            if result.rotated:
                logger.debug(
                    "Raw log rotated",
                    extra={"stream": stream.name, **result.to_dict()},
                )
        self._last_rotation = self._clock()
        self._state.last_rotation_at = datetime.now()

    async def start(
        self,
        *,
        tick_seconds: int | None = None,
        raw_rotation_interval_seconds: int | None = None,
    ) -> SchedulerState:
        """
        Start the background rollup job.

        Args:
            tick_seconds: Seconds between rollup passes (at least 1).
            raw_rotation_interval_seconds: Seconds between raw rotations.

        Returns:
            Current SchedulerState after starting.

        Raises:
            InvalidArgumentError: If parameters are invalid.
            FailedPreconditionError: If the scheduler is already running.
        """
        async with self._lock:
            if self._state.status in (SchedulerStatus.RUNNING, SchedulerStatus.STARTING):
                raise FailedPreconditionError(
                    "Scheduler is already running",
                    details={"job_id": self._state.job_id},
                )

            if tick_seconds is not None:
                if tick_seconds < 1:
                    raise InvalidArgumentError(
                        "tick_seconds must be at least 1",
                        details={"tick_seconds": tick_seconds},
                    )
                self._state.tick_seconds = tick_seconds

            if raw_rotation_interval_seconds is not None:
                if raw_rotation_interval_seconds < 1:
                    raise InvalidArgumentError(
                        "raw_rotation_interval_seconds must be at least 1",
                        details={
                            "raw_rotation_interval_seconds": raw_rotation_interval_seconds
                        },
                    )
                self._state.raw_rotation_interval_seconds = raw_rotation_interval_seconds

            self._state.status = SchedulerStatus.STARTING
            self._state.job_id = str(uuid.uuid4())[:8]
            self._state.started_at = datetime.now()
            self._state.run_count = 0
            self._state.emitted_records = 0
            self._state.error_count = 0
            self._state.last_error = None
            self._last_rotation = None
            self._stop_event.clear()

            self._task = asyncio.create_task(self._run_loop())
            self._state.status = SchedulerStatus.RUNNING

            logger.info(
                "Rollup scheduler started",
                extra={
                    "job_id": self._state.job_id,
                    "tick_seconds": self._state.tick_seconds,
                    "streams": [stream.name for stream in self._streams],
                },
            )

            return self.get_status()

    async def stop(self) -> SchedulerState:
        """
        Stop the background job gracefully.

        Waits for an in-progress pass to complete before returning.

        Returns:
            Current SchedulerState after stopping.
        """
        async with self._lock:
            if self._state.status not in (SchedulerStatus.RUNNING, SchedulerStatus.STARTING):
                return self.get_status()

            self._state.status = SchedulerStatus.STOPPING
            self._stop_event.set()

            if self._task:
                try:
                    await asyncio.wait_for(self._task, timeout=STOP_TIMEOUT_SECONDS)
                except TimeoutError:
                    logger.warning("Scheduler task did not stop gracefully, cancelling")
                    self._task.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await self._task
                except asyncio.CancelledError:
                    pass
                self._task = None

            self._state.status = SchedulerStatus.STOPPED

            logger.info(
                "Rollup scheduler stopped",
                extra={
                    "job_id": self._state.job_id,
                    "run_count": self._state.run_count,
                },
            )

            return self.get_status()

    def _rotation_due(self) -> bool:
        if self._last_rotation is None:
            return True
        elapsed = self._clock() - self._last_rotation
        return elapsed >= self._state.raw_rotation_interval_seconds

    async def _run_loop(self) -> None:
        """
        Main loop that runs in the background.

        Runs a pass on every tick and handles errors so one bad pass never
        stops the loop.
        """
        loop = asyncio.get_running_loop()

        while not self._stop_event.is_set():
            try:
                await loop.run_in_executor(None, self._tick)
            except Exception as e:
                self._state.error_count += 1
                self._state.last_error = str(e)
                logger.error(
                    "Error during rollup pass",
                    extra={"error": str(e), "job_id": self._state.job_id},
                )

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(),
                    timeout=float(self._state.tick_seconds),
                )
                break
            except TimeoutError:
                pass

    def _tick(self) -> None:
        self.run_once(rotate_raw=self._rotation_due())
