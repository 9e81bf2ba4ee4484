"""
Tiered rollup processing.

For each tier the processor reads raw samples newer than the tier's cursor,
groups them into aligned half-open buckets ``[start, start + interval)``,
aggregates every fully elapsed bucket that has not been emitted yet, appends
the results to the tier's rollup log and advances the cursor.

Guarantees:
- A bucket is emitted at most once: it must end after ``last_bucket_end``,
  which only moves forward.
- A bucket is emitted only once closed: it must end at or before
  ``now - 1``, so samples still arriving in the current second are never cut
  off.
- Runs are safe to repeat at any cadence. Concurrent runs for the same
  stream are serialized by a non-blocking processing lock; the loser skips.
"""

from __future__ import annotations

import time
from collections import defaultdict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from watcher_metrics.errors import (
    InternalError,
    InvalidArgumentError,
    LockHeldError,
    MetricsError,
)
from watcher_metrics.fileio import exclusive_lock
from watcher_metrics.logging import get_logger
from watcher_metrics.metrics.raw_log import RawMetricsLog, RotationResult
from watcher_metrics.metrics.records import Aggregator, Many, One, Record, Sample
from watcher_metrics.metrics.rollup_log import RollupLog
from watcher_metrics.metrics.state import RollupState
from watcher_metrics.metrics.tiers import Tier, TierCatalog

logger = get_logger(__name__)

PROCESSING_LOCK_SUFFIX = ".processing"


class RunStatus(str, Enum):
    """Outcome of a single tier run."""

    THROTTLED = "throttled"
    IDLE = "idle"
    PROCESSED = "processed"
    LOCKED = "locked"
    FAILED = "failed"


@dataclass
class TierRunResult:
    """
    Result of processing one tier.

    Attributes:
        tier: Tier name.
        status: Run outcome.
        emitted_buckets: Buckets that produced at least one record.
        emitted_records: Records appended to the rollup log.
        skipped_buckets: Eligible buckets the aggregator declined.
        last_bucket_end: Cursor watermark after the run.
        rotation: Rollup rotation outcome, when rotation ran.
        error: Failure reason for FAILED runs.
    """

    tier: str
    status: RunStatus
    emitted_buckets: int = 0
    emitted_records: int = 0
    skipped_buckets: int = 0
    last_bucket_end: int = 0
    rotation: RotationResult | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "tier": self.tier,
            "status": self.status.value,
            "emitted_buckets": self.emitted_buckets,
            "emitted_records": self.emitted_records,
            "skipped_buckets": self.skipped_buckets,
            "last_bucket_end": self.last_bucket_end,
            "rotation": self.rotation.to_dict() if self.rotation else None,
            "error": self.error,
        }


def bucket_start(timestamp: float, interval: int) -> int:
    """Align ``timestamp`` down to the start of its bucket."""
    return int(timestamp // interval) * interval


def group_into_buckets(samples: list[Sample], interval: int) -> dict[int, list[Sample]]:
    """Group samples by aligned bucket start, preserving sample order."""
    buckets: dict[int, list[Sample]] = defaultdict(list)
    for sample in samples:
        buckets[bucket_start(sample["timestamp"], interval)].append(sample)
    return buckets


class RollupProcessor:
    """
    Drives rollups for every tier of one stream.

    The processor owns no clock loop; an external scheduler calls
    ``process_tier`` or ``process_all`` on its own cadence.

    Example:
        >>> processor = RollupProcessor(raw_log, state, catalog, rollup_logs, aggregate)
        >>> processor.process_tier("1min").status
        <RunStatus.PROCESSED: 'processed'>
    """

    def __init__(
        self,
        raw_log: RawMetricsLog,
        state: RollupState,
        tiers: TierCatalog,
        rollup_logs: Mapping[str, RollupLog],
        aggregate: Aggregator,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the RollupProcessor.

        Args:
            raw_log: Source of raw samples.
            state: Cursor persistence for this stream.
            tiers: Tier catalog.
            rollup_logs: Rollup log per tier name.
            aggregate: ``aggregate(samples, bucket_start, interval)`` returning
                One, Many or None.
            clock: Wall-clock source (epoch seconds).

        Raises:
            InvalidArgumentError: If a tier has no rollup log.
        """
        missing = [name for name in tiers.names if name not in rollup_logs]
        if missing:
            raise InvalidArgumentError(
                "Every tier needs a rollup log",
                details={"missing": missing},
            )
        self.raw_log = raw_log
        self.state = state
        self.tiers = tiers
        self.rollup_logs = dict(rollup_logs)
        self.aggregate = aggregate
        self._clock = clock
        self._processing_lock = Path(
            str(state.path) + PROCESSING_LOCK_SUFFIX
        )

    def process_tier(self, tier_name: str) -> TierRunResult:
        """
        Run one processing pass for a tier.

        Never raises: lock contention, I/O failures and aggregator errors
        are reported through the returned status.

        Args:
            tier_name: Name of a configured tier.

        Returns:
            TierRunResult describing what happened.
        """
        try:
            tier = self.tiers.get(tier_name)
            with exclusive_lock(self._processing_lock, blocking=False):
                return self._process(tier)
        except LockHeldError:
            logger.debug(
                "Rollup already in progress elsewhere, skipping",
                extra={"tier": tier_name, "state_path": str(self.state.path)},
            )
            return TierRunResult(tier=tier_name, status=RunStatus.LOCKED)
        except MetricsError as e:
            logger.warning(
                "Rollup tier skipped",
                extra={"tier": tier_name, "error": e.message},
            )
            return TierRunResult(tier=tier_name, status=RunStatus.FAILED, error=e.message)
        except Exception as e:
            logger.error(
                "Error processing rollup tier",
                extra={"tier": tier_name, "error": str(e)},
                exc_info=True,
            )
            return TierRunResult(tier=tier_name, status=RunStatus.FAILED, error=str(e))

    def process_all(self) -> list[TierRunResult]:
        """Process every tier, finest first."""
        return [self.process_tier(tier.name) for tier in self.tiers]

    def _process(self, tier: Tier) -> TierRunResult:
        interval = tier.interval_seconds
        now = int(self._clock())

        cursors = self.state.load(self.tiers.names)
        cursor = cursors[tier.name]

        if now - cursor.last_rollup < interval:
            return TierRunResult(
                tier=tier.name,
                status=RunStatus.THROTTLED,
                last_bucket_end=cursor.last_bucket_end,
            )

        samples = self.raw_log.read(cursor.last_processed)
        if not samples:
            cursor.last_rollup = now
            self.state.save(cursors)
            return TierRunResult(
                tier=tier.name,
                status=RunStatus.IDLE,
                last_bucket_end=cursor.last_bucket_end,
            )

        buckets = group_into_buckets(samples, interval)
        processing_cutoff = now - 1

        records: list[Record] = []
        emitted_buckets = 0
        skipped_buckets = 0
        latest_bucket_end = cursor.last_bucket_end

        for start in sorted(buckets):
            end = start + interval
            if end <= cursor.last_bucket_end:
                continue
            if end > processing_cutoff:
                # Buckets are ascending; everything after is still open too
                break

            result = self.aggregate(buckets[start], start, interval)
            if result is None:
                skipped_buckets += 1
                continue
            if not isinstance(result, One | Many):
                raise InternalError(
                    "Aggregator must return One, Many or None",
                    details={"tier": tier.name, "type": type(result).__name__},
                )

            bucket_records = result.records()
            if not bucket_records:
                skipped_buckets += 1
                continue
            for record in bucket_records:
                record.setdefault("timestamp", start)
                records.append(record)
            emitted_buckets += 1
            latest_bucket_end = max(latest_bucket_end, end)

        rollup_log = self.rollup_logs[tier.name]

        if records:
            if not rollup_log.append(records):
                return TierRunResult(
                    tier=tier.name,
                    status=RunStatus.FAILED,
                    last_bucket_end=cursor.last_bucket_end,
                    error="Unable to append rollup records",
                )
            cursor.last_processed = latest_bucket_end - 1
            cursor.last_bucket_end = latest_bucket_end
            logger.debug(
                "Rollup buckets emitted",
                extra={
                    "tier": tier.name,
                    "buckets": emitted_buckets,
                    "records": len(records),
                    "last_bucket_end": latest_bucket_end,
                },
            )

        cursor.last_rollup = now
        self.state.save(cursors)

        rotation = rollup_log.rotate(tier.retention_seconds)

        return TierRunResult(
            tier=tier.name,
            status=RunStatus.PROCESSED,
            emitted_buckets=emitted_buckets,
            emitted_records=len(records),
            skipped_buckets=skipped_buckets,
            last_bucket_end=cursor.last_bucket_end,
            rotation=rotation,
        )
