"""
Metric stream facade.

A stream is one monitored signal (ping latency, multi-sync ping, system
metrics, ...) stored in its own directory:

    <data_dir>/<stream>/raw.log
    <data_dir>/<stream>/<tier>.log      (or <tier>.log.gz for compressed tiers)
    <data_dir>/<stream>/rollup-state.json

MetricStream wires the raw log, rollup logs, cursor state and processor
together and exposes the read helpers consumers need.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psutil

from watcher_metrics.fileio import LOCK_SUFFIX, OwnershipCache
from watcher_metrics.logging import get_logger
from watcher_metrics.metrics.aggregators import build_aggregator
from watcher_metrics.metrics.processor import RollupProcessor, TierRunResult
from watcher_metrics.metrics.raw_log import (
    DEFAULT_BACKUP_SUFFIX,
    RawMetricsLog,
    RotationResult,
)
from watcher_metrics.metrics.records import Aggregator, EntryFilter, Sample
from watcher_metrics.metrics.rollup_log import (
    COMPRESSED_SIZE_THRESHOLD,
    PLAIN_SIZE_THRESHOLD,
    RangeResult,
    RollupLog,
    rollup_file_path,
)
from watcher_metrics.metrics.state import RollupState
from watcher_metrics.metrics.tiers import TierCatalog

if TYPE_CHECKING:
    from watcher_metrics.config import AppConfig, StreamConfig

logger = get_logger(__name__)

RAW_FILENAME = "raw.log"
STATE_FILENAME = "rollup-state.json"

# 25 hours: a full day of raw data plus slack for the daily views
DEFAULT_RAW_RETENTION_SECONDS = 90000


class MetricStream:
    """
    Storage, rollup processing and queries for one metric stream.

    Example:
        >>> stream = MetricStream("ping", "/var/lib/watcher-metrics/ping", aggregate_ping)
        >>> stream.append([{"timestamp": 1714564800, "latency": 12.5, "status": "success"}])
        True
        >>> stream.process_all()
        [...]
        >>> stream.get_metrics(hours_back=24)["tier_info"]["tier"]
        '5min'
    """

    def __init__(
        self,
        name: str,
        directory: str | Path,
        aggregate: Aggregator,
        *,
        tiers: TierCatalog | None = None,
        raw_retention_seconds: int = DEFAULT_RAW_RETENTION_SECONDS,
        ownership: OwnershipCache | None = None,
        backup_suffix: str = DEFAULT_BACKUP_SUFFIX,
        plain_size_threshold: int = PLAIN_SIZE_THRESHOLD,
        compressed_size_threshold: int = COMPRESSED_SIZE_THRESHOLD,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initialize the stream.

        Args:
            name: Stream name.
            directory: Directory holding the stream's files.
            aggregate: Bucket aggregation function.
            tiers: Tier catalog (defaults to the standard four tiers).
            raw_retention_seconds: How long raw samples are kept.
            ownership: Shared chown cache.
            backup_suffix: Suffix for the raw rotation backup.
            plain_size_threshold: Rotation gate for plain rollup files.
            compressed_size_threshold: Rotation gate for gzip rollup files.
            clock: Wall-clock source (epoch seconds).
        """
        self.name = name
        self.directory = Path(directory)
        self.tiers = tiers or TierCatalog()
        self.raw_retention_seconds = raw_retention_seconds
        self._clock = clock
        self._ownership = ownership or OwnershipCache()

        self.raw_log = RawMetricsLog(
            self.directory / RAW_FILENAME,
            ownership=self._ownership,
            backup_suffix=backup_suffix,
            clock=clock,
        )
        self.state = RollupState(self.directory / STATE_FILENAME, ownership=self._ownership)
        self.rollup_logs = {
            tier.name: RollupLog(
                rollup_file_path(self.directory, tier),
                tier,
                size_threshold=(
                    compressed_size_threshold if tier.compressed else plain_size_threshold
                ),
                ownership=self._ownership,
                clock=clock,
            )
            for tier in self.tiers
        }
        self.processor = RollupProcessor(
            self.raw_log,
            self.state,
            self.tiers,
            self.rollup_logs,
            aggregate,
            clock=clock,
        )

    @classmethod
    def from_config(
        cls,
        name: str,
        stream_config: StreamConfig,
        app_config: AppConfig,
        *,
        ownership: OwnershipCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> MetricStream:
        """
        Build a stream from its configuration section.

        Raises:
            InvalidArgumentError: If the aggregator cannot be built.
        """
        storage = app_config.storage
        tiers = TierCatalog.from_config(app_config.tiers)
        if stream_config.retention_cap_days is not None:
            tiers = tiers.capped(stream_config.retention_cap_days * 86400)

        raw_retention = stream_config.raw_retention_seconds
        if raw_retention is None:
            raw_retention = storage.raw_retention_seconds

        return cls(
            name,
            Path(storage.data_dir) / name,
            build_aggregator(stream_config.aggregator, stream_config.fields),
            tiers=tiers,
            raw_retention_seconds=raw_retention,
            ownership=ownership or OwnershipCache(storage.owner_user, storage.owner_group),
            backup_suffix=storage.backup_suffix,
            plain_size_threshold=storage.rollup_size_threshold_bytes,
            compressed_size_threshold=storage.compressed_size_threshold_bytes,
            clock=clock,
        )

    # -------------------------------------------------------------------------
    # Write path
    # -------------------------------------------------------------------------

    def append(self, entries: list[Sample]) -> bool:
        """Append raw samples; see RawMetricsLog.append."""
        return self.raw_log.append(entries)

    def rotate_raw(self) -> RotationResult:
        """Purge raw samples older than the stream's raw retention."""
        return self.raw_log.rotate(self.raw_retention_seconds)

    def process_tier(self, tier_name: str) -> TierRunResult:
        return self.processor.process_tier(tier_name)

    def process_all(self) -> list[TierRunResult]:
        return self.processor.process_all()

    def migrate_compressed_tiers(self) -> list[str]:
        """
        Fold legacy plain files of compressed tiers into their gzip files.

        Returns:
            Names of the tiers that were migrated.
        """
        migrated = []
        for tier in self.tiers:
            if not tier.compressed:
                continue
            plain_path = self.directory / f"{tier.name}.log"
            if self.rollup_logs[tier.name].migrate_to_compressed(plain_path):
                migrated.append(tier.name)
        return migrated

    # -------------------------------------------------------------------------
    # Read path
    # -------------------------------------------------------------------------

    def rollup_file_path(self, tier_name: str) -> Path:
        return self.rollup_logs[self.tiers.get(tier_name).name].path

    def read_rollup(
        self,
        tier_name: str,
        start: int | None = None,
        end: int | None = None,
        filter_fn: EntryFilter | None = None,
    ) -> RangeResult:
        """
        Read one tier's records in ``[start, end]``.

        Raises:
            InvalidArgumentError: If the tier is unknown.
        """
        tier = self.tiers.get(tier_name)
        return self.rollup_logs[tier.name].read_range(start, end, filter_fn)

    def get_metrics(
        self,
        hours_back: float = 24,
        filter_fn: EntryFilter | None = None,
    ) -> dict[str, Any]:
        """
        Read the last ``hours_back`` hours from the best-fitting tier.

        Returns:
            The range result dictionary; successful reads also carry
            ``tier_info`` with the selected tier's name, interval and label.
        """
        end = int(self._clock())
        start = end - int(hours_back * 3600)
        tier = self.tiers.best_tier_for_range(hours_back)

        result = self.rollup_logs[tier.name].read_range(start, end, filter_fn).to_dict()
        if result["success"]:
            result["tier_info"] = {
                "tier": tier.name,
                "interval": tier.interval_seconds,
                "label": tier.label,
            }
        return result

    def get_raw_metrics(
        self,
        hours_back: float = 1,
        filter_fn: EntryFilter | None = None,
    ) -> dict[str, Any]:
        """Read raw samples from the last ``hours_back`` hours."""
        end = int(self._clock())
        start = end - int(hours_back * 3600)
        data = self.raw_log.read_window(start, end, filter_fn)
        return {
            "success": True,
            "count": len(data),
            "data": data,
            "period": {"start": start, "end": end},
        }

    def tiers_info(self) -> dict[str, dict[str, Any]]:
        """Per-tier configuration plus on-disk file state."""
        return self.tiers.describe(self.rollup_file_path)

    def storage_info(self) -> dict[str, Any]:
        """
        Report the stream's on-disk footprint.

        Returns:
            Directory, data file count and total size (lock files excluded),
            plus free/total space of the filesystem holding the stream.
        """
        files = []
        if self.directory.is_dir():
            files = [
                path
                for path in self.directory.iterdir()
                if path.is_file() and not path.name.endswith(LOCK_SUFFIX)
            ]

        size_bytes = 0
        for path in files:
            try:
                size_bytes += path.stat().st_size
            except FileNotFoundError:
                continue

        info: dict[str, Any] = {
            "stream": self.name,
            "directory": str(self.directory),
            "file_count": len(files),
            "size_bytes": size_bytes,
            "disk_free_bytes": None,
            "disk_total_bytes": None,
            "disk_percent": None,
        }

        # Fall back to the parent when the stream directory does not exist yet
        usage_path = self.directory if self.directory.exists() else self.directory.parent
        try:
            disk = psutil.disk_usage(str(usage_path))
            info["disk_free_bytes"] = disk.free
            info["disk_total_bytes"] = disk.total
            info["disk_percent"] = disk.percent
        except OSError as e:
            logger.debug(
                "Failed to get disk usage",
                extra={"path": str(usage_path), "error": str(e)},
            )

        return info
