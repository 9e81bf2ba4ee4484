"""
Append-only aggregated log for one rollup tier.

Records use the same ``[datetime] {json}`` envelope as the raw log, with
``timestamp`` set to the bucket start. Coarse tiers may be stored as gzip
JSON lines (``<tier>.log.gz``); those are rewritten whole on append because
gzip members cannot be appended to in place safely under concurrent readers.

Rotation is size gated: rollup files grow slowly, so retention is only
enforced once a file passes a size threshold instead of scanning on every
run.
"""

from __future__ import annotations

import contextlib
import gzip
import time
import zlib
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from watcher_metrics.errors import MetricsError
from watcher_metrics.fileio import (
    OwnershipCache,
    atomic_replace,
    exclusive_lock,
    shared_lock,
)
from watcher_metrics.logging import get_logger
from watcher_metrics.metrics.raw_log import RotationResult
from watcher_metrics.metrics.records import (
    ENCODE_ERRORS,
    EntryFilter,
    Record,
    encode_lines,
    has_timestamp,
    parse_line,
    sort_by_timestamp,
)
from watcher_metrics.metrics.tiers import Tier

logger = get_logger(__name__)

# Rotation size gates
PLAIN_SIZE_THRESHOLD = 1024 * 1024
COMPRESSED_SIZE_THRESHOLD = 100 * 1024

GZIP_COMPRESSION_LEVEL = 6

# Truncated or damaged gzip members surface as EOFError or zlib.error
_STORAGE_ERRORS = (MetricsError, OSError, EOFError, zlib.error)


def rollup_file_path(base_dir: str | Path, tier: Tier) -> Path:
    """Return ``<base_dir>/<tier>.log`` or ``.log.gz`` for compressed tiers."""
    path = Path(base_dir) / f"{tier.name}.log"
    return path.with_name(path.name + ".gz") if tier.compressed else path


@dataclass
class RangeResult:
    """Result of a time-range read.

    Attributes:
        success: False only when the file is missing or unreadable.
        tier: Tier name that was read.
        start: Inclusive window start (epoch seconds).
        end: Inclusive window end (epoch seconds).
        data: Matching records sorted ascending by timestamp.
        error: Reason for failure, if any.
    """

    success: bool
    tier: str
    start: int
    end: int
    data: list[Record] = field(default_factory=list)
    error: str | None = None

    @property
    def count(self) -> int:
        return len(self.data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: dict[str, Any] = {
            "success": self.success,
            "count": self.count,
            "data": self.data,
            "tier": self.tier,
            "period": {"start": self.start, "end": self.end},
        }
        if self.error is not None:
            result["error"] = self.error
        return result


class RollupLog:
    """
    Rollup records for one tier of one stream.

    Example:
        >>> tier = Tier("1min", 60, 21600, "1-minute averages")
        >>> log = RollupLog("/var/lib/watcher-metrics/ping/1min.log", tier)
        >>> log.append([{"timestamp": 960, "avg_latency": 10.0}])
        True
        >>> log.read_range(start=0, end=2000).count
        1
    """

    def __init__(
        self,
        path: str | Path,
        tier: Tier,
        *,
        size_threshold: int | None = None,
        ownership: OwnershipCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.tier = tier
        self.compressed = self.path.suffix == ".gz"
        if size_threshold is None:
            size_threshold = (
                COMPRESSED_SIZE_THRESHOLD if self.compressed else PLAIN_SIZE_THRESHOLD
            )
        self.size_threshold = size_threshold
        self._ownership = ownership or OwnershipCache()
        self._clock = clock

    # -------------------------------------------------------------------------
    # Raw file access (callers hold the lock)
    # -------------------------------------------------------------------------

    def _read_bytes(self) -> bytes:
        if self.compressed:
            with gzip.open(self.path, "rb") as f:
                return f.read()
        return self.path.read_bytes()

    def _encode(self, data: bytes) -> bytes:
        if self.compressed:
            return gzip.compress(data, compresslevel=GZIP_COMPRESSION_LEVEL)
        return data

    def _iter_entries(self, content: bytes) -> list[Record]:
        entries = []
        for line in content.splitlines():
            entry = parse_line(line)
            if has_timestamp(entry):
                entries.append(entry)
        return entries

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def append(self, records: list[Record]) -> bool:
        """
        Append records in one locked write.

        Returns:
            True if written (or nothing to write), False if the records cannot
            be encoded or written.
        """
        if not records:
            return True

        try:
            payload = encode_lines(records)
        except ENCODE_ERRORS as e:
            logger.warning(
                "Unable to encode rollup records",
                extra={"path": str(self.path), "tier": self.tier.name, "error": str(e)},
            )
            return False

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with exclusive_lock(self.path):
                if self.compressed:
                    existing = b""
                    with contextlib.suppress(FileNotFoundError):
                        existing = self._read_bytes()
                    if not atomic_replace(self.path, self._encode(existing + payload)):
                        return False
                else:
                    with open(self.path, "ab") as f:
                        f.write(payload)
                        f.flush()
        except _STORAGE_ERRORS as e:
            logger.warning(
                "Unable to append rollup records",
                extra={"path": str(self.path), "tier": self.tier.name, "error": str(e)},
            )
            return False

        self._ownership.ensure(self.path)
        return True

    def rotate(self, retention_seconds: int | None = None) -> RotationResult:
        """
        Drop records older than retention once the file passes the size gate.

        Args:
            retention_seconds: Retention override (defaults to the tier's).

        Returns:
            RotationResult; ``rotated`` is False when under the size gate.
        """
        if retention_seconds is None:
            retention_seconds = self.tier.retention_seconds

        try:
            size = self.path.stat().st_size
        except FileNotFoundError:
            return RotationResult()

        if size < self.size_threshold:
            return RotationResult()

        cutoff = int(self._clock()) - retention_seconds
        try:
            with exclusive_lock(self.path):
                entries = self._iter_entries(self._read_bytes())
                recent = [entry for entry in entries if entry["timestamp"] >= cutoff]
                if not atomic_replace(self.path, self._encode(encode_lines(recent))):
                    return RotationResult(kept=len(entries))
        except _STORAGE_ERRORS as e:
            logger.warning(
                "Unable to rotate rollup file",
                extra={"path": str(self.path), "tier": self.tier.name, "error": str(e)},
            )
            return RotationResult()

        result = RotationResult(
            purged=len(entries) - len(recent), kept=len(recent), rotated=True
        )
        logger.info(
            "Rollup file rotated",
            extra={"path": str(self.path), "tier": self.tier.name, **result.to_dict()},
        )
        self._ownership.ensure(self.path, force=True)
        return result

    def read_range(
        self,
        start: int | None = None,
        end: int | None = None,
        filter_fn: EntryFilter | None = None,
    ) -> RangeResult:
        """
        Read records with ``start <= timestamp <= end``.

        Args:
            start: Window start; defaults to ``end - tier retention``.
            end: Window end; defaults to now.
            filter_fn: Optional predicate applied to records in the window.

        Returns:
            RangeResult. A missing file yields ``success=False``; an existing
            file with no matches yields ``success=True`` and ``count=0``.
        """
        if end is None:
            end = int(self._clock())
        if start is None:
            start = end - self.tier.retention_seconds

        if not self.path.exists():
            return RangeResult(
                success=False,
                tier=self.tier.name,
                start=start,
                end=end,
                error="Rollup file not found",
            )

        try:
            with shared_lock(self.path):
                content = self._read_bytes()
        except _STORAGE_ERRORS as e:
            logger.warning(
                "Unable to read rollup file",
                extra={"path": str(self.path), "tier": self.tier.name, "error": str(e)},
            )
            return RangeResult(
                success=False,
                tier=self.tier.name,
                start=start,
                end=end,
                error="Unable to read rollup file",
            )

        data = [
            entry
            for entry in self._iter_entries(content)
            if start <= entry["timestamp"] <= end
            and (filter_fn is None or filter_fn(entry))
        ]
        return RangeResult(
            success=True,
            tier=self.tier.name,
            start=start,
            end=end,
            data=sort_by_timestamp(data),
        )

    def migrate_to_compressed(self, plain_path: str | Path) -> bool:
        """
        Fold a legacy uncompressed tier file into this gzip log.

        Only runs for compressed logs when the plain file exists and the
        gzip file does not yet.

        Returns:
            True if a migration happened.
        """
        plain_path = Path(plain_path)
        if not self.compressed or not plain_path.exists() or self.path.exists():
            return False

        try:
            with exclusive_lock(plain_path):
                content = plain_path.read_bytes()
        except (MetricsError, OSError) as e:
            logger.warning(
                "Unable to read uncompressed tier file",
                extra={"path": str(plain_path), "error": str(e)},
            )
            return False

        entries = self._iter_entries(content)
        if entries and not self.append(entries):
            return False

        with contextlib.suppress(FileNotFoundError):
            plain_path.unlink()
        logger.info(
            "Migrated tier to compressed format",
            extra={"tier": self.tier.name, "entries": len(entries)},
        )
        return True

    def size(self) -> int:
        """Return the file size in bytes (0 if missing)."""
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0
