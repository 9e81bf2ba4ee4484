"""
Append-only raw sample log for a single metric stream.

Collectors append timestamped samples in batches; the rollup processor reads
everything newer than its watermark; a periodic rotation drops samples older
than the raw retention window.

Line format:
    [YYYY-MM-DD HH:MM:SS] {"timestamp": <int>, ...fields}
"""

from __future__ import annotations

import contextlib
import os
import shutil
import time
from collections.abc import Callable
from dataclasses import dataclass
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
from watcher_metrics.metrics.records import (
    ENCODE_ERRORS,
    EntryFilter,
    Sample,
    encode_lines,
    extract_timestamp,
    has_timestamp,
    parse_line,
    sort_by_timestamp,
)

logger = get_logger(__name__)

DEFAULT_BACKUP_SUFFIX = ".old"


@dataclass
class RotationResult:
    """Outcome of a retention rotation.

    Attributes:
        purged: Entries removed because they fell outside retention.
        kept: Entries still in the file.
        rotated: Whether the file was rewritten.
    """

    purged: int = 0
    kept: int = 0
    rotated: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"purged": self.purged, "kept": self.kept, "rotated": self.rotated}


class RawMetricsLog:
    """
    Raw samples for one stream, stored as a JSON-lines file.

    All mutations take the exclusive lock; reads take the shared lock. Lock
    or open failures never propagate: appends report False and reads return
    an empty list, so collectors simply retry on their next cycle.

    Example:
        >>> raw = RawMetricsLog("/var/lib/watcher-metrics/ping/raw.log")
        >>> raw.append([{"timestamp": 1714564800, "latency": 12.5}])
        True
        >>> raw.read(since_timestamp=1714564799)
        [{'timestamp': 1714564800, 'latency': 12.5}]
    """

    def __init__(
        self,
        path: str | Path,
        *,
        ownership: OwnershipCache | None = None,
        backup_suffix: str = DEFAULT_BACKUP_SUFFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.path = Path(path)
        self.backup_path = self.path.with_name(self.path.name + backup_suffix)
        self._ownership = ownership or OwnershipCache()
        self._clock = clock

    def append(self, entries: list[Sample]) -> bool:
        """
        Append a batch of samples in one locked write.

        Args:
            entries: Samples carrying an epoch ``timestamp`` field. Entries
                without one are stamped with the current time.

        Returns:
            True if the batch was written (or was empty), False if a sample
            cannot be encoded or the file cannot be written.
        """
        if not entries:
            return True

        now = int(self._clock())
        stamped = [
            entry if "timestamp" in entry else {"timestamp": now, **entry} for entry in entries
        ]
        try:
            payload = encode_lines(stamped)
        except ENCODE_ERRORS as e:
            logger.warning(
                "Unable to encode raw metrics",
                extra={"path": str(self.path), "count": len(entries), "error": str(e)},
            )
            return False

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with exclusive_lock(self.path), open(self.path, "ab") as f:
                f.write(payload)
                f.flush()
        except (MetricsError, OSError) as e:
            logger.warning(
                "Unable to append raw metrics",
                extra={"path": str(self.path), "count": len(entries), "error": str(e)},
            )
            return False

        self._ownership.ensure(self.path)
        return True

    def read(
        self,
        since_timestamp: int = 0,
        filter_fn: EntryFilter | None = None,
    ) -> list[Sample]:
        """
        Read samples strictly newer than ``since_timestamp``.

        When a watermark is given, each line's timestamp is pulled out with a
        regex first so lines at or before the watermark are skipped without
        JSON decoding. Malformed lines are skipped.

        Args:
            since_timestamp: Exclusive lower bound (0 reads everything).
            filter_fn: Optional predicate applied to decoded samples.

        Returns:
            Matching samples sorted ascending by timestamp.
        """
        if not self.path.exists():
            return []

        entries: list[Sample] = []
        try:
            with shared_lock(self.path), open(self.path, "rb") as f:
                for line in f:
                    if since_timestamp > 0:
                        timestamp = extract_timestamp(line)
                        if timestamp is None or timestamp <= since_timestamp:
                            continue

                    entry = parse_line(line)
                    if not has_timestamp(entry):
                        continue
                    if filter_fn is not None and not filter_fn(entry):
                        continue
                    entries.append(entry)
        except (MetricsError, OSError) as e:
            logger.warning(
                "Unable to read raw metrics",
                extra={"path": str(self.path), "error": str(e)},
            )
            return []

        return sort_by_timestamp(entries)

    def read_window(
        self,
        start_time: int,
        end_time: int,
        filter_fn: EntryFilter | None = None,
    ) -> list[Sample]:
        """Read samples with ``start_time <= timestamp <= end_time``."""

        def in_window(entry: Sample) -> bool:
            timestamp = entry.get("timestamp", 0)
            if timestamp < start_time or timestamp > end_time:
                return False
            return filter_fn is None or filter_fn(entry)

        return self.read(max(0, start_time - 1), in_window)

    def rotate(self, retention_seconds: int) -> RotationResult:
        """
        Drop samples older than ``now - retention_seconds``.

        Every line is partitioned by its timestamp while the exclusive lock
        is held. The file is rewritten only if something was purged: the
        current file is preserved as the backup, then the kept lines replace
        the current file with a single rename.

        Args:
            retention_seconds: Keep samples with timestamp >= now - retention.

        Returns:
            RotationResult with purged/kept counts.
        """
        result = RotationResult()
        if not self.path.exists():
            return result

        cutoff = int(self._clock()) - retention_seconds

        try:
            with exclusive_lock(self.path):
                kept_lines: list[bytes] = []
                purged = 0
                with open(self.path, "rb") as f:
                    for line in f:
                        timestamp = extract_timestamp(line)
                        if timestamp is None:
                            continue
                        if timestamp >= cutoff:
                            kept_lines.append(line)
                        else:
                            purged += 1

                result.kept = len(kept_lines)
                if purged == 0:
                    return result

                self._write_backup()
                if not atomic_replace(self.path, b"".join(kept_lines)):
                    return RotationResult(kept=result.kept + purged)

                result.purged = purged
                result.rotated = True
        except (MetricsError, OSError) as e:
            logger.warning(
                "Unable to rotate raw metrics",
                extra={"path": str(self.path), "error": str(e)},
            )
            return RotationResult()

        logger.info(
            "Raw metrics purged",
            extra={
                "path": str(self.path),
                "purged": result.purged,
                "kept": result.kept,
            },
        )
        self._ownership.ensure(self.path, force=True)
        self._ownership.ensure(self.backup_path, force=True)
        return result

    def _write_backup(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.backup_path.unlink()
        try:
            os.link(self.path, self.backup_path)
        except OSError:
            shutil.copy2(self.path, self.backup_path)

    def size(self) -> int:
        """Return the file size in bytes (0 if missing)."""
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0
