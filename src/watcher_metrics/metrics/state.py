"""
Durable per-tier rollup cursors.

The state file is a pretty-printed JSON object keyed by tier name:

    {
        "1min": {"last_processed": 1079, "last_bucket_end": 1080, "last_rollup": 1130},
        ...
    }

A missing, unreadable or structurally invalid file is rebuilt from zeroed
cursors. That loses nothing permanent: rollups regenerate from the raw log
for as far back as raw retention reaches.
"""

from __future__ import annotations

import json
import math
from collections.abc import Iterable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from watcher_metrics.errors import CorruptDataError, MetricsError
from watcher_metrics.fileio import (
    OwnershipCache,
    atomic_replace,
    exclusive_lock,
    shared_lock,
)
from watcher_metrics.logging import get_logger

logger = get_logger(__name__)

CURSOR_FIELDS = ("last_processed", "last_bucket_end", "last_rollup")


def _reject_constant(name: str) -> Any:
    raise ValueError(f"Non-finite number in rollup state: {name}")


@dataclass
class RollupCursor:
    """Watermarks for one tier.

    Attributes:
        last_processed: Exclusive lower bound for the next raw read.
        last_bucket_end: End of the newest bucket already emitted.
        last_rollup: Wall-clock time of the last processing run.
    """

    last_processed: int = 0
    last_bucket_end: int = 0
    last_rollup: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RollupCursor:
        """Build a cursor, defaulting missing, non-numeric or non-finite fields to 0."""
        values: dict[str, int] = {}
        for name in CURSOR_FIELDS:
            value = data.get(name, 0)
            if isinstance(value, bool) or not isinstance(value, int | float):
                value = 0
            elif not math.isfinite(value):
                value = 0
            values[name] = int(value)
        return cls(**values)

    def to_dict(self) -> dict[str, int]:
        """Convert to dictionary for serialization."""
        return asdict(self)


class RollupState:
    """
    Loads and saves the cursor map for one stream.

    Example:
        >>> state = RollupState("/var/lib/watcher-metrics/ping/rollup-state.json")
        >>> cursors = state.load(["1min", "5min"])
        >>> cursors["1min"].last_bucket_end
        0
        >>> state.save(cursors)
        True
    """

    def __init__(
        self,
        path: str | Path,
        *,
        ownership: OwnershipCache | None = None,
    ) -> None:
        self.path = Path(path)
        self._ownership = ownership or OwnershipCache()

    @staticmethod
    def fresh(tiers: Iterable[str]) -> dict[str, RollupCursor]:
        """Return zeroed cursors for every tier."""
        return {tier: RollupCursor() for tier in tiers}

    def _read_raw(self) -> dict[str, Any] | None:
        """
        Read the state file.

        Returns:
            The decoded mapping, or None if the file does not exist.

        Raises:
            CorruptDataError: If the content is empty, not JSON (NaN and
                Infinity included), or not a non-empty mapping.
            StorageUnavailableError: If the file cannot be locked.
        """
        if not self.path.exists():
            return None

        try:
            with shared_lock(self.path):
                content = self.path.read_text()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptDataError(
                f"Unable to read rollup state: {e}",
                details={"path": str(self.path)},
            ) from e

        try:
            data = json.loads(content, parse_constant=_reject_constant)
        except ValueError as e:
            raise CorruptDataError(
                "Rollup state is not valid JSON",
                details={"path": str(self.path)},
            ) from e

        if not isinstance(data, dict) or not data:
            raise CorruptDataError(
                "Rollup state is not a mapping of tiers",
                details={"path": str(self.path)},
            )
        return data

    def load(self, tiers: Iterable[str]) -> dict[str, RollupCursor]:
        """
        Load cursors for ``tiers``, repairing the file where needed.

        - Missing file: fresh zeroed cursors are built and persisted.
        - Corrupt file: logged, rebuilt from zeroed cursors and persisted.
        - Missing tiers or cursor fields: backfilled with zero defaults.

        Never raises for I/O or data problems.

        Args:
            tiers: Configured tier names.

        Returns:
            Mapping of tier name to RollupCursor, one per configured tier.
        """
        tiers = list(tiers)

        try:
            data = self._read_raw()
        except CorruptDataError as e:
            logger.warning(
                "Corrupted rollup state detected, rebuilding fresh state",
                extra={"path": str(self.path), "error": e.message},
            )
            state = self.fresh(tiers)
            self.save(state)
            return state
        except MetricsError as e:
            logger.warning(
                "Rollup state unavailable, using fresh state",
                extra={"path": str(self.path), "error": e.message},
            )
            return self.fresh(tiers)

        if data is None:
            state = self.fresh(tiers)
            self.save(state)
            return state

        cursors: dict[str, RollupCursor] = {}
        for tier in tiers:
            entry = data.get(tier)
            if isinstance(entry, dict):
                cursors[tier] = RollupCursor.from_dict(entry)
            else:
                cursors[tier] = RollupCursor()
        return cursors

    def save(self, state: dict[str, RollupCursor]) -> bool:
        """
        Persist the cursor map as pretty-printed JSON.

        Args:
            state: Mapping of tier name to cursor.

        Returns:
            True on success, False if the file could not be written.
        """
        payload = json.dumps(
            {tier: cursor.to_dict() for tier, cursor in state.items()},
            indent=4,
        ).encode()

        try:
            with exclusive_lock(self.path):
                written = atomic_replace(self.path, payload)
        except MetricsError as e:
            logger.error(
                "Unable to lock rollup state file",
                extra={"path": str(self.path), "error": e.message},
            )
            return False

        if not written:
            logger.error(
                "Unable to write rollup state file",
                extra={"path": str(self.path)},
            )
            return False

        self._ownership.ensure(self.path)
        return True
