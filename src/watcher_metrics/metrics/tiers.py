"""
Rollup tier catalog.

A tier is a named aggregation resolution: bucket width, retention and a
display label. Tiers are ordered finest to coarsest with strictly increasing
intervals.

Default tiers:
    1min   60 s buckets, kept 6 hours
    5min   5 min buckets, kept 48 hours
    30min  30 min buckets, kept 14 days (gzip)
    2hour  2 hour buckets, kept 90 days (gzip)
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from watcher_metrics.errors import InvalidArgumentError

if TYPE_CHECKING:
    from watcher_metrics.config import TierConfig


@dataclass(frozen=True)
class Tier:
    """A single rollup resolution.

    Attributes:
        name: Tier name, also the rollup file stem.
        interval_seconds: Bucket width.
        retention_seconds: How long rollup records are kept.
        label: Human-readable label.
        compressed: Whether the tier is stored gzip-compressed.
    """

    name: str
    interval_seconds: int
    retention_seconds: int
    label: str = ""
    compressed: bool = False

    @classmethod
    def from_config(cls, config: TierConfig) -> Tier:
        return cls(
            name=config.name,
            interval_seconds=config.interval_seconds,
            retention_seconds=config.retention_seconds,
            label=config.label,
            compressed=config.compressed,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "interval": self.interval_seconds,
            "retention": self.retention_seconds,
            "label": self.label,
            "compressed": self.compressed,
        }


DEFAULT_TIERS: tuple[Tier, ...] = (
    Tier("1min", 60, 21600, "1-minute averages"),
    Tier("5min", 300, 172800, "5-minute averages"),
    Tier("30min", 1800, 1209600, "30-minute averages", compressed=True),
    Tier("2hour", 7200, 7776000, "2-hour averages", compressed=True),
)


def format_interval(seconds: int) -> str:
    """Format a bucket interval, e.g. ``300`` -> ``"5 minutes"``."""
    if seconds < 60:
        return f"{seconds} seconds"
    if seconds < 3600:
        return f"{seconds / 60:g} minutes"
    return f"{seconds / 3600:g} hours"


def format_duration(seconds: int) -> str:
    """Format a retention period, e.g. ``1209600`` -> ``"14 days"``."""
    if seconds < 3600:
        return f"{seconds / 60:g} minutes"
    if seconds < 86400:
        return f"{seconds / 3600:g} hours"
    return f"{seconds / 86400:g} days"


class TierCatalog:
    """
    Ordered, validated set of tiers for a stream.

    Example:
        >>> catalog = TierCatalog()
        >>> catalog.best_tier_for_range(24).name
        '5min'
    """

    def __init__(self, tiers: Iterable[Tier] = DEFAULT_TIERS) -> None:
        """
        Initialize the catalog.

        Args:
            tiers: Tiers ordered finest to coarsest.

        Raises:
            InvalidArgumentError: If the set is empty, names repeat, intervals
                are not strictly increasing, or a retention is shorter than
                its interval.
        """
        self._tiers: dict[str, Tier] = {}
        previous_interval = 0
        for tier in tiers:
            if tier.name in self._tiers:
                raise InvalidArgumentError(
                    "Duplicate tier name",
                    details={"tier": tier.name},
                )
            if tier.interval_seconds <= previous_interval:
                raise InvalidArgumentError(
                    "Tier intervals must be strictly increasing",
                    details={"tier": tier.name, "interval": tier.interval_seconds},
                )
            if tier.retention_seconds < tier.interval_seconds:
                raise InvalidArgumentError(
                    "Tier retention must be at least its interval",
                    details={
                        "tier": tier.name,
                        "interval": tier.interval_seconds,
                        "retention": tier.retention_seconds,
                    },
                )
            self._tiers[tier.name] = tier
            previous_interval = tier.interval_seconds

        if not self._tiers:
            raise InvalidArgumentError("At least one tier is required")

    @classmethod
    def from_config(cls, configs: Iterable[TierConfig]) -> TierCatalog:
        return cls(Tier.from_config(config) for config in configs)

    def __iter__(self) -> Iterator[Tier]:
        return iter(self._tiers.values())

    def __len__(self) -> int:
        return len(self._tiers)

    def __contains__(self, name: object) -> bool:
        return name in self._tiers

    def __getitem__(self, name: str) -> Tier:
        return self.get(name)

    @property
    def names(self) -> list[str]:
        return list(self._tiers)

    @property
    def finest(self) -> Tier:
        return next(iter(self._tiers.values()))

    @property
    def coarsest(self) -> Tier:
        return next(reversed(self._tiers.values()))

    def get(self, name: str) -> Tier:
        """
        Look up a tier by name.

        Raises:
            InvalidArgumentError: If no tier has that name.
        """
        try:
            return self._tiers[name]
        except KeyError:
            raise InvalidArgumentError(
                f"Unknown tier: {name}",
                details={"tier": name, "valid": self.names},
            ) from None

    def capped(self, retention_seconds: int) -> TierCatalog:
        """
        Return a catalog whose retentions are capped at ``retention_seconds``.

        A tier's retention is never capped below its own interval.
        """
        return TierCatalog(
            replace(
                tier,
                retention_seconds=max(
                    tier.interval_seconds,
                    min(tier.retention_seconds, retention_seconds),
                ),
            )
            for tier in self
        )

    def best_tier_for_range(self, hours_back: float) -> Tier:
        """
        Select the finest tier whose retention covers the requested span.

        Each tier serves spans up to its retention in hours, so the
        thresholds rise monotonically and every span beyond the
        second-coarsest tier falls to the coarsest one.

        Args:
            hours_back: Requested look-back window in hours.

        Returns:
            The selected tier.
        """
        for tier in self:
            if hours_back <= tier.retention_seconds / 3600:
                return tier
        return self.coarsest

    def thresholds(self) -> list[tuple[str, float]]:
        """Return ``(tier, max_hours)`` pairs; the coarsest is unbounded."""
        pairs: list[tuple[str, float]] = [
            (tier.name, tier.retention_seconds / 3600) for tier in self
        ]
        pairs[-1] = (pairs[-1][0], math.inf)
        return pairs

    def describe(self, get_file_path: Callable[[str], str | Path]) -> dict[str, dict[str, Any]]:
        """
        Report per-tier configuration and on-disk state for diagnostics.

        Args:
            get_file_path: Maps a tier name to its rollup file.

        Returns:
            Mapping of tier name to metadata, including file existence/size.
        """
        result: dict[str, dict[str, Any]] = {}
        for tier in self:
            path = Path(get_file_path(tier.name))
            try:
                size = path.stat().st_size
                exists = True
            except OSError:
                size = 0
                exists = False
            result[tier.name] = {
                "interval": tier.interval_seconds,
                "interval_label": format_interval(tier.interval_seconds),
                "retention": tier.retention_seconds,
                "retention_label": format_duration(tier.retention_seconds),
                "label": tier.label,
                "file_exists": exists,
                "file_size": size,
                "compressed": tier.compressed,
            }
        return result
