"""
Metrics rollup engine.

Components:
- raw_log: append-only raw sample log with retention rotation
- rollup_log: per-tier aggregated log (plain or gzip) with range reads
- state: per-tier rollup cursors
- tiers: tier catalog and tier selection
- processor: bucketing and at-most-once aggregation per tier
- aggregators: ping, multi-sync, network quality and numeric aggregation
- stream: facade tying one stream's files together
- scheduler: background asyncio driver
"""

from watcher_metrics.metrics.processor import RollupProcessor, RunStatus, TierRunResult
from watcher_metrics.metrics.raw_log import RawMetricsLog, RotationResult
from watcher_metrics.metrics.records import Many, One
from watcher_metrics.metrics.rollup_log import RangeResult, RollupLog
from watcher_metrics.metrics.scheduler import RollupScheduler
from watcher_metrics.metrics.state import RollupCursor, RollupState
from watcher_metrics.metrics.stream import MetricStream
from watcher_metrics.metrics.tiers import Tier, TierCatalog

__all__ = [
    "Many",
    "MetricStream",
    "One",
    "RangeResult",
    "RawMetricsLog",
    "RollupCursor",
    "RollupLog",
    "RollupProcessor",
    "RollupScheduler",
    "RollupState",
    "RotationResult",
    "RunStatus",
    "Tier",
    "TierCatalog",
    "TierRunResult",
]
