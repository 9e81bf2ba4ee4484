"""
Bucket aggregation functions.

Every aggregator has the signature ``aggregate(samples, bucket_start,
interval)`` and returns ``One`` (a single record), ``Many`` (one record per
entity, e.g. per remote host) or ``None`` when the bucket has nothing worth
recording. Every record carries ``timestamp``, ``period_start`` and
``period_end``.

Also provides the latency, jitter (RFC 3550) and quality-rating helpers the
network aggregators build on.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from watcher_metrics.errors import InvalidArgumentError
from watcher_metrics.metrics.records import (
    AggregateResult,
    Aggregator,
    Many,
    One,
    Record,
    Sample,
)

# Quality thresholds as (good, fair, poor) upper bounds; anything at or
# above the last bound is critical.
LATENCY_THRESHOLDS = (50.0, 100.0, 250.0)  # ms
JITTER_THRESHOLDS = (10.0, 20.0, 50.0)  # ms
PACKET_LOSS_THRESHOLDS = (1.0, 2.0, 5.0)  # percent

QUALITY_LEVELS = ("good", "fair", "poor", "critical")

UNKNOWN_HOST = "unknown"


def _period(bucket_start: int, interval: int) -> Record:
    return {
        "timestamp": bucket_start,
        "period_start": bucket_start,
        "period_end": bucket_start + interval,
    }


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values)


# =============================================================================
# Latency, Jitter and Quality
# =============================================================================


def aggregate_latencies(
    latencies: Sequence[float],
    precision: int = 1,
    include_p95: bool = True,
) -> dict[str, float | None]:
    """
    Summarize latencies into min/max/avg and optionally the 95th percentile.

    The percentile uses the nearest-rank method: index ``ceil(n * 0.95) - 1``
    of the sorted values.

    Args:
        latencies: Latency samples in ms.
        precision: Decimal places to round to.
        include_p95: Whether to include ``latency_p95``.

    Returns:
        ``latency_min``, ``latency_max``, ``latency_avg`` and
        ``latency_p95`` (all None for an empty input).
    """
    if not latencies:
        return {
            "latency_min": None,
            "latency_max": None,
            "latency_avg": None,
            "latency_p95": None,
        }

    ordered = sorted(latencies)
    result: dict[str, float | None] = {
        "latency_min": round(ordered[0], precision),
        "latency_max": round(ordered[-1], precision),
        "latency_avg": round(_mean(ordered), precision),
    }
    if include_p95:
        index = max(0, math.ceil(len(ordered) * 0.95) - 1)
        result["latency_p95"] = round(ordered[index], precision)
    return result


def jitter_from_latencies(latencies: Sequence[float]) -> dict[str, float] | None:
    """
    Compute RFC 3550 interarrival jitter over time-ordered latencies.

    ``J += (|D| - J) / 16`` for each consecutive pair, starting from 0.

    Returns:
        ``{"avg": ..., "max": ...}`` rounded to 2 decimals, or None with
        fewer than two samples.
    """
    if len(latencies) < 2:
        return None

    jitter = 0.0
    samples: list[float] = []
    for previous, current in zip(latencies, latencies[1:]):
        jitter += (abs(current - previous) - jitter) / 16.0
        samples.append(jitter)

    return {"avg": round(_mean(samples), 2), "max": round(max(samples), 2)}


@dataclass
class _JitterState:
    previous_latency: float
    jitter: float = 0.0


class JitterTracker:
    """
    Running RFC 3550 jitter per host.

    Collectors keep one tracker for the life of the process and feed it each
    new latency as it is measured.

    Example:
        >>> tracker = JitterTracker()
        >>> tracker.update("remote-1", 20.0) is None
        True
        >>> tracker.update("remote-1", 36.0)
        1.0
    """

    def __init__(self) -> None:
        self._hosts: dict[str, _JitterState] = {}

    def update(self, host: str, latency: float) -> float | None:
        """
        Fold a new latency into the host's jitter estimate.

        Returns:
            The updated jitter rounded to 2 decimals, or None for the first
            sample of a host.
        """
        state = self._hosts.get(host)
        if state is None:
            self._hosts[host] = _JitterState(previous_latency=latency)
            return None

        delta = abs(latency - state.previous_latency)
        state.jitter += (delta - state.jitter) / 16.0
        state.previous_latency = latency
        return round(state.jitter, 2)

    def reset(self, host: str | None = None) -> None:
        """Forget one host, or every host when ``host`` is None."""
        if host is None:
            self._hosts.clear()
        else:
            self._hosts.pop(host, None)

    def __contains__(self, host: object) -> bool:
        return host in self._hosts


def quality_rating(value: float, thresholds: tuple[float, float, float]) -> str:
    """Rate ``value`` against ``(good, fair, poor)`` upper bounds."""
    for level, bound in zip(QUALITY_LEVELS, thresholds):
        if value < bound:
            return level
    return QUALITY_LEVELS[-1]


def overall_quality_rating(*ratings: str | None) -> str | None:
    """
    Return the worst of the given ratings.

    None entries (metrics that could not be rated) are ignored; if every
    rating is None the result is None.
    """
    known = [rating for rating in ratings if rating is not None]
    if not known:
        return None
    return max(known, key=QUALITY_LEVELS.index)


# =============================================================================
# Ping
# =============================================================================


def aggregate_ping(samples: list[Sample], bucket_start: int, interval: int) -> AggregateResult:
    """
    Aggregate connectivity ping samples into one record.

    Latency statistics are rounded to 3 decimals. ``failure_count`` falls
    back to ``sample_count - success_count`` when no sample was explicitly
    marked as a failure.
    """
    if not samples:
        return None

    latencies: list[float] = []
    hosts: dict[str, int] = {}
    success_count = 0
    failure_count = 0

    for sample in samples:
        latency = _number(sample.get("latency"))
        if latency is not None:
            latencies.append(latency)

        host = sample.get("host")
        if host is not None:
            hosts[host] = hosts.get(host, 0) + 1

        status = sample.get("status")
        if status == "success":
            success_count += 1
        elif status == "failure":
            failure_count += 1

    sample_count = len(samples)
    if failure_count == 0:
        failure_count = sample_count - success_count

    record = _period(bucket_start, interval)
    record.update(
        {
            "min_latency": round(min(latencies), 3) if latencies else None,
            "max_latency": round(max(latencies), 3) if latencies else None,
            "avg_latency": round(_mean(latencies), 3) if latencies else None,
            "sample_count": sample_count,
            "success_count": success_count,
            "failure_count": failure_count,
            "hosts": hosts,
        }
    )
    return One(record)


# =============================================================================
# Multi-sync (per remote host)
# =============================================================================


def aggregate_multisync(
    samples: list[Sample], bucket_start: int, interval: int
) -> AggregateResult:
    """
    Aggregate multi-sync ping samples into one record per remote host.

    Any status other than ``"success"`` counts as a failure.
    """
    if not samples:
        return None

    by_host: dict[str, dict[str, Any]] = {}
    for sample in samples:
        hostname = sample.get("hostname") or UNKNOWN_HOST
        host = by_host.setdefault(
            hostname,
            {
                "address": sample.get("address", ""),
                "latencies": [],
                "jitters": [],
                "success_count": 0,
                "failure_count": 0,
            },
        )

        latency = _number(sample.get("latency"))
        if latency is not None:
            host["latencies"].append(latency)
        jitter = _number(sample.get("jitter"))
        if jitter is not None:
            host["jitters"].append(jitter)

        if sample.get("status") == "success":
            host["success_count"] += 1
        else:
            host["failure_count"] += 1

    records: list[Record] = []
    for hostname, data in by_host.items():
        latencies = data["latencies"]
        jitters = data["jitters"]
        record = _period(bucket_start, interval)
        record.update(
            {
                "hostname": hostname,
                "address": data["address"],
                "sample_count": data["success_count"] + data["failure_count"],
                "success_count": data["success_count"],
                "failure_count": data["failure_count"],
                "min_latency": round(min(latencies), 3) if latencies else None,
                "max_latency": round(max(latencies), 3) if latencies else None,
                "avg_latency": round(_mean(latencies), 3) if latencies else None,
                "avg_jitter": round(_mean(jitters), 2) if jitters else None,
                "max_jitter": round(max(jitters), 2) if jitters else None,
            }
        )
        records.append(record)

    return Many(records)


# =============================================================================
# Network quality (per remote host)
# =============================================================================


def aggregate_network_quality(
    samples: list[Sample], bucket_start: int, interval: int
) -> AggregateResult:
    """
    Aggregate network quality samples into one rated record per host.

    Latency statistics include the 95th percentile. Jitter is recomputed
    from the time-ordered latencies when there are at least two, otherwise
    taken from the jitter values recorded on the samples. Packet loss is
    averaged from ``packet_loss_pct`` where samples carry it.
    """
    if not samples:
        return None

    ordered = sorted(samples, key=lambda sample: sample.get("timestamp", 0))

    by_host: dict[str, dict[str, Any]] = {}
    for sample in ordered:
        hostname = sample.get("hostname") or UNKNOWN_HOST
        host = by_host.setdefault(
            hostname,
            {
                "address": sample.get("address", ""),
                "latencies": [],
                "jitters": [],
                "losses": [],
                "sample_count": 0,
            },
        )
        host["sample_count"] += 1

        for key, bucket in (
            ("latency", "latencies"),
            ("jitter", "jitters"),
            ("packet_loss_pct", "losses"),
        ):
            value = _number(sample.get(key))
            if value is not None:
                host[bucket].append(value)

    records: list[Record] = []
    for hostname, data in by_host.items():
        record = _period(bucket_start, interval)
        record.update(
            {
                "hostname": hostname,
                "address": data["address"],
                "sample_count": data["sample_count"],
            }
        )
        record.update(aggregate_latencies(data["latencies"]))

        jitter = jitter_from_latencies(data["latencies"])
        if jitter is None and data["jitters"]:
            jitter = {
                "avg": round(_mean(data["jitters"]), 2),
                "max": round(max(data["jitters"]), 2),
            }
        record["jitter_avg"] = jitter["avg"] if jitter else None
        record["jitter_max"] = jitter["max"] if jitter else None

        losses = data["losses"]
        record["packet_loss_pct"] = round(_mean(losses), 2) if losses else None

        latency_quality = (
            quality_rating(record["latency_avg"], LATENCY_THRESHOLDS)
            if record["latency_avg"] is not None
            else None
        )
        jitter_quality = (
            quality_rating(record["jitter_avg"], JITTER_THRESHOLDS)
            if record["jitter_avg"] is not None
            else None
        )
        loss_quality = (
            quality_rating(record["packet_loss_pct"], PACKET_LOSS_THRESHOLDS)
            if record["packet_loss_pct"] is not None
            else None
        )
        record["latency_quality"] = latency_quality
        record["jitter_quality"] = jitter_quality
        record["packet_loss_quality"] = loss_quality
        record["overall_quality"] = overall_quality_rating(
            latency_quality, jitter_quality, loss_quality
        )
        records.append(record)

    return Many(records)


# =============================================================================
# Numeric fields (system, eFuse, voltage)
# =============================================================================


def numeric_aggregator(fields: Iterable[str], precision: int = 2) -> Aggregator:
    """
    Build an aggregator summarizing numeric fields as avg/min/max.

    Args:
        fields: Sample fields to summarize.
        precision: Decimal places to round to.

    Returns:
        An aggregator producing ``{field: {"avg", "min", "max", "samples"}}``
        for each field with at least one numeric value, plus
        ``sample_count``. Buckets where no field has a value are skipped.
    """
    names = list(fields)
    if not names:
        raise InvalidArgumentError("Numeric aggregation needs at least one field")

    def aggregate(samples: list[Sample], bucket_start: int, interval: int) -> AggregateResult:
        summaries: dict[str, dict[str, float | int]] = {}
        for name in names:
            values = [
                value
                for value in (_number(sample.get(name)) for sample in samples)
                if value is not None
            ]
            if values:
                summaries[name] = {
                    "avg": round(_mean(values), precision),
                    "min": round(min(values), precision),
                    "max": round(max(values), precision),
                    "samples": len(values),
                }

        if not summaries:
            return None

        record = _period(bucket_start, interval)
        record.update(summaries)
        record["sample_count"] = len(samples)
        return One(record)

    return aggregate


def build_aggregator(name: str, fields: Iterable[str] = ()) -> Aggregator:
    """
    Resolve a configured aggregator name to its function.

    Raises:
        InvalidArgumentError: For unknown names, or ``numeric`` without fields.
    """
    if name == "ping":
        return aggregate_ping
    if name == "multisync":
        return aggregate_multisync
    if name == "network_quality":
        return aggregate_network_quality
    if name == "numeric":
        return numeric_aggregator(fields)
    raise InvalidArgumentError(
        f"Unknown aggregator: {name}",
        details={"aggregator": name},
    )
