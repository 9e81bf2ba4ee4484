"""
Line envelope and aggregate result types shared by raw and rollup logs.

Both log kinds store one JSON object per line, prefixed with a cosmetic
local datetime:

    [2024-05-01 12:00:00] {"timestamp": 1714564800, "latency": 12.5}

The embedded ``timestamp`` (epoch seconds) is authoritative. Readers also
accept bare ``{json}`` lines.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

Sample = dict[str, Any]
Record = dict[str, Any]
EntryFilter = Callable[[dict[str, Any]], bool]

DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

TIMESTAMP_PATTERN = re.compile(rb'"timestamp"\s*:\s*(\d+)')

# Raised by encode_lines for bad timestamps or unserializable values
ENCODE_ERRORS = (TypeError, ValueError, OverflowError, OSError)

_JSON_OBJECT_PATTERN = re.compile(r"\{.*\}")


def format_line(entry: dict[str, Any]) -> str:
    """Encode ``entry`` as a ``[datetime] {json}`` line (newline included)."""
    stamp = datetime.fromtimestamp(int(entry.get("timestamp", 0))).strftime(
        DATETIME_FORMAT
    )
    return f"[{stamp}] {json.dumps(entry, separators=(',', ':'))}\n"


def encode_lines(entries: list[dict[str, Any]]) -> bytes:
    """
    Encode a batch of entries into one contiguous buffer.

    Raises:
        One of ENCODE_ERRORS if a timestamp is not an epoch number or a
        value cannot be serialized.
    """
    return "".join(format_line(entry) for entry in entries).encode()


def extract_timestamp(line: bytes) -> int | None:
    """
    Pull the epoch timestamp out of a raw line without JSON decoding.

    Returns:
        The integer timestamp, or None if the line carries none.
    """
    match = TIMESTAMP_PATTERN.search(line)
    return int(match.group(1)) if match else None


def parse_line(line: str | bytes) -> dict[str, Any] | None:
    """
    Decode one log line in either envelope or bare JSON form.

    Returns:
        The decoded object, or None if the line is blank or malformed.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    line = line.strip()
    if not line:
        return None

    if line[0] != "{":
        match = _JSON_OBJECT_PATTERN.search(line)
        if match is None:
            return None
        line = match.group(0)

    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return None
    return entry if isinstance(entry, dict) else None


def has_timestamp(entry: dict[str, Any] | None) -> bool:
    """Return True if ``entry`` carries a numeric ``timestamp``."""
    if entry is None:
        return False
    timestamp = entry.get("timestamp")
    return isinstance(timestamp, int | float) and not isinstance(timestamp, bool)


def sort_by_timestamp(entries: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Sort entries ascending by timestamp (stable for duplicates)."""
    entries.sort(key=lambda entry: entry.get("timestamp", 0))
    return entries


# =============================================================================
# Aggregate Results
# =============================================================================


@dataclass(frozen=True)
class One:
    """A bucket aggregated into a single rollup record."""

    record: Record

    def records(self) -> list[Record]:
        return [self.record]


@dataclass(frozen=True)
class Many:
    """A bucket fanned out into several records (e.g., one per remote host)."""

    items: list[Record] = field(default_factory=list)

    def records(self) -> list[Record]:
        return list(self.items)


# None means "insufficient data, skip this bucket"
AggregateResult = One | Many | None

Aggregator = Callable[[list[Sample], int, int], AggregateResult]
