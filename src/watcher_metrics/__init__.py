"""
Watcher Metrics - time-series rollup engine for monitored signals.

This package ingests raw timestamped samples into append-only JSON-lines logs,
downsamples them into coarser rollup tiers, rotates storage to bound disk
growth, and serves time-range queries to the dashboard layer.
"""

__version__ = "0.1.0"
