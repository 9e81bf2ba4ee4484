"""
Pytest configuration for the watcher metrics tests.
"""

from __future__ import annotations

import logging

import pytest

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class FakeClock:
    """Settable wall clock for deterministic processing runs."""

    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    """A clock starting at epoch 0."""
    return FakeClock()


@pytest.fixture(autouse=True)
def _propagate_package_logs() -> None:
    """Let caplog see package records even after setup_logging ran."""
    logger = logging.getLogger("watcher_metrics")
    previous = (logger.propagate, logger.level)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    yield
    logger.propagate, level = previous
    logger.setLevel(level)
