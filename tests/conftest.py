"""
Shared fixtures for the memory engine tests.
"""

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest


class FakeClock:
    """Deterministic clock; advance it explicitly between writes."""

    def __init__(self, start: datetime = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_project():
    """Create a temporary project directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def clock():
    return FakeClock()
