"""Pytest configuration and fixtures shared across all test modules.

This file is automatically loaded by pytest before running any tests.
Environment defaults are set before anything imports the settings module so
tests never talk to a real Redis server.
"""

import os

# CRITICAL: Set this before any imports that might load settings
os.environ["APP_ENV"] = "testing"
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("APP_RATE_LIMIT_RATE", "10/second")
os.environ.setdefault("APP_RATE_LIMIT_KEY", "ip")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402


class FakeTime:
    """Deterministic clock used to test window arithmetic and expiry."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.current = start

    def time(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()
