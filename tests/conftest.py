"""
Pytest configuration and fixtures for log-router.

Provides cross-platform event loop configuration and event/sink factories.
"""

import asyncio
import sys
from datetime import datetime, timezone

import pytest

from log_router import Event, Severity

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


T0 = datetime(2024, 5, 1, 12, 30, 15, tzinfo=timezone.utc)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def make_event():
    """Factory for valid events; keyword overrides go straight to Event."""

    def _make(severity=Severity.INFO, **kwargs):
        kwargs.setdefault("timestamp", T0)
        kwargs.setdefault("source", "order-service")
        kwargs.setdefault("message", "hello")
        return Event(severity=severity, **kwargs)

    return _make


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fast_sleep():
    """Backoff sleep replacement that records requested delays."""
    delays = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)
        await asyncio.sleep(0)

    _sleep.delays = delays
    return _sleep
