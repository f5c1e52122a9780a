from datetime import datetime, timedelta, timezone

import pytest
from prometheus_client import CollectorRegistry

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """
    a settable clock for deterministic time handling.
    """

    def __init__(self, now: "datetime" = NOW) -> "None":
        self.now = now

    def __call__(self) -> "datetime":
        return self.now

    def advance(self, delta: "timedelta") -> "None":
        self.now += delta


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def clock() -> "FakeClock":
    return FakeClock()
