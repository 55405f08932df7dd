"""
Pytest configuration and fixtures for the HailFusion test suite.
"""

import pytest
from datetime import datetime, timedelta, timezone
from typing import List
from unittest.mock import Mock, AsyncMock

from hailfusion.adapters.base import FetchWindow, SourceAdapter
from hailfusion.config import SystemConfig
from hailfusion.models import MM_PER_INCH, Report, ReportTier
from hailfusion.reconciliation import AlertDispatcher, ReconciliationEngine, WeightBook
from hailfusion.store import InMemoryIntelligenceStore, SQLiteIntelligenceStore

# Downtown Oklahoma City
OKC_LAT = 35.4676
OKC_LON = -97.5164

T0 = datetime(2024, 9, 24, 20, 30, tzinfo=timezone.utc)


def make_report(tier: ReportTier = ReportTier.REALTIME, inches: float = 1.5,
                lat: float = OKC_LAT, lon: float = OKC_LON,
                at: datetime = T0) -> Report:
    """Report helper used across test modules."""
    return Report.create(
        tier,
        latitude=lat,
        longitude=lon,
        intensity_mm=inches * MM_PER_INCH,
        timestamp=at,
        ground_truth=tier == ReportTier.GROUND_TRUTH,
    )


class FakeClock:
    """Settable clock for engines that stamp times."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class StaticAdapter(SourceAdapter):
    """Adapter that returns canned reports without touching the network."""

    def __init__(self, tier: ReportTier, reports: List[Report] = None, **kwargs):
        self.tier = tier
        super().__init__(timeout=5, **kwargs)
        self.reports = list(reports or [])
        self.windows: List[FetchWindow] = []

    async def _fetch_once(self, window: FetchWindow) -> List[Report]:
        self.windows.append(window)
        return [r for r in self.reports if window.contains(r.timestamp)] \
            if self.tier != ReportTier.REALTIME else list(self.reports)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def test_config():
    """Default configuration with fast retry settings."""
    config = SystemConfig()
    config.environment = "testing"
    config.debug = True
    config.retry.backoff_base_seconds = 1.0
    return config


@pytest.fixture
def memory_store():
    return InMemoryIntelligenceStore()


@pytest.fixture
def sqlite_store(tmp_path):
    return SQLiteIntelligenceStore(tmp_path / "hailfusion.db")


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Runs a test against both store backends."""
    if request.param == "memory":
        return InMemoryIntelligenceStore()
    return SQLiteIntelligenceStore(tmp_path / "hailfusion.db")


@pytest.fixture
def mock_dispatcher():
    dispatcher = Mock(spec=AlertDispatcher)
    dispatcher.notify = Mock(return_value=None)
    return dispatcher


@pytest.fixture
def weights():
    return WeightBook()


@pytest.fixture
def engine(memory_store, test_config, weights, mock_dispatcher, clock):
    return ReconciliationEngine(
        memory_store,
        test_config.reconciliation,
        test_config.realtime.service_area,
        weights,
        mock_dispatcher,
        clock,
    )


@pytest.fixture
def no_sleep():
    """Records backoff delays instead of sleeping."""
    return AsyncMock(return_value=None)


@pytest.fixture
def mock_decode_client():
    client = Mock()
    client.decode = AsyncMock(return_value=([], 0))
    client.close_session = AsyncMock(return_value=None)
    return client



# Custom pytest markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests (fast, isolated)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (several components together)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (skip in CI)"
    )
