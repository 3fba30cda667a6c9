"""
Pytest configuration and shared fixtures.

Tests run against an in-memory SQLite database and a fake upstream; no
network or PostgreSQL is needed.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from mgnrega_pulse.core.config import Settings
from mgnrega_pulse.db.database import init_db, make_engine, make_session_factory
from mgnrega_pulse.services.cache import TierCache
from mgnrega_pulse.services.orchestrator import FetchOrchestrator
from mgnrega_pulse.services.record_store import RecordStore

STATE_CODE = "16"
STATE_NAME = "MAHARASHTRA"


class FakeClock:
    """Wall clock for freshness and timestamps."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class Ticker:
    """Monotonic clock for cache expiry."""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def ticker():
    return Ticker()


@pytest.fixture
def settings():
    return Settings(
        API_KEY="test-key",
        DATASET_URL="https://api.example.org/resource/mgnrega",
        DATABASE_URL="sqlite://",
        ENVIRONMENT="test",
        API_TIMEOUT_MS=2000,
        MAX_RETRY_ATTEMPTS=3,
        RETRY_BASE_DELAY_MS=1,
        SYNC_REQUEST_DELAY_MS=0,
    )


@pytest.fixture
def engine():
    engine = make_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def store(session_factory, clock):
    return RecordStore(session_factory, clock=clock)


@pytest.fixture
def cache(ticker):
    return TierCache(default_ttl=300, clock=ticker)


@pytest.fixture
def gateway():
    """Fake upstream gateway; tests set return values per operation."""
    gw = MagicMock()
    gw.fetch_by_entity_and_period = AsyncMock()
    gw.fetch_children = AsyncMock()
    gw.fetch_all_parents = AsyncMock()
    gw.fetch_by_parent_and_year = AsyncMock()
    return gw


@pytest.fixture
def orchestrator(cache, store, gateway, settings, clock):
    return FetchOrchestrator(cache, store, gateway, settings, clock=clock)


@pytest.fixture
def raw_record():
    """Factory for records shaped like the data.gov.in payload."""

    def make(district_code="1601", district_name="AHMEDNAGAR", fin_year="2024-2025", month="Jan",
             households="1,200", state_code=STATE_CODE, state_name=STATE_NAME, **extra):
        record = {
            "fin_year": fin_year,
            "month": month,
            "state_code": state_code,
            "state_name": state_name,
            "district_code": district_code,
            "district_name": district_name,
            "Total_Households_Worked": households,
            "Total_Individuals_Worked": "2000",
            "Total_Exp": "500.5",
            "Women_Persondays": "50",
            "SC_persondays": "10",
            "ST_persondays": "5",
            "Persondays_of_Central_Liability_so_far": "100",
            "Number_of_Completed_Works": "3",
            "Total_No_of_Works_Takenup": "12",
        }
        record.update(extra)
        return record

    return make
