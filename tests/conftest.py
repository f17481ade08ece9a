"""Shared fixtures for the pipeline tests."""

from datetime import datetime, timedelta, timezone

import pytest
from structlog.testing import capture_logs

from sharpedge.models.schemas import (
    ConfidenceTier,
    MarketType,
    Side,
    SignalOpportunity,
)
from sharpedge.storage.store import Store


NOW = datetime(2026, 3, 14, 18, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def store(tmp_path):
    """Fresh SQLite store in a temporary file."""
    s = Store(tmp_path / "sharpedge.db")
    yield s
    s.close()


@pytest.fixture
def make_signal():
    """Factory for signals with sensible defaults."""

    def _make(**overrides) -> SignalOpportunity:
        fields = dict(
            id="sig-1",
            event_key="losangeleslakers_vs_bostonceltics_2026-03-14",
            event_name="Los Angeles Lakers vs Boston Celtics",
            sport="basketball_nba",
            market_type=MarketType.H2H,
            side=Side.YES,
            outcome="Los Angeles Lakers",
            target_price=0.50,
            fair_probability=0.55,
            edge_percent=10.0,
            expected_value=0.10,
            confidence=ConfidenceTier.HIGH,
            kelly_fraction=0.05,
            suggested_stake=100.0,
            created_at=NOW - timedelta(hours=3),
            expires_at=NOW + timedelta(hours=2),
            bookmaker_count=6,
            condition_id="0xabc",
            market_volume=50_000.0,
            price_updated_at=NOW - timedelta(minutes=1),
        )
        fields.update(overrides)
        return SignalOpportunity(**fields)

    return _make


@pytest.fixture(autouse=True)
def captured_logs():
    """Capture structlog events instead of printing them."""
    with capture_logs() as logs:
        yield logs
