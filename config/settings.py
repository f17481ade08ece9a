"""
Configuration settings for the SharpEdge signal pipeline.
Uses pydantic-settings for validation and environment variable loading.
"""

from typing import Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OddsAPISettings(BaseSettings):
    """The Odds API connection and quota settings."""

    api_key: str = Field(default="", description="The Odds API key")
    base_url: str = "https://api.the-odds-api.com/v4"

    regions: list[str] = Field(default_factory=lambda: ["us", "eu", "uk"])

    # Sports polled by the signal job (The Odds API sport keys)
    sports: list[str] = Field(default_factory=lambda: [
        "soccer_epl",
        "soccer_spain_la_liga",
        "soccer_germany_bundesliga",
        "soccer_italy_serie_a",
        "soccer_france_ligue_one",
        "basketball_nba",
        "americanfootball_nfl",
        "icehockey_nhl",
    ])

    # Sharp reference books
    sharp_books: list[str] = Field(default_factory=lambda: [
        "pinnacle",
        "pinnacle_us",
        "betfair_ex_uk",
        "betfair_ex_eu",
        "matchbook",
        "sbobet",
        "circa",
    ])

    # Sequential dispatch
    request_delay_seconds: float = 1.0
    timeout_seconds: float = 15.0


class PolymarketSettings(BaseSettings):
    """Settings for the Polymarket Gamma API."""

    gamma_url: str = "https://gamma-api.polymarket.com"
    request_delay_seconds: float = 0.2
    timeout_seconds: float = 10.0


class EdgeSettings(BaseSettings):
    """Value-bet classification thresholds."""

    # Minimum edge by league tier (percent)
    tier1_min_edge_pct: float = 3.0
    tier2_min_edge_pct: float = 5.0
    default_min_edge_pct: float = 8.0

    min_expected_value: float = 0.02
    min_odds: float = 1.30
    max_odds: float = 10.00
    min_bookmakers: int = 3

    # Stake suggestion (percent of bankroll)
    kelly_fraction: float = 0.25
    min_stake_pct: float = 0.25
    max_stake_pct: float = 1.5
    max_event_exposure_pct: float = 3.5


class SizingSettings(BaseSettings):
    """Layered Kelly position sizing."""

    fractional_kelly: float = 0.5
    confidence_multiplier: float = 0.01  # 1% reduction per point below 100
    max_correlation_reduction: float = 0.4
    max_single_bet: float = 0.08  # Hard cap, fraction of bankroll
    max_portfolio_exposure: float = 0.15
    min_edge: float = 0.02
    min_bankroll: float = 1000.0

    market_multipliers: dict[str, float] = Field(default_factory=lambda: {
        "h2h": 1.0,
        "spread": 1.1,
        "total": 0.9,
        "futures": 0.8,
    })


class CorrelationSettings(BaseSettings):
    """Multi-leg correlation detection thresholds."""

    lookback_hours: int = 4
    min_legs: int = 2
    max_legs: int = 5
    min_leg_edge_pct: float = 2.0
    min_leg_confidence: float = 65.0
    low_confidence_threshold: float = 70.0
    min_total_edge_pct: float = 8.0

    correlation_reduction: float = 0.3
    kelly_multiplier: float = 0.5
    max_combined_kelly: float = 0.15
    max_single_event_risk: float = 0.15
    default_leg_kelly: float = 0.02


class EscalationSettings(BaseSettings):
    """Movement-driven watch state escalation."""

    movement_threshold_pct: float = 6.0
    velocity_min_pct_per_min: float = 0.4
    lookback_minutes: int = 15
    active_window_minutes: int = 20
    max_active_events: int = 5
    snapshot_retention_hours: int = 24
    max_sports_per_tick: int = 2

    # Scan interval (seconds) per watch state, read by the ingestion layer
    idle_poll_seconds: int = 1800
    watching_poll_seconds: int = 300
    active_poll_seconds: int = 60

    sports: list[str] = Field(default_factory=lambda: [
        "basketball_nba",
        "icehockey_nhl",
        "americanfootball_nfl",
        "soccer_epl",
    ])


class GateSettings(BaseSettings):
    """Pre-trade execution gate thresholds."""

    max_price_age_seconds: float = 300.0
    min_volume: float = 5000.0
    artifact_min_probability: float = 0.85
    artifact_min_edge_pct: float = 40.0


class SettlementSettings(BaseSettings):
    """Settlement reconciliation policy."""

    min_signal_age_hours: float = 2.0
    batch_limit: int = 50
    win_price_threshold: float = 0.98
    loss_price_threshold: float = 0.02
    overdue_hours: float = 24.0

    @field_validator("loss_price_threshold")
    @classmethod
    def _loss_below_half(cls, v: float) -> float:
        if not 0.0 <= v < 0.5:
            raise ValueError("loss_price_threshold must be in [0, 0.5)")
        return v


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore"
    )

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Database
    database_path: str = "./data/sharpedge.db"

    # Bankroll used for stake suggestions
    bankroll: float = Field(default=10000.0, description="Bankroll in USD")

    # Sub-settings
    odds_api: OddsAPISettings = Field(default_factory=OddsAPISettings)
    polymarket: PolymarketSettings = Field(default_factory=PolymarketSettings)
    edge: EdgeSettings = Field(default_factory=EdgeSettings)
    sizing: SizingSettings = Field(default_factory=SizingSettings)
    correlation: CorrelationSettings = Field(default_factory=CorrelationSettings)
    escalation: EscalationSettings = Field(default_factory=EscalationSettings)
    gate: GateSettings = Field(default_factory=GateSettings)
    settlement: SettlementSettings = Field(default_factory=SettlementSettings)


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from the environment."""
    global _settings
    _settings = Settings()
    return _settings
