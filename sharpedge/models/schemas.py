"""
Signal pipeline data models and schemas.

Defines the core data structures for:
- Bookmaker quotes and de-vigged fair probabilities
- Signal opportunities and their status lifecycle
- Correlated multi-leg opportunities
- Movement escalation state and probability history
- Settlement records and tick summaries
"""

import re
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp (with optional trailing Z) to aware UTC."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# =============================================================================
# Enums
# =============================================================================

class MarketType(str, Enum):
    """Market categories priced by bookmakers and the exchange."""
    H2H = "h2h"
    SPREAD = "spread"
    TOTAL = "total"
    FUTURES = "futures"

    @classmethod
    def from_api_key(cls, key: str) -> Optional["MarketType"]:
        """Map an odds-provider market key (h2h, spreads, totals, outrights)."""
        return {
            "h2h": cls.H2H,
            "spreads": cls.SPREAD,
            "spread": cls.SPREAD,
            "totals": cls.TOTAL,
            "total": cls.TOTAL,
            "outrights": cls.FUTURES,
            "futures": cls.FUTURES,
        }.get(key.lower())


class Side(str, Enum):
    """Exchange position side."""
    YES = "YES"
    NO = "NO"


class FairBasis(str, Enum):
    """How a fair probability was derived."""
    SHARP_CONSENSUS = "sharp_consensus"
    TRIMMED_MEAN = "trimmed_mean"


class ConfidenceTier(str, Enum):
    """Coarse confidence classification of a signal."""
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"

    @property
    def score(self) -> int:
        """Numeric confidence (0-100) used by sizing and correlation."""
        return {"low": 50, "moderate": 70, "high": 85}[self.value]


class SignalStatus(str, Enum):
    """Signal lifecycle. Terminal states are never left."""
    ACTIVE = "active"
    EXECUTED = "executed"
    DISMISSED = "dismissed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self != SignalStatus.ACTIVE


class WatchState(str, Enum):
    """Escalation tier governing how often an event is re-scanned."""
    IDLE = "idle"
    WATCHING = "watching"
    ACTIVE = "active"


class SettlementOutcome(str, Enum):
    """Settlement result for a signal."""
    WIN = "win"
    LOSS = "loss"
    VOID = "void"
    IN_PLAY = "in_play"
    PENDING = "pending"

    @property
    def is_terminal(self) -> bool:
        return self in (SettlementOutcome.WIN, SettlementOutcome.LOSS, SettlementOutcome.VOID)


class CorrelationTier(Enum):
    """
    Pairwise leg correlation tier.

    Each member carries an explicit ordinal and the correlation
    coefficient used in the matrix.
    """
    LOW = (0, 0.40)
    MEDIUM = (1, 0.60)
    HIGH = (2, 0.80)
    PERFECT = (3, 0.95)

    def __init__(self, ordinal: int, coefficient: float):
        self.ordinal = ordinal
        self.coefficient = coefficient

    def __lt__(self, other: "CorrelationTier") -> bool:
        return self.ordinal < other.ordinal

    @classmethod
    def from_coefficient(cls, value: float) -> "CorrelationTier":
        """Highest tier whose coefficient does not exceed value."""
        result = cls.LOW
        for tier in cls:
            if value >= tier.coefficient and tier.ordinal > result.ordinal:
                result = tier
        return result


class SizingStrategy(str, Enum):
    """Stacking strategy for a multi-leg opportunity."""
    AGGRESSIVE = "aggressive"
    MODERATE = "moderate"
    CONSERVATIVE = "conservative"


class ExecutionDecision(str, Enum):
    """Cost-adjusted execution recommendation."""
    STRONG_BET = "STRONG_BET"
    BET = "BET"
    MARGINAL = "MARGINAL"
    NO_BET = "NO_BET"


# =============================================================================
# Identity normalization
# =============================================================================

def normalize_team(name: str) -> str:
    """Lowercase and strip everything but letters and digits."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


def normalize_event_key(home: str, away: str, commence_time: datetime) -> str:
    """Stable event identity: '{home}_vs_{away}_{YYYY-MM-DD}'."""
    return f"{normalize_team(home)}_vs_{normalize_team(away)}_{commence_time.strftime('%Y-%m-%d')}"


def normalize_event_name(name: str) -> str:
    """Canonical event name used to group signals from different sources."""
    text = name.lower().strip()
    text = re.sub(r"\s+(vs\.?|v\.?|@|-)\s+", " vs ", text)
    text = re.sub(r"[^a-z0-9\s]", "", text)
    return re.sub(r"\s+", " ", text).strip()


# =============================================================================
# Quotes & Fair Probabilities
# =============================================================================

@dataclass
class Quote:
    """One bookmaker's price for one outcome."""
    source: str
    outcome_name: str
    decimal_odds: float
    is_sharp_source: bool = False
    market_type: MarketType = MarketType.H2H
    point: Optional[float] = None  # Line for spreads/totals
    last_update: Optional[datetime] = None

    @property
    def implied_probability(self) -> float:
        return 1 / self.decimal_odds if self.decimal_odds > 0 else 0.0

    @staticmethod
    def american_to_decimal(american: float) -> float:
        """Convert American odds to Decimal."""
        if american > 0:
            return (american / 100) + 1
        else:
            return (100 / abs(american)) + 1


@dataclass
class FairProbability:
    """De-vigged probability for one outcome of a market."""
    outcome_name: str
    fair_probability: float
    fair_odds: float
    basis: FairBasis
    quote_count: int = 0


# =============================================================================
# Signals
# =============================================================================

_ALLOWED_TRANSITIONS = {
    SignalStatus.ACTIVE: {SignalStatus.EXECUTED, SignalStatus.DISMISSED, SignalStatus.EXPIRED},
}


@dataclass
class SignalOpportunity:
    """
    A priced discrepancy between the exchange and the sharp fair price.

    Never deleted. Status moves only through transition().
    """
    id: str
    event_key: str
    event_name: str
    sport: str
    market_type: MarketType
    side: Side
    outcome: str
    target_price: float  # Exchange price paid per share (0-1)
    fair_probability: float
    edge_percent: float
    expected_value: float
    confidence: ConfidenceTier
    kelly_fraction: float
    suggested_stake: float
    created_at: datetime
    expires_at: datetime
    status: SignalStatus = SignalStatus.ACTIVE
    bookmaker_count: int = 0
    condition_id: Optional[str] = None
    market_volume: float = 0.0
    price_updated_at: Optional[datetime] = None
    watch_only_reason: Optional[str] = None

    @property
    def confidence_score(self) -> int:
        return self.confidence.score

    @property
    def offered_odds(self) -> float:
        return 1 / self.target_price if self.target_price > 0 else 0.0

    @property
    def is_executable(self) -> bool:
        return self.status == SignalStatus.ACTIVE and self.watch_only_reason is None

    def transition(self, new_status: SignalStatus) -> None:
        """Move to a new status, rejecting changes out of terminal states."""
        if new_status == self.status:
            return
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if new_status not in allowed:
            raise ValueError(
                f"Invalid signal transition {self.status.value} -> {new_status.value}"
            )
        self.status = new_status


@dataclass
class CorrelatedLeg:
    """A signal viewed as one leg of a multi-leg opportunity."""
    signal_id: str
    outcome: str
    side: Side
    market_type: MarketType
    sport: str
    edge_percent: float
    confidence_score: float
    kelly_fraction: Optional[float] = None
    suggested_stake: float = 0.0


@dataclass
class MultiLegOpportunity:
    """Correlated legs on one event, sized as a group."""
    id: str
    event_name: str
    sport: str
    legs: list[CorrelatedLeg]
    correlation_matrix: list[list[float]]
    avg_correlation: float
    max_correlation: float
    total_edge: float
    combined_kelly_fraction: float
    risk_concentration: float
    recommended_total_stake: float
    sizing_strategy: SizingStrategy
    execution_priority: int
    warnings: list[str] = field(default_factory=list)
    storable: bool = False
    created_at: datetime = field(default_factory=utc_now)

    @property
    def correlation_tier(self) -> CorrelationTier:
        return CorrelationTier.from_coefficient(self.avg_correlation)


# =============================================================================
# Escalation
# =============================================================================

@dataclass
class EventWatchState:
    """Per-event escalation state, keyed by normalized event identity."""
    event_key: str
    event_name: str
    watch_state: WatchState = WatchState.IDLE
    initial_probability: Optional[float] = None
    peak_probability: Optional[float] = None
    current_probability: Optional[float] = None
    movement_pct: float = 0.0
    movement_velocity: float = 0.0
    escalated_at: Optional[datetime] = None
    active_until: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utc_now)


@dataclass
class ProbabilitySnapshot:
    """Point-in-time fair probability for one outcome."""
    event_key: str
    event_name: str
    outcome: str
    fair_probability: float
    captured_at: datetime


# =============================================================================
# Settlement
# =============================================================================

@dataclass
class SettlementRecord:
    """Settlement result for one signal."""
    signal_id: str
    outcome: SettlementOutcome
    realized_pl: float
    settled_at: datetime
    yes_won: Optional[bool] = None
    needs_review: bool = False
    note: str = ""


# =============================================================================
# Tick Summary
# =============================================================================

@dataclass
class TickSummary:
    """Structured result of one scheduled job run."""
    job: str
    processed: int = 0
    transitioned: int = 0
    escalated: int = 0
    settled: int = 0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    def record_error(self, source: str, error: Exception | str) -> None:
        self.errors.append(f"{source}: {error}")

    def to_dict(self) -> dict:
        return asdict(self)
