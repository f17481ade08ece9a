"""
Position Sizing Engine.

Layered Kelly criterion. Raw Kelly f* = (b*p - q) / b is passed through
an ordered sequence of pure adjustment steps:

    1. Fractional Kelly (half-Kelly by default)
    2. Confidence discount (1% per point below 100)
    3. Market category multiplier
    4. Correlation discount (up to 40%)
    5. Hard cap on a single position

Each step takes a frozen SizingState and returns a new one with its
adjustment appended to the audit trail.
"""

import math
from dataclasses import dataclass, field, replace
from typing import Callable, Optional

import structlog

from sharpedge.models.schemas import MarketType

logger = structlog.get_logger()


@dataclass
class SizingConfig:
    """Kelly sizing parameters."""
    fractional_kelly: float = 0.5
    confidence_multiplier: float = 0.01
    max_correlation_reduction: float = 0.4
    max_single_bet: float = 0.08
    max_portfolio_exposure: float = 0.15
    min_edge: float = 0.02
    min_bankroll: float = 1000.0
    market_multipliers: dict[str, float] = field(default_factory=lambda: {
        "h2h": 1.0,
        "spread": 1.1,
        "total": 0.9,
        "futures": 0.8,
    })

    @classmethod
    def from_settings(cls, settings) -> "SizingConfig":
        return cls(**settings.model_dump())


@dataclass(frozen=True)
class SizingRequest:
    """Inputs for one sizing decision."""
    probability: float
    odds: float  # Net payout per unit staked (decimal odds - 1)
    bankroll: float
    market_type: MarketType = MarketType.H2H
    correlation_factor: float = 0.0  # 0-1
    confidence: float = 100.0  # 0-100
    max_fraction: Optional[float] = None  # Overrides the configured hard cap


@dataclass(frozen=True)
class SizingState:
    """Immutable intermediate result threaded through the adjustment steps."""
    request: SizingRequest
    raw_fraction: float
    fraction: float
    adjustments: tuple[str, ...] = ()

    def adjust(self, fraction: float, note: Optional[str]) -> "SizingState":
        notes = self.adjustments + (note,) if note else self.adjustments
        return replace(self, fraction=fraction, adjustments=notes)


@dataclass
class KellyResult:
    """Final sizing recommendation with calibration metrics."""
    raw_fraction: float
    fraction: float
    amount: float
    max_loss: float
    expected_value: float
    growth_rate: float
    risk_of_ruin: float
    adjustments: list[str]
    reason: Optional[str] = None

    @property
    def is_bet(self) -> bool:
        return self.amount > 0


SizingStep = Callable[[SizingState, SizingConfig], SizingState]


# =============================================================================
# Adjustment Steps
# =============================================================================

def apply_fractional_kelly(state: SizingState, config: SizingConfig) -> SizingState:
    multiplier = config.fractional_kelly
    reduction = (1 - multiplier) * 100
    return state.adjust(
        state.fraction * multiplier,
        f"Half-Kelly (-{reduction:.0f}%)" if multiplier == 0.5 else f"Fractional Kelly x{multiplier:.2f} (-{reduction:.0f}%)",
    )


def apply_confidence_discount(state: SizingState, config: SizingConfig) -> SizingState:
    confidence = min(max(state.request.confidence, 0.0), 100.0)
    if confidence >= 100:
        return state
    discount = (100 - confidence) * config.confidence_multiplier
    multiplier = max(0.0, 1 - discount)
    return state.adjust(state.fraction * multiplier, f"Confidence (-{discount * 100:.1f}%)")


def apply_market_multiplier(state: SizingState, config: SizingConfig) -> SizingState:
    market = state.request.market_type.value
    multiplier = config.market_multipliers.get(market, 1.0)
    if multiplier == 1.0:
        return state
    change = (multiplier - 1) * 100
    sign = "+" if change > 0 else "-"
    return state.adjust(state.fraction * multiplier, f"{market} market ({sign}{abs(change):.1f}%)")


def apply_correlation_discount(state: SizingState, config: SizingConfig) -> SizingState:
    factor = min(max(state.request.correlation_factor, 0.0), 1.0)
    if factor <= 0:
        return state
    reduction = factor * config.max_correlation_reduction
    return state.adjust(state.fraction * (1 - reduction), f"Correlation (-{reduction * 100:.1f}%)")


def apply_hard_cap(state: SizingState, config: SizingConfig) -> SizingState:
    cap = state.request.max_fraction if state.request.max_fraction is not None else config.max_single_bet
    if state.fraction <= cap:
        return state
    return state.adjust(cap, f"Hard cap ({cap * 100:.0f}% max)")


SIZING_STEPS: tuple[SizingStep, ...] = (
    apply_fractional_kelly,
    apply_confidence_discount,
    apply_market_multiplier,
    apply_correlation_discount,
    apply_hard_cap,
)


# =============================================================================
# Formulas
# =============================================================================

def raw_kelly(probability: float, odds: float) -> float:
    """Full Kelly fraction for net odds b: (b*p - q) / b."""
    if odds <= 0:
        return 0.0
    return (odds * probability - (1 - probability)) / odds


def growth_rate(probability: float, odds: float, fraction: float) -> float:
    """Expected log growth per bet: p*ln(1+f*b) + q*ln(1-f)."""
    if fraction <= 0:
        return 0.0
    if fraction >= 1:
        return float("-inf")
    q = 1 - probability
    return probability * math.log(1 + fraction * odds) + q * math.log(1 - fraction)


def risk_of_ruin(probability: float, odds: float, fraction: float) -> float:
    """
    Approximate probability of halving the bankroll.

    Uses exp(-2 * advantage * drawdown / variance) with a 50% drawdown.
    """
    if fraction <= 0:
        return 0.0
    q = 1 - probability
    advantage = probability * odds - q
    if advantage <= 0:
        return 1.0
    variance = probability * odds ** 2 + q - advantage ** 2
    if variance <= 0:
        return 0.0
    ror = math.exp(-2 * advantage * 0.5 / variance)
    return min(max(ror, 0.0), 1.0)


# =============================================================================
# Sizing Engine
# =============================================================================

class PositionSizer:
    """
    Converts win probability and payout odds into a bankroll fraction.

    Usage:
        sizer = PositionSizer()
        result = sizer.size(SizingRequest(probability=0.6, odds=1.0, bankroll=10_000, confidence=85))
        result.amount, result.adjustments
    """

    def __init__(
        self,
        config: Optional[SizingConfig] = None,
        steps: tuple[SizingStep, ...] = SIZING_STEPS,
    ):
        self.config = config or SizingConfig()
        self.steps = steps
        self.logger = logger.bind(component="position_sizer")

    def size(self, request: SizingRequest) -> KellyResult:
        """
        Size one position.

        Raises:
            ValueError: probability outside (0, 1) or bankroll below minimum
        """
        if not 0 < request.probability < 1:
            raise ValueError(f"Probability must be between 0 and 1, got {request.probability}")
        if request.bankroll < self.config.min_bankroll:
            raise ValueError(
                f"Bankroll must be at least {self.config.min_bankroll:.0f}, got {request.bankroll:.2f}"
            )

        p = request.probability
        b = request.odds
        raw = raw_kelly(p, b)
        edge = p * b - (1 - p)

        if raw <= 0 or edge <= 0:
            return self._zero(request, raw, "Negative expected value")
        if edge < self.config.min_edge:
            return self._zero(request, raw, "Edge too small for Kelly sizing")

        state = SizingState(request=request, raw_fraction=raw, fraction=raw)
        for step in self.steps:
            state = step(state, self.config)

        fraction = max(0.0, state.fraction)
        amount = fraction * request.bankroll

        result = KellyResult(
            raw_fraction=raw,
            fraction=fraction,
            amount=amount,
            max_loss=amount,
            expected_value=amount * edge,
            growth_rate=growth_rate(p, b, fraction),
            risk_of_ruin=risk_of_ruin(p, b, fraction),
            adjustments=list(state.adjustments),
        )

        self.logger.debug(
            "Sized position",
            raw=f"{raw:.2%}",
            final=f"{fraction:.2%}",
            amount=f"{amount:.2f}",
            adjustments=len(result.adjustments),
        )
        return result

    def size_portfolio(self, requests: list[SizingRequest]) -> list[KellyResult]:
        """
        Size several positions and scale them down together so total
        exposure stays within the portfolio limit.
        """
        results = [self.size(r) for r in requests]
        if not results:
            return results

        bankroll = requests[0].bankroll
        total = sum(r.amount for r in results)
        limit = bankroll * self.config.max_portfolio_exposure
        if total <= limit or total == 0:
            return results

        scale = limit / total
        note = f"Portfolio limit ({self.config.max_portfolio_exposure * 100:.0f}% max, x{scale:.2f})"
        scaled = []
        for request, result in zip(requests, results):
            if not result.is_bet:
                scaled.append(result)
                continue
            fraction = result.fraction * scale
            amount = result.amount * scale
            edge = request.probability * request.odds - (1 - request.probability)
            scaled.append(replace(
                result,
                fraction=fraction,
                amount=amount,
                max_loss=amount,
                expected_value=amount * edge,
                growth_rate=growth_rate(request.probability, request.odds, fraction),
                risk_of_ruin=risk_of_ruin(request.probability, request.odds, fraction),
                adjustments=result.adjustments + [note],
            ))
        return scaled

    def _zero(self, request: SizingRequest, raw: float, reason: str) -> KellyResult:
        return KellyResult(
            raw_fraction=raw,
            fraction=0.0,
            amount=0.0,
            max_loss=0.0,
            expected_value=0.0,
            growth_rate=0.0,
            risk_of_ruin=0.0,
            adjustments=[],
            reason=reason,
        )


def validate_result(result: KellyResult, bankroll: float) -> tuple[list[str], list[str]]:
    """
    Sanity-check a sizing result.

    Returns:
        (warnings, errors)
    """
    warnings: list[str] = []
    errors: list[str] = []

    if result.amount > bankroll:
        errors.append("Stake exceeds bankroll")
    if result.fraction > 0.15:
        warnings.append(f"Large position: {result.fraction * 100:.1f}% of bankroll")
    if result.risk_of_ruin > 0.2:
        warnings.append(f"High risk of ruin: {result.risk_of_ruin * 100:.1f}%")
    if result.raw_fraction > 0.25:
        warnings.append(f"Raw Kelly {result.raw_fraction * 100:.1f}% suggests an overestimated edge")

    return warnings, errors
