"""
Correlation & Multi-Leg Detector.

Groups active signals by normalized event name and evaluates whether the
legs on one event can be stacked. Pairwise correlation follows a fixed
ordinal rule (see CorrelationTier):

    same side, same market          -> PERFECT
    same side, different market     -> HIGH
    known related market pair       -> MEDIUM
    anything else                   -> LOW

Correlated legs are treated as failing together, so the combined stake is
discounted by the average correlation and capped.
"""

import hashlib
import re
from dataclasses import dataclass
from typing import Iterable, Optional

import structlog

from sharpedge.models.schemas import (
    CorrelatedLeg,
    CorrelationTier,
    MarketType,
    MultiLegOpportunity,
    SignalOpportunity,
    SizingStrategy,
    normalize_event_name,
)

logger = structlog.get_logger()


RELATED_MARKETS = (
    frozenset({MarketType.H2H, MarketType.SPREAD}),
    frozenset({MarketType.SPREAD, MarketType.TOTAL}),
    frozenset({MarketType.H2H, MarketType.FUTURES}),
)

SPORT_LABELS = {
    "icehockey_nhl": "NHL",
    "basketball_nba": "NBA",
    "basketball_ncaab": "NCAA",
    "americanfootball_nfl": "NFL",
    "americanfootball_ncaaf": "NCAA",
    "baseball_mlb": "MLB",
}

_SPORT_PATTERNS = (
    ("NHL", re.compile(r"\b(nhl|hockey|bruins|rangers|leafs|penguins|lightning|blackhawks)\b")),
    ("NBA", re.compile(r"\b(nba|basketball|lakers|celtics|warriors|heat|knicks)\b")),
    ("NFL", re.compile(r"\b(nfl|football|chiefs|eagles|patriots|cowboys|bills)\b")),
    ("NCAA", re.compile(r"\b(ncaa|college|duke|unc|gonzaga|kentucky)\b")),
)

_SIGNED_LINE = re.compile(r"(^|\s)[+-]\d")


def infer_market_type(outcome: str) -> MarketType:
    """Guess the market category from the outcome text."""
    lower = outcome.lower()
    if "spread" in lower or _SIGNED_LINE.search(lower):
        return MarketType.SPREAD
    if "total" in lower or "over" in lower or "under" in lower:
        return MarketType.TOTAL
    if "championship" in lower or "winner" in lower or "champion" in lower:
        return MarketType.FUTURES
    return MarketType.H2H


def infer_sport(event_name: str, sport_key: str = "") -> str:
    """Short sport label from the sport key, falling back to team names."""
    if sport_key:
        if sport_key in SPORT_LABELS:
            return SPORT_LABELS[sport_key]
        if sport_key.startswith("soccer_"):
            return "SOCCER"
    lower = event_name.lower()
    for label, pattern in _SPORT_PATTERNS:
        if pattern.search(lower):
            return label
    return "UNKNOWN"


def pairwise_tier(a: CorrelatedLeg, b: CorrelatedLeg) -> CorrelationTier:
    """Correlation tier between two legs."""
    same_side = a.side == b.side
    if same_side and a.market_type == b.market_type:
        return CorrelationTier.PERFECT
    if same_side:
        return CorrelationTier.HIGH
    if frozenset({a.market_type, b.market_type}) in RELATED_MARKETS:
        return CorrelationTier.MEDIUM
    return CorrelationTier.LOW


def correlation_matrix(legs: list[CorrelatedLeg]) -> list[list[float]]:
    """Symmetric N x N correlation matrix with 1.0 on the diagonal."""
    n = len(legs)
    matrix = [[1.0 if i == j else 0.0 for j in range(n)] for i in range(n)]
    for i in range(n):
        for j in range(i + 1, n):
            value = pairwise_tier(legs[i], legs[j]).coefficient
            matrix[i][j] = value
            matrix[j][i] = value
    return matrix


def average_correlation(matrix: list[list[float]]) -> float:
    """Mean of the upper triangle (excluding the diagonal)."""
    values = [matrix[i][j] for i in range(len(matrix)) for j in range(i + 1, len(matrix))]
    return sum(values) / len(values) if values else 0.0


@dataclass
class CorrelationConfig:
    """Multi-leg thresholds."""
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

    @classmethod
    def from_settings(cls, settings) -> "CorrelationConfig":
        return cls(**settings.model_dump())


class MultiLegDetector:
    """
    Detects stackable correlated legs among active signals.

    All opportunities are returned ranked by execution priority; only
    those flagged storable should be persisted.
    """

    def __init__(self, config: Optional[CorrelationConfig] = None, bankroll: float = 10000.0):
        self.config = config or CorrelationConfig()
        self.bankroll = bankroll
        self.logger = logger.bind(component="multi_leg_detector")

    # =========================================================================
    # Detection
    # =========================================================================

    def detect(self, signals: Iterable[SignalOpportunity]) -> list[MultiLegOpportunity]:
        """Analyze every event group and rank the resulting opportunities."""
        groups = self.group_by_event(signals)
        opportunities = []
        for event_name, group in groups.items():
            opportunity = self.analyze(event_name, group)
            if opportunity:
                opportunities.append(opportunity)

        opportunities.sort(key=lambda o: o.execution_priority, reverse=True)

        self.logger.info(
            "Multi-leg detection complete",
            events=len(groups),
            opportunities=len(opportunities),
            storable=sum(1 for o in opportunities if o.storable),
        )
        return opportunities

    def group_by_event(self, signals: Iterable[SignalOpportunity]) -> dict[str, list[SignalOpportunity]]:
        groups: dict[str, list[SignalOpportunity]] = {}
        for signal in signals:
            groups.setdefault(normalize_event_name(signal.event_name), []).append(signal)
        return groups

    def to_leg(self, signal: SignalOpportunity) -> CorrelatedLeg:
        # Outcome text is more specific than a moneyline default
        market_type = signal.market_type
        if market_type == MarketType.H2H:
            market_type = infer_market_type(signal.outcome)
        return CorrelatedLeg(
            signal_id=signal.id,
            outcome=signal.outcome,
            side=signal.side,
            market_type=market_type,
            sport=infer_sport(signal.event_name, signal.sport),
            edge_percent=signal.edge_percent,
            confidence_score=signal.confidence_score,
            kelly_fraction=signal.kelly_fraction or None,
            suggested_stake=signal.suggested_stake,
        )

    def analyze(self, event_name: str, signals: list[SignalOpportunity]) -> Optional[MultiLegOpportunity]:
        """Build a multi-leg opportunity for one event, or None if too few quality legs."""
        quality = [
            s for s in signals
            if s.edge_percent >= self.config.min_leg_edge_pct
            and s.confidence_score >= self.config.min_leg_confidence
        ]
        if len(quality) < self.config.min_legs:
            return None

        quality.sort(key=lambda s: s.edge_percent, reverse=True)
        legs = [self.to_leg(s) for s in quality[: self.config.max_legs]]

        matrix = correlation_matrix(legs)
        avg = average_correlation(matrix)
        off_diagonal = [matrix[i][j] for i in range(len(legs)) for j in range(len(legs)) if i != j]
        max_corr = max(off_diagonal) if off_diagonal else 0.0

        total_edge = sum(leg.edge_percent for leg in legs)
        combined = self.combined_kelly(legs, avg)
        risk = self.risk_concentration(legs, avg)
        discount = 1 - avg * self.config.correlation_reduction
        recommended = combined * self.bankroll * discount

        warnings = self.warnings(legs, avg, total_edge, risk)
        strategy = self.sizing_strategy(avg, total_edge)
        priority = self.execution_priority(legs, total_edge, avg, len(warnings))

        storable = (
            total_edge >= self.config.min_total_edge_pct
            and avg >= CorrelationTier.MEDIUM.coefficient
            and not warnings
        )

        return MultiLegOpportunity(
            id=self._opportunity_id(event_name, legs),
            event_name=event_name,
            sport=legs[0].sport,
            legs=legs,
            correlation_matrix=matrix,
            avg_correlation=avg,
            max_correlation=max_corr,
            total_edge=total_edge,
            combined_kelly_fraction=combined,
            risk_concentration=risk,
            recommended_total_stake=round(recommended, 2),
            sizing_strategy=strategy,
            execution_priority=priority,
            warnings=warnings,
            storable=storable,
        )

    # =========================================================================
    # Metrics
    # =========================================================================

    def combined_kelly(self, legs: list[CorrelatedLeg], avg_correlation: float) -> float:
        discount = 1 - avg_correlation * self.config.correlation_reduction
        total = sum(
            (leg.kelly_fraction if leg.kelly_fraction is not None else self.config.default_leg_kelly) * discount
            for leg in legs
        )
        return min(total * self.config.kelly_multiplier, self.config.max_combined_kelly)

    def risk_concentration(self, legs: list[CorrelatedLeg], avg_correlation: float) -> float:
        total_stake = sum(leg.suggested_stake for leg in legs)
        return total_stake * (1 + avg_correlation)

    def warnings(
        self,
        legs: list[CorrelatedLeg],
        avg_correlation: float,
        total_edge: float,
        risk: float,
    ) -> list[str]:
        warnings = []
        if avg_correlation >= CorrelationTier.HIGH.coefficient:
            warnings.append("High correlation - positions may move together")
        if total_edge < self.config.min_total_edge_pct:
            warnings.append(f"Low combined edge: {total_edge:.1f}%")
        if risk > self.config.max_single_event_risk * self.bankroll:
            warnings.append("Risk concentration exceeds single-event limit")
        low_confidence = sum(1 for leg in legs if leg.confidence_score < self.config.low_confidence_threshold)
        if low_confidence:
            warnings.append(f"{low_confidence} legs have low confidence")
        if len(legs) > 3:
            warnings.append("High number of legs increases execution complexity")
        return warnings

    @staticmethod
    def sizing_strategy(avg_correlation: float, total_edge: float) -> SizingStrategy:
        if avg_correlation >= CorrelationTier.HIGH.coefficient and total_edge >= 15:
            return SizingStrategy.AGGRESSIVE
        if avg_correlation >= CorrelationTier.MEDIUM.coefficient and total_edge >= 10:
            return SizingStrategy.MODERATE
        return SizingStrategy.CONSERVATIVE

    @staticmethod
    def execution_priority(
        legs: list[CorrelatedLeg],
        total_edge: float,
        avg_correlation: float,
        warning_count: int,
    ) -> int:
        """Weighted score: edge 40, correlation 20, confidence 25, warnings 15."""
        avg_confidence = sum(leg.confidence_score for leg in legs) / len(legs)
        priority = (total_edge / 20) * 40
        priority += avg_correlation * 20
        priority += (avg_confidence / 100) * 25
        priority += max(0, 15 - warning_count * 5)
        return round(priority)

    @staticmethod
    def _opportunity_id(event_name: str, legs: list[CorrelatedLeg]) -> str:
        digest = hashlib.sha1(
            "|".join(sorted(leg.signal_id for leg in legs)).encode()
        ).hexdigest()[:10]
        slug = event_name.replace(" ", "")[:8]
        return f"multileg-{slug}-{len(legs)}legs-{digest}"
