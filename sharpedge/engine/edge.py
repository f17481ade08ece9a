"""
Edge Classifier.

Compares an offered price against the de-vigged fair price and decides
whether the gap is value worth surfacing.

    edge % = (offered_odds - fair_odds) / fair_odds * 100
    EV     = p * (offered_odds - 1) - (1 - p)

Tighter leagues need smaller edges; thin or minor leagues need larger ones
to filter noise. Confidence is a small additive score over edge size,
bookmaker count and odds-band sanity.
"""

from dataclasses import dataclass
from typing import Optional

import structlog

from sharpedge.models.schemas import ConfidenceTier, FairProbability, Side

logger = structlog.get_logger()


TIER_1_LEAGUES = frozenset({
    "soccer_epl",
    "soccer_spain_la_liga",
    "soccer_germany_bundesliga",
    "soccer_italy_serie_a",
    "soccer_france_ligue_one",
    "basketball_nba",
    "americanfootball_nfl",
})

TIER_2_LEAGUES = frozenset({
    "soccer_netherlands_eredivisie",
    "soccer_portugal_primeira_liga",
    "soccer_belgium_first_div",
    "icehockey_nhl",
    "baseball_mlb",
})


def league_tier(sport_key: str) -> int:
    """League tier (1 = most efficient market, 3 = unknown/minor)."""
    if sport_key in TIER_1_LEAGUES:
        return 1
    if sport_key in TIER_2_LEAGUES:
        return 2
    return 3


@dataclass
class EdgeConfig:
    """Thresholds for value classification."""
    tier1_min_edge_pct: float = 3.0
    tier2_min_edge_pct: float = 5.0
    default_min_edge_pct: float = 8.0
    min_expected_value: float = 0.02
    min_odds: float = 1.30
    max_odds: float = 10.00
    min_bookmakers: int = 3
    kelly_fraction: float = 0.25
    min_stake_pct: float = 0.25
    max_stake_pct: float = 1.5
    max_event_exposure_pct: float = 3.5

    @classmethod
    def from_settings(cls, settings) -> "EdgeConfig":
        return cls(**settings.model_dump())

    def min_edge_for(self, sport_key: str) -> float:
        tier = league_tier(sport_key)
        if tier == 1:
            return self.tier1_min_edge_pct
        if tier == 2:
            return self.tier2_min_edge_pct
        return self.default_min_edge_pct


@dataclass
class EdgeAssessment:
    """Result of classifying one offered price."""
    outcome: str
    offered_odds: float
    fair_probability: float
    fair_odds: float
    edge_percent: float
    expected_value: float
    bookmaker_count: int
    confidence: ConfidenceTier
    stake_pct: float
    qualifies: bool
    rejection_reason: Optional[str] = None
    reasoning: str = ""
    side: Side = Side.YES


def calculate_edge(offered_odds: float, fair_odds: float) -> float:
    """Percentage edge of the offered price over the fair price."""
    if fair_odds <= 0:
        return 0.0
    return (offered_odds - fair_odds) / fair_odds * 100


def calculate_expected_value(fair_probability: float, offered_odds: float) -> float:
    """Expected profit per unit staked."""
    return fair_probability * (offered_odds - 1) - (1 - fair_probability)


def determine_confidence(edge_percent: float, bookmaker_count: int, offered_odds: float) -> ConfidenceTier:
    """Tiered confidence from edge size, book count and odds sanity."""
    score = 0

    if edge_percent >= 10:
        score += 3
    elif edge_percent >= 6:
        score += 2
    elif edge_percent >= 3:
        score += 1

    if bookmaker_count >= 5:
        score += 2
    elif bookmaker_count >= 3:
        score += 1

    if 1.5 <= offered_odds <= 5.0:
        score += 1

    if score >= 5:
        return ConfidenceTier.HIGH
    if score >= 3:
        return ConfidenceTier.MODERATE
    return ConfidenceTier.LOW


class ExposureTracker:
    """Running per-event stake exposure (percent of bankroll)."""

    def __init__(self, max_event_exposure_pct: float = 3.5):
        self.max_event_exposure_pct = max_event_exposure_pct
        self._exposure: dict[str, float] = {}

    def exposure(self, event_key: str) -> float:
        return self._exposure.get(event_key, 0.0)

    def admit(self, event_key: str, stake_pct: float) -> bool:
        """Add stake to the event if it stays under the cap."""
        current = self._exposure.get(event_key, 0.0)
        if current + stake_pct > self.max_event_exposure_pct:
            return False
        self._exposure[event_key] = current + stake_pct
        return True


class EdgeClassifier:
    """
    Classifies offered prices against fair probabilities.

    Every rejection is counted by reason so a tick can report why
    candidates were dropped.
    """

    def __init__(self, config: Optional[EdgeConfig] = None):
        self.config = config or EdgeConfig()
        self.logger = logger.bind(component="edge_classifier")
        self.exposure = ExposureTracker(self.config.max_event_exposure_pct)

        # Rejection tracking
        self._rejection_counts: dict[str, int] = {}

    # =========================================================================
    # Core Classification
    # =========================================================================

    def evaluate(
        self,
        offered_odds: float,
        fair: FairProbability,
        sport_key: str,
        bookmaker_count: int,
        side: Side = Side.YES,
        has_sharp: bool = False,
    ) -> EdgeAssessment:
        """
        Classify one offered price.

        Args:
            offered_odds: Decimal odds available on the target market
            fair: De-vigged fair probability for the same outcome
            sport_key: Odds-provider sport key (drives minimum edge tier)
            bookmaker_count: Independent books quoting this outcome
            side: Exchange side the offered odds belong to
            has_sharp: Whether the fair price came from sharp books
        """
        p = fair.fair_probability
        fair_odds = fair.fair_odds
        edge = calculate_edge(offered_odds, fair_odds)
        ev = calculate_expected_value(p, offered_odds)
        confidence = determine_confidence(edge, bookmaker_count, offered_odds)
        stake_pct = self.suggest_stake_pct(p, offered_odds)

        assessment = EdgeAssessment(
            outcome=fair.outcome_name,
            offered_odds=offered_odds,
            fair_probability=p,
            fair_odds=fair_odds,
            edge_percent=edge,
            expected_value=ev,
            bookmaker_count=bookmaker_count,
            confidence=confidence,
            stake_pct=stake_pct,
            qualifies=False,
            side=side,
        )

        reason = self._first_failure(offered_odds, edge, ev, bookmaker_count, stake_pct, sport_key)
        if reason:
            self._track_rejection(reason)
            assessment.rejection_reason = reason
            return assessment

        assessment.qualifies = True
        assessment.reasoning = self._reasoning(assessment, has_sharp, league_tier(sport_key))
        return assessment

    def evaluate_exchange_price(
        self,
        yes_price: float,
        fair: FairProbability,
        sport_key: str,
        bookmaker_count: int,
        has_sharp: bool = False,
    ) -> list[EdgeAssessment]:
        """
        Classify both sides of a binary exchange market.

        YES pays 1/yes_price against the outcome's fair probability; NO
        pays 1/(1 - yes_price) against its complement.
        """
        assessments = []
        if 0 < yes_price < 1:
            assessments.append(
                self.evaluate(1 / yes_price, fair, sport_key, bookmaker_count, Side.YES, has_sharp)
            )
            complement = FairProbability(
                outcome_name=fair.outcome_name,
                fair_probability=1 - fair.fair_probability,
                fair_odds=1 / (1 - fair.fair_probability) if fair.fair_probability < 1 else float("inf"),
                basis=fair.basis,
                quote_count=fair.quote_count,
            )
            assessments.append(
                self.evaluate(1 / (1 - yes_price), complement, sport_key, bookmaker_count, Side.NO, has_sharp)
            )
        return assessments

    def admit(self, event_key: str, assessment: EdgeAssessment) -> bool:
        """Apply the per-event exposure cap to a qualifying assessment."""
        if not assessment.qualifies:
            return False
        if not self.exposure.admit(event_key, assessment.stake_pct):
            self._track_rejection("event_exposure_cap")
            return False
        return True

    def suggest_stake_pct(self, fair_probability: float, offered_odds: float) -> float:
        """Fractional-Kelly stake as a percent of bankroll, floored and capped."""
        b = offered_odds - 1
        if b <= 0:
            return 0.0
        p = fair_probability
        kelly_full = (b * p - (1 - p)) / b
        if kelly_full <= 0:
            return 0.0
        stake_pct = kelly_full * self.config.kelly_fraction * 100
        if stake_pct < self.config.min_stake_pct:
            return 0.0
        return min(stake_pct, self.config.max_stake_pct)

    # =========================================================================
    # Validation
    # =========================================================================

    def _first_failure(
        self,
        offered_odds: float,
        edge: float,
        ev: float,
        bookmaker_count: int,
        stake_pct: float,
        sport_key: str,
    ) -> Optional[str]:
        if bookmaker_count < self.config.min_bookmakers:
            return "too_few_bookmakers"
        if not self.config.min_odds <= offered_odds <= self.config.max_odds:
            return "odds_out_of_band"
        if edge < self.config.min_edge_for(sport_key):
            return "edge_below_minimum"
        if ev <= 0 or ev < self.config.min_expected_value:
            return "ev_below_floor"
        if stake_pct <= 0:
            return "stake_below_minimum"
        return None

    def _reasoning(self, a: EdgeAssessment, has_sharp: bool, tier: int) -> str:
        reasons = []
        if a.edge_percent >= 8:
            reasons.append(f"Strong de-vigged value with {a.edge_percent:.1f}% edge")
        elif a.edge_percent >= 5:
            reasons.append(f"Solid value opportunity with {a.edge_percent:.1f}% edge")
        else:
            reasons.append(f"Value detected with {a.edge_percent:.1f}% edge")
        reasons.append(f"Fair prob: {a.fair_probability * 100:.1f}%")
        reasons.append(f"Best: {a.offered_odds:.2f} vs Fair: {a.fair_odds:.2f}")
        reasons.append(f"EV: {a.expected_value * 100:.1f}%")
        if has_sharp:
            reasons.append("Sharp line used")
        reasons.append(f"{a.bookmaker_count} bookmakers")
        reasons.append(f"Tier {tier} league")
        return ". ".join(reasons) + "."

    def _track_rejection(self, reason: str) -> None:
        self._rejection_counts[reason] = self._rejection_counts.get(reason, 0) + 1

    # =========================================================================
    # Metrics
    # =========================================================================

    def get_metrics(self) -> dict:
        return {
            "rejections": dict(self._rejection_counts),
            "total_rejections": sum(self._rejection_counts.values()),
        }

    def reset_metrics(self) -> None:
        self._rejection_counts.clear()
