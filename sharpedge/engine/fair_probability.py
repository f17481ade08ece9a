"""
Fair-Probability Engine.

Removes the bookmaker margin from a market's quotes:

    1. Average odds per outcome (sharp books only when every outcome has
       sharp coverage, otherwise all books after a 2-sigma outlier trim)
    2. raw_i = 1 / odds_i
    3. overround = sum(raw_i)
    4. fair_i = raw_i / overround
"""

import statistics
from dataclasses import dataclass
from typing import Sequence

import structlog

from sharpedge.errors import InsufficientQuotes
from sharpedge.models.schemas import FairBasis, FairProbability, Quote

logger = structlog.get_logger()

OUTLIER_STDEVS = 2.0


@dataclass
class DevigResult:
    """Fair probabilities for one market plus its margin."""
    probabilities: dict[str, FairProbability]
    overround: float
    basis: FairBasis

    @property
    def margin(self) -> float:
        return self.overround - 1.0

    def probability(self, outcome: str) -> float:
        return self.probabilities[outcome].fair_probability

    def total(self) -> float:
        return sum(fp.fair_probability for fp in self.probabilities.values())


def trimmed_mean(values: Sequence[float], stdevs: float = OUTLIER_STDEVS) -> float:
    """
    Mean after discarding values more than `stdevs` population standard
    deviations from the mean. Falls back to the plain mean if every value
    would be discarded.
    """
    if not values:
        raise ValueError("trimmed_mean of empty sequence")
    mean = statistics.fmean(values)
    sd = statistics.pstdev(values)
    kept = [v for v in values if abs(v - mean) <= stdevs * sd]
    return statistics.fmean(kept) if kept else mean


def devig_probabilities(probabilities: dict[str, float]) -> dict[str, float]:
    """Normalize implied probabilities so they sum to exactly 1."""
    total = sum(probabilities.values())
    if total <= 0:
        raise InsufficientQuotes("Implied probabilities sum to zero")
    return {name: p / total for name, p in probabilities.items()}


class FairProbabilityEngine:
    """
    De-vigs multi-source quotes into a FairProbability per outcome.

    Usage:
        engine = FairProbabilityEngine()
        result = engine.compute(book.quotes)
        home = result.probability("Arsenal")
    """

    def __init__(self, min_quotes_per_outcome: int = 1):
        self.min_quotes_per_outcome = max(1, min_quotes_per_outcome)
        self.logger = logger.bind(component="fair_probability")

    def compute(self, quotes: dict[str, list[Quote]]) -> DevigResult:
        """
        Compute fair probabilities for every outcome of one market.

        Raises:
            InsufficientQuotes: fewer than two outcomes, or an outcome
                without enough usable quotes
        """
        if len(quotes) < 2:
            raise InsufficientQuotes(f"Need at least 2 outcomes, got {len(quotes)}")

        usable: dict[str, list[Quote]] = {}
        for outcome, outcome_quotes in quotes.items():
            valid = [q for q in outcome_quotes if q.decimal_odds > 1.0]
            if len(valid) < self.min_quotes_per_outcome:
                raise InsufficientQuotes(
                    f"Outcome '{outcome}' has {len(valid)} usable quotes "
                    f"(need {self.min_quotes_per_outcome})"
                )
            usable[outcome] = valid

        sharp_coverage = all(any(q.is_sharp_source for q in qs) for qs in usable.values())

        averaged: dict[str, float] = {}
        counts: dict[str, int] = {}
        if sharp_coverage:
            basis = FairBasis.SHARP_CONSENSUS
            for outcome, qs in usable.items():
                sharp = [q.decimal_odds for q in qs if q.is_sharp_source]
                averaged[outcome] = statistics.fmean(sharp)
                counts[outcome] = len(sharp)
        else:
            basis = FairBasis.TRIMMED_MEAN
            for outcome, qs in usable.items():
                averaged[outcome] = trimmed_mean([q.decimal_odds for q in qs])
                counts[outcome] = len(qs)

        raw = {outcome: 1 / odds for outcome, odds in averaged.items()}
        overround = sum(raw.values())
        fair = devig_probabilities(raw)

        probabilities = {
            outcome: FairProbability(
                outcome_name=outcome,
                fair_probability=p,
                fair_odds=1 / p,
                basis=basis,
                quote_count=counts[outcome],
            )
            for outcome, p in fair.items()
        }

        self.logger.debug(
            "De-vigged market",
            basis=basis.value,
            overround=f"{overround:.4f}",
            outcomes=len(probabilities),
        )

        return DevigResult(probabilities=probabilities, overround=overround, basis=basis)

    def compute_from_probabilities(self, probabilities: dict[str, float]) -> DevigResult:
        """De-vig a vector of implied probabilities directly."""
        if len(probabilities) < 2:
            raise InsufficientQuotes(f"Need at least 2 outcomes, got {len(probabilities)}")
        overround = sum(probabilities.values())
        fair = devig_probabilities(probabilities)
        return DevigResult(
            probabilities={
                name: FairProbability(
                    outcome_name=name,
                    fair_probability=p,
                    fair_odds=1 / p if p > 0 else float("inf"),
                    basis=FairBasis.SHARP_CONSENSUS,
                    quote_count=1,
                )
                for name, p in fair.items()
            },
            overround=overround,
            basis=FairBasis.SHARP_CONSENSUS,
        )
