"""Tests for quote aggregation and de-vigging."""

import pytest

from sharpedge.engine.fair_probability import (
    FairProbabilityEngine,
    devig_probabilities,
    trimmed_mean,
)
from sharpedge.engine.quotes import QuoteAggregator
from sharpedge.errors import InsufficientQuotes
from sharpedge.models.schemas import FairBasis, MarketType, Quote


def q(source, outcome, odds, sharp=False):
    return Quote(source=source, outcome_name=outcome, decimal_odds=odds, is_sharp_source=sharp)


@pytest.fixture
def engine():
    return FairProbabilityEngine()


@pytest.fixture
def event_payload():
    """Odds API style event with moneyline, spread and totals markets."""
    return {
        "bookmakers": [
            {
                "key": "pinnacle",
                "last_update": "2026-03-14T17:55:00Z",
                "markets": [
                    {"key": "h2h", "outcomes": [
                        {"name": "Lakers", "price": 1.91},
                        {"name": "Celtics", "price": 2.00},
                    ]},
                    {"key": "spreads", "outcomes": [
                        {"name": "Lakers", "price": 1.95, "point": -1.5},
                        {"name": "Celtics", "price": 1.95, "point": 1.5},
                    ]},
                    {"key": "totals", "outcomes": [
                        {"name": "Over", "price": 1.90, "point": 221.5},
                        {"name": "Under", "price": 1.92, "point": 221.5},
                    ]},
                ],
            },
            {
                "key": "draftkings",
                "markets": [
                    {"key": "h2h", "outcomes": [
                        {"name": "Lakers", "price": 1.87},
                        {"name": "Celtics", "price": 1.0},
                    ]},
                    {"key": "totals", "outcomes": [
                        {"name": "Over", "price": 1.95, "point": 222.5},
                    ]},
                ],
            },
        ],
    }


class TestQuoteAggregator:
    """Tests for QuoteAggregator."""

    def test_groups_markets_by_type_and_point(self, event_payload):
        """Test that spreads key on the absolute line and totals on the point."""
        books = QuoteAggregator().aggregate(event_payload)

        assert (MarketType.H2H, None) in books
        assert (MarketType.SPREAD, 1.5) in books
        assert (MarketType.TOTAL, 221.5) in books

    def test_drops_one_sided_line_markets(self, event_payload):
        """Test that a total with a single side at its point is discarded."""
        books = QuoteAggregator().aggregate(event_payload)
        assert (MarketType.TOTAL, 222.5) not in books

    def test_drops_odds_at_or_below_one(self, event_payload):
        """Test that unusable prices never become quotes."""
        book = QuoteAggregator().h2h(event_payload)
        assert [q.source for q in book.quotes["Celtics"]] == ["pinnacle"]
        assert len(book.quotes["Lakers"]) == 2

    def test_marks_sharp_sources(self, event_payload):
        """Test sharp flagging against the configured set."""
        book = QuoteAggregator().h2h(event_payload)
        sharp = {q.source: q.is_sharp_source for q in book.quotes["Lakers"]}
        assert sharp == {"pinnacle": True, "draftkings": False}
        assert book.has_sharp_coverage()

    def test_american_odds_converted(self):
        """Test American to decimal conversion."""
        payload = {"bookmakers": [{"key": "fanduel", "markets": [{"key": "h2h", "outcomes": [
            {"name": "A", "price": 150},
            {"name": "B", "price": -200},
        ]}]}]}
        book = QuoteAggregator(american=True).h2h(payload)
        assert book.quotes["A"][0].decimal_odds == pytest.approx(2.5)
        assert book.quotes["B"][0].decimal_odds == pytest.approx(1.5)


class TestFairProbabilityEngine:
    """Tests for FairProbabilityEngine."""

    def test_sharp_consensus_example(self, engine):
        """Test the two-sharp-source example lands near 0.497 / 0.503."""
        quotes = {
            "A": [q("pinnacle", "A", 2.00, True), q("betfair_ex_uk", "A", 2.05, True), q("bet365", "A", 1.95)],
            "B": [q("pinnacle", "B", 2.10, True), q("betfair_ex_uk", "B", 2.00, True), q("bet365", "B", 2.20)],
        }
        result = engine.compute(quotes)

        assert result.basis == FairBasis.SHARP_CONSENSUS
        values = sorted(fp.fair_probability for fp in result.probabilities.values())
        assert values[0] == pytest.approx(0.497, abs=1e-3)
        assert values[1] == pytest.approx(0.503, abs=1e-3)
        assert result.total() == pytest.approx(1.0, abs=1e-9)
        assert result.overround == pytest.approx(0.9816, abs=1e-3)
        assert result.margin == pytest.approx(result.overround - 1.0)

    def test_trimmed_mean_when_sharp_coverage_incomplete(self, engine):
        """Test fallback basis when one outcome has no sharp quote."""
        quotes = {
            "Home": [q("pinnacle", "Home", 1.80, True), q("bet365", "Home", 1.85)],
            "Away": [q("bet365", "Away", 2.05), q("williamhill", "Away", 2.00)],
        }
        result = engine.compute(quotes)

        assert result.basis == FairBasis.TRIMMED_MEAN
        assert result.total() == pytest.approx(1.0, abs=1e-9)

    @pytest.mark.parametrize("outcomes", [2, 3, 5])
    def test_probabilities_sum_to_one(self, engine, outcomes):
        """Test normalization for N-way markets."""
        quotes = {
            f"O{i}": [q("bet365", f"O{i}", 1.5 + i), q("unibet", f"O{i}", 1.6 + i)]
            for i in range(outcomes)
        }
        result = engine.compute(quotes)
        assert result.total() == pytest.approx(1.0, abs=1e-9)
        for fp in result.probabilities.values():
            assert fp.fair_odds == pytest.approx(1 / fp.fair_probability)

    def test_insufficient_quotes(self, engine):
        """Test that an outcome without usable quotes fails."""
        with pytest.raises(InsufficientQuotes):
            engine.compute({"A": [q("bet365", "A", 2.0)], "B": [q("bet365", "B", 1.0)]})

    def test_single_outcome_rejected(self, engine):
        """Test that a one-outcome market cannot be de-vigged."""
        with pytest.raises(InsufficientQuotes):
            engine.compute({"A": [q("bet365", "A", 2.0)]})

    def test_min_quotes_per_outcome(self):
        """Test the configurable quote minimum."""
        engine = FairProbabilityEngine(min_quotes_per_outcome=2)
        with pytest.raises(InsufficientQuotes) as exc:
            engine.compute({
                "A": [q("bet365", "A", 2.0), q("unibet", "A", 2.1)],
                "B": [q("bet365", "B", 1.9)],
            })
        assert "B" in exc.value.reason

    def test_devig_idempotent_on_fair_input(self, engine):
        """Test that already-fair probabilities come back unchanged."""
        fair = {"A": 0.25, "B": 0.35, "C": 0.40}
        result = engine.compute_from_probabilities(fair)
        for name, p in fair.items():
            assert result.probability(name) == pytest.approx(p, abs=1e-12)
        assert devig_probabilities(devig_probabilities(fair)) == pytest.approx(fair)


class TestTrimmedMean:
    """Tests for outlier trimming."""

    def test_discards_outlier(self):
        """Test that a value beyond two standard deviations is ignored."""
        values = [2.0] * 9 + [10.0]
        assert trimmed_mean(values) == pytest.approx(2.0)

    def test_identical_values(self):
        """Test zero-variance input."""
        assert trimmed_mean([1.9, 1.9, 1.9]) == pytest.approx(1.9)

    def test_empty_raises(self):
        """Test that an empty sequence is an error."""
        with pytest.raises(ValueError):
            trimmed_mean([])
