"""Tests for the execution gate and execution cost analysis."""

from datetime import timedelta

import pytest

from sharpedge.engine.execution import analyze_execution, estimate_slippage, estimate_spread
from sharpedge.engine.gate import READY, ExecutionGate, GateConfig, team_matches
from sharpedge.errors import SafetyGateRejected
from sharpedge.models.schemas import ExecutionDecision


@pytest.fixture
def gate():
    return ExecutionGate()


class TestTeamMatching:
    """Tests for selection-to-event identity matching."""

    @pytest.mark.parametrize("selection", [
        "Los Angeles Lakers",
        "Lakers",
        "LA Lakers",
        "Will the Lakers win?",
    ])
    def test_matches(self, selection):
        """Test full names and anchored nicknames."""
        assert team_matches(selection, "Los Angeles Lakers vs Boston Celtics")

    @pytest.mark.parametrize("selection,event", [
        ("Boston Bruins", "Los Angeles Lakers vs Boston Celtics"),
        ("Manchester United", "Manchester City vs Chelsea"),
        ("Kings", "Sacramento Kingsmen vs Portland Pilots"),
        ("NY", "New York Knicks vs Miami Heat"),
    ])
    def test_rejects_partial_tokens(self, selection, event):
        """Test that a shared city or a substring is not enough."""
        assert not team_matches(selection, event)


class TestExecutionGate:
    """Tests for ExecutionGate."""

    def test_clean_signal_passes(self, gate, make_signal, now):
        """Test that a fresh, liquid, sane signal is executable."""
        result = gate.evaluate(make_signal(), ExecutionDecision.BET, now)
        assert result.allowed is True
        assert result.reason == READY

    def test_team_mismatch(self, gate, make_signal, now):
        """Test the identity gate."""
        result = gate.evaluate(make_signal(outcome="Toronto Maple Leafs"), now=now)
        assert result.reason == "Team mismatch"
        assert result.watch_only

    def test_stale_price(self, gate, make_signal, now):
        """Test the freshness bound."""
        signal = make_signal(price_updated_at=now - timedelta(minutes=6))
        assert gate.evaluate(signal, now=now).reason == "Stale price data"

    def test_missing_timestamp_is_stale(self, gate, make_signal, now):
        """Test that an unknown price age is maximally stale."""
        signal = make_signal(price_updated_at=None)
        assert gate.evaluate(signal, now=now).reason == "Stale price data"

    def test_liquidity_floor(self, gate, make_signal, now):
        """Test minimum market volume."""
        signal = make_signal(market_volume=4_999.0)
        assert gate.evaluate(signal, now=now).reason == "Insufficient liquidity"

    def test_artifact_edge(self, gate, make_signal, now):
        """Test that a 45% edge on a 90% favorite is treated as a data error."""
        signal = make_signal(fair_probability=0.90, edge_percent=45.0)
        result = gate.evaluate(signal, ExecutionDecision.STRONG_BET, now)
        assert result.allowed is False
        assert result.reason == "Artifact edge detected"

    def test_no_bet_decision(self, gate, make_signal, now):
        """Test that NO_BET always blocks."""
        result = gate.evaluate(make_signal(), ExecutionDecision.NO_BET, now)
        assert result.reason == "No bet recommended"

    def test_first_failure_wins(self, gate, make_signal, now):
        """Test gate ordering."""
        signal = make_signal(outcome="Toronto Maple Leafs", price_updated_at=None, market_volume=0.0)
        assert gate.evaluate(signal, ExecutionDecision.NO_BET, now).reason == "Team mismatch"

    def test_apply_marks_watch_only(self, gate, make_signal, now):
        """Test that a failing signal keeps its reason."""
        signal = make_signal(market_volume=100.0)
        gate.apply(signal, now=now)
        assert signal.watch_only_reason == "Insufficient liquidity"
        assert signal.is_executable is False

        signal.market_volume = 100_000.0
        gate.apply(signal, now=now)
        assert signal.watch_only_reason is None
        assert signal.is_executable is True

    def test_enforce_raises(self, gate, make_signal, now):
        """Test the raising variant."""
        with pytest.raises(SafetyGateRejected) as exc:
            gate.enforce(make_signal(price_updated_at=None), now=now)
        assert exc.value.reason == "Stale price data"

    def test_configurable_bounds(self, make_signal, now):
        """Test custom thresholds."""
        gate = ExecutionGate(GateConfig(max_price_age_seconds=30, min_volume=100))
        signal = make_signal(market_volume=200.0, price_updated_at=now - timedelta(seconds=45))
        assert gate.evaluate(signal, now=now).reason == "Stale price data"


class TestExecutionAnalysis:
    """Tests for cost-adjusted execution decisions."""

    def test_cost_estimates(self):
        """Test spread and slippage tiers."""
        assert estimate_spread(600_000) == 0.5
        assert estimate_spread(5_000) == 3.0
        assert estimate_slippage(100, 200_000) == 0.2
        assert estimate_slippage(100, 0) == 3.0

    def test_strong_bet(self, make_signal):
        """Test a large edge in a medium-liquidity market."""
        analysis = analyze_execution(make_signal(edge_percent=10.0, market_volume=50_000), stake=100)
        assert analysis.liquidity_tier == "medium"
        assert analysis.total_costs_percent == pytest.approx(2.1)
        assert analysis.net_edge_percent == pytest.approx(7.9)
        assert analysis.decision == ExecutionDecision.STRONG_BET

    def test_bet(self, make_signal):
        """Test a moderate net edge."""
        analysis = analyze_execution(make_signal(edge_percent=4.0, market_volume=200_000), stake=100)
        assert analysis.decision == ExecutionDecision.BET

    def test_marginal_needs_high_liquidity(self, make_signal):
        """Test a thin edge in a deep market."""
        analysis = analyze_execution(make_signal(edge_percent=2.2, market_volume=600_000), stake=100)
        assert analysis.decision == ExecutionDecision.MARGINAL

    def test_thin_edge(self, make_signal):
        """Test that costs can erase the edge."""
        analysis = analyze_execution(make_signal(edge_percent=2.0, market_volume=20_000), stake=100)
        assert analysis.net_edge_percent < 0
        assert analysis.decision == ExecutionDecision.NO_BET

    def test_insufficient_liquidity(self, make_signal):
        """Test the volume floor."""
        analysis = analyze_execution(make_signal(edge_percent=15.0, market_volume=5_000), stake=100)
        assert analysis.liquidity_tier == "insufficient"
        assert analysis.decision == ExecutionDecision.NO_BET
