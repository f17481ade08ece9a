"""
Execution cost analysis.

Estimates what a signal's raw edge is worth after exchange costs (platform
fee, bid/ask spread, slippage) and turns the net edge into an execution
decision. Runs after detection and never alters the detected edge.
"""

from dataclasses import dataclass

from sharpedge.models.schemas import ExecutionDecision, SignalOpportunity

PLATFORM_FEE_RATE = 0.01  # On profits


def estimate_spread(volume: float) -> float:
    """Bid/ask spread estimate (percent). Higher volume = tighter spread."""
    if volume >= 500_000:
        return 0.5
    if volume >= 100_000:
        return 1.0
    if volume >= 50_000:
        return 1.5
    if volume >= 10_000:
        return 2.0
    return 3.0


def estimate_slippage(stake: float, volume: float) -> float:
    """Slippage estimate (percent) from stake size relative to volume."""
    if volume <= 0:
        return 3.0
    depth_ratio = stake / volume
    if depth_ratio < 0.001:
        return 0.2
    if depth_ratio < 0.005:
        return 0.5
    if depth_ratio < 0.01:
        return 1.0
    if depth_ratio < 0.02:
        return 2.0
    return 3.0


def liquidity_tier(volume: float) -> str:
    if volume >= 100_000:
        return "high"
    if volume >= 50_000:
        return "medium"
    if volume >= 10_000:
        return "low"
    return "insufficient"


@dataclass
class ExecutionAnalysis:
    """Cost breakdown and decision for one signal at one stake."""
    raw_edge_percent: float
    platform_fee_percent: float
    spread_percent: float
    slippage_percent: float
    total_costs_percent: float
    net_edge_percent: float
    liquidity_tier: str
    max_stake_without_impact: float
    decision: ExecutionDecision
    reason: str


def analyze_execution(signal: SignalOpportunity, stake: float = 100.0) -> ExecutionAnalysis:
    """Net edge after costs and the resulting execution decision."""
    raw_edge = signal.edge_percent
    volume = signal.market_volume or 0.0

    fee = raw_edge * PLATFORM_FEE_RATE if raw_edge > 0 else 0.0
    spread = estimate_spread(volume)
    slippage = estimate_slippage(stake, volume)
    total_costs = fee + spread + slippage
    net_edge = raw_edge - total_costs
    tier = liquidity_tier(volume)

    if tier == "insufficient":
        decision = ExecutionDecision.NO_BET
        reason = "Insufficient liquidity (<$10K volume)"
    elif net_edge >= 4:
        decision = ExecutionDecision.STRONG_BET
        reason = f"High conviction: +{net_edge:.1f}% net edge"
    elif net_edge >= 2:
        decision = ExecutionDecision.BET
        reason = f"Positive EV: +{net_edge:.1f}% net edge"
    elif net_edge >= 1 and tier == "high":
        decision = ExecutionDecision.MARGINAL
        reason = "Thin edge (1-2%), proceed with caution"
    elif net_edge < 1:
        decision = ExecutionDecision.NO_BET
        reason = f"Net edge too thin: {net_edge:.1f}%"
    else:
        decision = ExecutionDecision.NO_BET
        reason = "Costs exceed edge benefit"

    return ExecutionAnalysis(
        raw_edge_percent=raw_edge,
        platform_fee_percent=round(fee, 2),
        spread_percent=spread,
        slippage_percent=slippage,
        total_costs_percent=round(total_costs, 2),
        net_edge_percent=round(net_edge, 2),
        liquidity_tier=tier,
        max_stake_without_impact=float(int(volume * 0.01)),
        decision=decision,
        reason=reason,
    )
