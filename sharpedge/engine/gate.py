"""
Execution Gate.

Final veto before a signal is surfaced as executable. Checks run in a fixed
order and the first failure wins:

    1. Team mismatch          - selection not found in the event name
    2. Stale price data       - reference price older than the bound
    3. Insufficient liquidity - market volume below the floor
    4. Artifact edge detected - huge edge on a heavy favorite
    5. No bet recommended     - explicit NO_BET decision

Side-effect free: a failing signal is kept as watch-only with its reason.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sharpedge.errors import SafetyGateRejected
from sharpedge.models.schemas import ExecutionDecision, SignalOpportunity, utc_now

READY = "Ready to execute"

# Words that carry no team identity
_NOISE_TOKENS = frozenset({
    "the", "fc", "cf", "sc", "afc", "ac", "club",
    "will", "win", "to", "vs", "v", "yes", "no",
})


def identity_tokens(name: str) -> list[str]:
    """Lowercase word tokens that identify a team or entity."""
    words = re.findall(r"[a-z0-9]+", name.lower())
    tokens = [w for w in words if w not in _NOISE_TOKENS]
    return tokens or words


def team_matches(selection: str, event_name: str) -> bool:
    """
    Whole-word match of a selection against an event name.

    Matches when every identifying token of the selection appears as a
    word in the event name, or when the selection's last token (usually
    the nickname) does and is at least four characters long.
    """
    tokens = identity_tokens(selection)
    if not tokens:
        return False
    event_words = set(re.findall(r"[a-z0-9]+", event_name.lower()))
    if all(t in event_words for t in tokens):
        return True
    anchor = tokens[-1]
    return len(anchor) >= 4 and anchor in event_words


@dataclass
class GateConfig:
    """Gate thresholds."""
    max_price_age_seconds: float = 300.0
    min_volume: float = 5000.0
    artifact_min_probability: float = 0.85
    artifact_min_edge_pct: float = 40.0

    @classmethod
    def from_settings(cls, settings) -> "GateConfig":
        return cls(**settings.model_dump())


@dataclass
class GateResult:
    """Outcome of the gate for one signal."""
    allowed: bool
    reason: str

    @property
    def watch_only(self) -> bool:
        return not self.allowed


class ExecutionGate:
    """Pre-trade safety checks."""

    def __init__(self, config: Optional[GateConfig] = None):
        self.config = config or GateConfig()

    def evaluate(
        self,
        signal: SignalOpportunity,
        decision: Optional[ExecutionDecision] = None,
        now: Optional[datetime] = None,
    ) -> GateResult:
        now = now or utc_now()

        if not team_matches(signal.outcome, signal.event_name):
            return GateResult(False, "Team mismatch")

        if signal.price_updated_at is None:
            return GateResult(False, "Stale price data")
        age = (now - signal.price_updated_at).total_seconds()
        if age > self.config.max_price_age_seconds:
            return GateResult(False, "Stale price data")

        if (signal.market_volume or 0) < self.config.min_volume:
            return GateResult(False, "Insufficient liquidity")

        if (
            signal.fair_probability >= self.config.artifact_min_probability
            and signal.edge_percent > self.config.artifact_min_edge_pct
        ):
            return GateResult(False, "Artifact edge detected")

        if decision == ExecutionDecision.NO_BET:
            return GateResult(False, "No bet recommended")

        return GateResult(True, READY)

    def apply(
        self,
        signal: SignalOpportunity,
        decision: Optional[ExecutionDecision] = None,
        now: Optional[datetime] = None,
    ) -> GateResult:
        """Evaluate and record the failure reason on the signal."""
        result = self.evaluate(signal, decision, now)
        signal.watch_only_reason = None if result.allowed else result.reason
        return result

    def enforce(
        self,
        signal: SignalOpportunity,
        decision: Optional[ExecutionDecision] = None,
        now: Optional[datetime] = None,
    ) -> None:
        """Raise SafetyGateRejected unless the signal is executable."""
        result = self.evaluate(signal, decision, now)
        if not result.allowed:
            raise SafetyGateRejected(result.reason)
