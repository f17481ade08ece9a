"""
Settlement Reconciler.

Checks whether the exchange market behind an emitted signal has resolved
and books realized P/L exactly once.

Decision table:

    closed, YES >= win threshold   -> YES won
    closed, YES <= loss threshold  -> YES lost
    closed, mid-range price        -> void (manual review, never guessed)
    not closed, inactive           -> in_play (re-check later)
    open long past end date        -> resolved but ambiguous (void, review)
    otherwise                      -> pending

Sports markets often go inactive while the match is in play, so only a
closed market is treated as resolved.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from sharpedge.errors import AmbiguousResolution, UpstreamUnavailable
from sharpedge.models.schemas import (
    SettlementOutcome,
    SettlementRecord,
    Side,
    SignalOpportunity,
    TickSummary,
    utc_now,
)

logger = structlog.get_logger()


@dataclass
class SettlementPolicy:
    """Thresholds for treating a market as resolved."""
    min_signal_age_hours: float = 2.0
    batch_limit: int = 50
    win_price_threshold: float = 0.98
    loss_price_threshold: float = 0.02
    overdue_hours: float = 24.0

    @classmethod
    def from_settings(cls, settings) -> "SettlementPolicy":
        return cls(**settings.model_dump())


@dataclass
class MarketStatus:
    """Resolution-relevant fields of an exchange market."""
    condition_id: str
    closed: bool
    active: bool
    yes_price: Optional[float] = None
    end_date: Optional[datetime] = None


@dataclass
class ResolutionVerdict:
    """Interpretation of a market's state."""
    resolved: bool
    in_play: bool = False
    yes_won: Optional[bool] = None
    price: Optional[float] = None
    note: str = ""


def resolve_market(market: MarketStatus, now: datetime, policy: SettlementPolicy) -> ResolutionVerdict:
    """Apply the decision table to one market."""
    if market.closed:
        price = market.yes_price
        if price is None:
            return ResolutionVerdict(resolved=True, note="Closed without a YES price")
        if price >= policy.win_price_threshold:
            return ResolutionVerdict(resolved=True, yes_won=True, price=price)
        if price <= policy.loss_price_threshold:
            return ResolutionVerdict(resolved=True, yes_won=False, price=price)
        return ResolutionVerdict(
            resolved=True, price=price, note=f"Closed with ambiguous YES price {price:.3f}"
        )

    if not market.active:
        return ResolutionVerdict(resolved=False, in_play=True)

    if market.end_date:
        hours_since_end = (now - market.end_date).total_seconds() / 3600
        if hours_since_end > policy.overdue_hours:
            return ResolutionVerdict(
                resolved=True, note=f"Past end date by {hours_since_end:.1f}h but not closed"
            )

    return ResolutionVerdict(resolved=False)


def winner_for(side: Side, verdict: ResolutionVerdict) -> bool:
    """
    Whether a position on `side` won.

    Raises:
        AmbiguousResolution: the verdict does not name a winner
    """
    if verdict.yes_won is None:
        raise AmbiguousResolution(verdict.note or "Market resolved without a clear winner")
    return verdict.yes_won if side == Side.YES else not verdict.yes_won


def realized_pl(outcome: SettlementOutcome, stake: float, entry_price: float) -> float:
    """Profit/loss for a binary share bought at entry_price."""
    if outcome == SettlementOutcome.WIN:
        if entry_price <= 0:
            return 0.0
        return stake * (1 - entry_price) / entry_price
    if outcome == SettlementOutcome.LOSS:
        return -stake
    return 0.0


def settle_signal(signal: SignalOpportunity, verdict: ResolutionVerdict, now: datetime) -> SettlementRecord:
    """Turn a verdict into a settlement record for one signal."""
    if verdict.in_play:
        return SettlementRecord(
            signal_id=signal.id,
            outcome=SettlementOutcome.IN_PLAY,
            realized_pl=0.0,
            settled_at=now,
        )
    if not verdict.resolved:
        return SettlementRecord(
            signal_id=signal.id,
            outcome=SettlementOutcome.PENDING,
            realized_pl=0.0,
            settled_at=now,
        )

    try:
        won = winner_for(signal.side, verdict)
    except AmbiguousResolution as e:
        return SettlementRecord(
            signal_id=signal.id,
            outcome=SettlementOutcome.VOID,
            realized_pl=0.0,
            settled_at=now,
            needs_review=True,
            note=e.reason,
        )

    outcome = SettlementOutcome.WIN if won else SettlementOutcome.LOSS
    return SettlementRecord(
        signal_id=signal.id,
        outcome=outcome,
        realized_pl=round(realized_pl(outcome, signal.suggested_stake, signal.target_price), 2),
        settled_at=now,
        yes_won=verdict.yes_won,
    )


class SettlementReconciler:
    """
    Settles previously emitted signals against exchange resolution.

    Usage:
        reconciler = SettlementReconciler(store, polymarket)
        summary = await reconciler.run_tick(force=False)
    """

    def __init__(self, store, exchange, policy: Optional[SettlementPolicy] = None):
        self.store = store
        self.exchange = exchange
        self.policy = policy or SettlementPolicy()
        self.logger = logger.bind(component="settlement")

    async def run_tick(self, force: bool = False, now: Optional[datetime] = None) -> TickSummary:
        start = time.time()
        now = now or utc_now()
        summary = TickSummary(job="settle")

        min_age = timedelta(0) if force else timedelta(hours=self.policy.min_signal_age_hours)
        signals = self.store.list_unsettled_signals(created_before=now - min_age, limit=self.policy.batch_limit)

        if not signals:
            self.logger.info("No signals to settle")

        in_play = 0
        for signal in signals:
            summary.processed += 1
            try:
                market = await self.exchange.get_market_status(signal.condition_id)
            except UpstreamUnavailable as e:
                self.logger.warning("Resolution lookup failed", signal_id=signal.id, error=e.reason)
                summary.record_error(signal.id, e.reason)
                continue

            if market is None:
                self.logger.debug("Market not found", condition_id=signal.condition_id)
                continue

            verdict = resolve_market(market, now, self.policy)
            record = settle_signal(signal, verdict, now)

            if record.outcome == SettlementOutcome.PENDING:
                continue
            if record.outcome == SettlementOutcome.IN_PLAY:
                in_play += 1

            if not self.store.record_settlement(record):
                continue

            if record.outcome.is_terminal:
                summary.settled += 1
                self.logger.info(
                    "Signal settled",
                    signal_id=signal.id,
                    event_name=signal.event_name,
                    side=signal.side.value,
                    outcome=record.outcome.value,
                    pl=f"{record.realized_pl:+.2f}",
                    needs_review=record.needs_review,
                )

        # Rotate the queue so still-open markets yield to newer signals
        self.store.mark_settlement_checked([s.id for s in signals], now)

        summary.duration_ms = int((time.time() - start) * 1000)
        summary.extra = {"in_play": in_play, "force": force}

        self.logger.info(
            "Settlement tick complete",
            checked=summary.processed,
            settled=summary.settled,
            in_play=in_play,
            duration_ms=summary.duration_ms,
        )
        return summary
