"""
Signal detection tick.

Exchange-first flow:
1. Fetch moneyline odds for each configured sport and de-vig them
2. Fetch active sports markets from Polymarket
3. Match each market to a priced event and the team its YES side backs
4. Classify both sides against fair value, size, gate and upsert
5. Expire signals whose event has started
"""

import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import httpx
import structlog

from config.settings import Settings
from sharpedge.engine.edge import EdgeAssessment, EdgeClassifier, EdgeConfig
from sharpedge.engine.execution import analyze_execution
from sharpedge.engine.fair_probability import DevigResult, FairProbabilityEngine
from sharpedge.engine.gate import ExecutionGate, GateConfig, team_matches
from sharpedge.engine.quotes import QuoteAggregator, QuoteBook
from sharpedge.engine.sizing import PositionSizer, SizingConfig, SizingRequest
from sharpedge.errors import ConfigurationError, InsufficientQuotes, UpstreamUnavailable
from sharpedge.feeds.odds_api import OddsAPIClient, OddsEvent
from sharpedge.feeds.polymarket import ExchangeMarket, PolymarketClient
from sharpedge.models.schemas import MarketType, SignalOpportunity, TickSummary, utc_now
from sharpedge.storage.store import Store

logger = structlog.get_logger()

# Market end dates are usually the scheduled start or shortly after
MAX_START_GAP = timedelta(hours=36)


@dataclass
class PricedEvent:
    """An odds-provider event with its de-vigged moneyline."""
    event: OddsEvent
    book: QuoteBook
    fair: DevigResult

    def bookmaker_count(self, outcome: str) -> int:
        return len({q.source for q in self.book.quotes.get(outcome, [])})


def signal_id(condition_id: str, side: str) -> str:
    """Stable id so re-detections refresh the same row."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"polymarket:{condition_id}:{side}"))


def _same_team(a: str, b: str) -> bool:
    return team_matches(a, b) or team_matches(b, a)


def match_market(
    market: ExchangeMarket,
    priced: list[PricedEvent],
) -> Optional[tuple[PricedEvent, str]]:
    """
    Find the event a market belongs to and the outcome its YES side backs.

    Both teams must appear in the market text. The YES selection is the
    first named outcome for team-vs-team markets, otherwise the single
    team named in the question. Draw markets are not matched.
    """
    text = market.search_text
    for candidate in priced:
        event = candidate.event
        if market.end_date and abs(market.end_date - event.commence_time) > MAX_START_GAP:
            continue
        if not (team_matches(event.home_team, text) and team_matches(event.away_team, text)):
            continue

        label = market.yes_label
        if label:
            named = [t for t in (event.home_team, event.away_team) if _same_team(label, t)]
        else:
            named = [t for t in (event.home_team, event.away_team) if team_matches(t, market.question)]

        if len(named) == 1 and named[0] in candidate.fair.probabilities:
            return candidate, named[0]
    return None


class SignalJob:
    """One signal detection pass over every configured sport."""

    def __init__(
        self,
        settings: Settings,
        store: Store,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if settings.bankroll < settings.sizing.min_bankroll:
            raise ConfigurationError(
                f"Bankroll {settings.bankroll:.0f} below sizing minimum {settings.sizing.min_bankroll:.0f}"
            )
        self.settings = settings
        self.store = store
        self.http_client = http_client
        self.logger = logger.bind(component="signal_job")

        self.aggregator = QuoteAggregator(settings.odds_api.sharp_books)
        self.fair_engine = FairProbabilityEngine()
        self.classifier = EdgeClassifier(EdgeConfig.from_settings(settings.edge))
        self.sizer = PositionSizer(SizingConfig.from_settings(settings.sizing))
        self.gate = ExecutionGate(GateConfig.from_settings(settings.gate))

    async def run(self, now: Optional[datetime] = None) -> TickSummary:
        start = time.time()
        now = now or utc_now()
        summary = TickSummary(job="signals")

        odds = OddsAPIClient(
            api_key=self.settings.odds_api.api_key,
            base_url=self.settings.odds_api.base_url,
            regions=self.settings.odds_api.regions,
            request_delay=self.settings.odds_api.request_delay_seconds,
            timeout=self.settings.odds_api.timeout_seconds,
            http_client=self.http_client,
        )
        exchange = PolymarketClient(
            gamma_url=self.settings.polymarket.gamma_url,
            request_delay=self.settings.polymarket.request_delay_seconds,
            timeout=self.settings.polymarket.timeout_seconds,
            http_client=self.http_client,
        )

        async with odds, exchange:
            priced = await self._price_events(odds, summary)
            try:
                markets = await exchange.get_sports_markets()
            except UpstreamUnavailable as e:
                self.logger.warning("Exchange fetch failed", error=e.reason)
                summary.record_error("polymarket", e.reason)
                markets = []

        emitted = 0
        executable = 0
        matched = 0
        for market in markets:
            match = match_market(market, priced)
            if match is None:
                continue
            matched += 1
            summary.processed += 1
            candidate, outcome = match
            for signal in self._signals_for(market, candidate, outcome, now):
                self.store.upsert_signal(signal, commit=False)
                emitted += 1
                if signal.is_executable:
                    executable += 1
        self.store.commit()

        summary.transitioned = self.store.expire_signals(now)
        summary.duration_ms = int((time.time() - start) * 1000)
        summary.extra = {
            "events_priced": len(priced),
            "markets": len(markets),
            "markets_matched": matched,
            "signals": emitted,
            "executable": executable,
            "odds_api": odds.get_metrics(),
            "edge": self.classifier.get_metrics(),
        }

        self.logger.info(
            "Signal tick complete",
            events=len(priced),
            markets=len(markets),
            matched=matched,
            signals=emitted,
            executable=executable,
            expired=summary.transitioned,
            duration_ms=summary.duration_ms,
        )
        return summary

    async def _price_events(self, odds: OddsAPIClient, summary: TickSummary) -> list[PricedEvent]:
        priced = []
        for sport in self.settings.odds_api.sports:
            try:
                events = await odds.get_odds(sport, markets=["h2h"])
            except UpstreamUnavailable as e:
                self.logger.warning("Odds fetch failed", sport=sport, error=e.reason)
                summary.record_error(sport, e.reason)
                continue

            for event in events:
                book = self.aggregator.h2h(event.as_payload())
                if book is None:
                    continue
                try:
                    fair = self.fair_engine.compute(book.quotes)
                except InsufficientQuotes as e:
                    self.logger.debug("Skipping event", event_name=event.event_name, reason=e.reason)
                    continue
                priced.append(PricedEvent(event=event, book=book, fair=fair))
        return priced

    def _signals_for(
        self,
        market: ExchangeMarket,
        candidate: PricedEvent,
        outcome: str,
        now: datetime,
    ) -> list[SignalOpportunity]:
        event = candidate.event
        fair = candidate.fair.probabilities[outcome]
        assessments = self.classifier.evaluate_exchange_price(
            market.yes_price,
            fair,
            event.sport_key,
            candidate.bookmaker_count(outcome),
            has_sharp=candidate.book.has_sharp_coverage(),
        )

        signals = []
        for assessment in assessments:
            if not assessment.qualifies:
                continue
            signal = self._build_signal(market, candidate, outcome, assessment, now)
            # Exposure is only charged for candidates that survive sizing
            if signal is None or not self.classifier.admit(event.event_key, assessment):
                continue

            decision = analyze_execution(signal, stake=signal.suggested_stake or 100.0).decision
            result = self.gate.apply(signal, decision, now)
            self.logger.info(
                "Signal detected",
                event_name=signal.event_name,
                outcome=outcome,
                side=signal.side.value,
                price=f"{signal.target_price:.3f}",
                edge=f"{signal.edge_percent:.1f}%",
                stake=f"{signal.suggested_stake:.2f}",
                decision=decision.value,
                gate=result.reason,
            )
            signals.append(signal)
        return signals

    def _build_signal(
        self,
        market: ExchangeMarket,
        candidate: PricedEvent,
        outcome: str,
        assessment: EdgeAssessment,
        now: datetime,
    ) -> Optional[SignalOpportunity]:
        event = candidate.event
        bankroll = self.settings.bankroll
        sizing = self.sizer.size(SizingRequest(
            probability=assessment.fair_probability,
            odds=assessment.offered_odds - 1,
            bankroll=bankroll,
            market_type=MarketType.H2H,
            confidence=assessment.confidence.score,
        ))
        if not sizing.is_bet:
            self.logger.debug("Sizing declined", outcome=outcome, reason=sizing.reason)
            return None

        stake = min(assessment.stake_pct / 100 * bankroll, sizing.amount)
        price = 1 / assessment.offered_odds

        return SignalOpportunity(
            id=signal_id(market.condition_id, assessment.side.value),
            event_key=event.event_key,
            event_name=event.event_name,
            sport=event.sport_key,
            market_type=MarketType.H2H,
            side=assessment.side,
            outcome=outcome,
            target_price=round(price, 4),
            fair_probability=assessment.fair_probability,
            edge_percent=round(assessment.edge_percent, 2),
            expected_value=round(assessment.expected_value, 4),
            confidence=assessment.confidence,
            kelly_fraction=sizing.fraction,
            suggested_stake=round(stake, 2),
            created_at=now,
            expires_at=event.commence_time,
            bookmaker_count=assessment.bookmaker_count,
            condition_id=market.condition_id,
            market_volume=market.volume,
            price_updated_at=market.updated_at or now,
        )


async def run_signals(
    settings: Settings,
    store: Store,
    http_client: Optional[httpx.AsyncClient] = None,
    now: Optional[datetime] = None,
) -> TickSummary:
    return await SignalJob(settings, store, http_client).run(now)
