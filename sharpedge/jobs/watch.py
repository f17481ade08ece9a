"""
Movement watch tick.

Prices the two-way moneyline of a few sports per tick and feeds the
resulting fair probabilities to the escalation engine.
"""

from datetime import datetime
from typing import Optional

import httpx
import structlog

from config.settings import Settings
from sharpedge.engine.escalation import EscalationConfig, EscalationEngine, EventObservation
from sharpedge.engine.fair_probability import FairProbabilityEngine
from sharpedge.engine.quotes import QuoteAggregator
from sharpedge.errors import InsufficientQuotes, UpstreamUnavailable
from sharpedge.feeds.odds_api import OddsAPIClient
from sharpedge.models.schemas import TickSummary, utc_now
from sharpedge.storage.store import Store

logger = structlog.get_logger()


async def collect_observations(
    odds: OddsAPIClient,
    sports: list[str],
    aggregator: QuoteAggregator,
    fair_engine: FairProbabilityEngine,
    summary: TickSummary,
) -> list[EventObservation]:
    """Fair probabilities for every two-way event of the given sports."""
    observations = []
    for sport in sports:
        try:
            events = await odds.get_odds(sport, markets=["h2h"])
        except UpstreamUnavailable as e:
            logger.warning("Odds fetch failed", sport=sport, error=e.reason)
            summary.record_error(sport, e.reason)
            continue

        for event in events:
            book = aggregator.h2h(event.as_payload())
            # Three-way markets have no single primary outcome to track
            if book is None or len(book.outcomes) != 2:
                continue
            try:
                fair = fair_engine.compute(book.quotes)
            except InsufficientQuotes:
                continue
            if event.home_team not in fair.probabilities:
                continue
            observations.append(EventObservation(
                event_key=event.event_key,
                event_name=event.event_name,
                primary_outcome=event.home_team,
                probabilities={name: fp.fair_probability for name, fp in fair.probabilities.items()},
            ))
    return observations


async def run_watch(
    settings: Settings,
    store: Store,
    http_client: Optional[httpx.AsyncClient] = None,
    now: Optional[datetime] = None,
) -> TickSummary:
    now = now or utc_now()
    collected = TickSummary(job="watch")
    sports = settings.escalation.sports[: settings.escalation.max_sports_per_tick]

    odds = OddsAPIClient(
        api_key=settings.odds_api.api_key,
        base_url=settings.odds_api.base_url,
        regions=settings.odds_api.regions,
        request_delay=settings.odds_api.request_delay_seconds,
        timeout=settings.odds_api.timeout_seconds,
        http_client=http_client,
    )
    async with odds:
        observations = await collect_observations(
            odds,
            sports,
            QuoteAggregator(settings.odds_api.sharp_books),
            FairProbabilityEngine(),
            collected,
        )

    engine = EscalationEngine(store, EscalationConfig.from_settings(settings.escalation))
    summary = engine.run_tick(observations, now)
    summary.errors = collected.errors + summary.errors
    summary.extra["sports"] = sports
    summary.extra["odds_api"] = odds.get_metrics()
    return summary
