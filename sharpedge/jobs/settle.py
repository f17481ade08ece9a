"""Settlement tick: reconcile emitted signals against Polymarket resolution."""

from datetime import datetime
from typing import Optional

import httpx

from config.settings import Settings
from sharpedge.engine.settlement import SettlementPolicy, SettlementReconciler
from sharpedge.feeds.polymarket import PolymarketClient
from sharpedge.models.schemas import TickSummary
from sharpedge.storage.store import Store


async def run_settle(
    settings: Settings,
    store: Store,
    http_client: Optional[httpx.AsyncClient] = None,
    force: bool = False,
    now: Optional[datetime] = None,
) -> TickSummary:
    exchange = PolymarketClient(
        gamma_url=settings.polymarket.gamma_url,
        request_delay=settings.polymarket.request_delay_seconds,
        timeout=settings.polymarket.timeout_seconds,
        http_client=http_client,
    )
    async with exchange:
        reconciler = SettlementReconciler(store, exchange, SettlementPolicy.from_settings(settings.settlement))
        summary = await reconciler.run_tick(force=force, now=now)
    summary.extra["exchange_calls"] = exchange.calls_made
    return summary
