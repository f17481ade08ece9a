"""
Multi-leg correlation tick.

Groups recent active signals by event and persists the opportunities
that pass the quality bar.
"""

import time
from datetime import datetime, timedelta
from typing import Optional

import structlog

from config.settings import Settings
from sharpedge.engine.correlation import CorrelationConfig, MultiLegDetector
from sharpedge.models.schemas import TickSummary, utc_now
from sharpedge.storage.store import Store

logger = structlog.get_logger()


async def run_correlate(
    settings: Settings,
    store: Store,
    now: Optional[datetime] = None,
) -> TickSummary:
    start = time.time()
    now = now or utc_now()
    summary = TickSummary(job="correlate")

    since = now - timedelta(hours=settings.correlation.lookback_hours)
    signals = store.list_active_signals(created_after=since)
    summary.processed = len(signals)

    detector = MultiLegDetector(CorrelationConfig.from_settings(settings.correlation), settings.bankroll)
    opportunities = detector.detect(signals)

    stored = 0
    for opportunity in opportunities:
        if not opportunity.storable:
            continue
        store.upsert_multi_leg(opportunity)
        stored += 1

    summary.duration_ms = int((time.time() - start) * 1000)
    summary.extra = {
        "opportunities": len(opportunities),
        "stored": stored,
        "top": [
            {
                "event": o.event_name,
                "legs": len(o.legs),
                "tier": o.correlation_tier.name.lower(),
                "total_edge": round(o.total_edge, 2),
                "priority": o.execution_priority,
                "strategy": o.sizing_strategy.value,
                "warnings": o.warnings,
            }
            for o in opportunities[:5]
        ],
    }

    logger.info(
        "Correlation tick complete",
        signals=len(signals),
        opportunities=len(opportunities),
        stored=stored,
        duration_ms=summary.duration_ms,
    )
    return summary
