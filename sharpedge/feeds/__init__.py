"""Upstream data sources: sportsbook odds and exchange markets."""

from sharpedge.feeds.odds_api import OddsAPIClient, OddsEvent
from sharpedge.feeds.polymarket import PolymarketClient, ExchangeMarket

__all__ = [
    "OddsAPIClient",
    "OddsEvent",
    "PolymarketClient",
    "ExchangeMarket",
]
