"""
Polymarket Gamma API client.

Two uses:
- Discover active sports markets (price, volume, end date) for signal
  detection
- Look up a market by condition id for settlement

Gamma returns `outcomePrices` and `clobTokenIds` as JSON-encoded strings;
the first price is the YES side.
"""

import asyncio
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import certifi
import httpx
import orjson
import structlog

from sharpedge.engine.settlement import MarketStatus
from sharpedge.errors import UpstreamUnavailable
from sharpedge.models.schemas import parse_timestamp

logger = structlog.get_logger()


# Gamma tag ids for sports categories
SPORTS_TAG_IDS = {
    "sports": 1,
    "nba": 745,
    "nfl": 450,
    "nhl": 899,
    "epl": 82,
}


@dataclass
class ExchangeMarket:
    """A binary Polymarket market."""
    condition_id: str
    question: str
    event_title: str
    yes_price: float
    no_price: float
    volume: float
    liquidity: float
    closed: bool
    active: bool
    end_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    outcomes: list[str] = field(default_factory=list)

    @property
    def search_text(self) -> str:
        return f"{self.question} {self.event_title}"

    @property
    def yes_label(self) -> Optional[str]:
        """Named first outcome for team-vs-team markets; None for Yes/No markets."""
        if self.outcomes and self.outcomes[0].lower() != "yes":
            return self.outcomes[0]
        return None

    def to_status(self) -> MarketStatus:
        return MarketStatus(
            condition_id=self.condition_id,
            closed=self.closed,
            active=self.active,
            yes_price=self.yes_price,
            end_date=self.end_date,
        )


def _as_float(value, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _as_list(value) -> list:
    if isinstance(value, str):
        try:
            value = orjson.loads(value)
        except orjson.JSONDecodeError:
            return []
    return value if isinstance(value, list) else []


def parse_market(data: dict, event: Optional[dict] = None) -> Optional[ExchangeMarket]:
    """Parse a Gamma market object. Returns None for non-binary markets."""
    condition_id = data.get("conditionId") or data.get("condition_id")
    if not condition_id:
        return None

    prices = [_as_float(p, -1.0) for p in _as_list(data.get("outcomePrices"))]
    if len(prices) < 2:
        # CLOB-style payloads carry prices on tokens
        tokens = data.get("tokens") or []
        prices = [_as_float(t.get("price"), -1.0) for t in tokens if isinstance(t, dict)]
    if len(prices) != 2 or min(prices) < 0:
        return None

    event = event or {}
    end_date = (
        parse_timestamp(data.get("endDate"))
        or parse_timestamp(data.get("end_date_iso"))
        or parse_timestamp(event.get("endDate"))
    )

    return ExchangeMarket(
        condition_id=condition_id,
        question=data.get("question", "") or event.get("title", ""),
        event_title=event.get("title", "") or data.get("groupItemTitle", ""),
        yes_price=prices[0],
        no_price=prices[1],
        volume=_as_float(data.get("volume") or data.get("volumeNum")),
        liquidity=_as_float(data.get("liquidity") or data.get("liquidityNum")),
        closed=bool(data.get("closed", False)),
        active=bool(data.get("active", True)),
        end_date=end_date,
        updated_at=parse_timestamp(data.get("updatedAt")),
        outcomes=[str(o) for o in _as_list(data.get("outcomes"))],
    )


class PolymarketClient:
    """
    Async client for the Polymarket Gamma API.

    Usage:
        async with PolymarketClient() as pm:
            markets = await pm.get_sports_markets()
            status = await pm.get_market_status(condition_id)
    """

    def __init__(
        self,
        gamma_url: str = "https://gamma-api.polymarket.com",
        request_delay: float = 0.2,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.gamma_url = gamma_url
        self.request_delay = request_delay
        self.timeout = timeout
        self.logger = logger.bind(feed="polymarket")

        self._http_client = http_client
        self._owns_client = http_client is None
        self._last_request_at: float = 0.0
        self.calls_made: int = 0

    async def __aenter__(self) -> "PolymarketClient":
        if self._http_client is None:
            ssl_context = ssl.create_default_context(cafile=certifi.where())
            self._http_client = httpx.AsyncClient(
                verify=ssl_context,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        return self

    async def __aexit__(self, *exc) -> None:
        if self._owns_client and self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _get(self, endpoint: str, params: dict) -> list:
        if self._http_client is None:
            raise RuntimeError("PolymarketClient used outside of 'async with'")

        if self._last_request_at:
            wait = self.request_delay - (time.monotonic() - self._last_request_at)
            if wait > 0:
                await asyncio.sleep(wait)
        self._last_request_at = time.monotonic()

        try:
            response = await self._http_client.get(f"{self.gamma_url}{endpoint}", params=params)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable("polymarket", f"{endpoint}: {e}") from e
        finally:
            self.calls_made += 1

        if response.status_code != 200:
            raise UpstreamUnavailable("polymarket", f"{endpoint}: HTTP {response.status_code}")

        try:
            data = orjson.loads(response.content)
        except orjson.JSONDecodeError as e:
            raise UpstreamUnavailable("polymarket", f"{endpoint}: invalid JSON response") from e
        return data if isinstance(data, list) else []

    async def get_market_status(self, condition_id: str) -> Optional[MarketStatus]:
        """Resolution fields for one market, or None if Gamma doesn't know it."""
        markets = await self._get("/markets", {"condition_ids": condition_id})
        for data in markets:
            market = parse_market(data)
            if market and market.condition_id == condition_id:
                return market.to_status()
        return None

    async def get_sports_markets(
        self,
        tag_ids: Optional[list[int]] = None,
        limit: int = 100,
    ) -> list[ExchangeMarket]:
        """
        Active binary markets under the given sports tags.

        A failing tag is logged and skipped.
        """
        tag_ids = tag_ids or list(SPORTS_TAG_IDS.values())
        seen: set[str] = set()
        markets: list[ExchangeMarket] = []

        for tag_id in tag_ids:
            try:
                events = await self._get(
                    "/events",
                    {"active": "true", "closed": "false", "tag_id": tag_id, "limit": limit},
                )
            except UpstreamUnavailable as e:
                self.logger.warning("Tag fetch failed", tag_id=tag_id, error=e.reason)
                continue

            for event in events:
                for data in event.get("markets", []) or []:
                    market = parse_market(data, event)
                    if market is None or market.condition_id in seen or market.closed:
                        continue
                    seen.add(market.condition_id)
                    markets.append(market)

        self.logger.info("Fetched exchange markets", count=len(markets), tags=len(tag_ids))
        return markets
