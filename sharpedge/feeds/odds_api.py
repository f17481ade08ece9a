"""
The Odds API Feed.

Aggregates odds from 40+ sportsbooks including Pinnacle, Betfair Exchange,
Matchbook, DraftKings, etc.

API Docs: https://the-odds-api.com/liveapi/guides/v4/

Key endpoints:
- /sports: List available sports
- /sports/{sport}/odds: Get odds for events

Calls are dispatched sequentially with a fixed delay between them; the
provider's quota headers are tracked for the tick summary.
"""

import asyncio
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import certifi
import httpx
import structlog

from sharpedge.errors import ConfigurationError, UpstreamUnavailable
from sharpedge.models.schemas import normalize_event_key, parse_timestamp, utc_now

logger = structlog.get_logger()


@dataclass
class OddsEvent:
    """One event as returned by /sports/{sport}/odds."""
    event_id: str
    sport_key: str
    home_team: str
    away_team: str
    commence_time: datetime
    bookmakers: list[dict] = field(default_factory=list)

    @property
    def event_key(self) -> str:
        return normalize_event_key(self.home_team, self.away_team, self.commence_time)

    @property
    def event_name(self) -> str:
        return f"{self.home_team} vs {self.away_team}"

    def as_payload(self) -> dict:
        return {"bookmakers": self.bookmakers}


class OddsAPIClient:
    """
    Async client for The Odds API.

    Usage:
        async with OddsAPIClient(api_key="...") as client:
            events = await client.get_odds("basketball_nba", markets=["h2h"])
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.the-odds-api.com/v4",
        regions: Optional[list[str]] = None,
        request_delay: float = 1.0,
        timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key:
            raise ConfigurationError("ODDS_API__API_KEY not configured")

        self.api_key = api_key
        self.base_url = base_url
        self.regions = regions or ["us", "eu", "uk"]
        self.request_delay = request_delay
        self.timeout = timeout

        self.logger = logger.bind(feed="odds_api")

        self._http_client = http_client
        self._owns_client = http_client is None
        self._last_request_at: float = 0.0

        # Quota tracking
        self.requests_remaining: Optional[int] = None
        self.requests_used: Optional[int] = None
        self.calls_made: int = 0

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def __aenter__(self) -> "OddsAPIClient":
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

    # =========================================================================
    # API Calls
    # =========================================================================

    async def _pace(self) -> None:
        """Keep a fixed delay between consecutive calls."""
        if self._last_request_at:
            wait = self.request_delay - (time.monotonic() - self._last_request_at)
            if wait > 0:
                await asyncio.sleep(wait)
        self._last_request_at = time.monotonic()

    async def _make_request(self, endpoint: str, params: Optional[dict] = None) -> dict | list:
        if self._http_client is None:
            raise RuntimeError("OddsAPIClient used outside of 'async with'")

        await self._pace()

        url = f"{self.base_url}{endpoint}"
        full_params = {"apiKey": self.api_key}
        if params:
            full_params.update(params)

        try:
            response = await self._http_client.get(url, params=full_params)
        except httpx.HTTPError as e:
            self.logger.error("Request failed", endpoint=endpoint, error=str(e))
            raise UpstreamUnavailable("odds_api", f"{endpoint}: {e}") from e
        finally:
            self.calls_made += 1

        # Track usage from headers
        if "x-requests-remaining" in response.headers:
            self.requests_remaining = int(float(response.headers["x-requests-remaining"]))
        if "x-requests-used" in response.headers:
            self.requests_used = int(float(response.headers["x-requests-used"]))

        if response.status_code == 200:
            self.logger.debug(
                "API request",
                endpoint=endpoint,
                used=self.requests_used,
                remaining=self.requests_remaining,
            )
            try:
                return response.json()
            except ValueError as e:
                self.logger.warning("Invalid JSON body", endpoint=endpoint, body=response.text[:200])
                raise UpstreamUnavailable("odds_api", f"{endpoint}: invalid JSON response") from e
        if response.status_code == 401:
            self.logger.error("Invalid API key")
            raise ConfigurationError("The Odds API rejected the API key")
        if response.status_code == 429:
            self.logger.warning("Rate limited by API", endpoint=endpoint)
            raise UpstreamUnavailable("odds_api", f"{endpoint}: rate limited")

        self.logger.warning("API error", status=response.status_code, body=response.text[:200])
        raise UpstreamUnavailable("odds_api", f"{endpoint}: HTTP {response.status_code}")

    async def get_odds(
        self,
        sport_key: str,
        markets: Optional[list[str]] = None,
        bookmakers: Optional[list[str]] = None,
    ) -> list[OddsEvent]:
        """
        Get upcoming events for a sport with decimal odds attached.

        Args:
            sport_key: The Odds API sport key (e.g. "basketball_nba")
            markets: Market keys to fetch (default h2h)
            bookmakers: Restrict to these bookmakers (overrides regions)
        """
        params = {
            "markets": ",".join(markets or ["h2h"]),
            "oddsFormat": "decimal",
            "dateFormat": "iso",
        }
        if bookmakers:
            params["bookmakers"] = ",".join(bookmakers)
        else:
            params["regions"] = ",".join(self.regions)

        data = await self._make_request(f"/sports/{sport_key}/odds", params)
        if not isinstance(data, list):
            raise UpstreamUnavailable("odds_api", f"{sport_key}: unexpected payload")

        events = []
        for event_data in data:
            event = self._parse_event(event_data, sport_key)
            if event:
                events.append(event)

        self.logger.info(
            "Fetched events",
            sport=sport_key,
            count=len(events),
            requests_remaining=self.requests_remaining,
        )
        return events

    def _parse_event(self, data: dict, sport_key: str) -> Optional[OddsEvent]:
        home = data.get("home_team") or ""
        away = data.get("away_team") or ""
        if not home or not away:
            self.logger.debug("Skipping event without teams", event_id=data.get("id"))
            return None

        return OddsEvent(
            event_id=data.get("id", ""),
            sport_key=data.get("sport_key", sport_key),
            home_team=home,
            away_team=away,
            commence_time=parse_timestamp(data.get("commence_time")) or utc_now(),
            bookmakers=data.get("bookmakers", []) or [],
        )

    def get_metrics(self) -> dict:
        return {
            "name": "odds_api",
            "calls_made": self.calls_made,
            "requests_remaining": self.requests_remaining,
            "requests_used": self.requests_used,
        }
