"""
Quote Aggregator.

Flattens an odds-provider event payload (bookmakers -> markets -> outcomes)
into per-market quote books: outcome name -> list of Quotes. Spreads and
totals are keyed by line so Over/Under at the same point form one market.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

import structlog

from sharpedge.models.schemas import MarketType, Quote, parse_timestamp

logger = structlog.get_logger()


DEFAULT_SHARP_BOOKS = frozenset({
    "pinnacle",
    "pinnacle_us",
    "betfair_ex_uk",
    "betfair_ex_eu",
    "matchbook",
    "sbobet",
    "circa",
})


@dataclass
class QuoteBook:
    """All quotes for one market of one event."""
    market_type: MarketType
    point: Optional[float] = None
    quotes: dict[str, list[Quote]] = field(default_factory=dict)

    @property
    def outcomes(self) -> list[str]:
        return list(self.quotes.keys())

    @property
    def bookmakers(self) -> set[str]:
        return {q.source for qs in self.quotes.values() for q in qs}

    def add(self, quote: Quote) -> None:
        self.quotes.setdefault(quote.outcome_name, []).append(quote)

    def has_sharp_coverage(self) -> bool:
        """True when every outcome has at least one sharp quote."""
        return bool(self.quotes) and all(
            any(q.is_sharp_source for q in qs) for qs in self.quotes.values()
        )


class QuoteAggregator:
    """
    Normalizes bookmaker odds into QuoteBooks.

    Odds are expected in decimal format unless american=True.
    """

    def __init__(
        self,
        sharp_books: Optional[Iterable[str]] = None,
        american: bool = False,
    ):
        self.sharp_books = frozenset(sharp_books) if sharp_books else DEFAULT_SHARP_BOOKS
        self.american = american
        self.logger = logger.bind(component="quote_aggregator")

    def is_sharp(self, bookmaker: str) -> bool:
        return bookmaker.lower() in self.sharp_books

    def aggregate(self, event: dict) -> dict[tuple[MarketType, Optional[float]], QuoteBook]:
        """
        Build quote books for every market in an event payload.

        Returns:
            Mapping of (market_type, point) -> QuoteBook
        """
        books: dict[tuple[MarketType, Optional[float]], QuoteBook] = {}

        for bookmaker in event.get("bookmakers", []):
            source = bookmaker.get("key", "")
            last_update = parse_timestamp(bookmaker.get("last_update"))
            sharp = self.is_sharp(source)

            for market in bookmaker.get("markets", []):
                market_type = MarketType.from_api_key(market.get("key", ""))
                if market_type is None:
                    continue
                market_update = parse_timestamp(market.get("last_update")) or last_update

                for outcome in market.get("outcomes", []):
                    quote = self._parse_outcome(outcome, source, sharp, market_type, market_update)
                    if quote is None:
                        continue
                    key = (market_type, self._point_key(market_type, quote.point))
                    book = books.get(key)
                    if book is None:
                        book = QuoteBook(market_type=market_type, point=key[1])
                        books[key] = book
                    book.add(quote)

        # Line markets must pair exactly two sides at the same point
        return {
            key: book for key, book in books.items()
            if book.market_type in (MarketType.H2H, MarketType.FUTURES) or len(book.quotes) == 2
        }

    def h2h(self, event: dict) -> Optional[QuoteBook]:
        """Shortcut for the moneyline book of an event."""
        return self.aggregate(event).get((MarketType.H2H, None))

    def _parse_outcome(
        self,
        outcome: dict,
        source: str,
        sharp: bool,
        market_type: MarketType,
        last_update,
    ) -> Optional[Quote]:
        name = outcome.get("name")
        price = outcome.get("price")
        if not name or price is None:
            return None
        try:
            price = float(price)
        except (TypeError, ValueError):
            self.logger.debug("Unparseable price", source=source, outcome=name)
            return None

        decimal_odds = Quote.american_to_decimal(price) if self.american else price
        if decimal_odds <= 1.0:
            return None

        point = outcome.get("point")
        return Quote(
            source=source,
            outcome_name=name,
            decimal_odds=decimal_odds,
            is_sharp_source=sharp,
            market_type=market_type,
            point=float(point) if point is not None else None,
            last_update=last_update,
        )

    @staticmethod
    def _point_key(market_type: MarketType, point: Optional[float]) -> Optional[float]:
        # Spread sides carry opposite signs (-3.5 / +3.5) on the same line
        if point is None or market_type in (MarketType.H2H, MarketType.FUTURES):
            return None
        return abs(point) if market_type == MarketType.SPREAD else point
