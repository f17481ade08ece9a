"""
SharpEdge - sharp-vs-exchange sports signal pipeline.

Sharp bookmaker prices (Pinnacle, Betfair Exchange, Matchbook) are treated
as the "truth". Polymarket prices that drift away from that truth are
surfaced as signals, sized with layered Kelly, gated and later settled.

Layout:
- feeds/: The Odds API quotes and Polymarket Gamma markets
- engine/: De-vig, edge, sizing, correlation, escalation, gate, settlement
- storage/: SQLite store with idempotent upserts
- jobs/: Stateless scheduled tick runners
"""

__version__ = "0.1.0"
