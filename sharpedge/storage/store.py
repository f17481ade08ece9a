"""
SQLite storage for cross-tick pipeline state. WAL mode for concurrent read/write.

Every write is an upsert keyed by a stable natural identity (signal id,
event_key, (event_key, outcome, captured_at)), so a tick that is retried or
overlaps another run never duplicates rows.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional

import orjson

from sharpedge.models.schemas import (
    ConfidenceTier,
    EventWatchState,
    MarketType,
    MultiLegOpportunity,
    ProbabilitySnapshot,
    SettlementOutcome,
    SettlementRecord,
    Side,
    SignalOpportunity,
    SignalStatus,
    WatchState,
    parse_timestamp,
)

_TERMINAL_OUTCOMES = tuple(o.value for o in SettlementOutcome if o.is_terminal)


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict[str, Any]:
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.astimezone(timezone.utc).isoformat() if value else None


class Store:
    """SQLite store shared by every scheduled job."""

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path)
        self._conn.row_factory = _dict_factory
        if self._db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._conn.executescript(_SCHEMA)
        self._migrate()
        self._conn.commit()

    def _migrate(self) -> None:
        """Apply incremental migrations to existing tables."""
        signal_cols = {
            row["name"] for row in self._conn.execute("PRAGMA table_info(signal_opportunities)").fetchall()
        }
        if "settlement_checked_at" not in signal_cols:
            self._conn.execute("ALTER TABLE signal_opportunities ADD COLUMN settlement_checked_at TEXT")

    def close(self) -> None:
        self._conn.close()

    def commit(self) -> None:
        self._conn.commit()

    # ── Signals ──

    def upsert_signal(self, signal: SignalOpportunity, *, commit: bool = True) -> None:
        """
        Insert a signal or refresh its pricing while it is still active.

        Status is only changed through update_signal_status.
        """
        self._conn.execute(
            """
            INSERT INTO signal_opportunities (
                id, event_key, event_name, sport, market_type, side, outcome,
                target_price, fair_probability, edge_percent, expected_value,
                confidence, kelly_fraction, suggested_stake, bookmaker_count,
                condition_id, market_volume, price_updated_at, watch_only_reason,
                status, created_at, expires_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                target_price = excluded.target_price,
                fair_probability = excluded.fair_probability,
                edge_percent = excluded.edge_percent,
                expected_value = excluded.expected_value,
                confidence = excluded.confidence,
                kelly_fraction = excluded.kelly_fraction,
                suggested_stake = excluded.suggested_stake,
                bookmaker_count = excluded.bookmaker_count,
                market_volume = excluded.market_volume,
                price_updated_at = excluded.price_updated_at,
                watch_only_reason = excluded.watch_only_reason,
                expires_at = excluded.expires_at
            WHERE signal_opportunities.status = 'active'
            """,
            (
                signal.id, signal.event_key, signal.event_name, signal.sport,
                signal.market_type.value, signal.side.value, signal.outcome,
                signal.target_price, signal.fair_probability, signal.edge_percent,
                signal.expected_value, signal.confidence.value, signal.kelly_fraction,
                signal.suggested_stake, signal.bookmaker_count, signal.condition_id,
                signal.market_volume, _ts(signal.price_updated_at), signal.watch_only_reason,
                signal.status.value, _ts(signal.created_at), _ts(signal.expires_at),
            ),
        )
        if commit:
            self._conn.commit()

    def get_signal(self, signal_id: str) -> Optional[SignalOpportunity]:
        row = self._conn.execute(
            "SELECT * FROM signal_opportunities WHERE id = ?", (signal_id,)
        ).fetchone()
        return self._signal_from_row(row) if row else None

    def update_signal_status(self, signal_id: str, status: SignalStatus) -> bool:
        """Apply a validated status transition. Returns False if the signal is unknown."""
        signal = self.get_signal(signal_id)
        if signal is None:
            return False
        signal.transition(status)
        self._conn.execute(
            "UPDATE signal_opportunities SET status = ? WHERE id = ?",
            (signal.status.value, signal_id),
        )
        self._conn.commit()
        return True

    def expire_signals(self, now: datetime) -> int:
        """Move active signals past their expiry to expired."""
        cur = self._conn.execute(
            "UPDATE signal_opportunities SET status = 'expired' WHERE status = 'active' AND expires_at <= ?",
            (_ts(now),),
        )
        self._conn.commit()
        return cur.rowcount

    def list_active_signals(self, created_after: Optional[datetime] = None) -> list[SignalOpportunity]:
        sql = "SELECT * FROM signal_opportunities WHERE status = 'active'"
        params: tuple = ()
        if created_after is not None:
            sql += " AND created_at >= ?"
            params = (_ts(created_after),)
        sql += " ORDER BY edge_percent DESC"
        return [self._signal_from_row(r) for r in self._conn.execute(sql, params).fetchall()]

    def list_unsettled_signals(self, created_before: datetime, limit: int = 50) -> list[SignalOpportunity]:
        """
        Signals with an exchange market and no terminal settlement yet.

        Dismissed signals are never settled. Never-checked signals come
        first, then the least recently checked, so markets that stay open
        cannot starve the rest of the queue.
        """
        rows = self._conn.execute(
            f"""
            SELECT s.* FROM signal_opportunities s
            LEFT JOIN settlement_records r ON r.signal_id = s.id
            WHERE s.condition_id IS NOT NULL
              AND s.status != 'dismissed'
              AND s.created_at <= ?
              AND (r.outcome IS NULL OR r.outcome NOT IN ({",".join("?" * len(_TERMINAL_OUTCOMES))}))
            ORDER BY s.settlement_checked_at IS NOT NULL, s.settlement_checked_at ASC, s.created_at ASC
            LIMIT ?
            """,
            (_ts(created_before), *_TERMINAL_OUTCOMES, limit),
        ).fetchall()
        return [self._signal_from_row(r) for r in rows]

    def mark_settlement_checked(self, signal_ids: Iterable[str], now: datetime) -> None:
        self._conn.executemany(
            "UPDATE signal_opportunities SET settlement_checked_at = ? WHERE id = ?",
            [(_ts(now), signal_id) for signal_id in signal_ids],
        )
        self._conn.commit()

    @staticmethod
    def _signal_from_row(row: dict) -> SignalOpportunity:
        return SignalOpportunity(
            id=row["id"],
            event_key=row["event_key"],
            event_name=row["event_name"],
            sport=row["sport"],
            market_type=MarketType(row["market_type"]),
            side=Side(row["side"]),
            outcome=row["outcome"],
            target_price=row["target_price"],
            fair_probability=row["fair_probability"],
            edge_percent=row["edge_percent"],
            expected_value=row["expected_value"],
            confidence=ConfidenceTier(row["confidence"]),
            kelly_fraction=row["kelly_fraction"],
            suggested_stake=row["suggested_stake"],
            created_at=parse_timestamp(row["created_at"]),
            expires_at=parse_timestamp(row["expires_at"]),
            status=SignalStatus(row["status"]),
            bookmaker_count=row["bookmaker_count"],
            condition_id=row["condition_id"],
            market_volume=row["market_volume"],
            price_updated_at=parse_timestamp(row["price_updated_at"]),
            watch_only_reason=row["watch_only_reason"],
        )

    # ── Snapshots ──

    def upsert_snapshots(self, snapshots: Iterable[ProbabilitySnapshot]) -> int:
        """Append snapshots, ignoring duplicates. Returns rows written."""
        cur = self._conn.executemany(
            """
            INSERT INTO probability_snapshots (event_key, event_name, outcome, fair_probability, captured_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(event_key, outcome, captured_at) DO NOTHING
            """,
            [
                (s.event_key, s.event_name, s.outcome, s.fair_probability, _ts(s.captured_at))
                for s in snapshots
            ],
        )
        self._conn.commit()
        return max(cur.rowcount, 0)

    def get_snapshots(self, event_key: str, outcome: str, since: datetime) -> list[ProbabilitySnapshot]:
        rows = self._conn.execute(
            """
            SELECT * FROM probability_snapshots
            WHERE event_key = ? AND outcome = ? AND captured_at >= ?
            ORDER BY captured_at ASC
            """,
            (event_key, outcome, _ts(since)),
        ).fetchall()
        return [
            ProbabilitySnapshot(
                event_key=r["event_key"],
                event_name=r["event_name"],
                outcome=r["outcome"],
                fair_probability=r["fair_probability"],
                captured_at=parse_timestamp(r["captured_at"]),
            )
            for r in rows
        ]

    def purge_snapshots(self, before: datetime) -> int:
        cur = self._conn.execute(
            "DELETE FROM probability_snapshots WHERE captured_at < ?", (_ts(before),)
        )
        self._conn.commit()
        return cur.rowcount

    # ── Watch state ──

    def upsert_watch_state(self, state: EventWatchState) -> None:
        self._conn.execute(
            """
            INSERT INTO event_watch_state (
                event_key, event_name, watch_state, initial_probability, peak_probability,
                current_probability, movement_pct, movement_velocity, escalated_at,
                active_until, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(event_key) DO UPDATE SET
                event_name = excluded.event_name,
                watch_state = excluded.watch_state,
                initial_probability = excluded.initial_probability,
                peak_probability = excluded.peak_probability,
                current_probability = excluded.current_probability,
                movement_pct = excluded.movement_pct,
                movement_velocity = excluded.movement_velocity,
                escalated_at = excluded.escalated_at,
                active_until = excluded.active_until,
                updated_at = excluded.updated_at
            """,
            (
                state.event_key, state.event_name, state.watch_state.value,
                state.initial_probability, state.peak_probability, state.current_probability,
                state.movement_pct, state.movement_velocity, _ts(state.escalated_at),
                _ts(state.active_until), _ts(state.updated_at),
            ),
        )
        self._conn.commit()

    def get_watch_state(self, event_key: str) -> Optional[EventWatchState]:
        row = self._conn.execute(
            "SELECT * FROM event_watch_state WHERE event_key = ?", (event_key,)
        ).fetchone()
        return self._watch_state_from_row(row) if row else None

    def list_watch_states(self, state: Optional[WatchState] = None) -> list[EventWatchState]:
        if state is None:
            rows = self._conn.execute("SELECT * FROM event_watch_state ORDER BY event_key").fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM event_watch_state WHERE watch_state = ? ORDER BY event_key", (state.value,)
            ).fetchall()
        return [self._watch_state_from_row(r) for r in rows]

    def count_active(self) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS n FROM event_watch_state WHERE watch_state = 'active'"
        ).fetchone()
        return row["n"]

    def expire_active_states(self, now: datetime) -> list[str]:
        """Demote active events whose window has elapsed. Returns their keys."""
        rows = self._conn.execute(
            "SELECT event_key FROM event_watch_state WHERE watch_state = 'active' AND active_until <= ?",
            (_ts(now),),
        ).fetchall()
        keys = [r["event_key"] for r in rows]
        if keys:
            self._conn.executemany(
                """
                UPDATE event_watch_state
                SET watch_state = 'idle', active_until = NULL, updated_at = ?
                WHERE event_key = ?
                """,
                [(_ts(now), k) for k in keys],
            )
            self._conn.commit()
        return keys

    @staticmethod
    def _watch_state_from_row(row: dict) -> EventWatchState:
        return EventWatchState(
            event_key=row["event_key"],
            event_name=row["event_name"],
            watch_state=WatchState(row["watch_state"]),
            initial_probability=row["initial_probability"],
            peak_probability=row["peak_probability"],
            current_probability=row["current_probability"],
            movement_pct=row["movement_pct"] or 0.0,
            movement_velocity=row["movement_velocity"] or 0.0,
            escalated_at=parse_timestamp(row["escalated_at"]),
            active_until=parse_timestamp(row["active_until"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    # ── Settlement ──

    def record_settlement(self, record: SettlementRecord) -> bool:
        """
        Write a settlement unless the signal is already terminally settled.

        Returns True if a row was written.
        """
        cur = self._conn.execute(
            f"""
            INSERT INTO settlement_records (
                signal_id, outcome, realized_pl, settled_at, yes_won, needs_review, note
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(signal_id) DO UPDATE SET
                outcome = excluded.outcome,
                realized_pl = excluded.realized_pl,
                settled_at = excluded.settled_at,
                yes_won = excluded.yes_won,
                needs_review = excluded.needs_review,
                note = excluded.note
            WHERE settlement_records.outcome NOT IN ({",".join("?" * len(_TERMINAL_OUTCOMES))})
            """,
            (
                record.signal_id, record.outcome.value, record.realized_pl,
                _ts(record.settled_at),
                None if record.yes_won is None else int(record.yes_won),
                int(record.needs_review), record.note,
                *_TERMINAL_OUTCOMES,
            ),
        )
        self._conn.commit()
        return cur.rowcount > 0

    def get_settlement(self, signal_id: str) -> Optional[SettlementRecord]:
        row = self._conn.execute(
            "SELECT * FROM settlement_records WHERE signal_id = ?", (signal_id,)
        ).fetchone()
        if not row:
            return None
        return SettlementRecord(
            signal_id=row["signal_id"],
            outcome=SettlementOutcome(row["outcome"]),
            realized_pl=row["realized_pl"],
            settled_at=parse_timestamp(row["settled_at"]),
            yes_won=None if row["yes_won"] is None else bool(row["yes_won"]),
            needs_review=bool(row["needs_review"]),
            note=row["note"] or "",
        )

    # ── Multi-leg ──

    def upsert_multi_leg(self, opportunity: MultiLegOpportunity) -> None:
        self._conn.execute(
            """
            INSERT INTO multi_leg_opportunities (
                id, event_name, sport, leg_signal_ids, correlation_matrix, avg_correlation,
                total_edge, combined_kelly_fraction, risk_concentration,
                recommended_total_stake, sizing_strategy, execution_priority, warnings, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                correlation_matrix = excluded.correlation_matrix,
                avg_correlation = excluded.avg_correlation,
                total_edge = excluded.total_edge,
                combined_kelly_fraction = excluded.combined_kelly_fraction,
                risk_concentration = excluded.risk_concentration,
                recommended_total_stake = excluded.recommended_total_stake,
                sizing_strategy = excluded.sizing_strategy,
                execution_priority = excluded.execution_priority,
                warnings = excluded.warnings
            """,
            (
                opportunity.id, opportunity.event_name, opportunity.sport,
                orjson.dumps([leg.signal_id for leg in opportunity.legs]).decode(),
                orjson.dumps(opportunity.correlation_matrix).decode(),
                opportunity.avg_correlation, opportunity.total_edge,
                opportunity.combined_kelly_fraction, opportunity.risk_concentration,
                opportunity.recommended_total_stake, opportunity.sizing_strategy.value,
                opportunity.execution_priority, orjson.dumps(opportunity.warnings).decode(),
                _ts(opportunity.created_at),
            ),
        )
        self._conn.commit()

    def list_multi_legs(self) -> list[dict[str, Any]]:
        rows = self._conn.execute(
            "SELECT * FROM multi_leg_opportunities ORDER BY execution_priority DESC"
        ).fetchall()
        for row in rows:
            row["leg_signal_ids"] = orjson.loads(row["leg_signal_ids"])
            row["correlation_matrix"] = orjson.loads(row["correlation_matrix"])
            row["warnings"] = orjson.loads(row["warnings"])
        return rows


_SCHEMA = """
CREATE TABLE IF NOT EXISTS signal_opportunities (
    id TEXT PRIMARY KEY,
    event_key TEXT NOT NULL,
    event_name TEXT NOT NULL,
    sport TEXT NOT NULL DEFAULT '',
    market_type TEXT NOT NULL,
    side TEXT NOT NULL,
    outcome TEXT NOT NULL,
    target_price REAL NOT NULL,
    fair_probability REAL NOT NULL,
    edge_percent REAL NOT NULL,
    expected_value REAL NOT NULL,
    confidence TEXT NOT NULL,
    kelly_fraction REAL NOT NULL DEFAULT 0,
    suggested_stake REAL NOT NULL DEFAULT 0,
    bookmaker_count INTEGER NOT NULL DEFAULT 0,
    condition_id TEXT,
    market_volume REAL NOT NULL DEFAULT 0,
    price_updated_at TEXT,
    watch_only_reason TEXT,
    settlement_checked_at TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_signals_status ON signal_opportunities(status, created_at);

CREATE TABLE IF NOT EXISTS probability_snapshots (
    event_key TEXT NOT NULL,
    event_name TEXT NOT NULL,
    outcome TEXT NOT NULL,
    fair_probability REAL NOT NULL,
    captured_at TEXT NOT NULL,
    UNIQUE(event_key, outcome, captured_at)
);
CREATE INDEX IF NOT EXISTS idx_snapshots_captured ON probability_snapshots(captured_at);

CREATE TABLE IF NOT EXISTS event_watch_state (
    event_key TEXT PRIMARY KEY,
    event_name TEXT NOT NULL,
    watch_state TEXT NOT NULL DEFAULT 'idle',
    initial_probability REAL,
    peak_probability REAL,
    current_probability REAL,
    movement_pct REAL,
    movement_velocity REAL,
    escalated_at TEXT,
    active_until TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settlement_records (
    signal_id TEXT PRIMARY KEY,
    outcome TEXT NOT NULL,
    realized_pl REAL NOT NULL DEFAULT 0,
    settled_at TEXT NOT NULL,
    yes_won INTEGER,
    needs_review INTEGER NOT NULL DEFAULT 0,
    note TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS multi_leg_opportunities (
    id TEXT PRIMARY KEY,
    event_name TEXT NOT NULL,
    sport TEXT NOT NULL,
    leg_signal_ids TEXT NOT NULL,
    correlation_matrix TEXT NOT NULL,
    avg_correlation REAL NOT NULL,
    total_edge REAL NOT NULL,
    combined_kelly_fraction REAL NOT NULL,
    risk_concentration REAL NOT NULL,
    recommended_total_stake REAL NOT NULL,
    sizing_strategy TEXT NOT NULL,
    execution_priority INTEGER NOT NULL,
    warnings TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL
);
"""
