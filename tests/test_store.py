"""Tests for the SQLite store."""

import sqlite3
from datetime import timedelta

import pytest

from sharpedge.models.schemas import (
    CorrelatedLeg,
    EventWatchState,
    MarketType,
    MultiLegOpportunity,
    ProbabilitySnapshot,
    SettlementOutcome,
    SettlementRecord,
    Side,
    SignalStatus,
    SizingStrategy,
    WatchState,
)
from sharpedge.storage.store import Store


class TestSignals:
    """Tests for signal persistence and lifecycle."""

    def test_round_trip(self, store, make_signal):
        """Test that a stored signal reads back unchanged."""
        signal = make_signal(watch_only_reason="Stale price data")
        store.upsert_signal(signal)
        loaded = store.get_signal("sig-1")

        assert loaded.outcome == signal.outcome
        assert loaded.side == Side.YES
        assert loaded.market_type == MarketType.H2H
        assert loaded.created_at == signal.created_at
        assert loaded.price_updated_at == signal.price_updated_at
        assert loaded.watch_only_reason == "Stale price data"
        assert loaded.status == SignalStatus.ACTIVE

    def test_upsert_refreshes_active_pricing(self, store, make_signal):
        """Test that a rerun updates an active signal instead of duplicating it."""
        store.upsert_signal(make_signal(target_price=0.50))
        store.upsert_signal(make_signal(target_price=0.48, edge_percent=14.0))

        assert len(store.list_active_signals()) == 1
        loaded = store.get_signal("sig-1")
        assert loaded.target_price == 0.48
        assert loaded.edge_percent == 14.0

    def test_terminal_signal_is_frozen(self, store, make_signal):
        """Test that pricing refreshes skip non-active signals."""
        store.upsert_signal(make_signal(target_price=0.50))
        store.update_signal_status("sig-1", SignalStatus.EXECUTED)
        store.upsert_signal(make_signal(target_price=0.40))

        loaded = store.get_signal("sig-1")
        assert loaded.target_price == 0.50
        assert loaded.status == SignalStatus.EXECUTED

    def test_rejects_leaving_terminal_status(self, store, make_signal):
        """Test lifecycle validation."""
        store.upsert_signal(make_signal())
        store.update_signal_status("sig-1", SignalStatus.DISMISSED)
        with pytest.raises(ValueError):
            store.update_signal_status("sig-1", SignalStatus.ACTIVE)

    def test_unknown_signal_status_update(self, store):
        """Test updating a missing signal."""
        assert store.update_signal_status("missing", SignalStatus.EXECUTED) is False

    def test_expire_signals(self, store, make_signal, now):
        """Test expiry of signals past their window."""
        store.upsert_signal(make_signal(id="old", expires_at=now - timedelta(minutes=1)))
        store.upsert_signal(make_signal(id="live"))

        assert store.expire_signals(now) == 1
        assert store.get_signal("old").status == SignalStatus.EXPIRED
        assert [s.id for s in store.list_active_signals()] == ["live"]

    def test_list_active_filters_and_orders(self, store, make_signal, now):
        """Test the creation cutoff and edge ordering."""
        store.upsert_signal(make_signal(id="a", edge_percent=4.0))
        store.upsert_signal(make_signal(id="b", edge_percent=9.0))
        store.upsert_signal(make_signal(id="c", created_at=now - timedelta(days=3)))

        recent = store.list_active_signals(created_after=now - timedelta(hours=24))
        assert [s.id for s in recent] == ["b", "a"]

    def test_unsettled_excludes_terminal(self, store, make_signal, now):
        """Test that only open settlements are returned."""
        store.upsert_signal(make_signal(id="won"))
        store.upsert_signal(make_signal(id="playing"))
        store.upsert_signal(make_signal(id="fresh"))
        store.upsert_signal(make_signal(id="young", created_at=now))
        store.record_settlement(SettlementRecord("won", SettlementOutcome.WIN, 81.82, now))
        store.record_settlement(SettlementRecord("playing", SettlementOutcome.IN_PLAY, 0.0, now))

        ids = {s.id for s in store.list_unsettled_signals(created_before=now - timedelta(hours=2))}
        assert ids == {"playing", "fresh"}

    def test_unsettled_skips_dismissed(self, store, make_signal, now):
        """Test that dismissed signals leave the queue but expired ones stay."""
        store.upsert_signal(make_signal(id="dismissed"))
        store.upsert_signal(make_signal(id="expired"))
        store.update_signal_status("dismissed", SignalStatus.DISMISSED)
        store.update_signal_status("expired", SignalStatus.EXPIRED)

        ids = [s.id for s in store.list_unsettled_signals(created_before=now)]
        assert ids == ["expired"]

    def test_unsettled_checked_signals_go_last(self, store, make_signal, now):
        """Test that unchecked signals lead, then the least recently checked."""
        store.upsert_signal(make_signal(id="old", created_at=now - timedelta(hours=6)))
        store.upsert_signal(make_signal(id="mid", created_at=now - timedelta(hours=5)))
        store.upsert_signal(make_signal(id="new", created_at=now - timedelta(hours=4)))
        store.mark_settlement_checked(["old"], now - timedelta(minutes=30))
        store.mark_settlement_checked(["mid"], now - timedelta(minutes=40))

        ids = [s.id for s in store.list_unsettled_signals(created_before=now)]
        assert ids == ["new", "mid", "old"]

        assert [s.id for s in store.list_unsettled_signals(created_before=now, limit=1)] == ["new"]


class TestSettlements:
    """Tests for settlement records."""

    def test_terminal_record_not_overwritten(self, store, now):
        """Test exactly-once settlement."""
        assert store.record_settlement(SettlementRecord("s1", SettlementOutcome.WIN, 50.0, now, yes_won=True))
        assert not store.record_settlement(SettlementRecord("s1", SettlementOutcome.LOSS, -100.0, now))

        record = store.get_settlement("s1")
        assert record.outcome == SettlementOutcome.WIN
        assert record.realized_pl == 50.0
        assert record.yes_won is True

    def test_in_play_can_be_upgraded(self, store, now):
        """Test that a non-terminal record is replaced."""
        store.record_settlement(SettlementRecord("s1", SettlementOutcome.IN_PLAY, 0.0, now))
        assert store.record_settlement(
            SettlementRecord("s1", SettlementOutcome.VOID, 0.0, now, needs_review=True, note="ambiguous")
        )
        record = store.get_settlement("s1")
        assert record.outcome == SettlementOutcome.VOID
        assert record.needs_review is True
        assert record.note == "ambiguous"
        assert record.yes_won is None


class TestSnapshotsAndWatchState:
    """Tests for probability history and escalation state."""

    def test_snapshots_idempotent(self, store, now):
        """Test the natural-key upsert."""
        snaps = [
            ProbabilitySnapshot("evt", "A vs B", "A", 0.55, now),
            ProbabilitySnapshot("evt", "A vs B", "B", 0.45, now),
        ]
        assert store.upsert_snapshots(snaps) == 2
        assert store.upsert_snapshots(snaps) == 0
        assert len(store.get_snapshots("evt", "A", now - timedelta(minutes=1))) == 1

    def test_purge(self, store, now):
        """Test retention cleanup."""
        store.upsert_snapshots([
            ProbabilitySnapshot("evt", "A vs B", "A", 0.55, now - timedelta(days=2)),
            ProbabilitySnapshot("evt", "A vs B", "A", 0.56, now),
        ])
        assert store.purge_snapshots(now - timedelta(days=1)) == 1
        assert len(store.get_snapshots("evt", "A", now - timedelta(days=3))) == 1

    def test_watch_state_round_trip(self, store, now):
        """Test upsert and expiry of watch state."""
        store.upsert_watch_state(EventWatchState(
            event_key="evt",
            event_name="A vs B",
            watch_state=WatchState.ACTIVE,
            initial_probability=0.50,
            peak_probability=0.61,
            current_probability=0.60,
            movement_pct=10.0,
            movement_velocity=1.0,
            escalated_at=now,
            active_until=now + timedelta(minutes=20),
            updated_at=now,
        ))
        assert store.count_active() == 1
        assert store.get_watch_state("evt").active_until == now + timedelta(minutes=20)

        assert store.expire_active_states(now + timedelta(minutes=5)) == []
        assert store.expire_active_states(now + timedelta(minutes=20)) == ["evt"]
        state = store.get_watch_state("evt")
        assert state.watch_state == WatchState.IDLE
        assert state.active_until is None


class TestMultiLeg:
    """Tests for multi-leg persistence."""

    def test_upsert_and_list(self, store, now):
        """Test JSON columns and idempotent upsert."""
        legs = [
            CorrelatedLeg("s1", "Lakers", Side.YES, MarketType.H2H, "NBA", 6.0, 85),
            CorrelatedLeg("s2", "Celtics +4.5", Side.NO, MarketType.SPREAD, "NBA", 5.0, 85),
        ]
        opportunity = MultiLegOpportunity(
            id="ml-1",
            event_name="Lakers vs Celtics",
            sport="NBA",
            legs=legs,
            correlation_matrix=[[1.0, 0.6], [0.6, 1.0]],
            avg_correlation=0.6,
            max_correlation=0.6,
            total_edge=11.0,
            combined_kelly_fraction=0.041,
            risk_concentration=320.0,
            recommended_total_stake=336.2,
            sizing_strategy=SizingStrategy.MODERATE,
            execution_priority=70,
            created_at=now,
        )
        store.upsert_multi_leg(opportunity)
        store.upsert_multi_leg(opportunity)

        [row] = store.list_multi_legs()
        assert row["leg_signal_ids"] == ["s1", "s2"]
        assert row["correlation_matrix"] == [[1.0, 0.6], [0.6, 1.0]]
        assert row["warnings"] == []
        assert row["sizing_strategy"] == "moderate"


class TestMigrations:
    """Tests for upgrading databases created by older versions."""

    def test_adds_settlement_checked_column(self, tmp_path):
        """Test that an existing signals table gains the rotation column."""
        path = tmp_path / "old.db"
        conn = sqlite3.connect(path)
        conn.execute("CREATE TABLE signal_opportunities (id TEXT PRIMARY KEY, status TEXT, created_at TEXT)")
        conn.commit()
        conn.close()

        store = Store(path)
        try:
            columns = {row["name"] for row in store._conn.execute("PRAGMA table_info(signal_opportunities)")}
        finally:
            store.close()
        assert "settlement_checked_at" in columns
