"""Tests for the movement escalation state machine."""

from datetime import timedelta

import pytest

from sharpedge.engine.escalation import (
    EscalationConfig,
    EscalationEngine,
    EventObservation,
    compute_movement,
)
from sharpedge.models.schemas import EventWatchState, ProbabilitySnapshot, WatchState


def obs(i: int, p: float) -> EventObservation:
    return EventObservation(
        event_key=f"evt{i}",
        event_name=f"Home {i} vs Away {i}",
        primary_outcome="Home",
        probabilities={"Home": p, "Away": 1 - p},
    )


@pytest.fixture
def engine(store):
    return EscalationEngine(store)


class TestComputeMovement:
    """Tests for compute_movement."""

    def test_needs_two_snapshots(self, now):
        """Test that a single point has no movement."""
        snap = ProbabilitySnapshot("evt", "A vs B", "A", 0.5, now)
        assert compute_movement([snap]) is None

    def test_movement_and_velocity(self, now):
        """Test percentage-point delta and per-minute velocity."""
        snaps = [
            ProbabilitySnapshot("evt", "A vs B", "A", 0.62, now),
            ProbabilitySnapshot("evt", "A vs B", "A", 0.50, now - timedelta(minutes=10)),
            ProbabilitySnapshot("evt", "A vs B", "A", 0.65, now - timedelta(minutes=5)),
        ]
        reading = compute_movement(snaps)

        assert reading.movement_pct == pytest.approx(12.0)
        assert reading.velocity == pytest.approx(1.2)
        assert reading.peak_probability == pytest.approx(0.65)
        assert reading.samples == 3


class TestEscalationEngine:
    """Tests for EscalationEngine.run_tick."""

    def test_first_tick_only_snapshots(self, engine, store, now):
        """Test that a fresh event stays idle without history."""
        summary = engine.run_tick([obs(1, 0.5)], now)

        assert summary.processed == 1
        assert summary.escalated == 0
        assert summary.extra["snapshots_stored"] == 2
        assert store.list_watch_states() == []

    def test_snapshots_idempotent(self, engine, store, now):
        """Test that re-running a tick at the same instant stores nothing new."""
        engine.run_tick([obs(1, 0.5)], now)
        summary = engine.run_tick([obs(1, 0.5)], now)
        assert summary.extra["snapshots_stored"] == 0

    def test_escalates_on_movement(self, engine, store, now):
        """Test promotion to active with a window."""
        engine.run_tick([obs(1, 0.50)], now - timedelta(minutes=10))
        summary = engine.run_tick([obs(1, 0.60)], now)

        state = store.get_watch_state("evt1")
        assert summary.escalated == 1
        assert state.watch_state == WatchState.ACTIVE
        assert state.escalated_at == now
        assert state.active_until == now + timedelta(minutes=20)
        assert state.movement_pct == pytest.approx(10.0)
        assert summary.extra["poll_schedule"] == {"evt1": 60}

    def test_escalation_logs_event_name(self, engine, now, captured_logs):
        """Test that candidate and promotion logs carry the event name."""
        engine.run_tick([obs(1, 0.50)], now - timedelta(minutes=10))
        engine.run_tick([obs(1, 0.60)], now)

        logged = {e["event"]: e for e in captured_logs}
        assert logged["Movement candidate"]["event_name"] == "Home 1 vs Away 1"
        assert logged["Escalated to active"]["event_name"] == "Home 1 vs Away 1"

    def test_small_movement_ignored(self, engine, store, now):
        """Test that a sub-threshold move does not create state."""
        engine.run_tick([obs(1, 0.50)], now - timedelta(minutes=10))
        summary = engine.run_tick([obs(1, 0.52)], now)

        assert summary.extra["escalation_candidates"] == 0
        assert store.get_watch_state("evt1") is None

    def test_velocity_threshold(self, store, now):
        """Test that a slow move does not qualify."""
        engine = EscalationEngine(store, EscalationConfig(velocity_min_pct_per_min=2.0))
        engine.run_tick([obs(1, 0.50)], now - timedelta(minutes=10))
        summary = engine.run_tick([obs(1, 0.60)], now)
        assert summary.escalated == 0

    def test_lookback_window(self, engine, store, now):
        """Test that snapshots older than the lookback are ignored."""
        engine.run_tick([obs(1, 0.40)], now - timedelta(minutes=30))
        engine.run_tick([obs(1, 0.59)], now - timedelta(minutes=5))
        summary = engine.run_tick([obs(1, 0.60)], now)
        assert summary.escalated == 0

    def test_capacity_limit(self, engine, store, now):
        """Test that no more than five events are active at once."""
        events = range(7)
        engine.run_tick([obs(i, 0.50) for i in events], now - timedelta(minutes=10))
        summary = engine.run_tick([obs(i, 0.57 + 0.01 * i) for i in events], now)

        assert summary.escalated == 5
        assert summary.extra["watching"] == 2
        assert store.count_active() == 5
        watching = {s.event_key for s in store.list_watch_states(WatchState.WATCHING)}
        # Smallest movers are parked
        assert watching == {"evt0", "evt1"}

    def test_active_events_not_double_counted(self, engine, store, now):
        """Test that re-qualifying active events keep their slot and window."""
        events = range(7)
        engine.run_tick([obs(i, 0.50) for i in events], now - timedelta(minutes=10))
        engine.run_tick([obs(i, 0.57 + 0.01 * i) for i in events], now)

        later = now + timedelta(minutes=1)
        summary = engine.run_tick([obs(i, 0.60 + 0.01 * i) for i in events], later)

        assert summary.escalated == 0
        assert store.count_active() == 5
        state = store.get_watch_state("evt6")
        assert state.escalated_at == now
        assert state.active_until == later + timedelta(minutes=20)

    def test_expires_active_window(self, engine, store, now):
        """Test demotion to idle once active_until passes."""
        store.upsert_watch_state(EventWatchState(
            event_key="evt9",
            event_name="Home 9 vs Away 9",
            watch_state=WatchState.ACTIVE,
            escalated_at=now - timedelta(minutes=30),
            active_until=now - timedelta(minutes=10),
            updated_at=now - timedelta(minutes=30),
        ))
        summary = engine.run_tick([], now)

        assert summary.transitioned == 1
        state = store.get_watch_state("evt9")
        assert state.watch_state == WatchState.IDLE
        assert state.active_until is None

    def test_purges_old_snapshots(self, engine, store, now):
        """Test the retention window."""
        engine.run_tick([obs(1, 0.5)], now - timedelta(hours=25))
        summary = engine.run_tick([], now)
        assert summary.extra["snapshots_purged"] == 2

    def test_poll_intervals(self, engine):
        """Test scan interval per watch state."""
        assert engine.poll_interval_for(WatchState.IDLE) == 1800
        assert engine.poll_interval_for(WatchState.WATCHING) == 300
        assert engine.poll_interval_for(WatchState.ACTIVE) == 60

    def test_per_event_failure_recorded(self, engine, store, now, monkeypatch):
        """Test that one failing event does not abort the tick."""
        original = store.get_snapshots

        def flaky(event_key, outcome, since):
            if event_key == "evt1":
                raise RuntimeError("boom")
            return original(event_key, outcome, since)

        monkeypatch.setattr(store, "get_snapshots", flaky)
        summary = engine.run_tick([obs(1, 0.5), obs(2, 0.5)], now)

        assert summary.processed == 1
        assert summary.errors == ["evt1: boom"]
