"""
Movement Escalation State Machine.

Tracks fair-probability history per event and decides how aggressively
each event should be re-scanned:

    idle -> watching -> active -> idle (after active_until elapses)

An event qualifies for escalation when its primary outcome moved at least
`movement_threshold_pct` percentage points within the lookback window, at
a velocity of at least `velocity_min_pct_per_min`. At most
`max_active_events` events may be active at once; surplus candidates are
kept as watching.

All state lives in the store, so every tick is independent.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog

from sharpedge.models.schemas import (
    EventWatchState,
    ProbabilitySnapshot,
    TickSummary,
    WatchState,
    utc_now,
)

logger = structlog.get_logger()


@dataclass
class EscalationConfig:
    """Escalation thresholds and windows."""
    movement_threshold_pct: float = 6.0
    velocity_min_pct_per_min: float = 0.4
    lookback_minutes: int = 15
    active_window_minutes: int = 20
    max_active_events: int = 5
    snapshot_retention_hours: int = 24
    idle_poll_seconds: int = 1800
    watching_poll_seconds: int = 300
    active_poll_seconds: int = 60

    @classmethod
    def from_settings(cls, settings) -> "EscalationConfig":
        fields = cls.__dataclass_fields__
        return cls(**{k: v for k, v in settings.model_dump().items() if k in fields})


@dataclass
class EventObservation:
    """Current fair probabilities for one event's two-way market."""
    event_key: str
    event_name: str
    primary_outcome: str
    probabilities: dict[str, float]


@dataclass
class MovementReading:
    """Movement of one outcome over the lookback window."""
    event_key: str
    event_name: str
    outcome: str
    initial_probability: float
    peak_probability: float
    current_probability: float
    movement_pct: float
    velocity: float
    elapsed_minutes: float
    samples: int


def compute_movement(snapshots: list[ProbabilitySnapshot]) -> Optional[MovementReading]:
    """
    Movement from the earliest to the latest snapshot.

    movement_pct is the probability delta in percentage points; velocity
    is |movement_pct| per elapsed minute. Needs at least two snapshots.
    """
    if len(snapshots) < 2:
        return None
    ordered = sorted(snapshots, key=lambda s: s.captured_at)
    initial, current = ordered[0], ordered[-1]

    movement = (current.fair_probability - initial.fair_probability) * 100
    elapsed = (current.captured_at - initial.captured_at).total_seconds() / 60
    velocity = abs(movement) / elapsed if elapsed > 0 else 0.0

    return MovementReading(
        event_key=current.event_key,
        event_name=current.event_name,
        outcome=current.outcome,
        initial_probability=initial.fair_probability,
        peak_probability=max(s.fair_probability for s in ordered),
        current_probability=current.fair_probability,
        movement_pct=movement,
        velocity=velocity,
        elapsed_minutes=elapsed,
        samples=len(ordered),
    )


class EscalationEngine:
    """
    Runs one escalation tick against the store.

    Usage:
        engine = EscalationEngine(store)
        summary = engine.run_tick(observations)
    """

    def __init__(self, store, config: Optional[EscalationConfig] = None):
        self.store = store
        self.config = config or EscalationConfig()
        self.logger = logger.bind(component="escalation")

    def qualifies(self, reading: MovementReading) -> bool:
        return (
            abs(reading.movement_pct) >= self.config.movement_threshold_pct
            and reading.velocity >= self.config.velocity_min_pct_per_min
        )

    def poll_interval_for(self, state: WatchState) -> int:
        """Scan interval (seconds) the ingestion layer should use for a state."""
        return {
            WatchState.IDLE: self.config.idle_poll_seconds,
            WatchState.WATCHING: self.config.watching_poll_seconds,
            WatchState.ACTIVE: self.config.active_poll_seconds,
        }[state]

    # =========================================================================
    # Tick
    # =========================================================================

    def run_tick(
        self,
        observations: list[EventObservation],
        now: Optional[datetime] = None,
    ) -> TickSummary:
        start = time.time()
        now = now or utc_now()
        summary = TickSummary(job="watch")

        # Demote expired active events
        expired = self.store.expire_active_states(now)
        summary.transitioned = len(expired)
        for event_key in expired:
            self.logger.info("Active window elapsed", event_key=event_key)

        # Append snapshots
        snapshots = [
            ProbabilitySnapshot(
                event_key=obs.event_key,
                event_name=obs.event_name,
                outcome=outcome,
                fair_probability=probability,
                captured_at=now,
            )
            for obs in observations
            for outcome, probability in obs.probabilities.items()
        ]
        stored = self.store.upsert_snapshots(snapshots)

        # Movement on each event's primary outcome
        since = now - timedelta(minutes=self.config.lookback_minutes)
        candidates: list[MovementReading] = []
        for obs in observations:
            try:
                history = self.store.get_snapshots(obs.event_key, obs.primary_outcome, since=since)
                reading = compute_movement(history)
            except Exception as e:
                self.logger.error("Movement analysis failed", event_key=obs.event_key, error=str(e))
                summary.record_error(obs.event_key, e)
                continue
            summary.processed += 1
            if reading and self.qualifies(reading):
                self.logger.info(
                    "Movement candidate",
                    event_name=reading.event_name,
                    movement=f"{reading.movement_pct:+.1f}pp",
                    velocity=f"{reading.velocity:.2f}pp/min",
                )
                candidates.append(reading)

        escalated, watching = self._apply_candidates(candidates, now)
        summary.escalated = escalated

        # Retention
        purged = self.store.purge_snapshots(now - timedelta(hours=self.config.snapshot_retention_hours))

        summary.duration_ms = int((time.time() - start) * 1000)
        summary.extra = {
            "snapshots_stored": stored,
            "escalation_candidates": len(candidates),
            "watching": watching,
            "snapshots_purged": purged,
            "poll_schedule": {
                state.event_key: self.poll_interval_for(state.watch_state)
                for state in self.store.list_watch_states()
            },
        }

        self.logger.info(
            "Escalation tick complete",
            events=summary.processed,
            candidates=len(candidates),
            escalated=escalated,
            expired=summary.transitioned,
            duration_ms=summary.duration_ms,
        )
        return summary

    def _apply_candidates(self, candidates: list[MovementReading], now: datetime) -> tuple[int, int]:
        """Escalate top candidates into free slots; park the rest as watching."""
        window = timedelta(minutes=self.config.active_window_minutes)

        already_active: list[tuple[MovementReading, EventWatchState]] = []
        fresh: list[MovementReading] = []
        for reading in candidates:
            existing = self.store.get_watch_state(reading.event_key)
            if existing and existing.watch_state == WatchState.ACTIVE:
                already_active.append((reading, existing))
            else:
                fresh.append(reading)

        # Refresh active events without consuming a slot
        for reading, existing in already_active:
            active_until = max(existing.active_until or now, now + window)
            self.store.upsert_watch_state(
                self._state_from(reading, WatchState.ACTIVE, existing.escalated_at, active_until, now)
            )

        slots = max(0, self.config.max_active_events - self.store.count_active())
        fresh.sort(key=lambda r: abs(r.movement_pct), reverse=True)
        promote, park = fresh[:slots], fresh[slots:]

        for reading in promote:
            self.store.upsert_watch_state(
                self._state_from(reading, WatchState.ACTIVE, now, now + window, now)
            )
            self.logger.info("Escalated to active", event_name=reading.event_name, until=(now + window).isoformat())

        for reading in park:
            self.store.upsert_watch_state(
                self._state_from(reading, WatchState.WATCHING, None, None, now)
            )

        return len(promote), len(park)

    @staticmethod
    def _state_from(
        reading: MovementReading,
        state: WatchState,
        escalated_at: Optional[datetime],
        active_until: Optional[datetime],
        now: datetime,
    ) -> EventWatchState:
        return EventWatchState(
            event_key=reading.event_key,
            event_name=reading.event_name,
            watch_state=state,
            initial_probability=reading.initial_probability,
            peak_probability=reading.peak_probability,
            current_probability=reading.current_probability,
            movement_pct=reading.movement_pct,
            movement_velocity=reading.velocity,
            escalated_at=escalated_at,
            active_until=active_until,
            updated_at=now,
        )
