"""
Snapshot sources: the in-memory store and the simulated runner.
"""
import pytest

from core.config import SimulationConfig
from core.types import ExerciseSnapshot, ExerciseStatus
from tests.fakes import FakeClock
from uplink.session import ExerciseSession
from uplink.sources import MemorySnapshotSource, SimulatedSnapshotSource, initial_bearing


# ============================================================
# MemorySnapshotSource
# ============================================================

def test_empty_store_has_no_latest():
    assert MemorySnapshotSource().get_latest() is None


def test_latest_is_most_recent_exercise():
    store = MemorySnapshotSource([
        ExerciseSnapshot(start_time=3000, steps=3),
        ExerciseSnapshot(start_time=1000, steps=1),
    ])
    store.upsert(ExerciseSnapshot(start_time=2000, steps=2))

    assert store.get_latest().start_time == 3000


def test_upsert_replaces_same_exercise():
    store = MemorySnapshotSource()
    store.upsert(ExerciseSnapshot(start_time=1000, steps=10))
    store.upsert(ExerciseSnapshot(start_time=1000, steps=25))

    assert store.get(1000).steps == 25
    assert store.get_latest().steps == 25

    store.clear()
    assert store.get_latest() is None


# ============================================================
# SimulatedSnapshotSource
# ============================================================

def make_sim(**config):
    clock = FakeClock()
    session = ExerciseSession(clock=clock)
    source = SimulatedSnapshotSource(session, SimulationConfig(**config), clock=clock)
    return clock, session, source


def test_no_snapshot_before_exercise_starts():
    _, _, source = make_sim()
    assert source.get_latest() is None


def test_runner_moves_toward_destination():
    clock, session, source = make_sim(speed_ms=3.0)
    session.start()
    clock.advance(10_000)

    snap = source.get_latest()

    assert snap.status == ExerciseStatus.ACTIVE
    assert snap.start_time == session.start_time
    assert snap.active_duration == 10_000
    assert snap.distance == pytest.approx(30.0)
    assert snap.speed == pytest.approx(3.0)
    assert snap.speed_avg == pytest.approx(3.0)
    assert snap.steps == int(30.0 / 1.1)
    assert snap.destination == (1.3048, 103.7735)
    assert 0 <= snap.bearing <= 359
    # Destination is north-north-west of the start
    assert snap.curr_lat > 1.2966
    assert snap.curr_lng < 103.7764


def test_runner_stops_at_destination():
    clock, session, source = make_sim(speed_ms=5.0, dest_lat=1.2976, dest_lng=103.7764)
    session.start()
    clock.advance(3_600_000)

    snap = source.get_latest()

    assert snap.curr_lat == pytest.approx(1.2976)
    assert snap.curr_lng == pytest.approx(103.7764)
    assert snap.speed == 0.0


def test_paused_session_carries_instant_metrics_forward():
    clock, session, source = make_sim()
    session.start()
    clock.advance(30_000)
    active = source.get_latest()

    session.pause()
    clock.advance(30_000)
    paused = source.get_latest()

    assert paused.status == ExerciseStatus.PAUSED
    assert paused.heart_rate == active.heart_rate
    assert paused.speed == active.speed
    assert paused.distance == active.distance


def test_destination_can_be_changed_and_cleared():
    clock, session, source = make_sim()
    session.start()
    clock.advance(1000)

    source.set_destination(1.29, 103.80)
    assert source.get_latest().destination == (1.29, 103.80)

    source.clear_destination()
    snap = source.get_latest()
    assert snap.dest_lat is None and snap.dest_lng is None
    assert snap.has_current_location


def test_initial_bearing_cardinal_directions():
    assert initial_bearing(0.0, 0.0, 1.0, 0.0) == 0
    assert initial_bearing(0.0, 0.0, 0.0, 1.0) == 90
    assert initial_bearing(0.0, 0.0, -1.0, 0.0) == 180
    assert initial_bearing(0.0, 0.0, 0.0, -1.0) == 270
