"""
Snapshot Sources
Read-only feeds of the latest exercise snapshot.

The uplink only ever calls `get_latest()`. Recording (sensor pipelines,
persistence) lives on the other side of this interface.
"""

import logging
import math
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from core.config import SimulationConfig
from core.types import ExerciseSnapshot, ExerciseStatus
from .session import ExerciseSession, epoch_ms

log = logging.getLogger(__name__)

METERS_PER_DEG_LAT = 111111.0


class SnapshotSource(ABC):
    """The abstract interface the uplink loop reads from."""

    @abstractmethod
    def get_latest(self) -> Optional[ExerciseSnapshot]:
        """Most recently recorded snapshot, or None if no exercise has run yet."""
        pass


class MemorySnapshotSource(SnapshotSource):
    """
    In-process snapshot store, one row per exercise keyed on start_time.
    Safe to write from a recording thread while the uplink reads.
    """

    def __init__(self, snapshots: Optional[List[ExerciseSnapshot]] = None):
        self._lock = threading.Lock()
        self._rows: Dict[int, ExerciseSnapshot] = {}
        for snapshot in snapshots or []:
            self.upsert(snapshot)

    def upsert(self, snapshot: ExerciseSnapshot):
        """Insert a new exercise row or replace the row with the same start_time."""
        with self._lock:
            self._rows[snapshot.start_time] = snapshot

    def get(self, start_time: int) -> Optional[ExerciseSnapshot]:
        with self._lock:
            return self._rows.get(start_time)

    def get_latest(self) -> Optional[ExerciseSnapshot]:
        with self._lock:
            if not self._rows:
                return None
            return self._rows[max(self._rows)]

    def clear(self):
        with self._lock:
            self._rows.clear()


def initial_bearing(lat1: float, lng1: float, lat2: float, lng2: float) -> int:
    """Great-circle initial bearing from point 1 to point 2, whole degrees 0..359."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_lambda = math.radians(lng2 - lng1)
    y = math.sin(d_lambda) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(d_lambda)
    return int(round(math.degrees(math.atan2(y, x)))) % 360


class SimulatedSnapshotSource(SnapshotSource):
    """
    Synthesizes snapshots for a runner heading in a straight line from a
    start point toward the destination (due north if there is none),
    using the session for status and active duration.

    Instantaneous metrics (heart rate, speed) are only sampled while the
    session is ACTIVE; otherwise the previous values are carried forward.
    """

    def __init__(self, session: ExerciseSession, config: Optional[SimulationConfig] = None, clock=None):
        self.session = session
        self.config = config or SimulationConfig()
        self._clock = clock or epoch_ms
        self._lock = threading.Lock()

        self._destination: Optional[Tuple[float, float]] = None
        if self.config.dest_lat is not None and self.config.dest_lng is not None:
            self._destination = (self.config.dest_lat, self.config.dest_lng)

        self._lat_cos = math.cos(math.radians(self.config.start_lat))
        self._previous: Optional[ExerciseSnapshot] = None
        self._hr_sum = 0.0
        self._hr_samples = 0

    # --- Destination store ---

    def set_destination(self, lat: float, lng: float):
        with self._lock:
            self._destination = (lat, lng)
        log.info(f"[SimSource] Destination set to ({lat:.6f}, {lng:.6f})")

    def clear_destination(self):
        with self._lock:
            self._destination = None
        log.info("[SimSource] Destination cleared")

    @property
    def destination(self) -> Optional[Tuple[float, float]]:
        with self._lock:
            return self._destination

    # --- Kinematics ---

    def _route(self) -> Tuple[float, float, Optional[float]]:
        """Unit direction (east, north) and route length in meters (None if open-ended)."""
        dest = self.destination
        if dest is None:
            return 0.0, 1.0, None
        north = (dest[0] - self.config.start_lat) * METERS_PER_DEG_LAT
        east = (dest[1] - self.config.start_lng) * METERS_PER_DEG_LAT * self._lat_cos
        length = math.hypot(east, north)
        if length == 0:
            return 0.0, 1.0, 0.0
        return east / length, north / length, length

    def _position(self, distance: float) -> Tuple[float, float]:
        east_u, north_u, _ = self._route()
        lat = self.config.start_lat + (distance * north_u) / METERS_PER_DEG_LAT
        lng = self.config.start_lng + (distance * east_u) / (METERS_PER_DEG_LAT * self._lat_cos)
        return lat, lng

    def _heart_rate(self, active_s: float) -> float:
        cfg = self.config
        return cfg.resting_heart_rate + (cfg.max_heart_rate - cfg.resting_heart_rate) * (1 - math.exp(-active_s / 90.0))

    def get_latest(self) -> Optional[ExerciseSnapshot]:
        if self.session.start_time is None:
            return None

        status = self.session.status
        active_ms = self.session.active_duration
        active_s = active_ms / 1000.0

        _, _, route_length = self._route()
        distance = self.config.speed_ms * active_s
        if route_length is not None:
            distance = min(distance, route_length)
        lat, lng = self._position(distance)

        prev = self._previous
        if status == ExerciseStatus.ACTIVE:
            heart_rate = self._heart_rate(active_s)
            self._hr_sum += heart_rate
            self._hr_samples += 1
            arrived = route_length is not None and distance >= route_length
            speed = 0.0 if arrived else self.config.speed_ms
        else:
            heart_rate = prev.heart_rate if prev else None
            speed = prev.speed if prev else None

        dest = self.destination
        bearing = initial_bearing(lat, lng, dest[0], dest[1]) if dest else 0

        snapshot = ExerciseSnapshot(
            start_time=self.session.start_time,
            update_time=self._clock(),
            active_duration=active_ms,
            curr_lat=lat,
            curr_lng=lng,
            dest_lat=dest[0] if dest else None,
            dest_lng=dest[1] if dest else None,
            bearing=bearing,
            distance=distance,
            calories=distance / 1000.0 * self.config.kcal_per_km,
            heart_rate=heart_rate,
            heart_rate_avg=(self._hr_sum / self._hr_samples) if self._hr_samples else None,
            steps=int(distance / self.config.stride_m),
            speed=speed,
            speed_avg=(distance / active_s) if active_s > 0 else None,
            status=status,
        )
        self._previous = snapshot
        return snapshot
