# core/types.py
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, ConfigDict


class ExerciseStatus(str, Enum):
    """Status of the exercise session as recorded in a snapshot."""
    UNKNOWN = "UNKNOWN"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    STOPPED = "STOPPED"


class ConnectionState(Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTED = "CONNECTED"


class ExerciseSnapshot(BaseModel):
    """
    One point-in-time record of exercise metrics and location.
    Produced by the recording side, read-only to the uplink.
    """
    start_time: int = Field(0, description="Exercise start, epoch ms")
    update_time: int = Field(0, description="Time the row was written, epoch ms")
    active_duration: int = Field(0, ge=0, description="Active time excluding pauses, ms")
    curr_lat: Optional[float] = None
    curr_lng: Optional[float] = None
    dest_lat: Optional[float] = None
    dest_lng: Optional[float] = None
    bearing: int = Field(0, ge=0, le=359, description="Degrees")
    distance: Optional[float] = None       # meters
    calories: Optional[float] = None
    heart_rate: Optional[float] = None     # bpm, instantaneous
    heart_rate_avg: Optional[float] = None
    steps: Optional[int] = None
    speed: Optional[float] = None          # m/s, instantaneous
    speed_avg: Optional[float] = None
    status: Optional[ExerciseStatus] = ExerciseStatus.UNKNOWN

    model_config = ConfigDict(frozen=True)

    @property
    def has_current_location(self) -> bool:
        return self.curr_lat is not None and self.curr_lng is not None

    @property
    def has_destination(self) -> bool:
        return self.dest_lat is not None and self.dest_lng is not None

    @property
    def destination(self) -> Optional[Tuple[float, float]]:
        if not self.has_destination:
            return None
        return (self.dest_lat, self.dest_lng)


class Waypoint(BaseModel):
    lat: float
    lng: float

    model_config = ConfigDict(frozen=True)


# Current point first, destination second when known.
WaypointPair = List[Waypoint]


@dataclass
class RetryState:
    """
    Reconnection budget of the connection manager.

    retry_count never exceeds max_retries: the failure that finds the
    budget spent flips `exhausted` instead of incrementing.
    """
    max_retries: int = 10
    retry_count: int = 0
    terminated: bool = False
    exhausted: bool = False

    def record_failure(self) -> bool:
        """Count one failure. Returns True if a reconnect attempt is allowed."""
        if self.exhausted:
            return False
        if self.retry_count >= self.max_retries:
            self.exhausted = True
            return False
        self.retry_count += 1
        return True

    def reset(self):
        self.retry_count = 0

    def terminate(self):
        self.terminated = True

    @property
    def can_reconnect(self) -> bool:
        return not (self.terminated or self.exhausted)
