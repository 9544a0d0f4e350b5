"""
Exercise Session
Lifecycle of one exercise: start, pause, resume, end.

The uplink does not record metrics itself, but it needs two things from
the session: the status/active duration that go into snapshots, and the
stop signal (`is_stop_requested()`) that ends the uplink loop once the
exercise is over.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from core.state_machine import StateMachine, StateMachineError
from core.types import ExerciseStatus

log = logging.getLogger(__name__)

# (epoch ms, from_status, to_status)
StatusLogEntry = Tuple[int, ExerciseStatus, ExerciseStatus]
StatusListener = Callable[[ExerciseStatus], None]
Clock = Callable[[], int]


def epoch_ms() -> int:
    return int(time.time() * 1000)


def get_session_transitions() -> Dict[ExerciseStatus, Set[ExerciseStatus]]:
    return {
        ExerciseStatus.UNKNOWN: {ExerciseStatus.ACTIVE},
        ExerciseStatus.ACTIVE: {ExerciseStatus.PAUSED, ExerciseStatus.STOPPED},
        ExerciseStatus.PAUSED: {ExerciseStatus.ACTIVE, ExerciseStatus.STOPPED},
        # A stopped session can be started again as a new exercise
        ExerciseStatus.STOPPED: {ExerciseStatus.ACTIVE},
    }


class ExerciseSession:
    """
    Tracks the status of the current exercise and its active duration,
    excluding paused intervals.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or epoch_ms
        self._history: List[StatusLogEntry] = []
        self._listeners: List[StatusListener] = []

        self.start_time: Optional[int] = None
        self._resumed_at = 0
        self._total_active = 0
        self._stopped_duration = 0

        self._fsm = StateMachine(
            initial_state=ExerciseStatus.UNKNOWN,
            transitions=get_session_transitions(),
        )
        self._fsm.add_listener(self._log_and_notify)

    def _log_and_notify(self, from_status: ExerciseStatus, to_status: ExerciseStatus):
        self._history.append((self._clock(), from_status, to_status))
        log.info(f"[Session] Transition: {from_status.name} -> {to_status.name}")
        for listener in self._listeners:
            try:
                listener(to_status)
            except Exception as e:
                log.error(f"[Session] Error in listener {listener}: {e}")

    def add_listener(self, listener: StatusListener):
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener):
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _transition(self, new_status: ExerciseStatus) -> bool:
        try:
            return self._fsm.transition(new_status)
        except StateMachineError as e:
            log.error(f"[Session] Error: {e}")
            return False

    # --- Lifecycle ---

    def start(self) -> bool:
        """Start a new exercise. Resets the duration counters."""
        if not self._fsm.can_transition(ExerciseStatus.ACTIVE) or self.status == ExerciseStatus.ACTIVE:
            log.warning(f"[Session] Cannot start from {self.status.name}.")
            return False
        now = self._clock()
        self.start_time = now
        self._resumed_at = now
        self._total_active = 0
        self._stopped_duration = 0
        return self._transition(ExerciseStatus.ACTIVE)

    def pause(self) -> bool:
        if self.status != ExerciseStatus.ACTIVE:
            return False
        self._total_active += self._clock() - self._resumed_at
        return self._transition(ExerciseStatus.PAUSED)

    def resume(self) -> bool:
        if self.status != ExerciseStatus.PAUSED:
            return False
        self._resumed_at = self._clock()
        return self._transition(ExerciseStatus.ACTIVE)

    def end(self) -> bool:
        """End the exercise. From here on is_stop_requested() is True."""
        if self.status not in (ExerciseStatus.ACTIVE, ExerciseStatus.PAUSED):
            return False
        self._stopped_duration = self.active_duration
        return self._transition(ExerciseStatus.STOPPED)

    # --- Queries ---

    @property
    def status(self) -> ExerciseStatus:
        return self._fsm.current

    @property
    def active_duration(self) -> int:
        """Milliseconds spent ACTIVE since start()."""
        status = self.status
        if status == ExerciseStatus.ACTIVE:
            return self._total_active + (self._clock() - self._resumed_at)
        if status == ExerciseStatus.PAUSED:
            return self._total_active
        if status == ExerciseStatus.STOPPED:
            return self._stopped_duration
        return 0

    def is_stop_requested(self) -> bool:
        return self.status == ExerciseStatus.STOPPED

    @property
    def history(self) -> List[StatusLogEntry]:
        return list(self._history)

    def __str__(self) -> str:
        return f"ExerciseSession(status={self.status.name}, active_ms={self.active_duration})"
