"""
Generic Finite State Machine (FSM) Implementation

A small, reusable state machine shared by the connection manager
(DISCONNECTED/CONNECTED) and the exercise session (UNKNOWN/ACTIVE/PAUSED/STOPPED).
"""

import logging
from typing import Dict, Set, Any, Callable, List

log = logging.getLogger(__name__)

# Type alias for a state
State = Any
# Type alias for a listener callback
TransitionListener = Callable[[State, State], None] # (from_state, to_state)

class StateMachineError(Exception):
    """Raised when a state has no transition table entry."""
    pass

class StateMachine:
    """A generic, reusable Finite State Machine."""

    def __init__(self, initial_state: State, transitions: Dict[State, Set[State]]):
        """
        Initializes the state machine.

        Args:
            initial_state: The state to start in.
            transitions: A dictionary mapping a state to a set of
                         valid states it can transition to.
        """
        self._current_state: State = initial_state
        self._transitions: Dict[State, Set[State]] = transitions
        self._listeners: List[TransitionListener] = []

    @property
    def current(self) -> State:
        return self._current_state

    def add_listener(self, listener: TransitionListener):
        """Register a callback function to be called on successful transitions."""
        self._listeners.append(listener)

    def remove_listener(self, listener: TransitionListener):
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def can_transition(self, new_state: State) -> bool:
        if new_state == self._current_state:
            return True
        return new_state in self._transitions.get(self._current_state, set())

    def _notify_listeners(self, from_state: State, to_state: State):
        for listener in self._listeners:
            try:
                listener(from_state, to_state)
            except Exception as e:
                log.error(f"[StateMachine] Error in listener {listener}: {e}")

    def transition(self, new_state: State) -> bool:
        """
        Attempts to transition to a new state.

        Args:
            new_state: The desired state to transition to.

        Returns:
            True if the machine is in new_state afterwards, False if the
            transition is not allowed from the current state.

        Raises:
            StateMachineError: If the current state has no defined transitions.
        """
        if self._current_state == new_state:
            return True

        valid_targets = self._transitions.get(self._current_state)

        if valid_targets is None:
            raise StateMachineError(f"State '{self._current_state}' has no defined transitions.")

        if new_state not in valid_targets:
            log.warning(f"[StateMachine] INVALID transition attempted: {self._current_state} -> {new_state}")
            return False

        from_state = self._current_state
        self._current_state = new_state
        self._notify_listeners(from_state, new_state)
        return True
