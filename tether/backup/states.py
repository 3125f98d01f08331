"""
Backup/restore coordinator states and allowed transitions.
"""

from enum import Enum
from typing import Dict, List


class CoordinatorState(Enum):
    IDLE = "idle"
    BACKING_UP = "backing-up"
    RESTORING = "restoring"
    READY = "ready"
    RESTORE_FAILED = "restore-failed"


TRANSITIONS: Dict[CoordinatorState, List[CoordinatorState]] = {
    CoordinatorState.IDLE: [CoordinatorState.BACKING_UP, CoordinatorState.RESTORING],
    CoordinatorState.BACKING_UP: [CoordinatorState.IDLE],
    CoordinatorState.RESTORING: [CoordinatorState.READY, CoordinatorState.RESTORE_FAILED],
    # a served (or degraded) instance can still be backed up
    CoordinatorState.READY: [CoordinatorState.BACKING_UP],
    CoordinatorState.RESTORE_FAILED: [CoordinatorState.BACKING_UP],
}


def can_transition(from_state: CoordinatorState, to_state: CoordinatorState) -> bool:
    return to_state in TRANSITIONS.get(from_state, [])


class StateMachine:
    """Tracks the coordinator's state and rejects invalid transitions."""

    def __init__(self, initial: CoordinatorState = CoordinatorState.IDLE):
        self.state = initial
        self.history: List[CoordinatorState] = [initial]

    def transition(self, to_state: CoordinatorState) -> None:
        """
        Move to to_state.

        Raises:
            ValueError: If the transition is not allowed
        """
        if not can_transition(self.state, to_state):
            raise ValueError(f"Transition {self.state.value} -> {to_state.value} not allowed")
        self.state = to_state
        self.history.append(to_state)
