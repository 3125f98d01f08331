"""
Database backup and restore against object storage.
"""

from .coordinator import BackupCoordinator, BackupOutcome, RestoreOutcome, LATEST_KEY, verify_snapshot
from .states import CoordinatorState, StateMachine, can_transition

__all__ = [
    "BackupCoordinator",
    "BackupOutcome",
    "RestoreOutcome",
    "LATEST_KEY",
    "verify_snapshot",
    "CoordinatorState",
    "StateMachine",
    "can_transition",
]
