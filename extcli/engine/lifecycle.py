"""Run lifecycle state machine.

Defines valid transitions and enforces them. Adapter callbacks that
would break the table are ignored by the manager; direct misuse
raises ValueError.

State Diagram:

    QUEUED ──> RUNNING ──┬──> WAITING_USER ──> RUNNING
                         │
                         ├──> COMPLETED
                         ├──> FAILED
                         └──> CANCELLED

    Any non-terminal ──> INTERRUPTED  (host restarted mid-run)
"""
from __future__ import annotations

from .models import RunStatus

VALID_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.QUEUED: {
        RunStatus.RUNNING,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.INTERRUPTED,
    },
    RunStatus.RUNNING: {
        RunStatus.WAITING_USER,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.INTERRUPTED,
    },
    RunStatus.WAITING_USER: {
        RunStatus.RUNNING,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.INTERRUPTED,
    },
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
    RunStatus.INTERRUPTED: set(),
}


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(current: RunStatus, target: RunStatus) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    if not can_transition(current, target):
        allowed = VALID_TRANSITIONS.get(current, set())
        allowed_str = ", ".join(sorted(s.value for s in allowed)) or "none (terminal)"
        raise ValueError(
            f"Invalid run transition: {current.value} -> {target.value}. "
            f"Allowed from {current.value}: {allowed_str}"
        )
