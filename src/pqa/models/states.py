"""Queue controller state machine definitions."""

from enum import Enum


class QueueState(str, Enum):
    """Positions of the controller within one queue-advance cycle."""

    IDLE = "IDLE"
    DISPATCHING = "DISPATCHING"
    AWAITING_OUTCOME = "AWAITING_OUTCOME"
    SUCCEEDED = "SUCCEEDED"
    RETRYING = "RETRYING"
    SKIPPED = "SKIPPED"
    PAUSED = "PAUSED"
    COMPLETE = "COMPLETE"
    STOPPED = "STOPPED"


# States in which no run is active
TERMINAL_STATES = {QueueState.IDLE, QueueState.COMPLETE, QueueState.STOPPED}

# STOPPED is reachable from every non-terminal state in addition to these
STATE_TRANSITIONS: dict[QueueState, list[QueueState]] = {
    QueueState.IDLE: [QueueState.DISPATCHING, QueueState.PAUSED],
    QueueState.DISPATCHING: [QueueState.AWAITING_OUTCOME, QueueState.PAUSED],
    QueueState.AWAITING_OUTCOME: [
        QueueState.SUCCEEDED,
        QueueState.RETRYING,
        QueueState.SKIPPED,
        QueueState.PAUSED,
    ],
    QueueState.SUCCEEDED: [QueueState.DISPATCHING, QueueState.PAUSED, QueueState.COMPLETE],
    QueueState.RETRYING: [QueueState.DISPATCHING, QueueState.PAUSED],
    QueueState.SKIPPED: [QueueState.DISPATCHING, QueueState.PAUSED, QueueState.COMPLETE],
    QueueState.PAUSED: [
        QueueState.DISPATCHING,
        QueueState.SUCCEEDED,
        QueueState.RETRYING,
        QueueState.SKIPPED,
    ],
    QueueState.COMPLETE: [QueueState.DISPATCHING],
    QueueState.STOPPED: [QueueState.DISPATCHING],
}


def can_transition(current: QueueState, new: QueueState) -> bool:
    """Return True when ``current -> new`` is an allowed transition."""
    if new == QueueState.STOPPED:
        return current not in TERMINAL_STATES
    return new in STATE_TRANSITIONS.get(current, [])
