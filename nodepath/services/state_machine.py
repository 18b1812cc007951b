from enum import Enum


class ExecutionStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


VALID_TRANSITIONS = {
    ExecutionStatus.ACTIVE: [ExecutionStatus.COMPLETED, ExecutionStatus.FAILED],
    ExecutionStatus.COMPLETED: [ExecutionStatus.ACTIVE],
    ExecutionStatus.FAILED: [ExecutionStatus.ACTIVE],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_status: ExecutionStatus, to_status: ExecutionStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid transition: {from_status.value} -> {to_status.value}")


def coerce_status(value: str | None) -> ExecutionStatus:
    """Read a stored status, treating unknown or empty values as active."""
    try:
        return ExecutionStatus(value or ExecutionStatus.ACTIVE.value)
    except ValueError:
        return ExecutionStatus.ACTIVE


def can_transition(from_status: ExecutionStatus, to_status: ExecutionStatus) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_status, [])
    return to_status in allowed


def transition(from_status: ExecutionStatus, to_status: ExecutionStatus) -> ExecutionStatus:
    """Perform status transition. Raises InvalidTransitionError if not allowed."""
    if from_status == to_status:
        return to_status
    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(from_status, to_status)
    return to_status


def complete(current: ExecutionStatus) -> ExecutionStatus:
    """Flow reached a dead end."""
    return transition(current, ExecutionStatus.COMPLETED)


def fail(current: ExecutionStatus) -> ExecutionStatus:
    """Pass aborted on a node that cannot make progress."""
    return transition(current, ExecutionStatus.FAILED)


def reactivate(current: ExecutionStatus) -> ExecutionStatus:
    """New inbound message on a finished or failed execution."""
    return transition(current, ExecutionStatus.ACTIVE)
