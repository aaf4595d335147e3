"""
Job state machine.

Pure transition table, no I/O: every status change in the engine is
checked here before it is persisted.
"""

from dutyjobs.v1.core.exceptions import InvalidTransitionError
from dutyjobs.v1.jobs.models import JobStatus

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {
            JobStatus.COMPLETED,
            JobStatus.FAILED,
            JobStatus.CANCELLED,
            JobStatus.PAUSED,
            # interrupted run: recovery on startup or engine shutdown
            JobStatus.PENDING,
        }
    ),
    JobStatus.PAUSED: frozenset(
        {JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.PENDING}
    ),
    JobStatus.FAILED: frozenset({JobStatus.PENDING, JobStatus.DEAD_LETTER}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING}),
    JobStatus.DEAD_LETTER: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
}

# Statuses from which an operator may re-admit a job
MANUAL_RETRY_FROM = frozenset(
    {JobStatus.FAILED, JobStatus.DEAD_LETTER, JobStatus.CANCELLED}
)
CANCELLABLE = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED})
# A job in one of these no longer changes without an explicit operator action
SETTLED = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.DEAD_LETTER})


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


def validate_transition(current: JobStatus, new: JobStatus) -> None:
    """Raise InvalidTransitionError unless ``current -> new`` is allowed."""
    if not can_transition(current, new):
        raise InvalidTransitionError(
            f"Cannot move job from {current.value} to {new.value}",
            details={"from": current.value, "to": new.value},
        )


def is_terminal(status: JobStatus) -> bool:
    return not ALLOWED_TRANSITIONS[status]
