from enum import StrEnum, auto


class JobStatus(StrEnum):
    QUEUED = auto()       # Waiting for a dispatcher slot
    PROCESSING = auto()   # Claimed, generation call in progress
    STREAMING = auto()    # First frame received
    COMPLETED = auto()    # Final message persisted
    FAILED = auto()       # Retries exhausted
    CANCELLED = auto()    # Owner cancelled


class JobEvent(StrEnum):
    CREATED = auto()
    CLAIMED = auto()
    STREAMING = auto()
    COMPLETED = auto()
    RETRIED = auto()
    FAILED = auto()
    CANCELLED = auto()


class NotificationType(StrEnum):
    JOB_COMPLETED = auto()
    JOB_FAILED = auto()


TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATES = frozenset({JobStatus.PROCESSING, JobStatus.STREAMING})

# Source states each target may be reached from. Terminal states never appear as a source.
ALLOWED_SOURCES: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PROCESSING: frozenset({JobStatus.QUEUED}),
    JobStatus.STREAMING: frozenset({JobStatus.PROCESSING}),
    JobStatus.COMPLETED: ACTIVE_STATES,
    JobStatus.FAILED: ACTIVE_STATES,
    JobStatus.QUEUED: ACTIVE_STATES,
    JobStatus.CANCELLED: frozenset({JobStatus.QUEUED}) | ACTIVE_STATES,
}


def is_terminal(status: JobStatus) -> bool:
    return status in TERMINAL_STATES
