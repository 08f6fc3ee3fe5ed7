from enum import StrEnum, auto

class JobStatus(StrEnum):
    PENDING = auto()      # Visible, waiting for a receiver
    SCHEDULED = auto()    # Delayed, not yet visible
    PROCESSING = auto()   # Handed to a worker, holds a receipt handle
    COMPLETED = auto()    # Acknowledged
    FAILED = auto()       # Transient, retried back to PENDING or moved to DEAD
    DEAD = auto()         # Retries exhausted (dead letter)

class JobEvent(StrEnum):
    CREATED = auto()
    DEDUPLICATED = auto()
    RECEIVED = auto()
    COMPLETED = auto()
    RETRIED = auto()
    DEAD_LETTERED = auto()
    LEASE_EXPIRED = auto()

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.DEAD})
