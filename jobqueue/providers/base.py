from abc import ABC, abstractmethod
from typing import Any, Optional

from jobqueue.domain.models import EnqueueOptions, Job, QueueStats, ReceivedJob
from jobqueue.domain.states import JobStatus


class QueueProvider(ABC):
    """
    Backend contract shared by every queue implementation.

    Guarantees:
    - receive() hands each job to exactly one caller at a time and suspends
      (long poll) instead of spinning when nothing is visible.
    - acknowledge()/fail() only accept the receipt handle minted by the
      receive() that handed the job out; anything else raises StaleReceiptError.
    - enqueue() after close() raises ProviderClosedError, receive() after
      close() returns an empty list.
    """

    name: str = "base"

    @property
    @abstractmethod
    def closed(self) -> bool:
        ...

    async def initialize(self) -> None:
        """Prepares backing resources. Called once before first use."""
        return None

    @abstractmethod
    async def enqueue(self, type: str, payload: Any, options: Optional[EnqueueOptions] = None) -> Job:
        ...

    @abstractmethod
    async def receive(self, max_messages: int = 1, wait_timeout_seconds: float = 20) -> list[ReceivedJob]:
        ...

    @abstractmethod
    async def acknowledge(self, receipt_handle: str) -> None:
        ...

    @abstractmethod
    async def fail(self, receipt_handle: str, error: BaseException | str) -> None:
        ...

    @abstractmethod
    async def cancel_scheduled(self, job_id: str) -> bool:
        """Removes a job that is still waiting for its delay. False once it became visible."""
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        ...

    @abstractmethod
    async def get_stats(self) -> QueueStats:
        ...

    @abstractmethod
    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[Job]:
        """Oldest first. Used for dead-letter inspection."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


def error_message(error: BaseException | str) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)
