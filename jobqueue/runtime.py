import asyncio
import importlib
import logging
from typing import Any, Coroutine, Iterable, Optional

from jobqueue.api.v1.metrics import observe_queue_stats
from jobqueue.domain.errors import ConfigurationError
from jobqueue.domain.models import EnqueueOptions, Job, QueueStats
from jobqueue.domain.states import JobStatus
from jobqueue.providers import create_provider
from jobqueue.providers.base import QueueProvider
from jobqueue.scheduler.service import Scheduler
from jobqueue.settings import Settings, get_settings
from jobqueue.worker.registry import Handler, HandlerRegistry
from jobqueue.worker.worker import Worker

logger = logging.getLogger(__name__)


class QueueRuntime:
    """
    Owns the provider, handler registry, worker and scheduler of one process.

    Built once at startup and passed to whatever needs to enqueue work or
    register handlers.
    """

    def __init__(self, settings: Settings, provider: QueueProvider, registry: Optional[HandlerRegistry] = None):
        self.settings = settings
        self.provider = provider
        self.registry = registry or HandlerRegistry()
        self.worker: Optional[Worker] = None
        self.scheduler = Scheduler(provider, poll_interval_ms=settings.SCHEDULER_POLL_INTERVAL)
        self._background: set[asyncio.Task] = set()
        self._shut_down = False

    @classmethod
    async def from_settings(cls, settings: Optional[Settings] = None) -> "QueueRuntime":
        settings = settings or get_settings()
        provider = create_provider(settings)
        await provider.initialize()
        logger.info(f"{provider.name} queue provider initialized")
        return cls(settings, provider)

    # Producer API

    def register_job_handler(self, type: str, handler: Handler, description: Optional[str] = None) -> None:
        self.registry.register(type, handler, description)

    async def enqueue(self, type: str, payload: Any, options: Optional[EnqueueOptions] = None) -> Job:
        return await self.provider.enqueue(type, payload, options)

    async def get_stats(self) -> QueueStats:
        stats = await self.provider.get_stats()
        observe_queue_stats(stats)
        return stats

    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self.provider.get_job(job_id)

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> list[Job]:
        return await self.provider.list_jobs(status=status, limit=limit)

    # Lifecycle

    async def start_worker(self, mode: Optional[str] = None) -> Worker:
        if self.worker is None:
            self.worker = Worker(
                self.provider,
                self.registry,
                concurrency=self.settings.QUEUE_CONCURRENCY,
                poll_interval_ms=self.settings.QUEUE_POLL_INTERVAL,
                shutdown_timeout_ms=self.settings.QUEUE_SHUTDOWN_TIMEOUT,
                mode=mode or self.settings.QUEUE_WORKER_MODE,
            )
        await self.worker.start()
        return self.worker

    async def start_scheduler(self) -> Scheduler:
        await self.scheduler.start()
        return self.scheduler

    async def shutdown(self) -> None:
        """Scheduler first, then the worker drains, then the provider closes."""
        if self._shut_down:
            return
        self._shut_down = True

        await self.scheduler.stop()
        if self.worker:
            await self.worker.stop()

        pending = [task for task in self._background if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self.provider.close()
        logger.info("Queue runtime shut down")

    def spawn_background(self, coro: Coroutine[Any, Any, Any], description: str = "background task") -> asyncio.Task:
        """Runs a best-effort side effect. Failures are logged, never raised."""
        task = asyncio.create_task(coro)
        self._background.add(task)

        def _done(t: asyncio.Task):
            self._background.discard(t)
            if t.cancelled():
                return
            error = t.exception()
            if error is not None:
                logger.warning(f"{description} failed: {error}")

        task.add_done_callback(_done)
        return task

    def load_handler_modules(self, modules: Iterable[str]) -> None:
        """Imports each module and calls its register_handlers(runtime)."""
        for name in modules:
            try:
                module = importlib.import_module(name)
            except ImportError as e:
                raise ConfigurationError(f"Cannot import handler module '{name}': {e}") from e

            register = getattr(module, "register_handlers", None)
            if not callable(register):
                raise ConfigurationError(f"Handler module '{name}' has no register_handlers(runtime) function")

            register(self)
            logger.info(f"Loaded handlers from {name}")
