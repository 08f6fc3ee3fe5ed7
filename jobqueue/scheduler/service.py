import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Optional

from jobqueue.api.v1.metrics import SCHEDULER_ENQUEUED
from jobqueue.domain.errors import ScheduleError
from jobqueue.domain.models import EnqueueOptions, Job, utcnow
from jobqueue.providers.base import QueueProvider, error_message
from jobqueue.scheduler.schedule import next_fire_time

logger = logging.getLogger(__name__)


@dataclass
class RecurringJobDefinition:
    name: str
    type: str
    payload: Any
    schedule: str
    timezone: str = "UTC"
    enabled: bool = True
    # delay_ms and scheduled_for are ignored for recurring jobs
    options: Optional[EnqueueOptions] = None

    def differs_from(self, other: "RecurringJobDefinition") -> bool:
        return (
            self.type != other.type
            or self.payload != other.payload
            or self.schedule != other.schedule
            or self.timezone != other.timezone
            or self.enabled != other.enabled
            or self.options != other.options
        )


@dataclass
class RecurringJob(RecurringJobDefinition):
    next_run_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None


@dataclass
class SyncResult:
    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class Scheduler:
    """
    Enqueues recurring jobs when their next fire time has passed.

    Definitions live in memory and are rebuilt at startup by whoever owns them
    (register_recurring or sync).
    """

    def __init__(self, provider: QueueProvider, poll_interval_ms: int = 60000):
        self.provider = provider
        self.poll_interval_ms = poll_interval_ms
        self._jobs: dict[str, RecurringJob] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        logger.info(f"Scheduler starting with poll interval {self.poll_interval_ms}ms")

        # Run immediately on start
        await self._safe_tick()
        self._task = asyncio.create_task(self._loop(), name="jobqueue-scheduler")

    async def stop(self):
        if not self._running:
            return

        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler stopped")

    async def _loop(self):
        while self._running:
            await asyncio.sleep(self.poll_interval_ms / 1000)
            await self._safe_tick()

    async def _safe_tick(self):
        try:
            await self.tick()
        except Exception as e:
            logger.error(f"Error in scheduler tick: {e}", exc_info=True)

    async def tick(self, now: Optional[datetime] = None) -> list[Job]:
        """Enqueues every enabled definition that is due at `now`."""
        now = now or utcnow()
        enqueued = []

        due = [
            job for job in self._jobs.values()
            if job.enabled and job.next_run_at is not None and job.next_run_at <= now
        ]

        for recurring in due:
            try:
                job = await self.provider.enqueue(recurring.type, recurring.payload, _recurring_options(recurring.options))
            except Exception as e:
                message = error_message(e)
                logger.error(f"Failed to enqueue recurring job \"{recurring.name}\": {message}")
                try:
                    recurring.next_run_at = next_fire_time(recurring.schedule, recurring.timezone, after=now)
                except ScheduleError:
                    recurring.enabled = False
                    recurring.last_error = f"Invalid schedule: {message}"
                    continue
                recurring.last_error = message
                continue

            enqueued.append(job)
            SCHEDULER_ENQUEUED.labels(name=recurring.name).inc()
            recurring.last_run_at = now
            recurring.last_error = None

            try:
                recurring.next_run_at = next_fire_time(recurring.schedule, recurring.timezone, after=now)
            except ScheduleError as e:
                recurring.enabled = False
                recurring.last_error = f"Invalid schedule: {e}"
                logger.error(f"Disabled recurring job \"{recurring.name}\": {e}")
                continue

            logger.info(
                f"Enqueued recurring job \"{recurring.name}\" (type: {recurring.type}), "
                f"next run: {recurring.next_run_at.isoformat()}"
            )

        return enqueued

    def register_recurring(self, definition: RecurringJobDefinition) -> RecurringJob:
        """
        Adds or updates a definition. Raises ScheduleError for an invalid schedule.
        The next fire time is kept unless the schedule, timezone or enabled flag changed.
        """
        next_run_at = next_fire_time(definition.schedule, definition.timezone)

        existing = self._jobs.get(definition.name)
        recurring = RecurringJob(
            name=definition.name,
            type=definition.type,
            payload=definition.payload,
            schedule=definition.schedule,
            timezone=definition.timezone,
            enabled=definition.enabled,
            options=definition.options,
            next_run_at=next_run_at,
        )

        if existing:
            timing_same = (
                existing.schedule == definition.schedule
                and existing.timezone == definition.timezone
                and existing.enabled == definition.enabled
            )
            if timing_same:
                recurring.next_run_at = existing.next_run_at
                recurring.last_error = existing.last_error
            recurring.last_run_at = existing.last_run_at

        self._jobs[definition.name] = recurring
        logger.info(
            f"Registered recurring job \"{definition.name}\" with schedule \"{definition.schedule}\", "
            f"next run: {recurring.next_run_at.isoformat()}"
        )
        return recurring

    def enable_recurring(self, name: str) -> bool:
        recurring = self._jobs.get(name)
        if not recurring:
            return False

        recurring.next_run_at = next_fire_time(recurring.schedule, recurring.timezone)
        recurring.enabled = True
        recurring.last_error = None
        return True

    def disable_recurring(self, name: str) -> bool:
        recurring = self._jobs.get(name)
        if not recurring:
            return False
        recurring.enabled = False
        return True

    def delete_recurring(self, name: str) -> bool:
        return self._jobs.pop(name, None) is not None

    def get_recurring(self, name: str) -> Optional[RecurringJob]:
        return self._jobs.get(name)

    def list_recurring(self) -> list[RecurringJob]:
        return [self._jobs[name] for name in sorted(self._jobs)]

    async def schedule_once(
        self,
        type: str,
        payload: Any,
        scheduled_for: datetime,
        options: Optional[EnqueueOptions] = None,
    ) -> Job:
        """One-time job, held by the provider until scheduled_for."""
        logger.info(f"Scheduling job {type} for {scheduled_for.isoformat()}")
        options = replace(options or EnqueueOptions(), delay_ms=None, scheduled_for=scheduled_for)
        return await self.provider.enqueue(type, payload, options)

    async def cancel_scheduled_job(self, job_id: str) -> bool:
        """False if the job already became visible or does not exist."""
        return await self.provider.cancel_scheduled(job_id)

    def sync(self, definitions: Iterable[RecurringJobDefinition], prefix: Optional[str] = None) -> SyncResult:
        """
        Reconciles the registered set with an external list of definitions.

        With a prefix, only names starting with it are managed; other
        registrations are left alone.
        """
        result = SyncResult()
        seen: set[str] = set()

        for definition in definitions:
            if prefix is not None and not definition.name.startswith(prefix):
                logger.warning(f"Skipping recurring job \"{definition.name}\": outside prefix \"{prefix}\"")
                result.failed.append(definition.name)
                continue

            seen.add(definition.name)
            existing = self._jobs.get(definition.name)

            if existing and not definition.differs_from(existing):
                result.unchanged.append(definition.name)
                continue

            try:
                self.register_recurring(definition)
            except ScheduleError as e:
                logger.error(f"Failed to sync recurring job \"{definition.name}\": {e}")
                result.failed.append(definition.name)
                continue

            if existing:
                result.updated.append(definition.name)
            else:
                result.added.append(definition.name)

        for name in list(self._jobs):
            if name in seen:
                continue
            if prefix is not None and not name.startswith(prefix):
                continue
            del self._jobs[name]
            result.removed.append(name)
            logger.info(f"Removed recurring job \"{name}\"")

        logger.info(
            f"Recurring jobs synced: {len(result.added)} added, {len(result.updated)} updated, "
            f"{len(result.removed)} removed, {len(result.failed)} failed"
        )
        return result


def _recurring_options(options: Optional[EnqueueOptions]) -> Optional[EnqueueOptions]:
    if options is None:
        return None
    return replace(options, delay_ms=None, scheduled_for=None)
