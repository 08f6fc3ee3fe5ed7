"""Tests for the worker pool."""

import asyncio

import pytest

from jobqueue.domain.errors import StaleReceiptError
from jobqueue.domain.models import EnqueueOptions
from jobqueue.domain.states import JobStatus
from jobqueue.providers.memory import MemoryQueueProvider
from jobqueue.worker import worker as worker_module
from jobqueue.worker.registry import HandlerRegistry
from jobqueue.worker.worker import Worker


@pytest.fixture
def registry():
    return HandlerRegistry()


def make_worker(provider, registry, **kwargs) -> Worker:
    options = {"concurrency": 2, "poll_interval_ms": 20, "shutdown_timeout_ms": 1000}
    options.update(kwargs)
    return Worker(provider, registry, **options)


class TestWorkerProcessing:
    async def test_processes_and_acknowledges(self, provider, registry, wait_until):
        seen = []

        async def handler(job, ctx):
            seen.append((job.payload, ctx.attempt))
            return {"ok": True}

        registry.register("email:send", handler)
        worker = make_worker(provider, registry)
        await worker.start()

        for i in range(3):
            await provider.enqueue("email:send", {"n": i})

        await wait_until(lambda: worker.stats().succeeded == 3)
        await worker.stop()

        assert sorted(p["n"] for p, _ in seen) == [0, 1, 2]
        assert all(attempt == 1 for _, attempt in seen)
        assert (await provider.get_stats()).completed == 3

        stats = worker.stats()
        assert stats.processed == 3
        assert stats.failed == 0
        assert stats.active == 0
        assert stats.running is False

    async def test_failing_handler_retries_then_dies(self, provider, registry, wait_until):
        async def handler(job, ctx):
            raise RuntimeError("smtp down")

        registry.register("email:send", handler)
        worker = make_worker(provider, registry)
        await worker.start()

        job = await provider.enqueue("email:send", {}, EnqueueOptions(max_retries=2))

        async def is_dead():
            return (await provider.get_job(job.id)).status == JobStatus.DEAD

        await wait_until(is_dead)
        await worker.stop()

        stored = await provider.get_job(job.id)
        assert stored.attempts == 2
        assert stored.last_error == "smtp down"
        assert worker.stats().failed == 2

    async def test_missing_handler_consumes_retry(self, provider, registry, wait_until):
        worker = make_worker(provider, registry)
        await worker.start()

        job = await provider.enqueue("unknown:type", {}, EnqueueOptions(max_retries=1))

        async def is_dead():
            return (await provider.get_job(job.id)).status == JobStatus.DEAD

        await wait_until(is_dead)
        await worker.stop()

        stored = await provider.get_job(job.id)
        assert stored.attempts == 1
        assert "No handler registered for job type: unknown:type" in stored.last_error

    async def test_timeout_triggers_signal(self, provider, registry, wait_until):
        async def handler(job, ctx):
            await ctx.signal.wait()
            ctx.signal.raise_if_cancelled()

        registry.register("slow", handler)
        worker = make_worker(provider, registry)
        await worker.start()

        job = await provider.enqueue("slow", {}, EnqueueOptions(timeout_ms=50, max_retries=1))

        async def is_dead():
            return (await provider.get_job(job.id)).status == JobStatus.DEAD

        await wait_until(is_dead)
        await worker.stop()

        assert (await provider.get_job(job.id)).last_error == "Job timed out"


class TestWorkerLifecycle:
    async def test_stop_waits_for_in_flight_job(self, provider, registry, wait_until):
        started = asyncio.Event()

        async def handler(job, ctx):
            started.set()
            await asyncio.sleep(0.1)

        registry.register("t", handler)
        worker = make_worker(provider, registry)
        await worker.start()
        job = await provider.enqueue("t", {})

        await asyncio.wait_for(started.wait(), 2)
        await worker.stop()

        assert (await provider.get_job(job.id)).status == JobStatus.COMPLETED
        assert worker.stats().succeeded == 1

    async def test_stop_interrupts_after_shutdown_timeout(self, provider, registry):
        started = asyncio.Event()
        contexts = []

        async def handler(job, ctx):
            contexts.append(ctx)
            started.set()
            # Ignores the cancellation signal
            await asyncio.sleep(30)

        registry.register("stuck", handler)
        worker = make_worker(provider, registry, shutdown_timeout_ms=50)
        await worker.start()
        job = await provider.enqueue("stuck", {})

        await asyncio.wait_for(started.wait(), 2)
        async with asyncio.timeout(2):
            await worker.stop()

        assert contexts[0].signal.reason == "shutdown"
        stored = await provider.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.last_error == "Job interrupted by worker shutdown"
        assert worker.stats().failed == 1

    async def test_loop_survives_provider_errors(self, registry, wait_until, monkeypatch):
        monkeypatch.setattr(worker_module, "ERROR_PAUSE_SECONDS", 0.01)

        class FlakyProvider(MemoryQueueProvider):
            calls = 0

            async def receive(self, max_messages=1, wait_timeout_seconds=20):
                FlakyProvider.calls += 1
                if FlakyProvider.calls == 1:
                    raise ConnectionError("backend unavailable")
                return await super().receive(max_messages, wait_timeout_seconds)

        provider = FlakyProvider()
        registry.register("t", lambda job, ctx: None)
        worker = make_worker(provider, registry, concurrency=1)
        await worker.start()
        await provider.enqueue("t", {})

        await wait_until(lambda: worker.stats().succeeded == 1)
        await worker.stop()
        await provider.close()

    async def test_start_twice_is_noop(self, provider, registry):
        worker = make_worker(provider, registry, concurrency=3)
        await worker.start()
        await worker.start()
        assert len(worker._tasks) == 3
        await worker.stop()
        await worker.stop()
        assert not worker.running

    async def test_expired_receipt_on_acknowledge(self, registry, wait_until, monkeypatch):
        monkeypatch.setattr(worker_module, "ERROR_PAUSE_SECONDS", 5)

        class ExpiringProvider(MemoryQueueProvider):
            async def acknowledge(self, receipt_handle):
                raise StaleReceiptError(receipt_handle)

        provider = ExpiringProvider()
        registry.register("t", lambda job, ctx: None)
        worker = make_worker(provider, registry, concurrency=1)
        await worker.start()
        await provider.enqueue("t", {})
        await provider.enqueue("t", {})

        # Both jobs recorded without the loop pausing on an error
        await wait_until(lambda: worker.stats().processed == 2, timeout=2)
        assert worker.stats().failed == 2
        assert worker.stats().succeeded == 0
        await worker.stop()
        await provider.close()
