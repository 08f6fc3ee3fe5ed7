"""Tests for the in-memory queue provider."""

import asyncio
from datetime import timedelta

import pytest

from jobqueue.domain.errors import ProviderClosedError, StaleReceiptError
from jobqueue.domain.models import EnqueueOptions, utcnow
from jobqueue.domain.states import JobStatus
from jobqueue.providers.memory import MemoryQueueProvider


class TestEnqueue:
    async def test_defaults_applied(self, provider):
        job = await provider.enqueue("email:send", {"to": "user@example.com"})

        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert job.options.max_retries == 3
        assert job.options.timeout_ms == 30000
        assert job.options.priority == 0
        assert job.payload == {"to": "user@example.com"}

    async def test_returned_job_is_a_copy(self, provider):
        job = await provider.enqueue("email:send", {})
        job.status = JobStatus.DEAD

        stored = await provider.get_job(job.id)
        assert stored.status == JobStatus.PENDING

    async def test_deduplication_while_active(self, provider):
        options = EnqueueOptions(deduplication_key="welcome:42")
        first = await provider.enqueue("email:send", {}, options)
        second = await provider.enqueue("email:send", {}, options)

        assert first.id == second.id
        assert (await provider.get_stats()).pending == 1

    async def test_deduplication_released_after_completion(self, provider):
        options = EnqueueOptions(deduplication_key="welcome:42")
        first = await provider.enqueue("email:send", {}, options)
        assert (await provider.enqueue("email:send", {}, options)).id == first.id

        [received] = await provider.receive(1, 1)
        await provider.acknowledge(received.receipt_handle)

        third = await provider.enqueue("email:send", {}, options)
        assert third.id != first.id

    async def test_deduplication_released_after_death(self, provider):
        options = EnqueueOptions(deduplication_key="k", max_retries=1)
        first = await provider.enqueue("email:send", {}, options)

        [received] = await provider.receive(1, 1)
        await provider.fail(received.receipt_handle, "boom")
        assert (await provider.get_job(first.id)).status == JobStatus.DEAD

        again = await provider.enqueue("email:send", {}, options)
        assert again.id != first.id

    async def test_enqueue_after_close_raises(self, provider):
        await provider.close()
        with pytest.raises(ProviderClosedError):
            await provider.enqueue("email:send", {})


class TestReceive:
    async def test_priority_then_fifo(self, provider):
        a = await provider.enqueue("t", "A", EnqueueOptions(priority=5))
        b = await provider.enqueue("t", "B", EnqueueOptions(priority=1))
        c = await provider.enqueue("t", "C", EnqueueOptions(priority=5))

        received = await provider.receive(3, 1)
        assert [j.id for j in received] == [b.id, a.id, c.id]

    async def test_receive_marks_processing(self, provider):
        job = await provider.enqueue("t", {})
        [received] = await provider.receive(1, 1)

        assert received.id == job.id
        assert received.attempts == 1
        assert received.receipt_handle
        assert received.started_at is not None

        stored = await provider.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING

    async def test_job_handed_out_once(self, provider):
        await provider.enqueue("t", {})
        assert len(await provider.receive(1, 1)) == 1
        assert await provider.receive(1, 0) == []

    async def test_respects_max_messages(self, provider):
        for i in range(5):
            await provider.enqueue("t", i)
        assert len(await provider.receive(2, 1)) == 2
        assert len(await provider.receive(10, 1)) == 3

    async def test_zero_max_messages(self, provider):
        await provider.enqueue("t", {})
        assert await provider.receive(0, 1) == []

    async def test_empty_queue_times_out(self, provider):
        loop = asyncio.get_running_loop()
        started = loop.time()
        assert await provider.receive(1, 0.05) == []
        assert loop.time() - started >= 0.04

    async def test_waiting_receiver_woken_by_enqueue(self, provider):
        waiter = asyncio.create_task(provider.receive(1, 5))
        await asyncio.sleep(0.01)
        job = await provider.enqueue("t", {})

        async with asyncio.timeout(1):
            received = await waiter
        assert [j.id for j in received] == [job.id]

    async def test_attempts_count_receives(self, provider):
        job = await provider.enqueue("t", {}, EnqueueOptions(max_retries=5))

        for expected in range(1, 4):
            [received] = await provider.receive(1, 2)
            assert received.id == job.id
            assert received.attempts == expected
            await provider.fail(received.receipt_handle, f"failure {expected}")

        assert (await provider.get_job(job.id)).attempts == 3


class TestDelayedJobs:
    async def test_delayed_job_becomes_visible(self, provider):
        job = await provider.enqueue("t", {}, EnqueueOptions(delay_ms=50))
        assert job.status == JobStatus.SCHEDULED
        assert job.scheduled_for is not None
        assert await provider.receive(1, 0) == []

        [received] = await provider.receive(1, 2)
        assert received.id == job.id

    async def test_scheduled_for_in_future(self, provider):
        when = utcnow() + timedelta(milliseconds=50)
        job = await provider.enqueue("t", {}, EnqueueOptions(scheduled_for=when))

        assert job.status == JobStatus.SCHEDULED
        assert (await provider.get_stats()).scheduled == 1

        [received] = await provider.receive(1, 2)
        assert received.id == job.id

    async def test_scheduled_for_in_past_is_immediate(self, provider):
        when = utcnow() - timedelta(minutes=5)
        job = await provider.enqueue("t", {}, EnqueueOptions(scheduled_for=when))

        assert job.status == JobStatus.PENDING
        assert len(await provider.receive(1, 0)) == 1


class TestCancelScheduled:
    async def test_cancelled_job_never_delivered(self, provider):
        options = EnqueueOptions(delay_ms=30, deduplication_key="report:7")
        job = await provider.enqueue("t", {}, options)

        assert await provider.cancel_scheduled(job.id) is True
        assert await provider.get_job(job.id) is None
        assert (await provider.get_stats()).total == 0
        assert await provider.receive(1, 0.1) == []

        # Key is free again
        again = await provider.enqueue("t", {}, options)
        assert again.id != job.id

    async def test_visible_jobs_not_cancelled(self, provider):
        pending = await provider.enqueue("t", "pending")
        processing = await provider.enqueue("t", "processing", EnqueueOptions(priority=-1))
        [received] = await provider.receive(1, 0)
        assert received.id == processing.id

        assert await provider.cancel_scheduled(pending.id) is False
        assert await provider.cancel_scheduled(processing.id) is False
        assert await provider.cancel_scheduled("missing") is False
        assert (await provider.get_job(pending.id)).status == JobStatus.PENDING

        await provider.acknowledge(received.receipt_handle)


class TestAcknowledgeAndFail:
    async def test_acknowledge_completes(self, provider):
        job = await provider.enqueue("t", {})
        [received] = await provider.receive(1, 1)
        await provider.acknowledge(received.receipt_handle)

        stored = await provider.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.completed_at is not None
        assert (await provider.get_stats()).completed == 1

    async def test_second_acknowledge_raises(self, provider):
        await provider.enqueue("t", {})
        [received] = await provider.receive(1, 1)
        await provider.acknowledge(received.receipt_handle)

        with pytest.raises(StaleReceiptError):
            await provider.acknowledge(received.receipt_handle)

    async def test_unknown_handle_raises(self, provider):
        with pytest.raises(StaleReceiptError):
            await provider.fail("no-such-handle", "boom")

    async def test_fail_schedules_retry(self, provider):
        job = await provider.enqueue("t", {})
        [received] = await provider.receive(1, 1)
        await provider.fail(received.receipt_handle, RuntimeError("smtp down"))

        stored = await provider.get_job(job.id)
        assert stored.status == JobStatus.PENDING
        assert stored.last_error == "smtp down"
        # Backoff keeps it invisible for a moment
        assert await provider.receive(1, 0) == []

    async def test_exhausted_job_goes_dead(self, provider):
        job = await provider.enqueue("t", {}, EnqueueOptions(max_retries=2))

        [first] = await provider.receive(1, 1)
        await provider.fail(first.receipt_handle, "first")
        assert (await provider.get_job(job.id)).status == JobStatus.PENDING

        [second] = await provider.receive(1, 2)
        await provider.fail(second.receipt_handle, "second")

        stored = await provider.get_job(job.id)
        assert stored.status == JobStatus.DEAD
        assert stored.last_error == "second"
        assert await provider.receive(1, 0.1) == []

        stats = await provider.get_stats()
        assert stats.dead == 1
        assert stats.pending == 0
        assert [j.id for j in await provider.list_jobs(status=JobStatus.DEAD)] == [job.id]


class TestHistoryAndStats:
    async def test_completed_history_is_bounded(self):
        provider = MemoryQueueProvider(max_history_size=2)
        ids = []
        for i in range(3):
            ids.append((await provider.enqueue("t", i)).id)
            [received] = await provider.receive(1, 1)
            await provider.acknowledge(received.receipt_handle)

        assert await provider.get_job(ids[0]) is None
        assert (await provider.get_job(ids[2])).status == JobStatus.COMPLETED
        assert (await provider.get_stats()).completed == 2
        await provider.close()

    async def test_stats_total(self, provider):
        await provider.enqueue("t", {})
        await provider.enqueue("t", {}, EnqueueOptions(delay_ms=60000))
        await provider.receive(1, 0)

        stats = await provider.get_stats()
        assert stats.processing == 1
        assert stats.scheduled == 1
        assert stats.total == 2


class TestClose:
    async def test_receive_after_close_returns_immediately(self, provider):
        await provider.enqueue("t", {})
        await provider.close()

        async with asyncio.timeout(0.5):
            assert await provider.receive(1, 20) == []

    async def test_close_releases_waiting_receivers(self, provider):
        waiter = asyncio.create_task(provider.receive(1, 20))
        await asyncio.sleep(0.01)
        await provider.close()

        async with asyncio.timeout(0.5):
            assert await waiter == []

    async def test_close_is_idempotent(self, provider):
        await provider.close()
        await provider.close()
        assert provider.closed
