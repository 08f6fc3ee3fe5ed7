#!/usr/bin/env python3
import asyncio
import os
import sys
import time

from jobqueue.runtime import QueueRuntime
from jobqueue.settings import Settings

NUM_JOBS = int(os.getenv("BENCH_NUM_JOBS", "2000"))
CONCURRENT_WORKERS = int(os.getenv("BENCH_CONCURRENCY", "20"))
PROVIDER = os.getenv("BENCH_PROVIDER", "memory")


async def noop_handler(job, ctx):
    return {"bench": "ok"}


async def create_jobs_batch(runtime: QueueRuntime, n: int) -> float:
    start = time.time()
    for i in range(n):
        await runtime.enqueue("bench:noop", {"msg": f"bench_{i}"})
    duration = time.time() - start
    return n / duration if duration > 0 else 0


async def run_benchmark():
    settings = Settings(
        QUEUE_ENABLED=True,
        QUEUE_PROVIDER=PROVIDER,
        QUEUE_CONCURRENCY=CONCURRENT_WORKERS,
        QUEUE_POLL_INTERVAL=100,
        QUEUE_MAX_HISTORY_SIZE=NUM_JOBS,
    )
    runtime = await QueueRuntime.from_settings(settings)
    runtime.register_job_handler("bench:noop", noop_handler)

    print(f"Using provider: {runtime.provider.name}")
    injection_rate = await create_jobs_batch(runtime, NUM_JOBS)

    start_time = time.time()
    worker = await runtime.start_worker()

    while worker.stats().processed < NUM_JOBS:
        await asyncio.sleep(0.05)

    total_time = time.time() - start_time
    stats = worker.stats()
    await runtime.shutdown()

    throughput = stats.processed / total_time if total_time > 0 else 0

    print("\n" + "="*40)
    print(f"BENCHMARK RESULTS")
    print("="*40)
    print(f"Concurrent Workers:   {CONCURRENT_WORKERS}")
    print(f"Enqueue Rate:         {injection_rate:.2f} jobs/second")
    print(f"Total Jobs Processed: {stats.processed} ({stats.failed} failed)")
    print(f"Processing Time:      {total_time:.2f} seconds")
    print(f"Throughput:           {throughput:.2f} jobs/second")
    print("="*40)

    return 0 if stats.failed == 0 else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(run_benchmark()))
