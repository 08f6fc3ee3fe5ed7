"""
Standalone queue worker.

Runs the worker (and optionally the scheduler) in its own process so workers
can be scaled separately from the API. Configured through the environment,
see jobqueue.settings. Handlers come from QUEUE_HANDLER_MODULES: each module
must expose register_handlers(runtime).
"""
import asyncio
import logging
import os
import signal
import sys
from typing import Optional

from jobqueue.runtime import QueueRuntime
from jobqueue.settings import Settings, configure_logging, get_settings

logger = logging.getLogger("jobqueue.cli")


def _force_exit():
    os._exit(1)


class GracefulShutdown:
    """First signal requests a graceful shutdown, a repeated one force-exits."""

    def __init__(self):
        self.requested = asyncio.Event()
        self.force_exit = _force_exit

    def __call__(self, sig: signal.Signals):
        if self.requested.is_set():
            logger.warning("Forced shutdown")
            self.force_exit()
            return
        logger.info(f"Received {sig.name}, shutting down...")
        self.requested.set()

    def install(self):
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self, sig)
            except NotImplementedError:
                # Windows support
                pass


async def run(settings: Settings, shutdown: Optional[GracefulShutdown] = None) -> int:
    """Returns the process exit status."""
    logger.info("Starting standalone worker...")
    logger.info(f"Concurrency: {settings.QUEUE_CONCURRENCY}")
    logger.info(f"Scheduler: {'enabled' if settings.SCHEDULER_ENABLED else 'disabled'}")

    if not settings.QUEUE_ENABLED:
        logger.error("Queue system is disabled in config (QUEUE_ENABLED=false)")
        return 1

    shutdown = shutdown or GracefulShutdown()

    try:
        runtime = await QueueRuntime.from_settings(settings)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1

    try:
        runtime.load_handler_modules(settings.QUEUE_HANDLER_MODULES)
        await runtime.start_worker("standalone")
        if settings.SCHEDULER_ENABLED:
            await runtime.start_scheduler()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        await runtime.shutdown()
        return 1

    shutdown.install()
    logger.info("Ready and waiting for jobs...")

    await shutdown.requested.wait()

    try:
        await runtime.shutdown()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}", exc_info=True)
        return 1

    logger.info("Shutdown complete")
    return 0


def main():
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    sys.exit(asyncio.run(run(settings)))


if __name__ == "__main__":
    main()
