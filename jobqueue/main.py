import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from jobqueue.api.v1.metrics import router as metrics_router
from jobqueue.api.v1.queue import router as queue_router
from jobqueue.runtime import QueueRuntime
from jobqueue.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, runtime: Optional[QueueRuntime] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        if app.state.runtime is None:
            app.state.runtime = await QueueRuntime.from_settings(settings)
            app.state.runtime.load_handler_modules(settings.QUEUE_HANDLER_MODULES)
        runtime = app.state.runtime

        if settings.QUEUE_ENABLED and settings.QUEUE_WORKER_MODE == "in-process":
            await runtime.start_worker("in-process")
        elif settings.QUEUE_ENABLED:
            logger.info("Worker mode is standalone, not starting in-process worker")

        if settings.SCHEDULER_ENABLED:
            await runtime.start_scheduler()

        yield

        # Shutdown
        await runtime.shutdown()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan
    )
    app.state.runtime = runtime

    app.include_router(queue_router, prefix="/api/v1/queue", tags=["queue"])
    app.include_router(metrics_router, tags=["metrics"])

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
