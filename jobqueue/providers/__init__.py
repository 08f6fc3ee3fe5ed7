from jobqueue.domain.errors import ConfigurationError
from jobqueue.providers.base import QueueProvider
from jobqueue.providers.memory import MemoryQueueProvider
from jobqueue.settings import Settings


def create_provider(settings: Settings) -> QueueProvider:
    """Builds the backend named by QUEUE_PROVIDER. Call initialize() before use."""
    if settings.QUEUE_PROVIDER == "memory":
        return MemoryQueueProvider(
            max_history_size=settings.QUEUE_MAX_HISTORY_SIZE,
            backoff_base_ms=settings.QUEUE_BACKOFF_BASE_MS,
            backoff_max_ms=settings.QUEUE_BACKOFF_MAX_MS,
        )

    if settings.QUEUE_PROVIDER == "database":
        # Imported lazily so the memory backend works without a database driver
        from jobqueue.db.session import create_engine
        from jobqueue.providers.database import DatabaseQueueProvider

        return DatabaseQueueProvider(
            create_engine(settings.SQLALCHEMY_DATABASE_URI),
            poll_interval_ms=settings.QUEUE_POLL_INTERVAL,
            visibility_timeout_seconds=settings.QUEUE_VISIBILITY_TIMEOUT,
            max_history_size=settings.QUEUE_MAX_HISTORY_SIZE,
            backoff_base_ms=settings.QUEUE_BACKOFF_BASE_MS,
            backoff_max_ms=settings.QUEUE_BACKOFF_MAX_MS,
            create_tables=settings.QUEUE_DATABASE_CREATE_TABLES,
        )

    raise ConfigurationError(f"Unknown queue provider: {settings.QUEUE_PROVIDER}")


__all__ = ["QueueProvider", "MemoryQueueProvider", "create_provider"]
