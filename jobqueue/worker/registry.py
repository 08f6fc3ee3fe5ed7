import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from jobqueue.domain.errors import NoHandlerError
from jobqueue.domain.models import ReceivedJob
from jobqueue.worker.context import JobContext

logger = logging.getLogger(__name__)

Handler = Callable[[ReceivedJob, JobContext], Union[Awaitable[Any], Any]]


@dataclass
class RegisteredHandler:
    type: str
    handler: Handler
    description: Optional[str] = None


class HandlerRegistry:
    """Maps job types to handlers. One instance per runtime."""

    def __init__(self):
        self._handlers: dict[str, RegisteredHandler] = {}

    def register(self, type: str, handler: Handler, description: Optional[str] = None) -> None:
        if type in self._handlers:
            logger.warning(f"Handler for job type '{type}' is already registered, overwriting")
        self._handlers[type] = RegisteredHandler(type=type, handler=handler, description=description)
        logger.debug(f"Registered handler for job type '{type}'")

    def get(self, type: str) -> Optional[RegisteredHandler]:
        return self._handlers.get(type)

    def has(self, type: str) -> bool:
        return type in self._handlers

    def list_types(self) -> list[str]:
        return list(self._handlers)

    def unregister(self, type: str) -> bool:
        return self._handlers.pop(type, None) is not None

    def clear(self) -> None:
        self._handlers.clear()

    def describe(self) -> dict[str, Optional[str]]:
        return {t: h.description for t, h in self._handlers.items()}

    async def execute_job(self, job: ReceivedJob, ctx: JobContext) -> Any:
        registered = self._handlers.get(job.type)
        if registered is None:
            raise NoHandlerError(job.type)

        result = registered.handler(job, ctx)
        if inspect.isawaitable(result):
            result = await result
        return result
