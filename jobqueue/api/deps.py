from typing import Annotated

from fastapi import Depends, Request

from jobqueue.runtime import QueueRuntime


def get_runtime(request: Request) -> QueueRuntime:
    return request.app.state.runtime


# Dependency for the process-wide runtime
Runtime = Annotated[QueueRuntime, Depends(get_runtime)]
