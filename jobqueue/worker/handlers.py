"""
Job executors.

An executor performs one attempt of a job and reports the outcome as a
JobResult. Executors should be idempotent: a job may run more than once
when a worker dies mid-attempt.
"""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from jobqueue.errors import InvalidJob, TerminalFailure
from jobqueue.types.job import JobContext, JobResult

logger = logging.getLogger(__name__)

# Type alias for plain handler functions
JobHandler = Callable[[JobContext], Awaitable[JobResult]]


@runtime_checkable
class JobExecutor(Protocol):
    """Executes one attempt of a job."""

    # Optional schema validated at enqueue time
    payload_model: type[BaseModel] | None

    async def execute(self, context: JobContext) -> JobResult: ...


class FunctionExecutor:
    """
    Adapts an async handler function to the JobExecutor protocol.

    Example:
        async def send_email(context: JobContext) -> JobResult:
            ...

        engine.add_queue(config, FunctionExecutor(send_email, EmailPayload))
    """

    def __init__(
        self,
        handler: JobHandler,
        payload_model: type[BaseModel] | None = None,
    ):
        self.handler = handler
        self.payload_model = payload_model

    async def execute(self, context: JobContext) -> JobResult:
        return await self.handler(context)

    def __repr__(self) -> str:
        name = getattr(self.handler, "__name__", repr(self.handler))
        return f"FunctionExecutor({name})"


def validate_payload(executor: JobExecutor, payload: dict[str, Any]) -> None:
    """
    Check a payload against the executor's schema, if it declares one.

    Raises:
        InvalidJob: If the payload does not validate.
    """
    model = getattr(executor, "payload_model", None)
    if model is None:
        return
    try:
        model.model_validate(payload)
    except ValidationError as exc:
        raise InvalidJob(f"Invalid payload for {model.__name__}: {exc}") from exc


async def execute_job(executor: JobExecutor, context: JobContext) -> JobResult:
    """
    Run one attempt through an executor.

    Exceptions raised by the executor become failed results, so retry
    decisions are always made from data.

    Args:
        executor: The executor for the job's queue.
        context: The job context.

    Returns:
        JobResult from the executor.
    """
    start = time.monotonic()
    try:
        result = await executor.execute(context)
    except TerminalFailure as e:
        logger.warning(
            "Executor reported a terminal failure",
            extra={"job_id": str(context.job_id), "error": str(e)},
        )
        result = JobResult.fail(str(e), retryable=False)
    except Exception as e:
        logger.exception(
            "Executor raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)},
        )
        result = JobResult.fail(f"Executor exception: {e}")

    if not isinstance(result, JobResult):
        logger.error(
            "Executor returned a non-result",
            extra={"job_id": str(context.job_id), "type": type(result).__name__},
        )
        result = JobResult.fail(
            f"Executor returned {type(result).__name__}, expected JobResult"
        )

    if result.duration_ms is None:
        result = result.model_copy(
            update={"duration_ms": (time.monotonic() - start) * 1000}
        )
    return result
