"""
Queue routes.
"""

from fastapi import APIRouter

from jobqueue.api.deps import Engine
from jobqueue.constants import API_V1_PREFIX
from jobqueue.types.queue import QueueStats

router = APIRouter(prefix=f"{API_V1_PREFIX}/queues", tags=["Queues"])


@router.get(
    "/{queue_name}/stats",
    response_model=QueueStats,
    summary="Get queue statistics",
    description="Job counts by state for one queue.",
)
async def get_queue_stats(queue_name: str, engine: Engine) -> QueueStats:
    return await engine.stats(queue_name)
