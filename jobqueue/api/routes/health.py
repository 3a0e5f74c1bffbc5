"""
Health check routes.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse, Response

from jobqueue.api.deps import Engine
from jobqueue.types.queue import HealthReport

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthReport,
    summary="Health check",
    description="Queue backlog and stall checks. Responds 503 when any queue has an issue.",
    responses={503: {"model": HealthReport}},
)
async def health_check(engine: Engine) -> JSONResponse:
    """
    Perform a health check.

    Args:
        engine: The queue engine.

    Returns:
        The health report, with status 200 if healthy and 503 otherwise.
    """
    report = await engine.health()
    return JSONResponse(
        status_code=200 if report.healthy else 503,
        content=report.model_dump(mode="json"),
    )


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    """
    Kubernetes liveness probe endpoint.

    Returns:
        Alive status.
    """
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics.",
)
async def metrics(engine: Engine) -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    collector = engine.metrics
    return Response(
        content=collector.get_metrics(),
        media_type=collector.get_content_type(),
    )
