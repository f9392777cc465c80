"""
Prometheus metrics endpoint for the security pipeline.
"""

from typing import Optional

import structlog
from fastapi import APIRouter, FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ..core.metrics import MetricsCollector

logger = structlog.get_logger(__name__)

router = APIRouter()

UNAVAILABLE = "# reqshield metrics unavailable\n"


def refresh_gauges(app: FastAPI) -> Optional[MetricsCollector]:
    """Bring point-in-time gauges up to date before a scrape."""
    collector: Optional[MetricsCollector] = getattr(app.state, "metrics", None)
    if collector is None:
        return None

    collector.update_system_metrics()
    pipeline = getattr(app.state, "pipeline", None)
    if pipeline is not None:
        collector.update_rate_limit_entries(len(pipeline.store))
    return collector


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description=(
        "Request totals and latency, rejections per stage, rate-limit blocks "
        "and tracked entries, audit events and CSRF tokens issued."
    ),
)
async def get_metrics(request: Request) -> Response:
    """Expose the pipeline registry in Prometheus text format."""
    try:
        collector = refresh_gauges(request.app)
        if collector is None:
            logger.warning("Metrics requested before the collector was attached")
            return Response(content=UNAVAILABLE, media_type=CONTENT_TYPE_LATEST)

        payload = generate_latest(collector.registry)
    except Exception as e:
        logger.error(
            "Failed to render metrics",
            error=str(e),
            error_type=type(e).__name__,
            exc_info=True,
        )
        return Response(content=UNAVAILABLE, media_type=CONTENT_TYPE_LATEST, status_code=500)

    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
