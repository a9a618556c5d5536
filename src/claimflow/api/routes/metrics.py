"""Prometheus scrape endpoint."""

from fastapi import APIRouter, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

router = APIRouter(tags=["Metrics"])


@router.get("/metrics", response_class=Response, include_in_schema=False)
def get_metrics() -> Response:
    """Counters and histograms in the Prometheus text format. No authentication required."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
