# backend/trafikskola/routes/prometheus.py
"""
Prometheus metrics endpoint.

Public, like every Prometheus scrape target. Exposes the counters and
timings collected by the booking, allocation and payment services.
"""

from fastapi import APIRouter, Response

from ..monitoring.prometheus_metrics import CONTENT_TYPE_LATEST, prometheus_metrics

router = APIRouter()


@router.get("/metrics/prometheus", include_in_schema=False, response_class=Response, response_model=None)
def get_prometheus_metrics() -> Response:
    return Response(
        content=prometheus_metrics.get_metrics(),
        media_type=CONTENT_TYPE_LATEST,
        headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
    )
