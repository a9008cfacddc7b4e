"""
Metrics router.

GET /metrics returns the process-wide upload counters as JSON.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..core.state import AppState, get_app_state

router = APIRouter(tags=["Observability"])


class MetricsResponse(BaseModel):
    upload_ok: int
    upload_fail: int
    upload_limited: int


@router.get("/metrics", response_model=MetricsResponse, summary="Upload counters")
async def get_metrics(state: AppState = Depends(get_app_state)) -> MetricsResponse:
    return MetricsResponse(**state.metrics.snapshot())
