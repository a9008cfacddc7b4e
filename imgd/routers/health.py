"""
Health router.

GET /healthz is a liveness probe: 200 whenever the process can serve requests.
"""

from fastapi import APIRouter
from pydantic import BaseModel

router = APIRouter(tags=["Health"])


class LivenessResponse(BaseModel):
    status: str


@router.get("/healthz", response_model=LivenessResponse, summary="Liveness probe")
async def healthz() -> LivenessResponse:
    return LivenessResponse(status="ok")
