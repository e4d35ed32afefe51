"""
Ingress — Health Check Route
==============================

What:  Liveness endpoint for container health checks and load balancers.
How:   Reports status, version, run mode and uptime. The path is exempt from
       the throttle by default (THROTTLE_EXEMPT_PATHS).
"""

import time

from fastapi import APIRouter, Request

from ingress import __version__
from ingress.schemas import HealthResponse

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get("/health", response_model=HealthResponse, summary="Service health check")
async def health_check(request: Request) -> HealthResponse:
    settings = request.app.state.settings
    return HealthResponse(
        status="healthy",
        version=__version__,
        run_mode=settings.run_mode,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
