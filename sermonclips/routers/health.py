"""
Health check endpoints for the clip service.
"""

import logging
import shutil

from fastapi import APIRouter, Depends, Request, Response, status

from sermonclips import __version__
from sermonclips.dependencies import get_analysis_client
from sermonclips.schemas.responses import GeminiHealthResponse, HealthResponse, ReadinessResponse
from sermonclips.services.analysis_client import AnalysisClient

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request, response: Response):
    """
    Readiness check endpoint.

    Ready when the job queue answers a ping and FFmpeg is on PATH.
    """
    queue = getattr(request.app.state, "queue", None)

    redis_status = "not_configured"
    counts = None
    if queue is not None:
        try:
            await queue.ping()
            counts = await queue.get_job_counts()
            redis_status = "connected"
        except Exception as e:
            logger.warning(f"Redis readiness check failed: {e}")
            redis_status = "unavailable"

    ffmpeg_status = "available" if shutil.which("ffmpeg") else "not_found"
    ready = redis_status == "connected" and ffmpeg_status == "available"
    if not ready:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return ReadinessResponse(
        ready=ready,
        redis=redis_status,
        ffmpeg=ffmpeg_status,
        queue=counts,
    )


@router.get("/health/gemini", response_model=GeminiHealthResponse)
async def gemini_health(
    response: Response,
    analysis: AnalysisClient = Depends(get_analysis_client),
):
    """Check that the configured Gemini API key is accepted."""
    result = await analysis.check_health()
    if not result.valid:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return GeminiHealthResponse(
        status="healthy" if result.valid else "unhealthy",
        valid=result.valid,
        message=result.message,
        model=result.model,
    )
