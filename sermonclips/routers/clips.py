"""
Clips API Router - on-demand platform clips and dubbed variants.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Response, status

from sermonclips.auth import verify_api_key
from sermonclips.config import PLATFORM_PROFILES, get_platform_profile, get_settings, is_known_platform
from sermonclips.db.models import ClipStatus
from sermonclips.dependencies import get_queue, get_store
from sermonclips.schemas.requests import ClipGenerateRequest, DubRequest
from sermonclips.schemas.responses import ClipGenerateResponse, ClipResponse, DubResponse
from sermonclips.services.job_queue import JobQueue, JobQueueError
from sermonclips.services.orchestrator import JobName
from sermonclips.services.record_store import RecordStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/clips", tags=["Clips"])


@router.post(
    "/generate",
    response_model=ClipGenerateResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={200: {"description": "An existing completed clip was reused"}},
)
async def generate_clip(
    request: ClipGenerateRequest,
    response: Response,
    store: RecordStore = Depends(get_store),
    queue: JobQueue = Depends(get_queue),
    _: None = Depends(verify_api_key),
) -> ClipGenerateResponse:
    """
    Request a clip of a highlight for a platform.

    A completed clip for the same highlight and platform is returned as-is.
    Otherwise a PROCESSING clip is created and a render job queued.
    """
    platform = request.platform.lower()
    if not is_known_platform(platform):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown platform '{request.platform}'. Allowed: {', '.join(PLATFORM_PROFILES)}",
        )

    highlight = await store.get_highlight(request.highlight_id)
    if highlight is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Highlight not found: {request.highlight_id}",
        )

    existing = await store.find_completed_clip(highlight.id, platform)
    if existing is not None:
        logger.info(f"Reusing clip {existing.id} for highlight {highlight.id} ({platform})")
        response.status_code = status.HTTP_200_OK
        return ClipGenerateResponse(clip=ClipResponse.model_validate(existing), reused=True)

    settings = get_settings()
    clip = await store.create_clip(
        highlight_id=highlight.id,
        platform=platform,
        status=ClipStatus.PROCESSING,
        resolution=get_platform_profile(platform).resolution,
    )

    try:
        job = await queue.add(
            JobName.RENDER_CLIP,
            {"clip_id": clip.id},
            attempts=settings.job_attempts,
            backoff_seconds=settings.job_backoff_seconds,
        )
    except JobQueueError as e:
        logger.error(f"Could not enqueue render for clip {clip.id}: {e}")
        await store.update_clip(clip.id, status=ClipStatus.FAILED)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable",
        )

    logger.info(f"Queued render job {job.id} for clip {clip.id}")
    return ClipGenerateResponse(clip=ClipResponse.model_validate(clip), job_id=job.id)


@router.get("/highlight/{highlight_id}", response_model=list[ClipResponse])
async def list_highlight_clips(
    highlight_id: str,
    store: RecordStore = Depends(get_store),
) -> list[ClipResponse]:
    """List the clips of a highlight, newest first."""
    highlight = await store.get_highlight(highlight_id)
    if highlight is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Highlight not found: {highlight_id}",
        )
    clips = await store.list_clips_for_highlight(highlight_id)
    return [ClipResponse.model_validate(clip) for clip in clips]


@router.get("/{clip_id}", response_model=ClipResponse)
async def get_clip(clip_id: str, store: RecordStore = Depends(get_store)) -> ClipResponse:
    clip = await store.get_clip(clip_id)
    if clip is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Clip not found: {clip_id}",
        )
    return ClipResponse.model_validate(clip)


@router.post("/{clip_id}/dub", response_model=DubResponse, status_code=status.HTTP_202_ACCEPTED)
async def dub_clip(
    clip_id: str,
    request: DubRequest,
    store: RecordStore = Depends(get_store),
    queue: JobQueue = Depends(get_queue),
    _: None = Depends(verify_api_key),
) -> DubResponse:
    """
    Queue a dubbed variant of a completed clip.

    The dubbed clip is a new row on the same highlight and platform with
    ``language`` set; the source clip is never modified.
    """
    settings = get_settings()
    if not settings.elevenlabs_api_key:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Dubbing is not configured",
        )

    source = await store.get_clip(clip_id)
    if source is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Clip not found: {clip_id}",
        )
    if source.status != ClipStatus.COMPLETED:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Clip {clip_id} is {source.status.value}; only completed clips can be dubbed",
        )

    dubbed = await store.create_clip(
        highlight_id=source.highlight_id,
        platform=source.platform,
        status=ClipStatus.PROCESSING,
        language=request.language,
        resolution=source.resolution,
    )

    try:
        job = await queue.add(
            JobName.DUB_CLIP,
            {
                "clip_id": dubbed.id,
                "source_clip_id": source.id,
                "text": request.text,
                "language": request.language,
                "tone": request.tone,
                "voice_id": request.voice_id,
                "lipsync": request.lipsync,
            },
            attempts=settings.job_attempts,
            backoff_seconds=settings.job_backoff_seconds,
        )
    except JobQueueError as e:
        logger.error(f"Could not enqueue dub for clip {dubbed.id}: {e}")
        await store.update_clip(dubbed.id, status=ClipStatus.FAILED)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable",
        )

    logger.info(f"Queued dub job {job.id}: clip {source.id} -> {dubbed.id} ({request.language})")
    return DubResponse(clip=ClipResponse.model_validate(dubbed), job_id=job.id)
