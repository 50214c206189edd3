"""
Upload API Router - intake of sermon videos.
"""

import logging
import os
import re
import time
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from sermonclips.auth import verify_api_key
from sermonclips.config import ALLOWED_VIDEO_TYPES, get_settings
from sermonclips.db.models import UserStatus
from sermonclips.dependencies import get_queue, get_storage, get_store
from sermonclips.schemas.analysis import FailedState
from sermonclips.schemas.responses import UploadResponse
from sermonclips.services.job_queue import JobQueue, JobQueueError
from sermonclips.services.orchestrator import JobName
from sermonclips.services.record_store import RecordStore
from sermonclips.services.storage_gateway import StorageError, StorageGateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Upload"])

READ_CHUNK_BYTES = 1024 * 1024


def _safe_filename(filename: Optional[str]) -> str:
    name = os.path.basename(filename or "video.mp4")
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "video.mp4"


async def _read_limited(upload: UploadFile, max_bytes: int) -> bytes:
    """Read the upload, failing as soon as it passes ``max_bytes``."""
    chunks = []
    total = 0
    while True:
        chunk = await upload.read(READ_CHUNK_BYTES)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File exceeds the {max_bytes // (1024 * 1024)} MB limit",
            )
        chunks.append(chunk)
    return b"".join(chunks)


@router.post("/upload", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_video(
    video: UploadFile = File(..., description="Sermon video file"),
    user_id: str = Form(..., description="Owner user ID"),
    title: Optional[str] = Form(None, description="Sermon title"),
    store: RecordStore = Depends(get_store),
    storage: StorageGateway = Depends(get_storage),
    queue: JobQueue = Depends(get_queue),
    _: None = Depends(verify_api_key),
) -> UploadResponse:
    """
    Upload a sermon video and queue it for analysis.

    Validation (type, size) and the owner check happen before anything is
    stored or enqueued.
    """
    settings = get_settings()

    if video.content_type not in ALLOWED_VIDEO_TYPES:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Invalid file type '{video.content_type}'. Allowed: {', '.join(ALLOWED_VIDEO_TYPES)}",
        )

    if video.size is not None and video.size > settings.max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File exceeds the {settings.max_upload_mb} MB limit",
        )

    owner = await store.get_user(user_id)
    if owner is None or owner.status != UserStatus.ACTIVE:
        logger.warning(f"Upload rejected for user {user_id}: not an active account")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is not active",
        )

    data = await _read_limited(video, settings.max_upload_bytes)
    if not data:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    filename = _safe_filename(video.filename)
    storage_path = f"{user_id}/{int(time.time() * 1000)}-{filename}"
    asset_title = (title or "").strip() or os.path.splitext(filename)[0]

    try:
        url = await storage.put(storage_path, data, video.content_type)
    except StorageError as e:
        logger.error(f"Storage upload failed for {storage_path}: {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to store video",
        )

    asset = await store.create_asset(
        owner_id=user_id,
        title=asset_title,
        video_url=url,
        storage_path=storage_path,
    )

    try:
        job = await queue.add(
            JobName.ANALYZE_VIDEO,
            {
                "asset_id": asset.id,
                "video_url": url,
                "owner_id": user_id,
                "title": asset_title,
            },
            attempts=settings.job_attempts,
            backoff_seconds=settings.job_backoff_seconds,
        )
    except JobQueueError as e:
        logger.error(f"Could not enqueue analysis for asset {asset.id}: {e}")
        await store.set_analysis_state(asset.id, FailedState(reason="Could not queue analysis"))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable",
        )

    logger.info(f"Asset {asset.id} uploaded ({len(data) / 1024 / 1024:.1f} MB), analysis job {job.id}")

    return UploadResponse(job_id=job.id, asset_id=asset.id, url=url)
