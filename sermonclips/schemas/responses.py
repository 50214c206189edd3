"""
Response schemas for the clip service API.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from sermonclips.db.models import ClipStatus
from sermonclips.schemas.analysis import AnalysisState


class UploadResponse(BaseModel):
    success: bool = True
    job_id: str = Field(..., description="Queue job ID for polling")
    asset_id: str = Field(..., description="Created Source Asset ID")
    url: str = Field(..., description="Public URL of the stored source video")
    message: str = "Video uploaded successfully. Analysis queued."


class JobStatusResponse(BaseModel):
    """Queue job state. Delayed retries are reported as waiting."""

    job_id: str
    name: str
    status: str = Field(..., description="waiting, active, completed or failed")
    progress: int = Field(..., ge=0, le=100)
    attempts_made: int = 0
    result: Optional[Any] = None
    error: Optional[str] = None
    processed_on: Optional[int] = Field(None, description="Epoch ms the current attempt started")
    finished_on: Optional[int] = Field(None, description="Epoch ms the job finished")
    timestamp: int = Field(..., description="Epoch ms the job was created")


class ClipResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    highlight_id: str
    platform: str
    status: ClipStatus
    video_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[float] = None
    file_size: Optional[int] = None
    resolution: Optional[str] = None
    language: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ClipGenerateResponse(BaseModel):
    clip: ClipResponse
    job_id: Optional[str] = Field(None, description="Render job, absent when an existing clip was reused")
    reused: bool = False


class DubResponse(BaseModel):
    clip: ClipResponse
    job_id: str


class HighlightResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    asset_id: str
    title: str
    start_time: int
    end_time: int
    caption: str = ""
    emotion: Optional[str] = None
    platform: Optional[str] = None
    created_at: Optional[datetime] = None


class AssetResponse(BaseModel):
    id: str
    owner_id: str
    title: str
    video_url: str
    analysis: AnalysisState
    highlights: list[HighlightResponse] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DeleteAssetResponse(BaseModel):
    success: bool = True
    asset_id: str
    highlights_deleted: int = 0
    objects_deleted: int = 0


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool = Field(..., description="Whether the service is ready to accept requests")
    redis: str = Field(..., description="Job queue connection status")
    ffmpeg: str = Field(..., description="FFmpeg availability")
    queue: Optional[dict[str, int]] = Field(None, description="Job counts by state")


class GeminiHealthResponse(BaseModel):
    status: str
    valid: bool
    message: str
    model: Optional[str] = None
