"""
Request schemas for the clip service API.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field

DubTone = Literal["professional", "calm", "energetic"]


class ClipGenerateRequest(BaseModel):
    """Request a platform clip for an existing highlight."""

    highlight_id: str = Field(..., description="Highlight to render")
    platform: str = Field(
        "youtube_shorts",
        description="Target platform (youtube_shorts, instagram_reels, tiktok, facebook)",
    )


class DubRequest(BaseModel):
    """Request a dubbed variant of a completed clip."""

    text: str = Field(..., min_length=1, max_length=5000, description="Script to voice over the clip")
    language: str = Field(..., min_length=2, max_length=20, description="Target language code, e.g. 'en'")
    tone: DubTone = Field("professional", description="Voice delivery tone")
    voice_id: Optional[str] = Field(None, description="Explicit ElevenLabs voice ID (overrides tone)")
    lipsync: bool = Field(False, description="Attempt HeyGen lip synchronization")
