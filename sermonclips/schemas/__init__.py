"""
Pydantic schemas for request/response models and stored analysis state.
"""

from sermonclips.schemas.analysis import (
    AnalysisState,
    AnalyzingState,
    CompletedState,
    FailedState,
    PendingState,
    dump_analysis_state,
    parse_analysis_state,
)
from sermonclips.schemas.requests import ClipGenerateRequest, DubRequest
from sermonclips.schemas.responses import (
    AssetResponse,
    ClipGenerateResponse,
    ClipResponse,
    JobStatusResponse,
    UploadResponse,
)

__all__ = [
    "AnalysisState",
    "AnalyzingState",
    "CompletedState",
    "FailedState",
    "PendingState",
    "dump_analysis_state",
    "parse_analysis_state",
    "ClipGenerateRequest",
    "DubRequest",
    "AssetResponse",
    "ClipGenerateResponse",
    "ClipResponse",
    "JobStatusResponse",
    "UploadResponse",
]
