"""
Analysis state stored on a Source Asset.

The state is a discriminated union keyed on ``status`` so readers match on
the variant instead of probing optional fields.
"""

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingState(BaseModel):
    """Uploaded, not yet picked up by a worker."""

    status: Literal["PENDING"] = "PENDING"


class AnalyzingState(BaseModel):
    """A worker is running the analysis."""

    status: Literal["ANALYZING"] = "ANALYZING"
    progress: int = Field(0, ge=0, le=100)
    started_at: datetime = Field(default_factory=_utcnow)


class CompletedState(BaseModel):
    """Analysis finished; highlights are the normalized AI output."""

    status: Literal["COMPLETED"] = "COMPLETED"
    progress: int = 100
    summary: str = ""
    highlights: list[dict[str, Any]] = Field(default_factory=list)
    raw_response: Optional[str] = None
    completed_at: datetime = Field(default_factory=_utcnow)


class FailedState(BaseModel):
    """Analysis (or the setup for clipping) failed."""

    status: Literal["FAILED"] = "FAILED"
    reason: str
    failed_at: datetime = Field(default_factory=_utcnow)


AnalysisState = Annotated[
    Union[PendingState, AnalyzingState, CompletedState, FailedState],
    Field(discriminator="status"),
]

_state_adapter: TypeAdapter = TypeAdapter(AnalysisState)


def parse_analysis_state(data: Optional[dict[str, Any]]) -> AnalysisState:
    """Load a stored state blob. Missing state means the asset is pending."""
    if not data:
        return PendingState()
    return _state_adapter.validate_python(data)


def dump_analysis_state(state: AnalysisState) -> dict[str, Any]:
    return state.model_dump(mode="json")
