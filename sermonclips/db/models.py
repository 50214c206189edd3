"""
ORM models for users, source assets, highlights and clips.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Enum, Float, ForeignKey, Integer, String, Text

from sermonclips.db.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class UserStatus(str, enum.Enum):
    """Account status. Only ACTIVE users may upload."""
    ACTIVE = "ACTIVE"
    PENDING = "PENDING"
    SUSPENDED = "SUSPENDED"


class ClipStatus(str, enum.Enum):
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=True)
    status = Column(Enum(UserStatus, name="user_status"), nullable=False, default=UserStatus.PENDING)
    created_at = Column(DateTime, default=datetime.utcnow)


class SourceAsset(Base):
    """
    An uploaded sermon video.

    ``analysis_state`` holds the serialized analysis union (see
    ``sermonclips.schemas.analysis``); NULL means pending.
    """
    __tablename__ = "source_assets"

    id = Column(String(36), primary_key=True, default=_new_id)
    owner_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    title = Column(String(500), nullable=False)
    video_url = Column(Text, nullable=False)
    storage_path = Column(Text, nullable=False)
    analysis_state = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Highlight(Base):
    __tablename__ = "highlights"

    id = Column(String(36), primary_key=True, default=_new_id)
    asset_id = Column(String(36), ForeignKey("source_assets.id"), nullable=False, index=True)
    title = Column(String(500), nullable=False)
    start_time = Column(Integer, nullable=False)  # seconds
    end_time = Column(Integer, nullable=False)  # seconds
    caption = Column(Text, nullable=False, default="")
    emotion = Column(String(100), nullable=True)
    platform = Column(String(100), nullable=True)  # free-form tag from the analysis
    created_at = Column(DateTime, default=datetime.utcnow)


class Clip(Base):
    __tablename__ = "clips"

    id = Column(String(36), primary_key=True, default=_new_id)
    highlight_id = Column(String(36), ForeignKey("highlights.id"), nullable=False, index=True)
    platform = Column(String(50), nullable=False)
    video_url = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    duration = Column(Float, nullable=True)  # seconds
    file_size = Column(Integer, nullable=True)  # bytes
    resolution = Column(String(20), nullable=True)
    status = Column(Enum(ClipStatus, name="clip_status"), nullable=False, default=ClipStatus.PROCESSING)
    language = Column(String(20), nullable=True)  # set on dubbed variants

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
