"""Record store persistence layer."""

from sermonclips.db.database import Base, create_db_engine, create_session_factory, init_db
from sermonclips.db.models import Clip, ClipStatus, Highlight, SourceAsset, User, UserStatus

__all__ = [
    "Base",
    "create_db_engine",
    "create_session_factory",
    "init_db",
    "Clip",
    "ClipStatus",
    "Highlight",
    "SourceAsset",
    "User",
    "UserStatus",
]
