"""
Record Store - async CRUD over the SQLAlchemy models.

Sessions are synchronous; every call runs in the default executor so the
event loop is never blocked by database I/O. Returned ORM objects are
detached snapshots (sessions never expire on commit).
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from sermonclips.db.models import Clip, ClipStatus, Highlight, SourceAsset, User, UserStatus
from sermonclips.schemas.analysis import AnalysisState, dump_analysis_state, parse_analysis_state

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class DeletedAsset:
    """What was removed by ``delete_asset``; object keys are left to the caller."""

    asset_id: str
    storage_path: str
    highlights_deleted: int = 0
    clip_urls: list[str] = field(default_factory=list)


class RecordStore:
    """Async facade over the users, source_assets, highlights and clips tables."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    async def _run(self, fn: Callable[[Session], T]) -> T:
        def work() -> T:
            with self._session_factory() as session:
                return fn(session)

        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, work)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        status: UserStatus = UserStatus.ACTIVE,
        user_id: Optional[str] = None,
    ) -> User:
        def fn(session: Session) -> User:
            user = User(email=email, name=name, status=status)
            if user_id:
                user.id = user_id
            session.add(user)
            session.commit()
            session.refresh(user)
            return user

        return await self._run(fn)

    async def get_user(self, user_id: str) -> Optional[User]:
        return await self._run(lambda session: session.get(User, user_id))

    # ------------------------------------------------------------------
    # Source assets
    # ------------------------------------------------------------------

    async def create_asset(
        self,
        owner_id: str,
        title: str,
        video_url: str,
        storage_path: str,
    ) -> SourceAsset:
        def fn(session: Session) -> SourceAsset:
            asset = SourceAsset(
                owner_id=owner_id,
                title=title,
                video_url=video_url,
                storage_path=storage_path,
                analysis_state=None,
            )
            session.add(asset)
            session.commit()
            session.refresh(asset)
            return asset

        asset = await self._run(fn)
        logger.info(f"Created source asset {asset.id} for owner {owner_id}")
        return asset

    async def get_asset(self, asset_id: str) -> Optional[SourceAsset]:
        return await self._run(lambda session: session.get(SourceAsset, asset_id))

    async def list_assets(self, owner_id: str) -> list[SourceAsset]:
        def fn(session: Session) -> list[SourceAsset]:
            stmt = (
                select(SourceAsset)
                .where(SourceAsset.owner_id == owner_id)
                .order_by(SourceAsset.created_at.desc())
            )
            return list(session.scalars(stmt))

        return await self._run(fn)

    async def set_analysis_state(self, asset_id: str, state: AnalysisState) -> None:
        payload = dump_analysis_state(state)

        def fn(session: Session) -> None:
            asset = session.get(SourceAsset, asset_id)
            if asset is None:
                raise RecordNotFoundError(f"Source asset not found: {asset_id}")
            asset.analysis_state = payload
            asset.updated_at = datetime.utcnow()
            session.commit()

        await self._run(fn)

    async def get_analysis_state(self, asset_id: str) -> AnalysisState:
        asset = await self.get_asset(asset_id)
        if asset is None:
            raise RecordNotFoundError(f"Source asset not found: {asset_id}")
        return parse_analysis_state(asset.analysis_state)

    async def delete_asset(self, asset_id: str) -> Optional[DeletedAsset]:
        """
        Delete an asset with its highlights and clips.

        Children are removed first (clips, then highlights) by this method;
        the schema carries no ON DELETE cascade.
        """
        def fn(session: Session) -> Optional[DeletedAsset]:
            asset = session.get(SourceAsset, asset_id)
            if asset is None:
                return None

            highlights = list(session.scalars(select(Highlight).where(Highlight.asset_id == asset_id)))
            deleted = DeletedAsset(asset_id=asset.id, storage_path=asset.storage_path)

            for highlight in highlights:
                clips = session.scalars(select(Clip).where(Clip.highlight_id == highlight.id))
                for clip in clips:
                    deleted.clip_urls.extend(u for u in (clip.video_url, clip.thumbnail_url) if u)
                    session.delete(clip)
            session.flush()

            for highlight in highlights:
                session.delete(highlight)
            session.flush()

            session.delete(asset)
            session.commit()

            deleted.highlights_deleted = len(highlights)
            return deleted

        deleted = await self._run(fn)
        if deleted:
            logger.info(
                f"Deleted source asset {asset_id} "
                f"({deleted.highlights_deleted} highlights, {len(deleted.clip_urls)} clip objects)"
            )
        return deleted

    # ------------------------------------------------------------------
    # Highlights
    # ------------------------------------------------------------------

    async def create_highlight(
        self,
        asset_id: str,
        title: str,
        start_time: int,
        end_time: int,
        caption: str = "",
        emotion: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> Highlight:
        def fn(session: Session) -> Highlight:
            highlight = Highlight(
                asset_id=asset_id,
                title=title,
                start_time=start_time,
                end_time=end_time,
                caption=caption,
                emotion=emotion,
                platform=platform,
            )
            session.add(highlight)
            session.commit()
            session.refresh(highlight)
            return highlight

        return await self._run(fn)

    async def clear_highlights(self, asset_id: str) -> int:
        """Remove an asset's highlights and their clips. Returns the highlight count."""
        def fn(session: Session) -> int:
            highlights = list(session.scalars(select(Highlight).where(Highlight.asset_id == asset_id)))
            for highlight in highlights:
                for clip in session.scalars(select(Clip).where(Clip.highlight_id == highlight.id)):
                    session.delete(clip)
            session.flush()
            for highlight in highlights:
                session.delete(highlight)
            session.commit()
            return len(highlights)

        return await self._run(fn)

    async def get_highlight(self, highlight_id: str) -> Optional[Highlight]:
        return await self._run(lambda session: session.get(Highlight, highlight_id))

    async def list_highlights(self, asset_id: str) -> list[Highlight]:
        """Highlights of an asset in creation order."""
        def fn(session: Session) -> list[Highlight]:
            stmt = (
                select(Highlight)
                .where(Highlight.asset_id == asset_id)
                .order_by(Highlight.created_at.asc())
            )
            return list(session.scalars(stmt))

        return await self._run(fn)

    # ------------------------------------------------------------------
    # Clips
    # ------------------------------------------------------------------

    async def create_clip(
        self,
        highlight_id: str,
        platform: str,
        status: ClipStatus = ClipStatus.PROCESSING,
        **fields: Any,
    ) -> Clip:
        def fn(session: Session) -> Clip:
            clip = Clip(highlight_id=highlight_id, platform=platform, status=status, **fields)
            session.add(clip)
            session.commit()
            session.refresh(clip)
            return clip

        return await self._run(fn)

    async def get_clip(self, clip_id: str) -> Optional[Clip]:
        return await self._run(lambda session: session.get(Clip, clip_id))

    async def update_clip(self, clip_id: str, **fields: Any) -> Clip:
        def fn(session: Session) -> Clip:
            clip = session.get(Clip, clip_id)
            if clip is None:
                raise RecordNotFoundError(f"Clip not found: {clip_id}")
            for key, value in fields.items():
                setattr(clip, key, value)
            clip.updated_at = datetime.utcnow()
            session.commit()
            session.refresh(clip)
            return clip

        return await self._run(fn)

    async def list_clips_for_highlight(self, highlight_id: str) -> list[Clip]:
        """Clips of a highlight, newest first."""
        def fn(session: Session) -> list[Clip]:
            stmt = (
                select(Clip)
                .where(Clip.highlight_id == highlight_id)
                .order_by(Clip.created_at.desc())
            )
            return list(session.scalars(stmt))

        return await self._run(fn)

    async def find_completed_clip(
        self,
        highlight_id: str,
        platform: str,
        language: Optional[str] = None,
    ) -> Optional[Clip]:
        """Most recent COMPLETED clip for a (highlight, platform) pair, if any."""
        def fn(session: Session) -> Optional[Clip]:
            stmt = (
                select(Clip)
                .where(
                    Clip.highlight_id == highlight_id,
                    Clip.platform == platform,
                    Clip.status == ClipStatus.COMPLETED,
                    Clip.language.is_(None) if language is None else Clip.language == language,
                )
                .order_by(Clip.created_at.desc())
                .limit(1)
            )
            return session.scalars(stmt).first()

        return await self._run(fn)


class RecordNotFoundError(Exception):
    """Exception raised when an update targets a missing record."""
    pass
