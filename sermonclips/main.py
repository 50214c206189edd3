"""
FastAPI application entry point for Sermon Clips.

The API accepts sermon uploads and clip requests and queues the heavy work;
``sermonclips.worker`` runs the queued jobs:
1. AI analysis of the sermon (Gemini) into highlights
2. Per-highlight platform clips (FFmpeg cover-crop + thumbnail)
3. Optional dubbed variants (ElevenLabs, HeyGen lipsync)
"""

import logging
import os
import shutil
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from sermonclips import __version__
from sermonclips.config import Settings, get_settings
from sermonclips.db import create_db_engine, create_session_factory, init_db
from sermonclips.routers import assets, clips, health, jobs, uploads
from sermonclips.services.analysis_client import AnalysisClient
from sermonclips.services.job_queue import JobQueue, create_redis_client
from sermonclips.services.record_store import RecordStore
from sermonclips.services.storage_gateway import StorageGateway

logger = logging.getLogger(__name__)


def _verify_external_tools():
    """Verify that required external tools are available."""
    tools = {
        "ffmpeg": "FFmpeg for clip rendering",
        "ffprobe": "FFprobe for media probing",
    }

    for tool, description in tools.items():
        if shutil.which(tool):
            logger.info(f"{description} available")
        else:
            logger.warning(f"{description} NOT FOUND - the worker will fail rendering jobs")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.

    Builds the database engine, record store, Redis queue, storage gateway
    and analysis client, and releases them on shutdown. Services already
    placed on ``app.state`` (tests) are left untouched.
    """
    settings: Settings = app.state.settings
    logger.info(f"Starting {settings.app_name}...")

    os.makedirs(settings.temp_directory, exist_ok=True)

    engine = None
    redis_client = None
    owned_analysis = False

    if getattr(app.state, "store", None) is None:
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        app.state.store = RecordStore(create_session_factory(engine))
        logger.info("Record store initialized")

    if getattr(app.state, "queue", None) is None:
        redis_client = create_redis_client(settings.redis_url)
        app.state.queue = JobQueue(
            redis_client,
            name=settings.queue_name,
            rate_limit_max=settings.queue_rate_limit_max,
            rate_limit_window_seconds=settings.queue_rate_limit_window_seconds,
            lock_seconds=settings.job_lock_seconds,
        )
        logger.info(f"Job queue '{settings.queue_name}' on {settings.redis_url}")

    if getattr(app.state, "storage", None) is None:
        app.state.storage = StorageGateway(settings)

    if getattr(app.state, "analysis", None) is None:
        app.state.analysis = AnalysisClient(app.state.storage, settings)
        owned_analysis = True

    _verify_external_tools()
    logger.info(f"{settings.app_name} ready to accept requests")

    yield

    logger.info(f"Shutting down {settings.app_name}...")
    if owned_analysis:
        await app.state.analysis.close()
    if redis_client is not None:
        await redis_client.aclose()
    if engine is not None:
        engine.dispose()
    logger.info("Shutdown complete")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Sermon Clips",
        description="""
Sermon Clips - short-form clips from sermon videos.

## Usage

1. Upload a sermon: `POST /upload`
2. Poll the analysis job: `GET /jobs/{job_id}`
3. Read highlights and clips: `GET /assets/{asset_id}`, `GET /clips/highlight/{highlight_id}`
4. Request another platform: `POST /clips/generate`
5. Dub a clip: `POST /clips/{clip_id}/dub`
        """,
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(uploads.router)
    app.include_router(jobs.router)
    app.include_router(clips.router)
    app.include_router(assets.router)

    @app.get("/")
    async def root():
        """Root endpoint with basic info."""
        return {
            "service": "sermon-clips",
            "version": __version__,
            "status": "running",
            "docs": "/docs",
        }

    return app


logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = create_app()
