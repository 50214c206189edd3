"""
Services for the clip service.

Includes:
- Media services (FFmpeg transform engine, object storage)
- AI services (Gemini analysis, ElevenLabs dubbing, HeyGen lipsync)
- Job services (Redis queue, orchestrator, record store)
"""

from sermonclips.services.analysis_client import AnalysisClient
from sermonclips.services.dubbing_service import DubbingService
from sermonclips.services.job_queue import JobQueue
from sermonclips.services.lipsync_service import LipsyncService
from sermonclips.services.media_transform import MediaTransformEngine
from sermonclips.services.orchestrator import ClipOrchestrator
from sermonclips.services.record_store import RecordStore
from sermonclips.services.storage_gateway import StorageGateway

__all__ = [
    # Media
    "MediaTransformEngine",
    "StorageGateway",
    # AI
    "AnalysisClient",
    "DubbingService",
    "LipsyncService",
    # Jobs
    "JobQueue",
    "ClipOrchestrator",
    "RecordStore",
]
