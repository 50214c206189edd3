"""
FastAPI dependencies resolving the services built in the application lifespan.
"""

from fastapi import Request

from sermonclips.services.analysis_client import AnalysisClient
from sermonclips.services.job_queue import JobQueue
from sermonclips.services.record_store import RecordStore
from sermonclips.services.storage_gateway import StorageGateway


def _state(request: Request, name: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise RuntimeError(f"{name} not initialized")
    return service


def get_store(request: Request) -> RecordStore:
    return _state(request, "store")


def get_storage(request: Request) -> StorageGateway:
    return _state(request, "storage")


def get_queue(request: Request) -> JobQueue:
    return _state(request, "queue")


def get_analysis_client(request: Request) -> AnalysisClient:
    return _state(request, "analysis")
