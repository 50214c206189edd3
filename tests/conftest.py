"""
Pytest configuration and fixtures.
"""

import os

from fakeredis import aioredis as fake_aioredis
import pytest

from sermonclips.config import get_settings
from sermonclips.db import create_db_engine, create_session_factory, init_db
from sermonclips.db.models import UserStatus
from sermonclips.services.job_queue import JobQueue
from sermonclips.services.record_store import RecordStore

# Settings read from the environment are reset for every test
_ENV_KEYS = (
    "API_KEY",
    "GEMINI_API_KEY",
    "ELEVENLABS_API_KEY",
    "HEYGEN_API_KEY",
    "JOB_LOG_DIR",
    "STORAGE_PUBLIC_BASE_URL",
    "STORAGE_ENDPOINT_URL",
    "MAX_UPLOAD_MB",
)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    """Point settings at a per-test temp dir and drop any configured credentials."""
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("TEMP_DIRECTORY", str(tmp_path / "work"))
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("S3_BUCKET", "test-bucket")
    monkeypatch.setenv("AWS_REGION", "us-east-1")
    monkeypatch.setenv("GEMINI_API_KEY", "test-gemini-key")

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def store():
    """Record store on a private in-memory SQLite database."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield RecordStore(create_session_factory(engine))
    engine.dispose()


@pytest.fixture
async def redis_client():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis_client):
    return JobQueue(redis_client, name="test-queue", rate_limit_max=10, rate_limit_window_seconds=60)


@pytest.fixture
async def active_user(store):
    return await store.create_user("pastor@example.com", name="Pastor", status=UserStatus.ACTIVE)


def write_video_file(path, size: int = 20 * 1024) -> str:
    """Write a placeholder file large enough to pass the output size checks."""
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(b"\x00" * size)
    return str(path)


@pytest.fixture
def mock_storage(mocker, settings):
    """
    Storage double: downloads write a placeholder video, uploads return a
    public URL for the key.
    """
    storage = mocker.MagicMock()

    async def download(url_or_key, local_path):
        return write_video_file(local_path)

    async def put(path, data, content_type):
        return f"https://cdn.example.com/{path}"

    async def put_file(local_path, path, content_type):
        return f"https://cdn.example.com/{path}"

    storage.download = mocker.AsyncMock(side_effect=download)
    storage.put = mocker.AsyncMock(side_effect=put)
    storage.put_file = mocker.AsyncMock(side_effect=put_file)
    storage.delete = mocker.AsyncMock(return_value=None)
    storage.key_from_url = mocker.MagicMock(
        side_effect=lambda url: url.replace("https://cdn.example.com/", "")
    )
    return storage
