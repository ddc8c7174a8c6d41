import asyncio
import os
import tempfile
import uuid
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

# main.py mounts the final media directory at import time
_SESSION_ROOT = tempfile.mkdtemp(prefix="media_ingest_tests_")
os.environ.setdefault("STORAGE_ROOT", os.path.join(_SESSION_ROOT, "media"))
os.environ.setdefault("DATA_DIR", os.path.join(_SESSION_ROOT, "data"))

from media_ingest.config import get_settings  # noqa: E402
from media_ingest.models.job import Job  # noqa: E402
from media_ingest.models.video import Video, VideoMetadata  # noqa: E402
from media_ingest.services.intake import generate_slug  # noqa: E402
from media_ingest.services.job_store import JobStore  # noqa: E402
from media_ingest.services.metrics import AuditLogger, ProcessingMetrics  # noqa: E402
from media_ingest.services.pipeline import PipelineOrchestrator  # noqa: E402
from media_ingest.services.storage import StorageManager  # noqa: E402
from media_ingest.services.transcoder import EncodeResult  # noqa: E402
from media_ingest.utils.retry import RetryPolicy  # noqa: E402


class FakeEngine:
    """Transcoding engine that writes tiny placeholder files instead of running FFmpeg."""

    def __init__(self, metadata: Optional[VideoMetadata] = None, segments: int = 3):
        self.metadata = metadata or VideoMetadata(
            duration=30.0,
            width=1920,
            height=1080,
            frame_rate=30.0,
            bitrate=13_000_000,
            video_codec="h264",
            audio_codec="aac",
            file_size=50 * 1024 * 1024,
            format_name="mov,mp4,m4a,3gp,3g2,mj2",
        )
        self.segments = segments
        self.calls: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.hold_key: Optional[str] = None
        self.reached = asyncio.Event()

    def fail(self, key: str, *errors: Exception):
        self.failures.setdefault(key, []).extend(errors)

    async def _enter(self, key: str, token=None):
        self.calls.append(key)
        if key == self.hold_key:
            self.reached.set()
            while True:
                if token is not None:
                    token.raise_if_cancelled()
                await asyncio.sleep(0.01)
        pending = self.failures.get(key)
        if pending:
            raise pending.pop(0)

    async def probe(self, path, token=None):
        await self._enter("probe", token)
        return self.metadata

    async def extract_frame(self, path, timestamp_fraction, output_path, target_width, duration,
                            min_offset=0.0, token=None):
        await self._enter(f"frame:{output_path.name}", token)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(b"\xff\xd8fake-jpeg\xff\xd9")
        return output_path

    async def encode_quality(self, path, preset, output_dir, segment_duration, duration, token=None):
        await self._enter(f"encode:{preset.name}", token)
        output_dir.mkdir(parents=True, exist_ok=True)
        lines = ["#EXTM3U", "#EXT-X-VERSION:3", f"#EXT-X-TARGETDURATION:{segment_duration}"]
        for index in range(1, self.segments + 1):
            name = f"segment_{index:04d}.ts"
            (output_dir / name).write_bytes(b"\x47" * 188)
            lines.extend([f"#EXTINF:{segment_duration}.000000,", name])
        lines.append("#EXT-X-ENDLIST")
        manifest = output_dir / "manifest.m3u8"
        manifest.write_text("\n".join(lines) + "\n")
        return EncodeResult(quality=preset.name, manifest_path=manifest, segment_count=self.segments)


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("STORAGE_ROOT", str(tmp_path / "media"))
    monkeypatch.setenv("DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("RETRY_BASE_DELAY", "0")
    monkeypatch.setenv("RETRY_MAX_DELAY", "0")
    monkeypatch.setenv("JOB_WORKER_CONCURRENCY", "2")
    monkeypatch.setenv("CLEANUP_INTERVAL_SECONDS", "3600")
    get_settings.cache_clear()
    yield get_settings()
    get_settings.cache_clear()


@pytest.fixture
def storage(settings):
    return StorageManager(settings.storage_root)


@pytest.fixture
def store(settings):
    return JobStore(str(Path(settings.data_dir) / "test.db"))


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def orchestrator(store, storage, engine, settings):
    return PipelineOrchestrator(
        store,
        storage,
        engine,
        settings,
        RetryPolicy(max_retries=settings.max_retries, base_delay=0, max_delay=0),
        metrics=ProcessingMetrics(),
        audit=AuditLogger(),
    )


@pytest.fixture
def make_upload(store, storage, settings):
    """Register a staged upload directly in the store, bypassing the HTTP layer."""

    async def _make(title: str = "Test Clip", qualities: Optional[List[str]] = None) -> Job:
        upload_id = uuid.uuid4().hex
        slug = generate_slug(title)
        source = storage.source_path(upload_id, "mp4")
        source.parent.mkdir(parents=True, exist_ok=True)
        source.write_bytes(b"fake-video-binary")
        job = Job(
            upload_id=upload_id,
            slug=slug,
            title=title,
            original_filename="clip.mp4",
            content_type="video/mp4",
            file_size=source.stat().st_size,
            source_path=str(source),
            qualities=list(qualities if qualities is not None else settings.quality_ladder),
        )
        await store.create_upload(job, Video(slug=slug, upload_id=upload_id, title=title))
        return job

    return _make


@pytest_asyncio.fixture
async def client(settings, store, storage, orchestrator, monkeypatch):
    from httpx import ASGITransport, AsyncClient

    from media_ingest.main import app, start_services, stop_services
    from media_ingest.services import cleanup, job_queue, job_store, pipeline
    from media_ingest.services import storage as storage_module
    from media_ingest.services.cleanup import TempJanitor
    from media_ingest.services.job_queue import JobQueue

    monkeypatch.setattr(job_store, "_job_store", store)
    monkeypatch.setattr(storage_module, "_storage_manager", storage)
    monkeypatch.setattr(pipeline, "_pipeline", orchestrator)
    monkeypatch.setattr(job_queue, "_job_queue", JobQueue())
    monkeypatch.setattr(cleanup, "_janitor", TempJanitor(store, storage, settings))

    await start_services()
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            yield http_client
    finally:
        await stop_services()


async def wait_for_terminal(client, upload_id: str, timeout: float = 10.0) -> dict:
    """Poll the progress endpoint until the upload leaves processing."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        response = await client.get(f"/media/upload/{upload_id}/progress")
        assert response.status_code == 200
        body = response.json()
        if body["status"] != "processing":
            return body
        if loop.time() > deadline:
            raise AssertionError(f"upload {upload_id} still processing: {body}")
        await asyncio.sleep(0.05)


@pytest.fixture
def wait_terminal():
    return wait_for_terminal
