import re
from unittest.mock import MagicMock

import pytest

from media_ingest.models.job import JobStatus
from media_ingest.models.stage import StageKind
from media_ingest.models.video import VideoStatus
from media_ingest.services.intake import UploadIntake, generate_slug
from media_ingest.utils.exceptions import QueueFullError, UploadValidationError, ValidationReason


async def _chunks(*parts):
    for part in parts:
        yield part


@pytest.fixture
def queue():
    fake = MagicMock()
    fake.enqueue.return_value = True
    return fake


@pytest.fixture
def intake(store, storage, queue, settings):
    return UploadIntake(store, storage, queue, settings)


@pytest.mark.parametrize("title,prefix", [
    ("Hello World", "hello-world-"),
    ("Test Video 123", "test-video-123-"),
    ("  Spaces -- and__underscores ", "spaces-and-underscores-"),
    ("Café Tour!", "caf_-tour_-"),
])
def test_generate_slug(title, prefix):
    slug = generate_slug(title)
    assert slug.startswith(prefix)
    assert re.fullmatch(r"[a-z0-9_-]+-[0-9a-f]{8}", slug)


def test_generate_slug_truncates_and_is_unique():
    long_slug = generate_slug("x" * 200)
    assert len(long_slug) == 50 + 1 + 8
    assert generate_slug("Same") != generate_slug("Same")


def test_generate_slug_without_usable_characters():
    assert generate_slug("---").startswith("video-")


@pytest.mark.asyncio
async def test_accept_registers_job_and_video(intake, store, storage, queue):
    receipt = await intake.accept(
        _chunks(b"a" * 1000, b"b" * 24), "Demo Reel.MP4", "video/mp4", "Demo Reel",
        description="Showreel", is_public=True,
    )

    job = await store.get_job(receipt.upload_id)
    assert job.status == JobStatus.PROCESSING
    assert job.stage.kind == StageKind.UPLOADED
    assert job.progress == 0
    assert job.file_size == 1024
    assert job.original_filename == "Demo Reel.MP4"
    assert job.qualities == ["1080p", "720p", "480p", "360p"]
    assert job.source_path == str(storage.source_path(receipt.upload_id, "mp4"))

    video = await store.get_video(receipt.slug)
    assert video.status == VideoStatus.PROCESSING
    assert video.is_public is True
    queue.enqueue.assert_called_once_with(receipt.upload_id)


@pytest.mark.asyncio
async def test_declared_size_is_checked_before_writing(intake, store, storage, settings):
    with pytest.raises(UploadValidationError) as exc_info:
        await intake.accept(_chunks(b"x"), "big.mp4", "video/mp4", "Big",
                            declared_size=settings.max_upload_bytes + 1)
    assert exc_info.value.reason == ValidationReason.TOO_LARGE
    assert storage.list_temp_entries() == []
    assert await store.list_jobs() == []


@pytest.mark.asyncio
async def test_empty_stream_is_rejected_and_cleaned(intake, store, storage):
    with pytest.raises(UploadValidationError) as exc_info:
        await intake.accept(_chunks(), "empty.mp4", "video/mp4", "Empty")
    assert exc_info.value.reason == ValidationReason.EMPTY_FILE
    assert storage.list_temp_entries() == []
    assert await store.list_jobs() == []


@pytest.mark.asyncio
async def test_queue_full_rolls_back_everything(intake, store, storage, queue):
    queue.enqueue.return_value = False

    with pytest.raises(QueueFullError):
        await intake.accept(_chunks(b"data"), "clip.mp4", "video/mp4", "Clip")

    assert await store.list_jobs() == []
    assert await store.list_videos(None) == []
    assert storage.list_temp_entries() == []


@pytest.mark.asyncio
async def test_stopped_queue_rolls_back_everything(intake, store, storage, queue):
    queue.enqueue.side_effect = RuntimeError("Job queue is not running")

    with pytest.raises(RuntimeError):
        await intake.accept(_chunks(b"data"), "clip.mp4", "video/mp4", "Clip")

    assert await store.list_jobs() == []
    assert storage.list_temp_entries() == []
