"""
Pipeline Orchestrator
Drives one upload through the stage ladder with retries, cancellation and atomic publish
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Set

from ..config import Settings, get_settings
from ..models.job import Job, JobStatus
from ..models.quality import get_preset, select_for_source
from ..models.stage import READY, Stage, StageKind, next_stage, progress_after
from ..models.video import QualityVariant, Video, VideoStatus
from ..utils.cancellation import CancellationToken
from ..utils.exceptions import (
    IllegalStageTransitionError,
    InvalidJobStateError,
    JobCancelledError,
    JobNotFoundError,
    MediaIngestError,
    StorageError,
)
from ..utils.logger import get_logger
from ..utils.retry import RetryPolicy
from .job_store import INTERRUPTED_CODE, INTERRUPTED_MESSAGE, JobStore, get_job_store
from .metrics import AuditLogger, ProcessingMetrics, Timer, get_audit_logger, get_metrics
from .storage import StorageManager, get_storage_manager
from .transcoder import (
    MANIFEST_NAME,
    MASTER_MANIFEST_NAME,
    TranscodingEngine,
    build_master_playlist,
    get_transcoder,
)

logger = get_logger()

THUMBNAIL_NAME = "thumbnail.jpg"
POSTER_NAME = "poster.jpg"
THUMBNAIL_MIN_OFFSET = 1.0
POSTER_MIN_OFFSET = 2.0

INTERNAL_ERROR_CODE = "INTERNAL_ERROR"
INTERNAL_ERROR_MESSAGE = "Video processing failed due to an internal error."

# How long cancel() waits for a running worker to wind down
CANCEL_WAIT_SECONDS = 10.0


class PipelineOrchestrator:
    """
    Runs the stage ladder for one upload at a time per worker.

    After intake this is the only writer of job rows. Every state change is
    persisted before the next stage starts, so progress readers always see
    the latest durable state.
    """

    def __init__(
        self,
        store: JobStore,
        storage: StorageManager,
        engine: TranscodingEngine,
        settings: Optional[Settings] = None,
        policy: Optional[RetryPolicy] = None,
        metrics: Optional[ProcessingMetrics] = None,
        audit: Optional[AuditLogger] = None
    ):
        self.store = store
        self.storage = storage
        self.engine = engine
        self.settings = settings or get_settings()
        self.policy = policy or RetryPolicy(
            max_retries=self.settings.max_retries,
            base_delay=self.settings.retry_base_delay,
            max_delay=self.settings.retry_max_delay,
        )
        self.metrics = metrics or get_metrics()
        self.audit = audit or get_audit_logger()
        self._tokens: Dict[str, CancellationToken] = {}
        self._finished: Dict[str, asyncio.Event] = {}
        self._active: Set[str] = set()
        self._shutting_down = False

    def _token_for(self, upload_id: str) -> CancellationToken:
        token = self._tokens.get(upload_id)
        if token is None:
            token = CancellationToken(upload_id)
            self._tokens[upload_id] = token
        return token

    # =========================================================================
    # Entry points
    # =========================================================================

    async def run(self, upload_id: str):
        """Process one upload to a terminal state. Used as the job queue processor."""
        self._active.add(upload_id)
        token = self._token_for(upload_id)
        finished = self._finished.setdefault(upload_id, asyncio.Event())
        try:
            if self._shutting_down:
                logger.info(f"Shutting down; upload {upload_id} left for restart recovery")
                return
            job = await self.store.get_job(upload_id)
            if job is None:
                logger.warning(f"Upload {upload_id} has no job record; skipping")
                return
            if job.status != JobStatus.PROCESSING:
                logger.info(f"Upload {upload_id} is already {job.status.value}; skipping")
                return
            if token.cancelled:
                await self._finish_cancelled(upload_id)
                return

            logger.info(f"Processing upload {upload_id} ({job.slug}), ladder: {', '.join(job.qualities)}")
            if job.started_at is None:
                job.started_at = datetime.utcnow()
            self.audit.log("processing_started", upload_id, job.slug, qualities=list(job.qualities))
            try:
                await self._run_stages(job, token)
            except JobCancelledError:
                await self._finish_cancelled(upload_id)
            except Exception as exc:
                # Failures outside a stage action, e.g. an illegal transition
                await self._fail(job, job.stage, exc)
        finally:
            self._active.discard(upload_id)
            self._tokens.pop(upload_id, None)
            self._finished.pop(upload_id, None)
            finished.set()

    async def cancel(self, upload_id: str) -> Job:
        """
        Stop a processing upload.

        Kills the live subprocess if a worker is running the job; a queued
        job is terminalized here and skipped when a worker picks it up.

        Raises:
            JobNotFoundError: unknown upload id
            InvalidJobStateError: job already finished
        """
        job = await self.store.get_job(upload_id)
        if job is None:
            raise JobNotFoundError(upload_id)
        if job.status != JobStatus.PROCESSING:
            raise InvalidJobStateError(upload_id, job.status.value, "cancel")

        token = self._token_for(upload_id)
        token.cancel()
        logger.info(f"Cancellation requested for upload {upload_id} at stage {job.stage}")

        if upload_id in self._active:
            finished = self._finished.get(upload_id)
            if finished is not None:
                try:
                    await asyncio.wait_for(finished.wait(), timeout=CANCEL_WAIT_SECONDS)
                except asyncio.TimeoutError:
                    logger.warning(f"Upload {upload_id} did not stop within {CANCEL_WAIT_SECONDS:.0f}s")
        else:
            await self._finish_cancelled(upload_id)
            self._tokens.pop(upload_id, None)

        updated = await self.store.get_job(upload_id)
        return updated or job

    async def cancel_all(self, timeout: float = CANCEL_WAIT_SECONDS):
        """
        Stop every running upload at shutdown.

        Live subprocesses are killed and the jobs end failed as interrupted,
        keeping their temp files for the janitor.
        """
        self._shutting_down = True
        running = list(self._active)
        if not running:
            return

        logger.info(f"Interrupting {len(running)} running uploads")
        waiters = []
        for upload_id in running:
            self._token_for(upload_id).cancel()
            finished = self._finished.get(upload_id)
            if finished is not None:
                waiters.append(finished.wait())
        try:
            await asyncio.wait_for(asyncio.gather(*waiters), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Running uploads did not stop within {timeout:.0f}s")

    # =========================================================================
    # Stage loop
    # =========================================================================

    async def _run_stages(self, job: Job, token: CancellationToken):
        while job.status == JobStatus.PROCESSING:
            stage = next_stage(job.stage, job.qualities)
            job.enter_stage(stage)
            await self.store.update_job(job)
            logger.info(f"Upload {job.upload_id}: entering {stage}")

            if not await self._run_with_retries(job, stage, token):
                return

    async def _run_with_retries(self, job: Job, stage: Stage, token: CancellationToken) -> bool:
        """Run one stage until it succeeds, fails permanently or is cancelled."""
        while True:
            timer = Timer()
            try:
                token.raise_if_cancelled()
                await self._execute_stage(job, stage, token)
            except JobCancelledError:
                raise
            except Exception as exc:
                self.metrics.record_stage(stage.label, timer.elapsed(), success=False)
                if not self.policy.should_retry(exc, job.attempt_count):
                    await self._fail(job, stage, exc)
                    return False

                job.attempt_count += 1
                delay = self.policy.delay_for(job.attempt_count)
                logger.warning(
                    f"Upload {job.upload_id}: {stage} failed (retry {job.attempt_count}/"
                    f"{self.policy.retry_limit_for(exc)}): {exc}; retrying in {delay:.1f}s"
                )
                await self.store.update_job(job)
                self.audit.log("stage_retry", job.upload_id, job.slug, stage=stage.label, attempt=job.attempt_count)
                await token.sleep(delay)
                continue

            self.metrics.record_stage(stage.label, timer.elapsed(), success=True)
            job.attempt_count = 0
            if job.status == JobStatus.PROCESSING:
                job.record_progress(progress_after(stage, job.qualities))
                await self.store.update_job(job)
            logger.info(f"Upload {job.upload_id}: {stage} done ({job.progress}%)")
            return True

    async def _execute_stage(self, job: Job, stage: Stage, token: CancellationToken):
        kind = stage.kind
        if kind == StageKind.EXTRACTING_METADATA:
            await self._extract_metadata(job, token)
        elif kind == StageKind.GENERATING_THUMBNAIL:
            await self._extract_image(
                job, token, THUMBNAIL_NAME,
                self.settings.thumbnail_position, self.settings.thumbnail_width, THUMBNAIL_MIN_OFFSET
            )
        elif kind == StageKind.GENERATING_POSTER:
            await self._extract_image(
                job, token, POSTER_NAME,
                self.settings.poster_position, self.settings.poster_width, POSTER_MIN_OFFSET
            )
        elif kind == StageKind.TRANSCODING_QUALITY:
            await self._transcode(job, stage.quality, token)
        elif kind == StageKind.FINALIZING:
            await self._finalize(job, token)
        else:
            raise IllegalStageTransitionError(job.stage.label, stage.label, reason="stage has no action")

    # =========================================================================
    # Stage actions
    # =========================================================================

    async def _extract_metadata(self, job: Job, token: CancellationToken):
        metadata = await self.engine.probe(Path(job.source_path), token=token)
        job.metadata = metadata

        if self.settings.auto_quality_selection:
            selected = select_for_source(job.qualities, metadata.width, metadata.height)
            if selected != job.qualities:
                logger.info(
                    f"Upload {job.upload_id}: source is {metadata.width}x{metadata.height}, "
                    f"ladder trimmed to {', '.join(selected)}"
                )
                job.qualities = selected

        video = await self._require_video(job)
        video.apply_metadata(metadata)
        await self.store.update_video(video)

    async def _extract_image(
        self,
        job: Job,
        token: CancellationToken,
        filename: str,
        position: float,
        width: int,
        min_offset: float
    ):
        output_path = self.storage.output_dir(job.upload_id) / filename
        await self.engine.extract_frame(
            Path(job.source_path),
            position,
            output_path,
            width,
            self._duration(job),
            min_offset=min_offset,
            token=token,
        )

        video = await self._require_video(job)
        url = self.storage.url_for(self.settings.media_url_prefix, job.slug, filename)
        if filename == THUMBNAIL_NAME:
            video.thumbnail_url = url
        else:
            video.poster_url = url
        await self.store.update_video(video)

    async def _transcode(self, job: Job, quality: str, token: CancellationToken):
        preset = get_preset(quality)
        quality_dir = self.storage.resolve(self.storage.output_dir(job.upload_id), quality)
        # A retry must not pick up segments from the failed attempt
        self.storage.delete(quality_dir)

        result = await self.engine.encode_quality(
            Path(job.source_path),
            preset,
            quality_dir,
            self.settings.segment_duration,
            self._duration(job),
            token=token,
        )

        variant = QualityVariant(
            quality=quality,
            width=preset.width,
            height=preset.height,
            video_bitrate_kbps=preset.video_bitrate,
            audio_bitrate_kbps=preset.audio_bitrate,
            bandwidth=preset.bandwidth,
            segment_count=result.segment_count,
            segment_duration=self.settings.segment_duration,
            manifest_path=f"{quality}/{MANIFEST_NAME}",
            manifest_url=self.storage.url_for(self.settings.media_url_prefix, job.slug, quality, MANIFEST_NAME),
        )
        job.variants = [v for v in job.variants if v.quality != quality] + [variant]

    async def _finalize(self, job: Job, token: CancellationToken):
        """Publish the output directory and commit every record in one go."""
        variants = self._ordered_variants(job)
        output_dir = self.storage.output_dir(job.upload_id)
        self.storage.stage_bytes(
            build_master_playlist(variants).encode("utf-8"), output_dir / MASTER_MANIFEST_NAME
        )
        logger.info(f"Master playlist written for {job.upload_id} with {len(variants)} variants")

        token.raise_if_cancelled()
        final_dir = self.storage.final_dir(job.slug)
        self.storage.finalize(output_dir, final_dir)

        ready_job = job.model_copy(deep=True)
        ready_job.enter_stage(READY)
        ready_job.mark_succeeded()

        video = await self._require_video(job)
        prefix = self.settings.media_url_prefix
        video.status = VideoStatus.READY
        video.variants = variants
        video.quality_manifests = [variant.manifest_url for variant in variants]
        video.master_manifest_url = self.storage.url_for(prefix, job.slug, MASTER_MANIFEST_NAME)
        video.ready_at = datetime.utcnow()

        try:
            await self.store.commit_ready(ready_job, video, variants)
        except Exception as exc:
            logger.error(f"Upload {job.upload_id}: ready commit failed, rolling back publish: {exc}")
            self.storage.rollback_finalize(final_dir, output_dir)
            raise StorageError(f"Failed to commit ready state: {exc}", path=str(final_dir)) from exc

        job.enter_stage(READY)
        job.mark_succeeded()
        job.updated_at = ready_job.updated_at
        logger.info(f"Upload {job.upload_id} ready at {video.master_manifest_url}")
        self.metrics.record_success(job, self._elapsed(job))
        self.audit.log("ready", job.upload_id, job.slug, variants=len(variants))

        try:
            self.storage.delete(self.storage.temp_dir(job.upload_id))
        except StorageError as exc:
            logger.warning(f"Temp cleanup for {job.upload_id} deferred to janitor: {exc}")

    # =========================================================================
    # Terminal transitions
    # =========================================================================

    async def _fail(self, job: Job, stage: Stage, exc: BaseException):
        if isinstance(exc, MediaIngestError):
            message, code = exc.user_message, exc.code
            stderr = getattr(exc, "stderr_tail", None)
            logger.error(
                f"Upload {job.upload_id} failed at {stage} after {job.attempt_count + 1} attempt(s): "
                f"[{code}] {exc.message}" + (f"\n{stderr}" if stderr else "")
            )
        else:
            message, code = INTERNAL_ERROR_MESSAGE, INTERNAL_ERROR_CODE
            logger.exception(f"Upload {job.upload_id} failed at {stage} with unexpected error: {exc}")

        job.mark_failed(message, code)
        await self.store.update_job(job)
        await self._mark_video_failed(job)
        self.metrics.record_failure(job, self._elapsed(job), code)
        self.audit.log("failed", job.upload_id, job.slug, stage=stage.label, error_code=code)

    async def _finish_cancelled(self, upload_id: str):
        job = await self.store.get_job(upload_id)
        if job is None or job.status != JobStatus.PROCESSING:
            return

        if self._shutting_down:
            # Same outcome as a restart; temp files stay for the janitor
            job.mark_failed(INTERRUPTED_MESSAGE, INTERRUPTED_CODE)
            await self.store.update_job(job)
            await self._mark_video_failed(job)
            self.metrics.record_failure(job, self._elapsed(job), INTERRUPTED_CODE)
            self.audit.log("interrupted", upload_id, job.slug, stage=job.stage.label)
            logger.warning(f"Upload {upload_id} interrupted by shutdown at {job.stage}")
            return

        job.mark_failed(JobCancelledError.user_message, "CANCELLED")
        await self.store.update_job(job)
        await self._mark_video_failed(job)
        try:
            self.storage.delete(self.storage.temp_dir(upload_id))
        except StorageError as exc:
            logger.warning(f"Could not remove temp files of cancelled upload {upload_id}: {exc}")
        self.metrics.record_cancellation(job, self._elapsed(job))
        self.audit.log("cancelled", upload_id, job.slug, stage=job.stage.label)
        logger.info(f"Upload {upload_id} cancelled at {job.stage}")

    async def _mark_video_failed(self, job: Job):
        video = await self.store.get_video(job.slug)
        if video is not None and video.status == VideoStatus.PROCESSING:
            video.status = VideoStatus.FAILED
            await self.store.update_video(video)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _require_video(self, job: Job) -> Video:
        video = await self.store.get_video(job.slug)
        if video is None:
            raise StorageError(f"Video record missing for {job.slug}")
        return video

    @staticmethod
    def _elapsed(job: Job) -> float:
        if job.started_at is None:
            return 0.0
        return (datetime.utcnow() - job.started_at).total_seconds()

    @staticmethod
    def _duration(job: Job) -> float:
        if job.metadata is None:
            raise IllegalStageTransitionError(job.stage.label, job.stage.label, reason="metadata not extracted")
        return job.metadata.duration

    @staticmethod
    def _ordered_variants(job: Job) -> List[QualityVariant]:
        by_quality = {variant.quality: variant for variant in job.variants}
        missing = [quality for quality in job.qualities if quality not in by_quality]
        if missing:
            raise IllegalStageTransitionError(
                job.stage.label, READY.label, reason=f"missing variants: {', '.join(missing)}"
            )
        return [by_quality[quality] for quality in job.qualities]


_pipeline: Optional[PipelineOrchestrator] = None


def get_pipeline() -> PipelineOrchestrator:
    """Return singleton pipeline orchestrator."""
    global _pipeline
    if _pipeline is None:
        _pipeline = PipelineOrchestrator(get_job_store(), get_storage_manager(), get_transcoder())
    return _pipeline
