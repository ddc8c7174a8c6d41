from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from media_ingest.models.job import Job, estimate_completion
from media_ingest.models.stage import (
    EXTRACTING_METADATA,
    FINALIZING,
    GENERATING_POSTER,
    GENERATING_THUMBNAIL,
    READY,
    UPLOADED,
    Stage,
    StageKind,
    build_ladder,
    check_transition,
    next_stage,
    progress_after,
    total_units,
)
from media_ingest.services.progress import ProgressSnapshot
from media_ingest.utils.exceptions import IllegalStageTransitionError

LADDER = ["1080p", "720p", "480p", "360p"]


def test_ladder_walks_every_stage_in_order():
    stage = UPLOADED
    walked = [stage]
    while stage != READY:
        stage = next_stage(stage, LADDER)
        walked.append(stage)

    assert walked == build_ladder(LADDER)
    assert [s.label for s in walked] == [
        "uploaded",
        "extracting_metadata",
        "generating_thumbnail",
        "generating_poster",
        "transcoding_quality:1080p",
        "transcoding_quality:720p",
        "transcoding_quality:480p",
        "transcoding_quality:360p",
        "finalizing",
        "ready",
    ]


def test_empty_ladder_goes_straight_to_finalizing():
    assert next_stage(GENERATING_POSTER, []) == FINALIZING


@pytest.mark.parametrize("terminal", [READY, Stage.of(StageKind.FAILED)])
def test_no_transition_out_of_terminal_stages(terminal):
    with pytest.raises(IllegalStageTransitionError):
        next_stage(terminal, LADDER)


def test_skipping_a_stage_is_illegal():
    with pytest.raises(IllegalStageTransitionError):
        check_transition(EXTRACTING_METADATA, GENERATING_POSTER, LADDER)
    with pytest.raises(IllegalStageTransitionError):
        check_transition(GENERATING_POSTER, Stage.transcoding("720p"), LADDER)


def test_quality_not_on_ladder_is_illegal():
    with pytest.raises(IllegalStageTransitionError):
        next_stage(Stage.transcoding("240p"), LADDER)


def test_transcoding_stage_requires_quality():
    with pytest.raises(ValidationError):
        Stage(kind=StageKind.TRANSCODING_QUALITY)
    with pytest.raises(ValidationError):
        Stage(kind=StageKind.READY, quality="720p")


def test_label_parse_inverts_label():
    for stage in build_ladder(LADDER):
        assert Stage.parse(stage.label) == stage


def test_progress_values():
    assert total_units(LADDER) == 8
    assert progress_after(EXTRACTING_METADATA, LADDER) == 12
    assert progress_after(GENERATING_POSTER, LADDER) == 37
    assert progress_after(Stage.transcoding("720p"), LADDER) == 62
    assert progress_after(FINALIZING, LADDER) == 100
    assert progress_after(READY, LADDER) == 100


def test_progress_is_monotonic_along_the_ladder():
    values = [progress_after(stage, LADDER) for stage in build_ladder(LADDER)]
    assert values == sorted(values)
    assert values[0] == 0


def test_job_enter_stage_resets_attempts_and_rejects_skips():
    job = Job(slug="clip-1234abcd", title="Clip", original_filename="clip.mp4",
              source_path="/tmp/clip.mp4", qualities=["720p"])
    job.enter_stage(EXTRACTING_METADATA)
    job.attempt_count = 2
    job.enter_stage(GENERATING_THUMBNAIL)
    assert job.attempt_count == 0

    with pytest.raises(IllegalStageTransitionError):
        job.enter_stage(FINALIZING)
    assert job.stage == GENERATING_THUMBNAIL


def test_job_progress_never_decreases():
    job = Job(slug="clip-1234abcd", title="Clip", original_filename="clip.mp4",
              source_path="/tmp/clip.mp4")
    job.record_progress(40)
    job.record_progress(25)
    assert job.progress == 40


def test_estimate_completion_extrapolates_from_elapsed_time():
    started = datetime(2024, 1, 1, 12, 0, 0)
    now = started + timedelta(seconds=30)
    assert estimate_completion(started, 25, now) == now + timedelta(seconds=90)
    # Not enough data yet, nothing left to estimate, or never started
    assert estimate_completion(started, 25, started + timedelta(seconds=2)) is None
    assert estimate_completion(started, 0, now) is None
    assert estimate_completion(started, 100, now) is None
    assert estimate_completion(None, 50, now) is None


def test_job_estimate_is_refreshed_on_progress_and_cleared_when_finished():
    started = datetime(2024, 1, 1, 12, 0, 0)
    job = Job(slug="clip-1234abcd", title="Clip", original_filename="clip.mp4",
              source_path="/tmp/clip.mp4", started_at=started)
    job.record_progress(50, now=started + timedelta(seconds=60))
    assert job.estimated_completion == started + timedelta(seconds=120)

    assert ProgressSnapshot.from_job(job).estimated_completion == job.estimated_completion

    job.mark_failed("Video transcoding failed.", "ENCODE_ERROR")
    assert job.estimated_completion is None
    assert ProgressSnapshot.from_job(job).estimated_completion is None
