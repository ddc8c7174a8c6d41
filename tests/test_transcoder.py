import json
import subprocess
from unittest.mock import MagicMock, patch

import pytest

from media_ingest.models.quality import QUALITY_PRESETS, select_for_source
from media_ingest.models.video import QualityVariant
from media_ingest.services.transcoder import (
    CommandResult,
    FFmpegTranscoder,
    build_master_playlist,
    count_manifest_segments,
    format_timestamp,
    frame_timestamp,
    parse_frame_rate,
    parse_probe_output,
)
from media_ingest.utils.cancellation import CancellationToken
from media_ingest.utils.exceptions import (
    EncodeError,
    FrameExtractionError,
    JobCancelledError,
    ProbeError,
    ProcessTimeoutError,
)

PROBE_OUTPUT = {
    "streams": [
        {"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080,
         "r_frame_rate": "30000/1001", "avg_frame_rate": "30000/1001"},
        {"codec_type": "audio", "codec_name": "aac"},
    ],
    "format": {"duration": "30.030000", "bit_rate": "13400000", "size": "50304000",
               "format_name": "mov,mp4,m4a,3gp,3g2,mj2"},
}


@pytest.fixture
def transcoder(settings):
    instance = FFmpegTranscoder(settings)
    yield instance
    instance.shutdown()


def test_parse_probe_output():
    metadata = parse_probe_output(json.dumps(PROBE_OUTPUT), "/tmp/source.mp4")
    assert metadata.duration == pytest.approx(30.03)
    assert (metadata.width, metadata.height) == (1920, 1080)
    assert metadata.frame_rate == pytest.approx(29.97, rel=1e-3)
    assert metadata.bitrate == 13_400_000
    assert metadata.video_codec == "h264"
    assert metadata.audio_codec == "aac"
    assert metadata.file_size == 50_304_000


def test_parse_probe_output_without_audio_or_frame_rate():
    data = {
        "streams": [{"codec_type": "video", "codec_name": "vp9", "width": 640, "height": 360}],
        "format": {"duration": "4.0"},
    }
    metadata = parse_probe_output(json.dumps(data))
    assert metadata.audio_codec is None
    assert metadata.frame_rate == 30.0
    assert metadata.bitrate is None


@pytest.mark.parametrize("payload", [
    "not json",
    json.dumps({"streams": [{"codec_type": "audio"}], "format": {"duration": "3"}}),
    json.dumps({"streams": [{"codec_type": "video", "width": 10, "height": 10}], "format": {}}),
    json.dumps({"streams": [{"codec_type": "video"}], "format": {"duration": "3"}}),
])
def test_parse_probe_output_rejects_unusable_output(payload):
    with pytest.raises(ProbeError):
        parse_probe_output(payload)


@pytest.mark.parametrize("rate,expected", [
    ("25", 25.0),
    ("30/1", 30.0),
    ("24000/1001", 24000 / 1001),
    ("0/0", None),
    ("", None),
    ("abc", None),
])
def test_parse_frame_rate(rate, expected):
    assert parse_frame_rate(rate) == (pytest.approx(expected) if expected else None)


def test_frame_timestamp_bounds():
    assert frame_timestamp(100.0, 0.10, 1.0) == 10.0
    assert frame_timestamp(5.0, 0.10, 1.0) == 1.0
    assert frame_timestamp(100.0, 0.25, 2.0) == 25.0
    # Never past the last second, never negative
    assert frame_timestamp(1.5, 0.25, 2.0) == 0.5
    assert frame_timestamp(0.5, 0.10, 1.0) == 0.0


def test_format_timestamp():
    assert format_timestamp(3725.5) == "01:02:05.500"


def test_encode_timeout_is_clamped(transcoder):
    assert transcoder.encode_timeout(2.0) == 60.0
    assert transcoder.encode_timeout(30.0) == 300.0
    assert transcoder.encode_timeout(3600.0) == 7200.0


def test_master_playlist_lists_every_variant():
    variants = []
    for name in ("720p", "360p"):
        preset = QUALITY_PRESETS[name]
        variants.append(QualityVariant(
            quality=name, width=preset.width, height=preset.height,
            video_bitrate_kbps=preset.video_bitrate, audio_bitrate_kbps=preset.audio_bitrate,
            bandwidth=preset.bandwidth, segment_count=5, segment_duration=6,
            manifest_path=f"{name}/manifest.m3u8", manifest_url=f"/media/files/x/{name}/manifest.m3u8",
        ))

    assert build_master_playlist(variants) == (
        "#EXTM3U\n"
        "#EXT-X-VERSION:3\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=2928000,RESOLUTION=1280x720\n"
        "720p/manifest.m3u8\n"
        "#EXT-X-STREAM-INF:BANDWIDTH=896000,RESOLUTION=640x360\n"
        "360p/manifest.m3u8\n"
    )


def test_count_manifest_segments():
    manifest = "#EXTM3U\n#EXTINF:6.0,\nsegment_0001.ts\n#EXTINF:2.5,\nsegment_0002.ts\n#EXT-X-ENDLIST\n"
    assert count_manifest_segments(manifest) == 2
    assert count_manifest_segments("#EXTM3U\n#EXT-X-ENDLIST\n") == 0


def test_select_for_source_never_upscales():
    names = ["1080p", "720p", "480p", "360p"]
    assert select_for_source(names, 1920, 1080) == names
    assert select_for_source(names, 1280, 720) == ["720p", "480p", "360p"]
    assert select_for_source(names, 320, 240) == ["360p"]


def test_hls_command_arguments(transcoder, tmp_path):
    preset = QUALITY_PRESETS["720p"]
    cmd = transcoder._build_hls_command(tmp_path / "source.mp4", preset, tmp_path / "720p", 6)

    def value_of(flag):
        return cmd[cmd.index(flag) + 1]

    assert value_of("-c:v") == "libx264"
    assert value_of("-profile:v") == "high"
    assert value_of("-level") == "3.1"
    assert value_of("-b:v") == "2800k"
    assert value_of("-maxrate") == "2800k"
    assert value_of("-bufsize") == "5600k"
    assert value_of("-b:a") == "128k"
    assert value_of("-hls_time") == "6"
    assert value_of("-hls_playlist_type") == "vod"
    assert value_of("-start_number") == "1"
    assert value_of("-hls_segment_filename").endswith("segment_%04d.ts")
    assert cmd[-1].endswith("manifest.m3u8")


@pytest.mark.asyncio
async def test_probe_failure_raises_probe_error(transcoder, tmp_path):
    failed = CommandResult(returncode=1, stdout="", stderr="moov atom not found")
    with patch.object(transcoder, "_execute", return_value=failed):
        with pytest.raises(ProbeError):
            await transcoder.probe(tmp_path / "source.mp4")


@pytest.mark.asyncio
async def test_encode_failure_keeps_stderr_out_of_details(transcoder, tmp_path):
    failed = CommandResult(returncode=187, stdout="", stderr="line1\nUnknown encoder 'libx264'")
    with patch.object(transcoder, "_execute", return_value=failed):
        with pytest.raises(EncodeError) as exc_info:
            await transcoder.encode_quality(tmp_path / "source.mp4", QUALITY_PRESETS["360p"],
                                            tmp_path / "360p", 6, 10.0)
    error = exc_info.value
    assert error.exit_code == 187
    assert "Unknown encoder" in error.stderr_tail
    assert "stderr" not in json.dumps(error.to_dict())


@pytest.mark.asyncio
async def test_encode_with_zero_segments_is_an_error(transcoder, tmp_path):
    output_dir = tmp_path / "360p"

    def fake_execute(cmd, timeout, operation, token):
        output_dir.mkdir(parents=True, exist_ok=True)
        (output_dir / "manifest.m3u8").write_text("#EXTM3U\n#EXT-X-ENDLIST\n")
        return CommandResult(returncode=0, stdout="", stderr="")

    with patch.object(transcoder, "_execute", side_effect=fake_execute):
        with pytest.raises(EncodeError):
            await transcoder.encode_quality(tmp_path / "source.mp4", QUALITY_PRESETS["360p"],
                                            output_dir, 6, 10.0)


@pytest.mark.asyncio
async def test_encode_counts_segments(transcoder, tmp_path):
    output_dir = tmp_path / "480p"

    def fake_execute(cmd, timeout, operation, token):
        assert timeout == 60.0
        (output_dir / "manifest.m3u8").write_text(
            "#EXTM3U\n#EXTINF:6.0,\nsegment_0001.ts\n#EXTINF:1.0,\nsegment_0002.ts\n#EXT-X-ENDLIST\n"
        )
        return CommandResult(returncode=0, stdout="", stderr="")

    with patch.object(transcoder, "_execute", side_effect=fake_execute):
        result = await transcoder.encode_quality(tmp_path / "source.mp4", QUALITY_PRESETS["480p"],
                                                 output_dir, 6, 5.0)
    assert result.segment_count == 2
    assert result.manifest_path == output_dir / "manifest.m3u8"


@pytest.mark.asyncio
async def test_missing_frame_output_is_an_error(transcoder, tmp_path):
    ok = CommandResult(returncode=0, stdout="", stderr="")
    with patch.object(transcoder, "_execute", return_value=ok):
        with pytest.raises(FrameExtractionError):
            await transcoder.extract_frame(tmp_path / "source.mp4", 0.1, tmp_path / "thumbnail.jpg", 320, 30.0)


def test_timeout_kills_process(transcoder):
    process = MagicMock()
    process.communicate.side_effect = [subprocess.TimeoutExpired(cmd="ffmpeg", timeout=1), ("", "")]
    with patch("media_ingest.services.transcoder.subprocess.Popen", return_value=process):
        with pytest.raises(ProcessTimeoutError):
            transcoder._run_command(["ffmpeg", "-i", "x"], 1, "encode 720p", None)
    process.kill.assert_called_once()


def test_cancelled_token_kills_running_process(transcoder):
    token = CancellationToken("abc")
    process = MagicMock()
    process.poll.return_value = None
    process.returncode = -9

    def communicate(timeout=None):
        token.cancel()
        return "", ""

    process.communicate.side_effect = communicate
    with patch("media_ingest.services.transcoder.subprocess.Popen", return_value=process):
        with pytest.raises(JobCancelledError):
            transcoder._run_command(["ffmpeg", "-i", "x"], 10, "encode 720p", token)
    process.kill.assert_called_once()


def test_missing_binary_is_reported(transcoder):
    with patch("media_ingest.services.transcoder.subprocess.Popen", side_effect=FileNotFoundError()):
        with pytest.raises(ProbeError):
            transcoder._run_command(["ffprobe", "x"], 10, "probe", None)


@pytest.mark.asyncio
async def test_missing_binary_during_frame_extraction(transcoder, tmp_path):
    with patch("media_ingest.services.transcoder.subprocess.Popen", side_effect=FileNotFoundError()):
        with pytest.raises(FrameExtractionError):
            await transcoder.extract_frame(tmp_path / "source.mp4", 0.1, tmp_path / "thumbnail.jpg", 320, 30.0)


def test_missing_binary_during_encode(transcoder):
    with patch("media_ingest.services.transcoder.subprocess.Popen", side_effect=FileNotFoundError()):
        with pytest.raises(EncodeError):
            transcoder._run_command(["ffmpeg", "-i", "x"], 10, "encode 720p", None)
