"""
Transcoder Service
FFmpeg/FFprobe adapter for probing, frame extraction and HLS encoding
"""

import asyncio
import json
import shutil
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence

from ..config import Settings, get_settings
from ..models.quality import QualityPreset
from ..models.video import QualityVariant, VideoMetadata
from ..utils.cancellation import CancellationToken
from ..utils.exceptions import (
    EncodeError,
    FrameExtractionError,
    JobCancelledError,
    ProbeError,
    ProcessTimeoutError,
)
from ..utils.logger import get_logger

logger = get_logger()

MANIFEST_NAME = "manifest.m3u8"
MASTER_MANIFEST_NAME = "master.m3u8"
SEGMENT_PATTERN = "segment_%04d.ts"
STDERR_TAIL_LINES = 10
DEFAULT_FRAME_RATE = 30.0


@dataclass
class CommandResult:
    """Outcome of one external tool invocation"""
    returncode: int
    stdout: str
    stderr: str


@dataclass
class EncodeResult:
    """Output of one quality encode"""
    quality: str
    manifest_path: Path
    segment_count: int


class TranscodingEngine(Protocol):
    """The three operations the pipeline needs from a transcoding tool"""

    async def probe(
        self, path: Path, token: Optional[CancellationToken] = None
    ) -> VideoMetadata: ...

    async def extract_frame(
        self,
        path: Path,
        timestamp_fraction: float,
        output_path: Path,
        target_width: int,
        duration: float,
        min_offset: float = 0.0,
        token: Optional[CancellationToken] = None
    ) -> Path: ...

    async def encode_quality(
        self,
        path: Path,
        preset: QualityPreset,
        output_dir: Path,
        segment_duration: int,
        duration: float,
        token: Optional[CancellationToken] = None
    ) -> EncodeResult: ...


# ============================================================================
# Output parsing & command building
# ============================================================================

def parse_frame_rate(rate: Optional[str]) -> Optional[float]:
    """Parse ffprobe frame rates such as "30000/1001" or "25"."""
    if not rate:
        return None
    try:
        if "/" in rate:
            numerator, denominator = rate.split("/", 1)
            if float(denominator) <= 0:
                return None
            return float(numerator) / float(denominator)
        return float(rate)
    except ValueError:
        return None


def parse_probe_output(stdout: str, path: str = "") -> VideoMetadata:
    """Turn `ffprobe -print_format json -show_format -show_streams` output into metadata"""
    try:
        data = json.loads(stdout)
    except json.JSONDecodeError as exc:
        raise ProbeError(f"Unparsable ffprobe output: {exc}", path=path) from exc

    if not isinstance(data, dict):
        raise ProbeError("Unexpected ffprobe output shape", path=path)

    streams = data.get("streams") or []
    fmt = data.get("format") or {}

    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video_stream is None:
        raise ProbeError("No video stream found", path=path)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    try:
        duration = float(fmt.get("duration") or video_stream.get("duration"))
    except (TypeError, ValueError) as exc:
        raise ProbeError("Could not parse video duration", path=path) from exc

    width = video_stream.get("width")
    height = video_stream.get("height")
    if not width or not height:
        raise ProbeError("Could not determine video dimensions", path=path)

    frame_rate = (
        parse_frame_rate(video_stream.get("r_frame_rate"))
        or parse_frame_rate(video_stream.get("avg_frame_rate"))
        or DEFAULT_FRAME_RATE
    )

    try:
        bitrate = int(fmt["bit_rate"]) if fmt.get("bit_rate") else None
    except ValueError:
        bitrate = None

    try:
        file_size = int(fmt.get("size") or 0)
    except ValueError:
        file_size = 0
    if not file_size and path and Path(path).exists():
        file_size = Path(path).stat().st_size

    return VideoMetadata(
        duration=duration,
        width=int(width),
        height=int(height),
        frame_rate=frame_rate,
        bitrate=bitrate,
        video_codec=video_stream.get("codec_name") or "unknown",
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
        file_size=file_size,
        format_name=fmt.get("format_name") or "unknown",
    )


def frame_timestamp(duration: float, fraction: float, min_offset: float = 0.0) -> float:
    """
    Seek position for a still frame.

    At least `min_offset` seconds in (skips black intros) but never past the
    last second of the video.
    """
    timestamp = max(duration * fraction, min_offset)
    return max(0.0, min(timestamp, duration - 1.0))


def format_timestamp(seconds: float) -> str:
    """Format seconds as HH:MM:SS.mmm"""
    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60
    return f"{hours:02d}:{minutes:02d}:{secs:06.3f}"


def count_manifest_segments(manifest_text: str) -> int:
    """Number of media segments listed in an HLS media playlist"""
    return sum(1 for line in manifest_text.splitlines() if line.startswith("#EXTINF"))


def stderr_tail(stderr: str, lines: int = STDERR_TAIL_LINES) -> str:
    return "\n".join(stderr.strip().splitlines()[-lines:])


def build_master_playlist(variants: Sequence[QualityVariant]) -> str:
    """Master playlist referencing every variant's media playlist"""
    lines = ["#EXTM3U", "#EXT-X-VERSION:3"]
    for variant in variants:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={variant.bandwidth},"
            f"RESOLUTION={variant.width}x{variant.height}"
        )
        lines.append(variant.manifest_path)
    return "\n".join(lines) + "\n"


class FFmpegTranscoder:
    """Runs ffprobe/ffmpeg on a dedicated thread pool"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self._executor = ThreadPoolExecutor(
            max_workers=self.settings.job_worker_concurrency,
            thread_name_prefix="ffmpeg",
        )

    def verify(self) -> bool:
        """Check that ffmpeg and ffprobe can be executed"""
        available = True
        for binary in (self.settings.ffmpeg_path, self.settings.ffprobe_path):
            if shutil.which(binary) is None:
                logger.warning(f"{binary} not found on PATH; processing will fail until it is installed")
                available = False
                continue
            try:
                result = subprocess.run(
                    [binary, "-version"],
                    capture_output=True,
                    text=True,
                    timeout=10
                )
            except (OSError, subprocess.TimeoutExpired) as exc:
                logger.warning(f"{binary} could not be executed: {exc}")
                available = False
                continue
            if result.returncode != 0:
                logger.warning(f"{binary} -version exited with {result.returncode}")
                available = False
        if available:
            logger.info("FFmpeg and FFprobe available")
        return available

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)

    def encode_timeout(self, duration: float) -> float:
        """Encode budget proportional to source duration, clamped to [min, max]"""
        budget = self.settings.encode_timeout_factor * max(duration, 0.0)
        return min(max(budget, self.settings.encode_timeout_min), self.settings.encode_timeout_max)

    # =========================================================================
    # Operations
    # =========================================================================

    async def probe(self, path: Path, token: Optional[CancellationToken] = None) -> VideoMetadata:
        """Extract duration, resolution, codecs and bitrate from `path`"""
        cmd = [
            self.settings.ffprobe_path,
            "-v", "error",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(path),
        ]
        result = await self._execute(cmd, self.settings.probe_timeout, "probe", token)
        if result.returncode != 0:
            logger.error(f"ffprobe failed for {path} (exit {result.returncode}): {stderr_tail(result.stderr)}")
            raise ProbeError(f"ffprobe exited with status {result.returncode}", path=str(path))

        metadata = parse_probe_output(result.stdout, str(path))
        logger.info(
            f"Metadata extracted: {metadata.width}x{metadata.height}, {metadata.duration:.2f}s, "
            f"{metadata.frame_rate:.2f} fps, codec: {metadata.video_codec}"
        )
        return metadata

    async def extract_frame(
        self,
        path: Path,
        timestamp_fraction: float,
        output_path: Path,
        target_width: int,
        duration: float,
        min_offset: float = 0.0,
        token: Optional[CancellationToken] = None
    ) -> Path:
        """Save one JPEG frame taken at `timestamp_fraction` of the duration"""
        timestamp = frame_timestamp(duration, timestamp_fraction, min_offset)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        cmd = [
            self.settings.ffmpeg_path, "-y",
            "-ss", format_timestamp(timestamp),
            "-i", str(path),
            "-frames:v", "1",
            "-vf", f"scale='min({target_width},iw)':-2",
            "-q:v", str(self.settings.image_quality),
            str(output_path),
        ]
        logger.info(f"Extracting frame at {timestamp:.2f}s: {path} -> {output_path}")
        result = await self._execute(cmd, self.settings.frame_timeout, "frame extraction", token)

        if result.returncode != 0:
            logger.error(f"Frame extraction failed (exit {result.returncode}): {stderr_tail(result.stderr)}")
            raise FrameExtractionError(
                f"ffmpeg exited with status {result.returncode}",
                output_path=str(output_path),
                exit_code=result.returncode,
            )
        if not output_path.exists() or output_path.stat().st_size == 0:
            raise FrameExtractionError("Frame file was not created", output_path=str(output_path))
        return output_path

    async def encode_quality(
        self,
        path: Path,
        preset: QualityPreset,
        output_dir: Path,
        segment_duration: int,
        duration: float,
        token: Optional[CancellationToken] = None
    ) -> EncodeResult:
        """Encode one ladder rung into `output_dir` as HLS segments plus manifest"""
        output_dir.mkdir(parents=True, exist_ok=True)
        manifest_path = output_dir / MANIFEST_NAME
        cmd = self._build_hls_command(path, preset, output_dir, segment_duration)

        logger.info(
            f"Transcoding to {preset.name} ({preset.resolution}, {preset.video_bitrate}k video, "
            f"{preset.audio_bitrate}k audio)"
        )
        timeout = self.encode_timeout(duration)
        result = await self._execute(cmd, timeout, f"encode {preset.name}", token)

        if result.returncode != 0:
            tail = stderr_tail(result.stderr)
            logger.error(f"FFmpeg {preset.name} encode failed (exit {result.returncode}): {tail}")
            raise EncodeError(
                f"ffmpeg exited with status {result.returncode} for {preset.name}",
                quality=preset.name,
                exit_code=result.returncode,
                stderr_tail=tail,
            )

        if not manifest_path.exists():
            raise EncodeError(f"Manifest was not created for {preset.name}", quality=preset.name)

        segment_count = count_manifest_segments(manifest_path.read_text(encoding="utf-8"))
        if segment_count == 0:
            raise EncodeError(f"Encoder produced zero segments for {preset.name}", quality=preset.name)

        logger.info(f"{preset.name} transcoding complete: {segment_count} segments")
        return EncodeResult(quality=preset.name, manifest_path=manifest_path, segment_count=segment_count)

    def _build_hls_command(
        self,
        input_path: Path,
        preset: QualityPreset,
        output_dir: Path,
        segment_duration: int
    ) -> List[str]:
        scale = (
            f"scale={preset.width}:{preset.height}:force_original_aspect_ratio=decrease,"
            f"pad={preset.width}:{preset.height}:(ow-iw)/2:(oh-ih)/2"
        )
        return [
            self.settings.ffmpeg_path, "-y",
            "-i", str(input_path),
            "-map", "0:v:0",
            "-map", "0:a:0?",
            # Video encoding
            "-c:v", "libx264",
            "-preset", self.settings.ffmpeg_preset,
            "-profile:v", preset.profile,
            "-level", preset.level,
            "-vf", scale,
            "-b:v", f"{preset.video_bitrate}k",
            "-maxrate", f"{preset.max_bitrate}k",
            "-bufsize", f"{preset.buffer_size}k",
            # Keyframe on every segment boundary
            "-sc_threshold", "0",
            "-force_key_frames", f"expr:gte(t,n_forced*{segment_duration})",
            # Audio encoding
            "-c:a", "aac",
            "-b:a", f"{preset.audio_bitrate}k",
            "-ar", "44100",
            "-ac", "2",
            # HLS settings
            "-f", "hls",
            "-hls_time", str(segment_duration),
            "-hls_playlist_type", "vod",
            "-hls_segment_type", "mpegts",
            "-start_number", "1",
            "-hls_segment_filename", str(output_dir / SEGMENT_PATTERN),
            "-threads", str(self.settings.ffmpeg_threads),
            str(output_dir / MANIFEST_NAME),
        ]

    # =========================================================================
    # Process execution
    # =========================================================================

    async def _execute(
        self,
        cmd: List[str],
        timeout: float,
        operation: str,
        token: Optional[CancellationToken]
    ) -> CommandResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor,
            self._run_command,
            cmd,
            timeout,
            operation,
            token
        )

    def _run_command(
        self,
        cmd: List[str],
        timeout: float,
        operation: str,
        token: Optional[CancellationToken]
    ) -> CommandResult:
        """Execute a command, killing it on timeout or cancellation"""
        logger.debug(f"Running {operation}: {' '.join(cmd)}")
        if token is not None:
            token.raise_if_cancelled()

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                universal_newlines=True
            )
        except FileNotFoundError as exc:
            if operation == "probe":
                raise ProbeError(f"{cmd[0]} is not installed") from exc
            if operation == "frame extraction":
                raise FrameExtractionError(f"{cmd[0]} is not installed") from exc
            raise EncodeError(f"{cmd[0]} is not installed") from exc

        if token is not None:
            token.attach(process)
        try:
            stdout, stderr = process.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()
            logger.error(f"{operation} exceeded {timeout:.0f}s; process {process.pid} killed")
            raise ProcessTimeoutError(operation, timeout)
        finally:
            if token is not None:
                token.detach()

        if token is not None and token.cancelled:
            raise JobCancelledError(token.upload_id)

        return CommandResult(returncode=process.returncode, stdout=stdout or "", stderr=stderr or "")


_transcoder: Optional[FFmpegTranscoder] = None


def get_transcoder() -> FFmpegTranscoder:
    """Return singleton transcoder."""
    global _transcoder
    if _transcoder is None:
        _transcoder = FFmpegTranscoder()
    return _transcoder
