"""
Quality Ladder Presets
Resolution/bitrate rungs used for HLS transcoding
"""

from dataclasses import dataclass
from typing import Dict, List, Sequence


@dataclass(frozen=True)
class QualityPreset:
    """One rung of the transcoding ladder"""
    name: str
    width: int
    height: int
    video_bitrate: int  # kbps
    max_bitrate: int  # kbps
    buffer_size: int  # kbps
    audio_bitrate: int  # kbps
    profile: str
    level: str

    @property
    def bandwidth(self) -> int:
        """Total bandwidth in bits per second, as advertised in the master playlist"""
        return (self.video_bitrate + self.audio_bitrate) * 1000

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


QUALITY_PRESETS: Dict[str, QualityPreset] = {
    preset.name: preset
    for preset in (
        QualityPreset("1080p", 1920, 1080, 5000, 5000, 10000, 128, "high", "4.0"),
        QualityPreset("720p", 1280, 720, 2800, 2800, 5600, 128, "high", "3.1"),
        QualityPreset("480p", 854, 480, 1400, 1400, 2800, 96, "main", "3.0"),
        QualityPreset("360p", 640, 360, 800, 800, 1600, 96, "baseline", "3.0"),
    )
}


def get_preset(name: str) -> QualityPreset:
    """Look up a preset by name, raising KeyError for unknown names"""
    return QUALITY_PRESETS[name]


def select_for_source(names: Sequence[str], width: int, height: int) -> List[str]:
    """
    Keep only presets that fit inside the source resolution.

    Upscaling wastes bandwidth without adding detail. When nothing fits
    (tiny sources) the smallest configured preset is kept so the video
    still gets one playable rendition.
    """
    fitting = [
        name for name in names
        if QUALITY_PRESETS[name].width <= width and QUALITY_PRESETS[name].height <= height
    ]
    if fitting or not names:
        return fitting

    smallest = min(names, key=lambda name: QUALITY_PRESETS[name].height)
    return [smallest]
