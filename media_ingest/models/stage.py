"""
Pipeline Stage Model
Tagged stage values and the fixed ladder a job walks through
"""

from enum import Enum
from typing import List, Optional, Sequence

from pydantic import BaseModel, model_validator

from ..utils.exceptions import IllegalStageTransitionError


class StageKind(str, Enum):
    """Kinds of pipeline stage"""
    UPLOADED = "uploaded"
    EXTRACTING_METADATA = "extracting_metadata"
    GENERATING_THUMBNAIL = "generating_thumbnail"
    GENERATING_POSTER = "generating_poster"
    TRANSCODING_QUALITY = "transcoding_quality"
    FINALIZING = "finalizing"
    READY = "ready"
    FAILED = "failed"


TERMINAL_KINDS = frozenset({StageKind.READY, StageKind.FAILED})

# metadata + thumbnail + poster, then finalize
FIXED_UNITS_BEFORE_TRANSCODE = 3
FIXED_UNITS_AFTER_TRANSCODE = 1


class Stage(BaseModel):
    """A stage value; transcode stages carry the quality they produce"""
    kind: StageKind
    quality: Optional[str] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def check_quality(self):
        if self.kind == StageKind.TRANSCODING_QUALITY and not self.quality:
            raise ValueError("transcoding_quality stage requires a quality")
        if self.kind != StageKind.TRANSCODING_QUALITY and self.quality is not None:
            raise ValueError(f"{self.kind.value} stage does not take a quality")
        return self

    @classmethod
    def of(cls, kind: StageKind, quality: Optional[str] = None) -> "Stage":
        return cls(kind=kind, quality=quality)

    @classmethod
    def transcoding(cls, quality: str) -> "Stage":
        return cls(kind=StageKind.TRANSCODING_QUALITY, quality=quality)

    @classmethod
    def parse(cls, label: str) -> "Stage":
        """Inverse of `label`"""
        kind, _, quality = label.partition(":")
        return cls(kind=StageKind(kind), quality=quality or None)

    @property
    def label(self) -> str:
        if self.kind == StageKind.TRANSCODING_QUALITY:
            return f"{self.kind.value}:{self.quality}"
        return self.kind.value

    @property
    def is_terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    def __str__(self) -> str:
        return self.label


UPLOADED = Stage.of(StageKind.UPLOADED)
EXTRACTING_METADATA = Stage.of(StageKind.EXTRACTING_METADATA)
GENERATING_THUMBNAIL = Stage.of(StageKind.GENERATING_THUMBNAIL)
GENERATING_POSTER = Stage.of(StageKind.GENERATING_POSTER)
FINALIZING = Stage.of(StageKind.FINALIZING)
READY = Stage.of(StageKind.READY)


def build_ladder(qualities: Sequence[str]) -> List[Stage]:
    """Full stage ladder for a job transcoding `qualities` in order"""
    return [
        UPLOADED,
        EXTRACTING_METADATA,
        GENERATING_THUMBNAIL,
        GENERATING_POSTER,
        *(Stage.transcoding(quality) for quality in qualities),
        FINALIZING,
        READY,
    ]


def next_stage(current: Stage, qualities: Sequence[str]) -> Stage:
    """Return the stage that follows `current` on the ladder."""
    kind = current.kind
    if kind == StageKind.UPLOADED:
        return EXTRACTING_METADATA
    if kind == StageKind.EXTRACTING_METADATA:
        return GENERATING_THUMBNAIL
    if kind == StageKind.GENERATING_THUMBNAIL:
        return GENERATING_POSTER
    if kind == StageKind.GENERATING_POSTER:
        return Stage.transcoding(qualities[0]) if qualities else FINALIZING
    if kind == StageKind.TRANSCODING_QUALITY:
        if current.quality not in qualities:
            raise IllegalStageTransitionError(current.label, "next", reason="quality not on ladder")
        index = list(qualities).index(current.quality)
        if index + 1 < len(qualities):
            return Stage.transcoding(qualities[index + 1])
        return FINALIZING
    if kind == StageKind.FINALIZING:
        return READY
    if kind in TERMINAL_KINDS:
        raise IllegalStageTransitionError(current.label, "next", reason="stage is terminal")
    raise IllegalStageTransitionError(current.label, "next", reason="unknown stage kind")


def check_transition(current: Stage, target: Stage, qualities: Sequence[str]):
    """Raise unless `target` is the direct successor of `current`."""
    expected = next_stage(current, qualities)
    if target != expected:
        raise IllegalStageTransitionError(current.label, target.label)


def total_units(qualities: Sequence[str]) -> int:
    return FIXED_UNITS_BEFORE_TRANSCODE + len(qualities) + FIXED_UNITS_AFTER_TRANSCODE


def completed_units(stage: Stage, qualities: Sequence[str]) -> int:
    """Units of work done once `stage` has succeeded"""
    kind = stage.kind
    if kind == StageKind.UPLOADED:
        return 0
    if kind == StageKind.EXTRACTING_METADATA:
        return 1
    if kind == StageKind.GENERATING_THUMBNAIL:
        return 2
    if kind == StageKind.GENERATING_POSTER:
        return 3
    if kind == StageKind.TRANSCODING_QUALITY:
        return FIXED_UNITS_BEFORE_TRANSCODE + list(qualities).index(stage.quality) + 1
    if kind in (StageKind.FINALIZING, StageKind.READY):
        return total_units(qualities)
    raise IllegalStageTransitionError(stage.label, "progress", reason="failed stage has no progress")


def progress_after(stage: Stage, qualities: Sequence[str]) -> int:
    """Integer percentage complete after `stage` succeeds"""
    return (100 * completed_units(stage, qualities)) // total_units(qualities)
