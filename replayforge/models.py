"""Shared data types used across ReplayForge."""

import enum
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(frozen=True)
class ClipRange:
    """A tick range of the replay to record, optionally from one player's view."""

    id: str
    start_tick: int
    end_tick: int
    label: str | None = None
    player_name: str | None = None
    player_steam_id: str | None = None
    player_slot: int | None = None

    @property
    def ticks(self) -> int:
        return self.end_tick - self.start_tick

    @property
    def has_target_player(self) -> bool:
        return bool(self.player_name) or self.player_slot is not None


class ExportStage(str, enum.Enum):
    LAUNCH = "launch"
    LOAD = "load"
    RECORDING = "recording"
    POST_PROCESSING = "post_processing"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ExportProgress:
    """One progress event emitted by the export pipeline."""

    stage: ExportStage
    current: int
    total: int
    percent: float
    message: str

    def to_dict(self) -> dict:
        return {
            "stage": self.stage.value,
            "current": self.current,
            "total": self.total,
            "percent": round(self.percent, 1),
            "message": self.message,
        }


@dataclass
class ExportResult:
    success: bool
    clips: list[Path] = field(default_factory=list)
    montage: Path | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"success": self.success, "clips": [str(p) for p in self.clips]}
        if self.montage is not None:
            data["montage"] = str(self.montage)
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ProbeResult:
    """Metadata extracted from a media file via ffprobe."""

    duration: float
    width: int
    height: int
    fps: float
    codec_video: str
    has_audio: bool = False
    codec_audio: str | None = None
