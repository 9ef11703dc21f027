"""Export manifest schema — the contract between CLI/API and engine."""

import json
import math
import re
from dataclasses import dataclass, field
from pathlib import Path

from replayforge.models import ClipRange

RESOLUTIONS = {"720p": (1280, 720), "1080p": (1920, 1080)}
DEFAULT_TICK_RATE = 64
MAX_PLAYBACK_SPEED = 10.0

_UNSAFE_ID_RE = re.compile(r"[^A-Za-z0-9_-]")


def safe_clip_id(clip_id: str) -> str:
    return _UNSAFE_ID_RE.sub("_", clip_id)


@dataclass
class IntroConfig:
    """Cinematic map fly-over placed before the first clip of a montage."""

    enabled: bool = False
    map_name: str | None = None
    duration: float = 4.0


@dataclass
class ExportOptions:
    """Everything one export session needs to know."""

    demo_path: Path
    clips: list[ClipRange]
    output_dir: Path | None = None
    resolution: str = "1080p"
    playback_speed: float = 1.0
    montage: bool = False
    fade_duration: float = 0.5
    tick_rate: int | None = None
    fps: int = 60
    intro: IntroConfig = field(default_factory=IntroConfig)

    @property
    def wants_intro(self) -> bool:
        return self.intro.enabled and bool(self.intro.map_name) and self.montage

    def validate(self) -> None:
        """Raise ValueError describing the first problem found."""
        if not Path(self.demo_path).exists():
            raise ValueError(f"Demo file not found: {self.demo_path}")
        if not self.clips:
            raise ValueError("No clip ranges provided")
        if self.playback_speed is None:
            self.playback_speed = 1.0
        if not math.isfinite(self.playback_speed) or not 0 < self.playback_speed <= MAX_PLAYBACK_SPEED:
            raise ValueError("Playback speed must be between 0.1 and 10")
        if self.resolution not in RESOLUTIONS:
            raise ValueError(
                f"Unknown resolution preset {self.resolution!r}; "
                f"expected one of {sorted(RESOLUTIONS)}"
            )
        if not math.isfinite(self.fade_duration) or self.fade_duration < 0:
            raise ValueError("Fade duration must not be negative")
        if self.tick_rate is not None and self.tick_rate <= 0:
            raise ValueError("Tick rate must be positive")
        if self.intro.enabled and (
            not math.isfinite(self.intro.duration) or self.intro.duration <= 0
        ):
            raise ValueError("Intro duration must be positive")

        # Output files are named by safe id.
        seen: dict[str, str] = {}
        for clip in self.clips:
            if clip.end_tick <= clip.start_tick:
                raise ValueError(
                    f"Clip {clip.id!r} ends at tick {clip.end_tick}, "
                    f"which is not after its start tick {clip.start_tick}"
                )
            safe_id = safe_clip_id(clip.id)
            if clip.id in seen.values():
                raise ValueError(f"Duplicate clip id {clip.id!r}")
            if safe_id in seen:
                raise ValueError(
                    f"Clip ids {seen[safe_id]!r} and {clip.id!r} both map to "
                    f"the output name {safe_id!r}"
                )
            seen[safe_id] = clip.id


def clip_from_dict(data: dict) -> ClipRange:
    slot = data.get("player_slot")
    return ClipRange(
        id=str(data["id"]),
        start_tick=int(data["start_tick"]),
        end_tick=int(data["end_tick"]),
        label=data.get("label"),
        player_name=data.get("player_name"),
        player_steam_id=data.get("player_steam_id"),
        player_slot=int(slot) if slot is not None else None,
    )


def options_from_dict(data: dict) -> ExportOptions:
    """Build ExportOptions from a decoded JSON object."""
    if "demo_path" not in data or "clips" not in data:
        raise ValueError("Manifest must contain 'demo_path' and 'clips' fields")

    intro = IntroConfig(**data["intro"]) if "intro" in data else IntroConfig()
    output_dir = data.get("output_dir")
    speed = data.get("playback_speed")

    return ExportOptions(
        demo_path=Path(data["demo_path"]),
        clips=[clip_from_dict(c) for c in data["clips"]],
        output_dir=Path(output_dir) if output_dir else None,
        resolution=data.get("resolution", "1080p"),
        playback_speed=float(speed) if speed is not None else 1.0,
        montage=bool(data.get("montage", False)),
        fade_duration=float(data.get("fade_duration", 0.5)),
        tick_rate=int(data["tick_rate"]) if data.get("tick_rate") else None,
        fps=int(data.get("fps", 60)),
        intro=intro,
    )


def load_manifest(path: str | Path) -> ExportOptions:
    """Load export options from a JSON file."""
    path = Path(path)
    data = json.loads(path.read_text())
    return options_from_dict(data)
