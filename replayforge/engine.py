"""Orchestrator — runs a full clip export defined by ExportOptions."""

import logging
import shutil
from pathlib import Path
from typing import Callable

from replayforge.ffutil import Encoder
from replayforge.manifest import DEFAULT_TICK_RATE, ExportOptions, safe_clip_id
from replayforge.models import ExportProgress, ExportResult, ExportStage
from replayforge.recorder import RecordingSession
from replayforge.settings import Settings
from replayforge.workspace import Workspace

logger = logging.getLogger(__name__)

DEFAULT_OUTPUT_DIR = Path("~/Documents/Demo Clips")
INTRO_FADE = 0.6

ProgressCallback = Callable[[ExportProgress], None]
SessionFactory = Callable[[Settings, Workspace, Encoder, int], RecordingSession]


def _default_session(
    settings: Settings, workspace: Workspace, encoder: Encoder, fps: int
) -> RecordingSession:
    return RecordingSession(settings, workspace, encoder=encoder, fps=fps)


class _Progress:
    """Forwards progress events, never letting the percentage go backwards.

    A failing callback is logged and otherwise ignored; observers cannot
    abort or break an export.
    """

    def __init__(self, callback: ProgressCallback | None) -> None:
        self.callback = callback
        self.percent = 0.0

    def __call__(
        self, stage: ExportStage, percent: float, message: str, current: int = 0, total: int = 0
    ) -> None:
        self.percent = max(self.percent, percent)
        logger.info("[%3.0f%%] %s", self.percent, message)
        if not self.callback:
            return
        try:
            self.callback(ExportProgress(stage, current, total, self.percent, message))
        except Exception:
            logger.exception("Progress callback failed")


def export_clips(
    options: ExportOptions,
    on_progress: ProgressCallback | None = None,
    settings: Settings | None = None,
    session_factory: SessionFactory | None = None,
    encoder: Encoder | None = None,
) -> ExportResult:
    """Record every clip in *options* and post-process them into videos.

    Never raises: any failure terminates the game, removes the workspace and
    is reported as ``ExportResult(success=False, error=...)``.

    Args:
        options: Export request; validated before anything is spawned.
        on_progress: Optional callback receiving ExportProgress events.
        settings: Injected configuration; empty settings when omitted.
        session_factory: Builds the RecordingSession (tests inject fakes).
        encoder: ffmpeg wrapper shared by the session and post-processing.
    """
    settings = settings or Settings()
    progress = _Progress(on_progress)
    session: RecordingSession | None = None
    workspace: Workspace | None = None

    try:
        options.validate()
        total = len(options.clips)
        speed = options.playback_speed
        tick_rate = options.tick_rate or settings.get_int("tick_rate", DEFAULT_TICK_RATE)
        encoder = encoder or Encoder(
            ffmpeg=settings.get("ffmpeg_path", "ffmpeg"),
            ffprobe=settings.get("ffprobe_path", "ffprobe"),
            fps=options.fps,
        )

        output_dir = Path(
            options.output_dir or settings.get("output_dir", str(DEFAULT_OUTPUT_DIR))
        ).expanduser()
        demo_name = Path(options.demo_path).stem
        clip_dir = output_dir / demo_name / "clips"
        clip_dir.mkdir(parents=True, exist_ok=True)
        workspace = Workspace()

        factory = session_factory or _default_session
        session = factory(settings, workspace, encoder, options.fps)

        # --- Launch & load ---
        progress(ExportStage.LAUNCH, 5, "Launching game...", 0, total)
        session.start(options.resolution)

        progress(ExportStage.LOAD, 15, "Loading demo...", 0, total)
        session.load_demo(Path(options.demo_path))

        # --- Intro ---
        intro_raw: Path | None = None
        first_clip_ready: Path | None = None
        if options.wants_intro:
            progress(ExportStage.RECORDING, 17, "Recording cinematic map intro...", 0, total + 1)
            combined = session.record_intro_plus_first_clip(
                Path(options.demo_path), options.clips[0], speed, tick_rate, options.intro.duration
            )
            if combined is not None:
                intro_raw, first_clip_ready = combined
            else:
                logger.warning("Falling back to a standalone intro recording")
                intro_raw = session.record_intro(options.intro.map_name, options.intro.duration)

        # --- Record clips ---
        raw_clips: list[Path] = []
        final_paths: list[Path] = []
        for i, clip in enumerate(options.clips):
            safe_id = safe_clip_id(clip.id)
            final_paths.append(clip_dir / f"{safe_id}.mp4")
            if i == 0 and first_clip_ready is not None:
                raw_clips.append(first_clip_ready)
                continue

            progress(
                ExportStage.RECORDING,
                20 + (i / total) * 60,
                f"Recording clip {i + 1}/{total}: {clip.label or clip.id}...",
                i + 1,
                total,
            )
            raw_clips.append(session.record_clip(clip, speed, tick_rate, safe_id))

        session.terminate()

        # --- Post-process ---
        progress(ExportStage.POST_PROCESSING, 80, "Post-processing clips with ffmpeg...", 0, total)
        for i, (raw, final) in enumerate(zip(raw_clips, final_paths)):
            progress(
                ExportStage.POST_PROCESSING,
                80 + (i / total) * 12,
                f"Processing clip {i + 1}/{total}...",
                i + 1,
                total,
            )
            if raw is first_clip_ready:
                shutil.move(str(raw), final)
            else:
                encoder.normalize_speed(raw, speed, final)

        intro_final: Path | None = None
        if intro_raw is not None:
            progress(ExportStage.POST_PROCESSING, 92, "Processing intro with cinematic effects...", 0, total)
            intro_final = _finish_intro(
                encoder, intro_raw, options, clip_dir, settings.get("intro_font") or None
            )

        montage_path: Path | None = None
        if options.montage:
            progress(ExportStage.POST_PROCESSING, 95, "Creating montage...", 0, total)
            montage_path = output_dir / demo_name / "montage.mp4"
            parts = ([intro_final] if intro_final else []) + final_paths
            encoder.create_montage(parts, montage_path, options.fade_duration)

        workspace.cleanup()
        progress(ExportStage.DONE, 100, "Export complete!", total, total)
        return ExportResult(success=True, clips=final_paths, montage=montage_path)

    except Exception as exc:
        logger.exception("Clip export failed")
        _cleanup(session, workspace)
        message = str(exc) or "Unknown error during clip export"
        progress(ExportStage.FAILED, progress.percent, message)
        return ExportResult(success=False, error=message)


def _finish_intro(
    encoder: Encoder,
    intro_raw: Path,
    options: ExportOptions,
    clip_dir: Path,
    fontfile: str | None,
) -> Path:
    """Turn the raw intro (frame dir or video) into ``intro.mp4`` with a title."""
    raw_mp4 = clip_dir / "intro_raw.mp4"
    final = clip_dir / "intro.mp4"
    if intro_raw.is_dir():
        encoder.encode_image_sequence(intro_raw, options.fps, raw_mp4, 1.0)
    else:
        shutil.copy2(intro_raw, raw_mp4)
    try:
        encoder.apply_intro_effects(raw_mp4, options.intro.map_name or "", final, INTRO_FADE, fontfile)
    finally:
        raw_mp4.unlink(missing_ok=True)
    return final


def _cleanup(session: RecordingSession | None, workspace: Workspace | None) -> None:
    if session is not None:
        try:
            session.terminate()
        except Exception:
            logger.exception("Failed to terminate game during cleanup")
    if workspace is not None:
        workspace.cleanup()
