"""Recording session: drives the game and its capture layer clip by clip.

A :class:`RecordingSession` walks through::

    IDLE -> LAUNCHING_APP -> WAITING_FOR_READY -> DEMO_LOADING
         -> [INTRO_RECORDING]
         -> (SEEK -> CONFIGURE_CAPTURE -> START_CAPTURE -> HOLD
             -> STOP_CAPTURE -> TEARDOWN)*
         -> TERMINATING -> IDLE

Nothing the game does is acknowledged, so every wait below is a fixed or
computed delay rather than a completion signal.
"""

from __future__ import annotations

import enum
import logging
import shutil
import time
from pathlib import Path
from typing import Callable

from replayforge.artifacts import candidate_roots, locate_frames
from replayforge.console import (
    DEFAULT_PORT,
    CommandChannel,
    ConsoleClosedError,
    ConsoleConnectionError,
    DelayPolicy,
)
from replayforge.ffutil import Encoder
from replayforge.manifest import RESOLUTIONS
from replayforge.models import ClipRange
from replayforge.process import GAME_SLOT, GameProcess, ProcessSlot, terminate
from replayforge.settings import Settings
from replayforge.workspace import Workspace

logger = logging.getLogger(__name__)

SAFETY_BUFFER = 0.5
DEMO_SETTLE = 3.0
QUIT_GRACE = 2.0
CAPTURE_FLUSH = 0.6
INTRO_SEEK_TICK = 100
INTRO_PRE_ROLL = 0.5
MID_CAPTURE_SEEK = 0.4

START_CAPTURE = "mirv_streams record start"
STOP_CAPTURE = "mirv_streams record end"
DISABLE_SCREEN = "mirv_streams settings edit afxDefault screen enabled false"

_ConsoleErrors = (ConsoleConnectionError, ConsoleClosedError)
# The camera cut back to the clip only needs a short settle after seeking.
_MID_CAPTURE_POLICY = DelayPolicy().with_rule("demo_gototick", MID_CAPTURE_SEEK)


class GameExitedError(RuntimeError):
    """Raised when the game process is gone before a recording step."""


class RecorderState(enum.Enum):
    IDLE = "idle"
    LAUNCHING_APP = "launching_app"
    WAITING_FOR_READY = "waiting_for_ready"
    DEMO_LOADING = "demo_loading"
    INTRO_RECORDING = "intro_recording"
    SEEK = "seek"
    CONFIGURE_CAPTURE = "configure_capture"
    START_CAPTURE = "start_capture"
    HOLD = "hold"
    STOP_CAPTURE = "stop_capture"
    TEARDOWN = "teardown"
    TERMINATING = "terminating"


def hold_duration(
    clip: ClipRange, tick_rate: int, speed: float, safety_buffer: float = SAFETY_BUFFER
) -> float:
    """Wall-clock seconds to keep capturing for *clip* at *speed*."""
    return clip.ticks / tick_rate / speed + safety_buffer


def console_path(path: Path) -> str:
    return str(path).replace("\\", "/")


def quote_arg(value: str) -> str:
    return f'"{value}"' if any(ch.isspace() for ch in value) else value


def spectate_commands(clip: ClipRange) -> list[str]:
    """Point the camera at the clip's player.

    Issued twice: the game does not always honour a single spec_player.
    A numeric slot is preferred, then the Steam id, then the name.
    """
    if clip.player_slot is not None:
        target = str(clip.player_slot)
    elif clip.player_steam_id:
        target = str(clip.player_steam_id)
    elif clip.player_name:
        target = quote_arg(clip.player_name)
    else:
        return []
    return [f"spec_player {target}", f"spec_player {target}"]


def capture_commands(frames_dir: Path, fps: int) -> list[str]:
    return [
        f"mirv_streams record fps {fps}",
        "mirv_streams settings edit afxDefault format tga",
        "mirv_streams settings edit afxDefault screen enabled true",
        f'mirv_streams settings edit afxDefault screen path "{console_path(frames_dir)}"',
    ]


def camera_commands(pitch: int) -> list[str]:
    return [
        "mirv_cam enable 1",
        "mirv_cam setpos 0 0 1200",
        f"mirv_cam setang {pitch} 180 0",
        "mirv_cam drive 1",
        "mirv_cam drive speed 40",
    ]


def launch_args(resolution: str, port: int) -> list[str]:
    width, height = RESOLUTIONS[resolution]
    return [
        "-windowed",
        "-noborder",
        "-w", str(width),
        "-h", str(height),
        "-novid",
        "-console",
        "-insecure",
        "-usercon",
        "-netconport", str(port),
        "-nosound",
    ]


class RecordingSession:
    """Owns one game process and records clips through its console.

    Args:
        settings: Injected configuration (``game_path``, ``console_port``, ...).
        workspace: Scratch directory for raw frames and intermediate encodes.
        channel: Console channel; built from ``console_port`` when omitted.
        encoder: ffmpeg wrapper; built from ``ffmpeg_path``/``ffprobe_path``.
        slot: Exclusivity slot; a new launch evicts whatever occupies it.
        fps: Capture frame rate.
        on_state: Optional callback(state) invoked on every transition.
    """

    def __init__(
        self,
        settings: Settings,
        workspace: Workspace,
        channel: CommandChannel | None = None,
        encoder: Encoder | None = None,
        slot: ProcessSlot = GAME_SLOT,
        fps: int = 60,
        on_state: Callable[[RecorderState], None] | None = None,
    ) -> None:
        self.settings = settings
        self.workspace = workspace
        self.port = settings.get_int("console_port", DEFAULT_PORT)
        self.channel = channel or CommandChannel(port=self.port)
        self.encoder = encoder or Encoder(
            ffmpeg=settings.get("ffmpeg_path", "ffmpeg"),
            ffprobe=settings.get("ffprobe_path", "ffprobe"),
            fps=fps,
        )
        self.slot = slot
        self.fps = fps
        self.on_state = on_state
        self.clean_script = settings.get("clean_capture_cfg", "clean_capture")
        self.restore_script = settings.get("restore_capture_cfg", "restore_capture")
        self.state = RecorderState.IDLE
        self.process: GameProcess | None = None
        self.game_exe: Path | None = None

    # -- Lifecycle -----------------------------------------------------

    def _enter(self, state: RecorderState) -> None:
        logger.debug("Recorder state: %s -> %s", self.state.value, state.value)
        self.state = state
        if self.on_state:
            self.on_state(state)

    def launch(self, resolution: str = "1080p") -> None:
        """Spawn the game detached, keeping its handle for termination."""
        self._enter(RecorderState.LAUNCHING_APP)
        exe = self.settings.require_path("game_path", "Game")
        self.slot.evict()
        self.process = GameProcess.launch(exe, launch_args(resolution, self.port))
        self.process.add_exit_listener(self._on_game_exit)
        self.slot.claim(self.process)
        self.game_exe = exe

    def _on_game_exit(self, code: int) -> None:
        logger.warning("Game exited unexpectedly with code %d", code)

    def _ensure_running(self) -> None:
        if self.process is not None and not self.process.alive:
            self.process.notify_exit()
            raise GameExitedError(
                f"Game (PID {self.process.pid}) exited before recording could continue"
            )

    def wait_until_ready(self, retries: int = 10, interval: float = 1.0) -> None:
        self._enter(RecorderState.WAITING_FOR_READY)
        try:
            self.channel.wait_for_ready(retries, interval)
        except ConsoleConnectionError as exc:
            raise ConsoleConnectionError(
                f"Game failed to open its console port: {exc}. "
                f"Make sure the game isn't already running."
            ) from exc

    def start(self, resolution: str = "1080p") -> None:
        self.launch(resolution)
        self.wait_until_ready()

    def load_demo(self, demo_path: Path) -> None:
        self._enter(RecorderState.DEMO_LOADING)
        self.channel.send(f'playdemo "{console_path(demo_path)}"')
        # Load time is not observable; this only estimates it.
        time.sleep(DEMO_SETTLE)

    def terminate(self, grace: float = QUIT_GRACE) -> None:
        """Ask the game to quit, then force-kill it after *grace* seconds.

        Safe to call when nothing was launched and safe to call twice.
        """
        process, self.process = self.process, None
        if process is None:
            self.state = RecorderState.IDLE
            return

        self._enter(RecorderState.TERMINATING)
        # Exit from here on is expected.
        process.remove_listeners()
        if process.alive:
            try:
                self.channel.send("quit")
            except _ConsoleErrors as exc:
                logger.warning("quit over console failed (%s), interrupting PID %d", exc, process.pid)
                process.interrupt()
        terminate(process, grace)
        self.slot.release(process)
        self._enter(RecorderState.IDLE)

    def __enter__(self) -> "RecordingSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.terminate()
        return False

    # -- Helpers -------------------------------------------------------

    def _best_effort(self, commands: list[str], what: str) -> None:
        try:
            self.channel.send_batch(commands)
        except _ConsoleErrors as exc:
            logger.warning("%s failed: %s", what, exc)

    def _clean_ui(self) -> None:
        self._best_effort([f"exec {self.clean_script}"], "Clean capture script")

    def _restore_ui(self) -> None:
        self._best_effort([f"exec {self.restore_script}"], "Restore capture script")

    def _frame_roots(self, frames_dir: Path, clip_id: str) -> list[Path]:
        return candidate_roots(frames_dir, clip_id, self.game_exe)

    # -- Recording -----------------------------------------------------

    def record_clip(
        self, clip: ClipRange, speed: float, tick_rate: int, safe_id: str
    ) -> Path:
        """Record one clip and return its 1x-encoded (not yet re-timed) video.

        Raises
        ------
        GameExitedError
            If the game is no longer running.
        FramesNotFoundError
            If the capture layer wrote no frames anywhere we looked.
        """
        self._ensure_running()
        frames_dir = self.workspace.raw_dir(safe_id)
        video_path = self.workspace.file(f"{safe_id}.mp4")

        self._enter(RecorderState.SEEK)
        self.channel.send_batch([
            STOP_CAPTURE,
            DISABLE_SCREEN,
            "mirv_cam drive 0",
            "mirv_cam enable 0",
            "demo_pause",
            f"demo_gototick {clip.start_tick}",
            *spectate_commands(clip),
        ])

        self._enter(RecorderState.CONFIGURE_CAPTURE)
        self.channel.send_batch([
            f"demo_timescale {speed:g}",
            *capture_commands(frames_dir, self.fps),
        ])
        self._clean_ui()

        self._enter(RecorderState.START_CAPTURE)
        self.channel.send_batch([START_CAPTURE, "demo_resume"])

        self._enter(RecorderState.HOLD)
        hold = hold_duration(clip, tick_rate, speed)
        logger.info("Recording %s for %.1fs", safe_id, hold)
        time.sleep(hold)

        self._enter(RecorderState.STOP_CAPTURE)
        self.channel.send_batch([STOP_CAPTURE, "demo_pause", DISABLE_SCREEN, "demo_timescale 1"])
        self._restore_ui()

        self._enter(RecorderState.TEARDOWN)
        found = locate_frames(self._frame_roots(frames_dir, safe_id), safe_id)
        self.encoder.encode_image_sequence(found, self.fps, video_path, 1.0)

        try:
            shutil.rmtree(frames_dir)
        except OSError as exc:
            logger.warning("Failed to clean up frames for %s: %s", safe_id, exc)
        return video_path

    def record_intro(self, title: str, duration: float) -> Path | None:
        """Capture a free-camera fly-over; returns the frame dir or None."""
        self._enter(RecorderState.INTRO_RECORDING)
        frames_dir = self.workspace.raw_dir("map_intro")
        started = False
        try:
            self.channel.send_batch([
                "spec_mode 5",
                "spec_mode 6",
                "demo_pause",
                f"demo_gototick {INTRO_SEEK_TICK}",
            ], base_delay=0.2)
            self._clean_ui()
            self.channel.send_batch(
                [*camera_commands(45), *capture_commands(frames_dir, self.fps)], base_delay=0.2
            )
            self.channel.send(START_CAPTURE)
            started = True

            time.sleep(duration)
            return locate_frames(self._frame_roots(frames_dir, "map_intro"), "map_intro")
        except Exception as exc:
            logger.warning("Intro recording for %s failed: %s", title, exc)
            return None
        finally:
            cleanup = [STOP_CAPTURE] if started else []
            cleanup += [DISABLE_SCREEN, "mirv_cam drive 0", "mirv_cam enable 0", "demo_timescale 1"]
            self._best_effort(cleanup, "Intro capture cleanup")
            self._restore_ui()

    def record_intro_plus_first_clip(
        self,
        demo_path: Path,
        clip: ClipRange,
        speed: float,
        tick_rate: int,
        intro_seconds: float,
        pre_roll: float = INTRO_PRE_ROLL,
    ) -> tuple[Path, Path] | None:
        """Record the intro and the first clip in one continuous capture.

        The combined take is encoded, re-timed to 1x and split at the intro
        boundary, so the returned first-clip video is already normalised.
        Returns ``(intro_video, clip_video)`` or None on any failure.
        """
        self._enter(RecorderState.INTRO_RECORDING)
        seek_tick = max(0, clip.start_tick - round(pre_roll * tick_rate))
        intro_wall = round(intro_seconds * tick_rate) / tick_rate / speed
        clip_wall = clip.ticks / tick_rate / speed
        frames_dir = self.workspace.raw_dir("intro_plus_clip1")
        started = False

        try:
            self.channel.send_batch([
                f'playdemo "{console_path(demo_path)}"',
                f"demo_gototick {seek_tick}",
            ])
            self._clean_ui()
            self.channel.send_batch([
                "spec_mode 6",
                *camera_commands(40),
                *capture_commands(frames_dir, self.fps),
                f"demo_timescale {speed:g}",
            ], base_delay=0.2)
            self.channel.send(START_CAPTURE)
            started = True
            time.sleep(intro_wall)

            self.channel.send_batch([
                "mirv_cam drive 0",
                f"demo_gototick {clip.start_tick}",
                *spectate_commands(clip),
                "mirv_cam enable 0",
            ], base_delay=0.25, policy=_MID_CAPTURE_POLICY)
            time.sleep(clip_wall + 0.3)

            self.channel.send(STOP_CAPTURE)
            started = False
            time.sleep(CAPTURE_FLUSH)

            found = locate_frames(
                self._frame_roots(frames_dir, "intro_plus_clip1"), "intro_plus_clip1"
            )
            raw = self.workspace.file("intro_plus_clip1_raw.mp4")
            normalized = self.workspace.file("intro_plus_clip1_norm.mp4")
            intro_out = self.workspace.file("intro_raw.mp4")
            clip_out = self.workspace.file("clip1.mp4")

            self.encoder.encode_image_sequence(found, self.fps, raw, 1.0)
            self.encoder.normalize_speed(raw, speed, normalized)
            self.encoder.split_video(normalized, intro_seconds, intro_out, clip_out)
            return intro_out, clip_out
        except Exception as exc:
            logger.warning("Combined intro + first clip recording failed: %s", exc)
            return None
        finally:
            cleanup = [STOP_CAPTURE] if started else []
            cleanup += [DISABLE_SCREEN, "mirv_cam drive 0", "mirv_cam enable 0", "demo_timescale 1"]
            self._best_effort(cleanup, "Intro capture cleanup")
            self._restore_ui()
