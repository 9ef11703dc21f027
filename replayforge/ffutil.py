"""FFmpeg/ffprobe subprocess helpers."""

import json
import logging
import re
import shutil
import subprocess
from pathlib import Path

from replayforge.models import ProbeResult

logger = logging.getLogger(__name__)

FRAME_EXTENSIONS = (".tga", ".png", ".jpg", ".jpeg", ".bmp")
ATEMPO_MIN = 0.5
ATEMPO_MAX = 2.0

_FRAME_NAME_RE = re.compile(r"^(.*?)(\d+)(\.[A-Za-z0-9]+)$")


class FFmpegNotFoundError(RuntimeError):
    pass


class EncoderError(RuntimeError):
    """Raised when ffmpeg exits non-zero or produces no output file."""


def detect_frame_pattern(frame_dir: Path) -> tuple[str, int, int]:
    """Return ``(printf_pattern, start_number, frame_count)`` for a frame dir.

    The zero-padded numeric pattern is taken from the first frame in sorted
    listing order, e.g. ``00000.tga`` -> ``("%05d.tga", 0, n)``.
    """
    frames = sorted(
        p.name for p in frame_dir.iterdir()
        if p.is_file() and p.suffix.lower() in FRAME_EXTENSIONS
    ) if frame_dir.is_dir() else []
    if not frames:
        raise EncoderError(f"No frames found in {frame_dir}")

    m = _FRAME_NAME_RE.match(frames[0])
    if m is None:
        raise EncoderError(f"Frame {frames[0]!r} in {frame_dir} has no frame number")
    prefix, digits, ext = m.groups()
    pattern = f"{prefix.replace('%', '%%')}%0{len(digits)}d{ext}"
    return pattern, int(digits), len(frames)


def atempo_chain(speed: float) -> list[float]:
    """Split an audio tempo of ``1/speed`` into stages ffmpeg's atempo accepts.

    atempo only takes multipliers in [0.5, 2.0]; larger changes are chained,
    e.g. speed 4 -> [0.5, 0.5] and speed 0.25 -> [2.0, 2.0].
    """
    if speed <= 0:
        raise ValueError(f"speed must be positive, got {speed}")
    remaining = 1.0 / speed
    stages: list[float] = []
    while remaining < ATEMPO_MIN:
        stages.append(ATEMPO_MIN)
        remaining /= ATEMPO_MIN
    while remaining > ATEMPO_MAX:
        stages.append(ATEMPO_MAX)
        remaining /= ATEMPO_MAX
    stages.append(remaining)
    return stages


def xfade_offsets(durations: list[float], fade: float) -> list[float]:
    """Offsets for chaining xfade over clips of the given durations.

    Each offset is measured from the start of the previous transition's
    output: ``d0 - fade`` for the first pair, then ``+ d_i - fade`` per clip.
    Every step is clamped at zero, so offsets are >= 0 and non-decreasing.
    """
    offsets: list[float] = []
    offset = 0.0
    for duration in durations[:-1]:
        offset += max(0.0, duration - fade)
        offsets.append(offset)
    return offsets


def escape_drawtext(text: str) -> str:
    return text.replace("\\", "\\\\").replace(":", "\\:").replace("'", "\\'")


def _concat_line(path: Path) -> str:
    quoted = str(Path(path).resolve()).replace("'", "'\\''")
    return f"file '{quoted}'"


class Encoder:
    """Thin wrapper over the ffmpeg/ffprobe binaries.

    Args:
        ffmpeg: ffmpeg executable name or path.
        ffprobe: ffprobe executable name or path.
        fps: Frame rate used when re-timing inputs for crossfades.
    """

    def __init__(self, ffmpeg: str = "ffmpeg", ffprobe: str = "ffprobe", fps: int = 60) -> None:
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.fps = fps

    def check(self) -> None:
        """Raise FFmpegNotFoundError if ffmpeg/ffprobe are not available."""
        for cmd in (self.ffmpeg, self.ffprobe):
            if shutil.which(cmd) is None:
                raise FFmpegNotFoundError(f"{cmd} not found on PATH")

    def _run(self, cmd: list[str], what: str, output: Path | None = None) -> None:
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise FFmpegNotFoundError(f"{cmd[0]} not found: {exc}") from exc

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise EncoderError(
                f"ffmpeg {what} failed (rc={result.returncode}): {stderr[-2000:]}"
            )
        if output is not None and not Path(output).exists():
            raise EncoderError(f"ffmpeg {what} produced no output at {output}")

    def probe(self, input_path: Path) -> ProbeResult:
        """Extract media metadata via ffprobe."""
        cmd = [
            self.ffprobe,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(input_path),
        ]
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as exc:
            raise EncoderError(f"ffprobe failed for {input_path}: {exc.stderr}") from exc
        data = json.loads(result.stdout)

        video_stream = next(
            (s for s in data["streams"] if s["codec_type"] == "video"), None
        )
        audio_stream = next(
            (s for s in data["streams"] if s["codec_type"] == "audio"), None
        )

        if video_stream is None:
            raise ValueError(f"No video stream found in {input_path}")

        # r_frame_rate looks like "60/1"
        num, den = video_stream.get("r_frame_rate", "0/1").split("/")
        fps = int(num) / int(den) if int(den) else 0.0

        return ProbeResult(
            duration=float(data["format"]["duration"]),
            width=int(video_stream["width"]),
            height=int(video_stream["height"]),
            fps=fps,
            codec_video=video_stream["codec_name"],
            has_audio=audio_stream is not None,
            codec_audio=audio_stream["codec_name"] if audio_stream else None,
        )

    def encode_image_sequence(
        self, frame_dir: Path, fps: int, out_path: Path, speed_factor: float = 1.0
    ) -> Path:
        """Encode a numbered frame sequence into an H.264 video."""
        pattern, start, count = detect_frame_pattern(frame_dir)
        logger.info("Encoding %d frames from %s at %d fps", count, frame_dir, fps)

        cmd = [
            self.ffmpeg, "-y",
            "-framerate", str(fps),
            "-start_number", str(start),
            "-i", str(frame_dir / pattern),
        ]
        if speed_factor > 1:
            cmd += ["-vf", f"setpts={speed_factor}*PTS"]
        cmd += [
            "-c:v", "libx264",
            "-preset", "fast",
            "-pix_fmt", "yuv420p",
            str(out_path),
        ]
        self._run(cmd, "image sequence encode", out_path)
        return out_path

    def normalize_speed(self, input_path: Path, speed: float, output_path: Path) -> Path:
        """Re-time a clip recorded at *speed* so it plays back at 1x."""
        cmd = [
            self.ffmpeg, "-y",
            "-i", str(input_path),
            "-vf", f"setpts={speed}*PTS",
        ]
        if self.probe(input_path).has_audio:
            cmd += [
                "-af", ",".join(f"atempo={s:.6g}" for s in atempo_chain(speed)),
                "-c:a", "aac",
            ]
        cmd += [
            "-c:v", "libx264",
            "-preset", "fast",
            str(output_path),
        ]
        self._run(cmd, "speed normalization", output_path)
        return output_path

    def create_montage(
        self, clip_paths: list[Path], output_path: Path, fade_seconds: float
    ) -> Path:
        """Join clips end-to-end, cross-fading when *fade_seconds* > 0."""
        if not clip_paths:
            raise ValueError("create_montage called with no clips")
        output_path.parent.mkdir(parents=True, exist_ok=True)

        if len(clip_paths) == 1:
            shutil.copy2(clip_paths[0], output_path)
            return output_path

        if fade_seconds <= 0:
            self._concat(clip_paths, output_path)
        else:
            self._crossfade(clip_paths, output_path, fade_seconds)
        return output_path

    def _concat(self, clip_paths: list[Path], output_path: Path) -> None:
        manifest = output_path.with_name(f"{output_path.stem}_concat.txt")
        manifest.write_text(
            "\n".join(_concat_line(p) for p in clip_paths) + "\n", encoding="utf-8"
        )
        cmd = [
            self.ffmpeg, "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", str(manifest),
            "-c", "copy",
            str(output_path),
        ]
        try:
            self._run(cmd, "montage concat", output_path)
        finally:
            manifest.unlink(missing_ok=True)

    def _crossfade(self, clip_paths: list[Path], output_path: Path, fade: float) -> None:
        probes = [self.probe(p) for p in clip_paths]
        offsets = xfade_offsets([p.duration for p in probes], fade)
        with_audio = all(p.has_audio for p in probes)

        filter_parts: list[str] = []
        for i in range(len(clip_paths)):
            filter_parts.append(f"[{i}:v]settb=AVTB,fps={self.fps},format=yuv420p[s{i}]")

        last = "s0"
        for i, offset in enumerate(offsets, 1):
            label = "outv" if i == len(offsets) else f"v{i}"
            filter_parts.append(
                f"[{last}][s{i}]xfade=transition=fade:duration={fade}:offset={offset:.3f}[{label}]"
            )
            last = label

        if with_audio:
            last_a = "0:a"
            for i in range(1, len(clip_paths)):
                label = "outa" if i == len(clip_paths) - 1 else f"a{i}"
                filter_parts.append(f"[{last_a}][{i}:a]acrossfade=d={fade}[{label}]")
                last_a = label

        cmd = [self.ffmpeg, "-y"]
        for p in clip_paths:
            cmd += ["-i", str(p)]
        cmd += [
            "-filter_complex", ";\n".join(filter_parts),
            "-map", "[outv]",
        ]
        if with_audio:
            cmd += ["-map", "[outa]", "-c:a", "aac"]
        cmd += [
            "-c:v", "libx264",
            "-preset", "medium",
            "-crf", "18",
            str(output_path),
        ]
        self._run(cmd, "montage crossfade", output_path)

    def split_video(
        self, input_path: Path, boundary: float, head_out: Path, tail_out: Path
    ) -> None:
        """Cut *input_path* at *boundary* seconds into two separately encoded files."""
        encode = ["-c:v", "libx264", "-preset", "medium", "-crf", "18", "-c:a", "aac"]
        head_cmd = [
            self.ffmpeg, "-y",
            "-ss", "0",
            "-to", f"{boundary:.3f}",
            "-i", str(input_path),
            *encode,
            str(head_out),
        ]
        tail_cmd = [
            self.ffmpeg, "-y",
            "-ss", f"{boundary:.3f}",
            "-i", str(input_path),
            *encode,
            str(tail_out),
        ]
        self._run(head_cmd, "split (head)", head_out)
        self._run(tail_cmd, "split (tail)", tail_out)

    def apply_intro_effects(
        self,
        raw_path: Path,
        title: str,
        output_path: Path,
        fade_seconds: float,
        fontfile: str | None = None,
    ) -> Path:
        """Fade in and overlay a title banner on an intro clip."""
        text = escape_drawtext(title.upper())
        font = f"fontfile='{escape_drawtext(fontfile)}':" if fontfile else ""
        vf = ",".join([
            f"fade=t=in:st=0:d={fade_seconds}",
            "drawbox=y=(ih/3-40):color=black@0.7:width=iw:height=80:t=fill",
            f"drawtext=text='{text}':{font}fontsize=48:fontcolor=white"
            ":x=(w-text_w)/2:y=(h/3-text_h/2)"
            ":shadowcolor=black@0.8:shadowx=2:shadowy=2",
        ])
        cmd = [
            self.ffmpeg, "-y",
            "-i", str(raw_path),
            "-vf", vf,
            "-c:v", "libx264",
            "-preset", "medium",
            "-crf", "18",
            "-c:a", "copy",
            str(output_path),
        ]
        self._run(cmd, "intro drawtext", output_path)
        return output_path
