"""Unit tests for ffutil: filter math and ffmpeg command construction."""

import json
import shutil
import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from conftest import write_frames
from replayforge.ffutil import (
    ATEMPO_MAX,
    ATEMPO_MIN,
    Encoder,
    EncoderError,
    FFmpegNotFoundError,
    _concat_line,
    atempo_chain,
    detect_frame_pattern,
    escape_drawtext,
    xfade_offsets,
)


def _probe_json(duration: float = 4.0, audio: bool = False) -> str:
    streams = [{
        "codec_type": "video",
        "codec_name": "h264",
        "width": 1920,
        "height": 1080,
        "r_frame_rate": "60/1",
    }]
    if audio:
        streams.append({"codec_type": "audio", "codec_name": "aac"})
    return json.dumps({"format": {"duration": str(duration)}, "streams": streams})


def fake_run(durations=None, audio=False, calls=None):
    """A subprocess.run stand-in: answers ffprobe, touches ffmpeg's output."""
    durations = list(durations or [])

    def run(cmd, *args, **kwargs):
        if calls is not None:
            calls.append(cmd)
        if cmd[0] == "ffprobe":
            duration = durations.pop(0) if durations else 4.0
            return MagicMock(returncode=0, stdout=_probe_json(duration, audio), stderr="")
        Path(cmd[-1]).touch()
        return MagicMock(returncode=0, stdout="", stderr="")

    return run


def ffmpeg_calls(calls):
    return [c for c in calls if c[0] == "ffmpeg"]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

class TestAtempoChain:
    @pytest.mark.parametrize(
        "speed", [0.1, 0.2, 0.25, 0.3, 0.5, 0.75, 1.0, 1.5, 2.0, 3.0, 4.0, 5.5, 7.3, 10.0]
    )
    def test_stages_in_range_and_product_matches(self, speed):
        stages = atempo_chain(speed)
        assert all(ATEMPO_MIN <= s <= ATEMPO_MAX for s in stages)
        product = 1.0
        for s in stages:
            product *= s
        assert product == pytest.approx(1.0 / speed)

    def test_speed_four(self):
        assert atempo_chain(4.0) == [0.5, 0.5]

    def test_speed_quarter(self):
        assert atempo_chain(0.25) == [2.0, 2.0]

    def test_unity(self):
        assert atempo_chain(1.0) == [1.0]

    def test_non_positive_rejected(self):
        with pytest.raises(ValueError):
            atempo_chain(0)


class TestXfadeOffsets:
    def test_cumulative(self):
        assert xfade_offsets([4.0, 3.0, 5.0], 0.5) == pytest.approx([3.5, 6.0])

    def test_single_clip_has_no_transitions(self):
        assert xfade_offsets([4.0], 0.5) == []

    def test_short_clips_clamped(self):
        offsets = xfade_offsets([0.3, 0.2, 2.0, 0.1, 1.0], 0.5)
        assert all(o >= 0 for o in offsets)
        assert offsets == sorted(offsets)
        assert offsets == pytest.approx([0.0, 0.0, 1.5, 1.5])


class TestDetectFramePattern:
    def test_zero_padded(self, tmp_path):
        frames = write_frames(tmp_path / "take0000", count=4)
        assert detect_frame_pattern(frames) == ("%05d.tga", 0, 4)

    def test_prefix_and_offset_start(self, tmp_path):
        frames = tmp_path / "take"
        frames.mkdir()
        for i in range(12, 15):
            (frames / f"frame_{i:04d}.tga").write_bytes(b"")
        assert detect_frame_pattern(frames) == ("frame_%04d.tga", 12, 3)

    def test_empty_dir(self, tmp_path):
        with pytest.raises(EncoderError, match="No frames found"):
            detect_frame_pattern(tmp_path)

    def test_unnumbered_frame(self, tmp_path):
        (tmp_path / "cover.tga").write_bytes(b"")
        with pytest.raises(EncoderError, match="no frame number"):
            detect_frame_pattern(tmp_path)


def test_escape_drawtext():
    assert escape_drawtext("de_dust2: it's") == "de_dust2\\: it\\'s"


def test_concat_line_escapes_quotes(tmp_path):
    path = tmp_path / "it's.mp4"
    assert _concat_line(path) == f"file '{path.resolve().parent}/it'\\''s.mp4'"


# ---------------------------------------------------------------------------
# Encoder._run error handling
# ---------------------------------------------------------------------------

class TestRun:
    @patch("replayforge.ffutil.subprocess.run")
    def test_nonzero_exit_includes_stderr(self, mock_run, tmp_path):
        mock_run.return_value = MagicMock(returncode=1, stderr="Invalid data found")
        with pytest.raises(EncoderError, match="rc=1.*Invalid data found"):
            Encoder()._run(["ffmpeg", str(tmp_path / "o.mp4")], "encode", tmp_path / "o.mp4")

    @patch("replayforge.ffutil.subprocess.run")
    def test_missing_output(self, mock_run, tmp_path):
        mock_run.return_value = MagicMock(returncode=0, stderr="")
        with pytest.raises(EncoderError, match="produced no output"):
            Encoder()._run(["ffmpeg"], "encode", tmp_path / "o.mp4")

    @patch("replayforge.ffutil.subprocess.run", side_effect=FileNotFoundError("ffmpeg"))
    def test_binary_missing(self, mock_run):
        with pytest.raises(FFmpegNotFoundError):
            Encoder(ffmpeg="/nope/ffmpeg")._run(["/nope/ffmpeg"], "encode")

    @patch("replayforge.ffutil.shutil.which", return_value=None)
    def test_check(self, mock_which):
        with pytest.raises(FFmpegNotFoundError, match="not found on PATH"):
            Encoder().check()


# ---------------------------------------------------------------------------
# probe (mocked subprocess)
# ---------------------------------------------------------------------------

class TestProbe:
    @patch("replayforge.ffutil.subprocess.run")
    def test_basic(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=_probe_json(12.5, audio=True))
        result = Encoder().probe(Path("clip.mp4"))
        assert result.duration == 12.5
        assert result.width == 1920
        assert result.fps == 60.0
        assert result.has_audio
        assert result.codec_audio == "aac"

    @patch("replayforge.ffutil.subprocess.run")
    def test_without_audio(self, mock_run):
        mock_run.return_value = MagicMock(returncode=0, stdout=_probe_json())
        result = Encoder().probe(Path("clip.mp4"))
        assert not result.has_audio
        assert result.codec_audio is None

    @patch("replayforge.ffutil.subprocess.run")
    def test_no_video_stream(self, mock_run):
        data = {"format": {"duration": "1.0"}, "streams": [{"codec_type": "audio", "codec_name": "aac"}]}
        mock_run.return_value = MagicMock(returncode=0, stdout=json.dumps(data))
        with pytest.raises(ValueError, match="No video stream"):
            Encoder().probe(Path("clip.mp4"))

    @patch("replayforge.ffutil.subprocess.run")
    def test_ffprobe_failure(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(1, ["ffprobe"], stderr="bad file")
        with pytest.raises(EncoderError, match="bad file"):
            Encoder().probe(Path("clip.mp4"))


# ---------------------------------------------------------------------------
# Command construction (mocked subprocess)
# ---------------------------------------------------------------------------

class TestEncodeImageSequence:
    @patch("replayforge.ffutil.subprocess.run")
    def test_command_shape(self, mock_run, tmp_path):
        calls = []
        mock_run.side_effect = fake_run(calls=calls)
        frames = write_frames(tmp_path / "take0000")
        out = tmp_path / "clip.mp4"

        assert Encoder().encode_image_sequence(frames, 60, out) == out

        cmd = calls[0]
        assert cmd[cmd.index("-framerate") + 1] == "60"
        assert cmd[cmd.index("-start_number") + 1] == "0"
        assert cmd[cmd.index("-i") + 1] == str(frames / "%05d.tga")
        assert "-vf" not in cmd
        assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
        assert cmd[-1] == str(out)

    @patch("replayforge.ffutil.subprocess.run")
    def test_speed_factor_stretches(self, mock_run, tmp_path):
        calls = []
        mock_run.side_effect = fake_run(calls=calls)
        frames = write_frames(tmp_path / "take0000")

        Encoder().encode_image_sequence(frames, 30, tmp_path / "clip.mp4", speed_factor=2.0)

        cmd = calls[0]
        assert cmd[cmd.index("-vf") + 1] == "setpts=2.0*PTS"


class TestNormalizeSpeed:
    @patch("replayforge.ffutil.subprocess.run")
    def test_video_only(self, mock_run, tmp_path):
        calls = []
        mock_run.side_effect = fake_run(calls=calls)
        out = tmp_path / "final.mp4"

        Encoder().normalize_speed(tmp_path / "raw.mp4", 2.0, out)

        (cmd,) = ffmpeg_calls(calls)
        assert cmd[cmd.index("-vf") + 1] == "setpts=2.0*PTS"
        assert "-af" not in cmd
        assert out.exists()

    @patch("replayforge.ffutil.subprocess.run")
    def test_with_audio_chains_atempo(self, mock_run, tmp_path):
        calls = []
        mock_run.side_effect = fake_run(audio=True, calls=calls)

        Encoder().normalize_speed(tmp_path / "raw.mp4", 4.0, tmp_path / "final.mp4")

        (cmd,) = ffmpeg_calls(calls)
        assert cmd[cmd.index("-af") + 1] == "atempo=0.5,atempo=0.5"
        assert cmd[cmd.index("-c:a") + 1] == "aac"


class TestCreateMontage:
    def test_no_clips(self, tmp_path):
        with pytest.raises(ValueError):
            Encoder().create_montage([], tmp_path / "m.mp4", 0.5)

    @patch("replayforge.ffutil.subprocess.run")
    def test_single_clip_is_copied(self, mock_run, tmp_path):
        clip = tmp_path / "clip.mp4"
        clip.write_bytes(b"video")
        out = tmp_path / "nested" / "montage.mp4"

        Encoder().create_montage([clip], out, 0.5)

        mock_run.assert_not_called()
        assert out.read_bytes() == b"video"

    @patch("replayforge.ffutil.subprocess.run")
    def test_hard_cuts_use_concat_demuxer(self, mock_run, tmp_path):
        clips = [tmp_path / f"c{i}.mp4" for i in range(3)]
        out = tmp_path / "montage.mp4"
        manifest = tmp_path / "montage_concat.txt"
        seen = {}

        def run(cmd, *args, **kwargs):
            seen["cmd"] = cmd
            seen["manifest"] = manifest.read_text(encoding="utf-8")
            out.touch()
            return MagicMock(returncode=0, stderr="")

        mock_run.side_effect = run
        Encoder().create_montage(clips, out, 0)

        mock_run.assert_called_once()
        cmd = seen["cmd"]
        assert cmd[cmd.index("-f") + 1] == "concat"
        assert cmd[cmd.index("-safe") + 1] == "0"
        assert cmd[cmd.index("-c") + 1] == "copy"
        assert seen["manifest"].splitlines() == [_concat_line(c) for c in clips]
        assert not manifest.exists()

    @patch("replayforge.ffutil.subprocess.run")
    def test_concat_manifest_removed_on_failure(self, mock_run, tmp_path):
        mock_run.return_value = MagicMock(returncode=1, stderr="boom")
        out = tmp_path / "montage.mp4"
        with pytest.raises(EncoderError):
            Encoder().create_montage([tmp_path / "a.mp4", tmp_path / "b.mp4"], out, 0)
        assert not (tmp_path / "montage_concat.txt").exists()

    @patch("replayforge.ffutil.subprocess.run")
    def test_crossfade_filter_graph(self, mock_run, tmp_path):
        calls = []
        mock_run.side_effect = fake_run(durations=[4.0, 3.0, 5.0], calls=calls)
        clips = [tmp_path / f"c{i}.mp4" for i in range(3)]

        Encoder(fps=60).create_montage(clips, tmp_path / "montage.mp4", 0.5)

        (cmd,) = ffmpeg_calls(calls)
        graph = cmd[cmd.index("-filter_complex") + 1]
        assert "[0:v]settb=AVTB,fps=60,format=yuv420p[s0]" in graph
        assert "[s0][s1]xfade=transition=fade:duration=0.5:offset=3.500[v1]" in graph
        assert "[v1][s2]xfade=transition=fade:duration=0.5:offset=6.000[outv]" in graph
        assert "acrossfade" not in graph
        assert cmd[cmd.index("-map") + 1] == "[outv]"
        assert "[outa]" not in cmd

    @patch("replayforge.ffutil.subprocess.run")
    def test_crossfade_with_audio(self, mock_run, tmp_path):
        calls = []
        mock_run.side_effect = fake_run(durations=[4.0, 3.0, 5.0], audio=True, calls=calls)
        clips = [tmp_path / f"c{i}.mp4" for i in range(3)]

        Encoder().create_montage(clips, tmp_path / "montage.mp4", 0.5)

        (cmd,) = ffmpeg_calls(calls)
        graph = cmd[cmd.index("-filter_complex") + 1]
        assert "[0:a][1:a]acrossfade=d=0.5[a1]" in graph
        assert "[a1][2:a]acrossfade=d=0.5[outa]" in graph
        assert "[outa]" in cmd


class TestSplitAndIntro:
    @patch("replayforge.ffutil.subprocess.run")
    def test_split_video(self, mock_run, tmp_path):
        calls = []
        mock_run.side_effect = fake_run(calls=calls)
        head, tail = tmp_path / "intro.mp4", tmp_path / "clip1.mp4"

        Encoder().split_video(tmp_path / "combined.mp4", 4.0, head, tail)

        head_cmd, tail_cmd = calls
        assert head_cmd[head_cmd.index("-to") + 1] == "4.000"
        assert head_cmd[-1] == str(head)
        assert tail_cmd[tail_cmd.index("-ss") + 1] == "4.000"
        assert tail_cmd[-1] == str(tail)

    @patch("replayforge.ffutil.subprocess.run")
    def test_intro_effects(self, mock_run, tmp_path):
        calls = []
        mock_run.side_effect = fake_run(calls=calls)

        Encoder().apply_intro_effects(
            tmp_path / "raw.mp4", "de_mirage", tmp_path / "intro.mp4", 0.6, "/fonts/x.ttf"
        )

        vf = calls[0][calls[0].index("-vf") + 1]
        assert vf.startswith("fade=t=in:st=0:d=0.6,drawbox=")
        assert "text='DE_MIRAGE'" in vf
        assert "fontfile='/fonts/x.ttf'" in vf


# ---------------------------------------------------------------------------
# Real ffmpeg, when available
# ---------------------------------------------------------------------------

needs_ffmpeg = pytest.mark.skipif(
    shutil.which("ffmpeg") is None or shutil.which("ffprobe") is None,
    reason="ffmpeg not installed",
)


def _render_frames(directory: Path, seconds: int = 1, fps: int = 30) -> Path:
    directory.mkdir(parents=True)
    subprocess.run(
        [
            "ffmpeg", "-y", "-v", "error",
            "-f", "lavfi", "-i", f"testsrc=size=320x240:rate={fps}:duration={seconds}",
            str(directory / "%05d.tga"),
        ],
        check=True,
        capture_output=True,
    )
    return directory


@needs_ffmpeg
class TestWithFFmpeg:
    def test_frames_to_montage(self, tmp_path):
        enc = Encoder(fps=30)
        clips = []
        for name in ("a", "b"):
            frames = _render_frames(tmp_path / name / "take0000")
            clips.append(enc.encode_image_sequence(frames, 30, tmp_path / f"{name}.mp4"))

        montage = enc.create_montage(clips, tmp_path / "montage.mp4", 0)
        assert enc.probe(montage).duration == pytest.approx(2.0, abs=0.2)

        faded = enc.create_montage(clips, tmp_path / "faded.mp4", 0.5)
        assert enc.probe(faded).duration == pytest.approx(1.5, abs=0.2)

    def test_normalize_at_one_x_is_near_identity(self, tmp_path):
        enc = Encoder(fps=30)
        frames = _render_frames(tmp_path / "take0000", seconds=2)
        raw = enc.encode_image_sequence(frames, 30, tmp_path / "raw.mp4")

        out = enc.normalize_speed(raw, 1.0, tmp_path / "final.mp4")

        before, after = enc.probe(raw), enc.probe(out)
        assert after.duration == pytest.approx(before.duration, abs=0.1)
        assert (after.width, after.height) == (before.width, before.height)
        assert not after.has_audio
