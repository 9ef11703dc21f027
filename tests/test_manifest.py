"""Tests for export options loading and validation."""

import json
from pathlib import Path

import pytest

from replayforge.manifest import (
    ExportOptions,
    IntroConfig,
    load_manifest,
    options_from_dict,
)
from replayforge.models import ClipRange


class TestIntroConfig:
    def test_defaults(self):
        cfg = IntroConfig()
        assert cfg.enabled is False
        assert cfg.map_name is None
        assert cfg.duration == 4.0


class TestExportOptions:
    def test_defaults(self, demo_file: Path):
        o = ExportOptions(demo_path=demo_file, clips=[ClipRange("a", 0, 64)])
        assert o.playback_speed == 1.0
        assert o.resolution == "1080p"
        assert o.tick_rate is None
        assert o.montage is False
        o.validate()

    def test_missing_demo(self, tmp_path: Path):
        o = ExportOptions(demo_path=tmp_path / "nope.dem", clips=[ClipRange("a", 0, 64)])
        with pytest.raises(ValueError, match="Demo file not found"):
            o.validate()

    def test_no_clips(self, demo_file: Path):
        with pytest.raises(ValueError, match="No clip ranges provided"):
            ExportOptions(demo_path=demo_file, clips=[]).validate()

    @pytest.mark.parametrize("speed", [0, -1.0, 10.5, float("nan"), float("inf")])
    def test_speed_out_of_range(self, demo_file: Path, speed: float):
        o = ExportOptions(demo_path=demo_file, clips=[ClipRange("a", 0, 64)], playback_speed=speed)
        with pytest.raises(ValueError, match="Playback speed"):
            o.validate()

    def test_speed_upper_bound_inclusive(self, demo_file: Path):
        ExportOptions(demo_path=demo_file, clips=[ClipRange("a", 0, 64)], playback_speed=10).validate()

    def test_unset_speed_defaults_to_one(self, demo_file: Path):
        o = ExportOptions(demo_path=demo_file, clips=[ClipRange("a", 0, 64)], playback_speed=None)
        o.validate()
        assert o.playback_speed == 1.0

    def test_end_before_start(self, demo_file: Path):
        o = ExportOptions(demo_path=demo_file, clips=[ClipRange("a", 100, 100)])
        with pytest.raises(ValueError, match="not after its start tick"):
            o.validate()

    def test_duplicate_ids(self, demo_file: Path):
        o = ExportOptions(
            demo_path=demo_file, clips=[ClipRange("a", 0, 64), ClipRange("a", 100, 164)]
        )
        with pytest.raises(ValueError, match="Duplicate clip id"):
            o.validate()

    def test_ids_with_same_output_name(self, demo_file: Path):
        o = ExportOptions(
            demo_path=demo_file, clips=[ClipRange("a b", 0, 64), ClipRange("a_b", 100, 164)]
        )
        with pytest.raises(ValueError, match="both map to the output name 'a_b'"):
            o.validate()

    def test_negative_fade(self, demo_file: Path):
        o = ExportOptions(demo_path=demo_file, clips=[ClipRange("a", 0, 64)], fade_duration=-1)
        with pytest.raises(ValueError, match="Fade duration"):
            o.validate()

    def test_nan_fade(self, demo_file: Path):
        o = ExportOptions(
            demo_path=demo_file, clips=[ClipRange("a", 0, 64)], fade_duration=float("nan")
        )
        with pytest.raises(ValueError, match="Fade duration"):
            o.validate()

    @pytest.mark.parametrize("duration", [0, -2.0, float("nan")])
    def test_bad_intro_duration(self, demo_file: Path, duration: float):
        intro = IntroConfig(enabled=True, map_name="de_dust2", duration=duration)
        o = ExportOptions(demo_path=demo_file, clips=[ClipRange("a", 0, 64)], intro=intro)
        with pytest.raises(ValueError, match="Intro duration"):
            o.validate()

    def test_unknown_resolution(self, demo_file: Path):
        o = ExportOptions(demo_path=demo_file, clips=[ClipRange("a", 0, 64)], resolution="4k")
        with pytest.raises(ValueError, match="Unknown resolution"):
            o.validate()

    def test_wants_intro_requires_montage_and_map(self, demo_file: Path):
        clips = [ClipRange("a", 0, 64)]
        intro = IntroConfig(enabled=True, map_name="de_dust2")
        assert ExportOptions(demo_path=demo_file, clips=clips, montage=True, intro=intro).wants_intro
        assert not ExportOptions(demo_path=demo_file, clips=clips, montage=False, intro=intro).wants_intro
        assert not ExportOptions(
            demo_path=demo_file, clips=clips, montage=True, intro=IntroConfig(enabled=True)
        ).wants_intro


class TestLoadManifest:
    def test_load_sample(self, sample_manifest_path: Path):
        o = load_manifest(sample_manifest_path)
        assert o.demo_path == Path("match.dem")
        assert o.resolution == "720p"
        assert o.playback_speed == 2.0
        assert o.tick_rate == 128
        assert o.montage is True
        assert o.intro == IntroConfig(enabled=True, map_name="de_mirage", duration=3.0)
        assert o.clips[0] == ClipRange(
            "round 3 ace", 1000, 1640, label="Ace", player_name="s1 mple"
        )
        assert o.clips[1].player_slot == 4

    def test_load_invalid_json(self, tmp_path: Path):
        bad = tmp_path / "bad.json"
        bad.write_text("not json")
        with pytest.raises(json.JSONDecodeError):
            load_manifest(bad)

    def test_load_missing_fields(self, tmp_path: Path):
        incomplete = tmp_path / "incomplete.json"
        incomplete.write_text('{"demo_path": "x.dem"}')
        with pytest.raises(ValueError, match="must contain"):
            load_manifest(incomplete)

    def test_null_speed_and_tick_rate(self):
        o = options_from_dict({
            "demo_path": "x.dem",
            "clips": [{"id": 1, "start_tick": 0, "end_tick": 10}],
            "playback_speed": None,
            "tick_rate": None,
        })
        assert o.playback_speed == 1.0
        assert o.tick_rate is None
        assert o.clips[0].id == "1"
