"""Shared test fixtures."""

from pathlib import Path

import pytest

from replayforge.manifest import ExportOptions
from replayforge.models import ClipRange
from replayforge.settings import Settings

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def sample_manifest_path() -> Path:
    return FIXTURES_DIR / "sample_manifest.json"


@pytest.fixture
def demo_file(tmp_path: Path) -> Path:
    demo = tmp_path / "match.dem"
    demo.write_bytes(b"HL2DEMO")
    return demo


@pytest.fixture
def game_exe(tmp_path: Path) -> Path:
    exe = tmp_path / "game" / "bin" / "game.exe"
    exe.parent.mkdir(parents=True)
    exe.write_bytes(b"")
    return exe


@pytest.fixture
def settings(tmp_path: Path, game_exe: Path) -> Settings:
    return Settings({
        "game_path": str(game_exe),
        "output_dir": str(tmp_path / "out"),
        "console_port": "2121",
    })


@pytest.fixture
def options(demo_file: Path, tmp_path: Path) -> ExportOptions:
    return ExportOptions(
        demo_path=demo_file,
        clips=[
            ClipRange("clip-1", 0, 640, label="Opening kill"),
            ClipRange("clip 2", 1000, 1320, player_name="some player"),
        ],
        output_dir=tmp_path / "out",
    )


def write_frames(directory: Path, count: int = 3, ext: str = ".tga") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    for i in range(count):
        (directory / f"{i:05d}{ext}").write_bytes(b"\x00")
    return directory
