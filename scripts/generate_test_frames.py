#!/usr/bin/env python3
"""Generate a synthetic numbered TGA frame sequence for pipeline testing.

Writes frames the way the capture layer does (``take0000/00000.tga`` ...),
three seconds of colour bars followed by two seconds of a moving test
pattern, so the encode / normalise / montage steps can be run by hand
without the game.
"""

import subprocess
import sys
from pathlib import Path


def generate_test_frames(output_dir: Path, fps: int = 60) -> Path:
    take_dir = output_dir / "take0000"
    take_dir.mkdir(parents=True, exist_ok=True)

    video_filter = (
        f"smptebars=s=320x240:d=3:r={fps}[v0];"
        f"testsrc=s=320x240:d=2:r={fps}[v1];"
        "[v0][v1]concat=n=2:v=1:a=0[vout]"
    )

    cmd = [
        "ffmpeg", "-y",
        "-filter_complex", video_filter,
        "-map", "[vout]",
        "-start_number", "0",
        str(take_dir / "%05d.tga"),
    ]
    subprocess.run(cmd, check=True)
    print(f"Generated: {take_dir}")
    return take_dir


if __name__ == "__main__":
    out = Path(sys.argv[1]) if len(sys.argv) > 1 else Path("tests/fixtures/frames")
    generate_test_frames(out)
