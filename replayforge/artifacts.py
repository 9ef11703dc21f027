"""Locate the directory the capture layer actually wrote frames into.

The capture layer is told where to write, but it nests each recording in a
"take" folder of its own choosing and sometimes falls back to a default
location next to the game.  The search here is pure: it looks only at the
paths it is handed.
"""

import os
from pathlib import Path
from typing import Callable, Iterable

FRAME_EXTENSION = ".tga"
DEFAULT_TAKE_FOLDER = "untitled_rec"


class FramesNotFoundError(RuntimeError):
    """Raised when no candidate directory holds any captured frame."""

    def __init__(self, clip_id: str, checked: list[Path]) -> None:
        self.clip_id = clip_id
        self.checked = checked
        listing = "\n".join(f"  - {p}" for p in checked) or "  (no candidates)"
        super().__init__(
            f"Recording failed: no frames captured for {clip_id}. Checked:\n{listing}"
        )


def has_extension(extension: str) -> Callable[[str], bool]:
    ext = extension.lower()
    return lambda name: name.lower().endswith(ext)


def candidate_roots(
    capture_dir: Path, clip_id: str, game_exe: Path | None = None
) -> list[Path]:
    """Directories worth searching for a clip's frames, most likely first."""
    roots = [capture_dir, capture_dir.parent / DEFAULT_TAKE_FOLDER]
    if game_exe is not None:
        exe_dir = game_exe.parent
        roots.append(exe_dir / clip_id)
        roots.append(exe_dir.parent / clip_id)
    return list(dict.fromkeys(roots))


def find_frame_dir(
    roots: Iterable[Path], predicate: Callable[[str], bool]
) -> Path | None:
    """Depth-first search; first directory with a matching file wins."""
    for root in roots:
        if not root.is_dir():
            continue
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            if any(predicate(name) for name in filenames):
                return Path(dirpath)
    return None


def locate_frames(
    roots: list[Path], clip_id: str, extension: str = FRAME_EXTENSION
) -> Path:
    """Like :func:`find_frame_dir` but raises with every checked path."""
    found = find_frame_dir(roots, has_extension(extension))
    if found is None:
        raise FramesNotFoundError(clip_id, list(roots))
    return found
