"""Per-session scratch directory for raw frames and intermediate videos."""

import logging
import shutil
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class Workspace:
    """Temporary directory tree owned by exactly one export session.

    Layout::

        <root>/raw/<clip_id>/   frames written by the capture layer
        <root>/<name>.mp4       intermediate encodes
    """

    def __init__(self, root: Path | None = None, prefix: str = "replayforge_") -> None:
        if root is None:
            root = Path(tempfile.mkdtemp(prefix=prefix))
        else:
            root.mkdir(parents=True, exist_ok=True)
        self.root = root
        logger.debug("Workspace at %s", self.root)

    def raw_dir(self, clip_id: str) -> Path:
        path = self.root / "raw" / clip_id
        path.mkdir(parents=True, exist_ok=True)
        return path

    def file(self, name: str) -> Path:
        return self.root / name

    @property
    def exists(self) -> bool:
        return self.root.exists()

    def cleanup(self) -> None:
        """Remove the tree.  Safe to call any number of times."""
        if not self.root.exists():
            return
        try:
            shutil.rmtree(self.root)
        except OSError as exc:
            logger.error("Failed to remove workspace %s: %s", self.root, exc)

    def __enter__(self) -> "Workspace":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.cleanup()
        return False
