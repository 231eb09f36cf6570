"""
Local storage for downloaded chunk assets.

Files are named deterministically from a short hash of the prompt plus the
chunk coordinates (``chunk_<hash8>_<x>_<y>.spz``) and served by the
``/chunks/<filename>`` route.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from gridworld.utils import prompt_hash

logger = logging.getLogger("gridworld.assets")

PUBLIC_PREFIX = "/chunks"
ASSET_EXTENSION = ".spz"


class AssetStorage:
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def filename_for(x: int, y: int, prompt: str) -> str:
        return f"chunk_{prompt_hash(prompt)}_{x}_{y}{ASSET_EXTENSION}"

    @staticmethod
    def public_path(filename: str) -> str:
        return f"{PUBLIC_PREFIX}/{filename}"

    def path_for(self, filename: str) -> Path:
        return self.root / filename

    def save(self, filename: str, data: bytes) -> Path:
        """
        Write an asset atomically: a reader never observes a partial file,
        and the bytes are fsync'ed before the status row says "completed".
        """
        target = self.path_for(filename)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".tmp_", suffix=ASSET_EXTENSION)
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except OSError:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        logger.info("[Assets] Saved %s (%s bytes)", filename, len(data))
        return target

    def delete(self, filename: str) -> bool:
        try:
            self.path_for(filename).unlink()
            return True
        except FileNotFoundError:
            return False

    def delete_for_prompt(self, prompt: str) -> int:
        return self._delete_matching(f"chunk_{prompt_hash(prompt)}_")

    def delete_all(self) -> int:
        return self._delete_matching("")

    def _delete_matching(self, prefix: str) -> int:
        removed = 0
        for path in self.root.iterdir():
            if not path.is_file() or not path.name.startswith(prefix):
                continue
            try:
                path.unlink()
                removed += 1
            except OSError as e:
                logger.warning("[Reset] Failed to remove %s: %s", path.name, e)
        return removed
