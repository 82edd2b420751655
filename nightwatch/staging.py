"""
Per-cycle scratch directory for downloads and extracted archives.

Layout under <root>/.nightwatch/staging-XXXX/:
    partial/<path>.part   bytes being transferred
    archives/<path>       verified archive payloads
    tree/<path>           verified files and extracted archive directories

Nothing under tree/ exists unless it passed verification (files) or extraction
(archives). Workers never share a relative path, so directory creation is the
only race and "already exists" counts as success.
"""
import logging
import shutil
import tempfile
from pathlib import Path

from .utils import check_relative_path

logger = logging.getLogger(__name__)


class StagingArea:
    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def create(cls, parent: Path) -> "StagingArea":
        parent.mkdir(parents=True, exist_ok=True)
        path = Path(tempfile.mkdtemp(prefix="staging-", dir=parent))
        logger.debug("Created staging area %s", path)
        return cls(path)

    def __enter__(self) -> "StagingArea":
        return self

    def __exit__(self, *args: object) -> None:
        self.destroy()

    def _under(self, section: str, relative_path: str, suffix: str = "") -> Path:
        check_relative_path(relative_path)
        return self.path / section / (relative_path + suffix)

    def partial_path(self, relative_path: str) -> Path:
        return self._under("partial", relative_path, ".part")

    def archive_path(self, relative_path: str) -> Path:
        return self._under("archives", relative_path)

    def tree_path(self, relative_path: str) -> Path:
        return self._under("tree", relative_path)

    def payload_path(self, relative_path: str, is_archive: bool) -> Path:
        """Where a verified download is promoted to."""
        if is_archive:
            return self.archive_path(relative_path)
        return self.tree_path(relative_path)

    @staticmethod
    def ensure_parent(path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)

    def promote(self, relative_path: str, is_archive: bool) -> Path:
        """Move a verified partial download to its final staging location."""
        target = self.payload_path(relative_path, is_archive)
        self.ensure_parent(target)
        self.partial_path(relative_path).replace(target)
        return target

    def discard(self, relative_path: str) -> None:
        self.partial_path(relative_path).unlink(missing_ok=True)

    def is_empty(self) -> bool:
        return not self.path.exists() or not any(self.path.iterdir())

    def destroy(self) -> None:
        if self.path.exists():
            shutil.rmtree(self.path)
            logger.debug("Destroyed staging area %s", self.path)
