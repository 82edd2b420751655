"""
Atomic installer: promotes a verified staging area into the live tree.

Commit discipline:
  1. verify every staged payload before touching the live tree;
  2. removed paths that block an added path (a file becoming a directory)
     first, then adds/updates in sorted order, then the remaining removals;
     each live path is renamed into a per-cycle backup directory right before
     it is replaced or removed;
  3. on the first failure, stop and reverse exactly the touched paths from
     their backups, newest first;
  4. persist the new LocalState, then drop the backups.
"""
import errno
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from .crypto import secure_compare
from .errors import (
    IncompleteStagingError,
    InconsistentStateError,
    InstallError,
    SyncCancelled,
    UnsafePathError,
)
from .models import ChangeSet, FileEntry, LocalState, Manifest
from .staging import StagingArea
from .state import StateStore
from .utils import check_relative_path, fsync_dir, fsync_file, sha256_file

logger = logging.getLogger(__name__)

InstallProgress = Callable[[str, int], None]


@dataclass
class _Touched:
    path: str
    live: Path
    backup: Optional[Path] = None
    placed: bool = False
    done: bool = False


def _exists(path: Path) -> bool:
    return os.path.lexists(path)

def _delete(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()

def _copy_into_place(src: Path, dst: Path) -> None:
    """Copy beside dst, fsync, then rename over dst so dst is never truncated."""
    tmp = dst.with_name(f".{dst.name}.nightwatch-tmp")
    if _exists(tmp):
        _delete(tmp)
    try:
        if src.is_dir():
            shutil.copytree(src, tmp)
            for f in tmp.rglob("*"):
                if f.is_file():
                    fsync_file(f)
        else:
            shutil.copy2(src, tmp)
            fsync_file(tmp)
        os.replace(tmp, dst)
    except OSError:
        if _exists(tmp):
            _delete(tmp)
        raise
    _delete(src)

def move_into_place(src: Path, dst: Path) -> None:
    """Rename src to dst, copying when they sit on different filesystems."""
    try:
        os.replace(src, dst)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        logger.info("Cross-device move into %s, falling back to copy", dst)
        _copy_into_place(src, dst)


class Installer:
    def __init__(self, root: Path, store: Optional[StateStore] = None):
        self.root = Path(root).resolve()
        self.store = store or StateStore(self.root)

    def live_path(self, path: str) -> Path:
        """Live location of a manifest path. The leaf itself is not resolved."""
        check_relative_path(path)
        candidate = self.root / path
        parent = candidate.parent.resolve()
        if parent != self.root and not parent.is_relative_to(self.root):
            raise UnsafePathError(f"Path '{path}' escapes install root '{self.root}'.", path)
        return parent / candidate.name

    def verify_staging(self, change_set: ChangeSet, staging: StagingArea, manifest: Manifest) -> None:
        """Raise IncompleteStagingError unless every payload is staged and intact."""
        for path in change_set.fetch_paths:
            entry = manifest.files.get(path)
            if entry is None:
                raise IncompleteStagingError(f"{path} is not listed in the target manifest.", path)
            if entry.is_archive:
                if not _payload_matches(staging.archive_path(path), entry):
                    raise IncompleteStagingError(f"Archive for {path} is missing or corrupt in staging.", path)
                if not staging.tree_path(path).is_dir():
                    raise IncompleteStagingError(f"Archive for {path} was not extracted.", path)
            elif not _payload_matches(staging.tree_path(path), entry):
                raise IncompleteStagingError(f"{path} is missing or corrupt in staging.", path)

    def install(
        self,
        change_set: ChangeSet,
        staging: StagingArea,
        manifest: Manifest,
        *,
        previous: Optional[LocalState] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
        on_progress: Optional[InstallProgress] = None,
    ) -> LocalState:
        """Commit change_set and persist the new LocalState."""
        self.verify_staging(change_set, staging, manifest)
        live: Dict[str, Path] = {
            path: self.live_path(path)
            for path in change_set.fetch_paths + change_set.to_remove
        }
        if previous is None:
            previous = self.store.load_or_empty()
        new_state = LocalState(manifest=manifest, install_generation=previous.install_generation + 1)

        self.store.state_dir.mkdir(parents=True, exist_ok=True)
        backup_dir = Path(tempfile.mkdtemp(prefix="backup-", dir=self.store.state_dir))
        touched: List[_Touched] = []
        created_dirs: List[Path] = []
        synced_dirs: Set[Path] = set()
        current: Optional[str] = None

        # Removed paths that sit where an added path needs a directory go first.
        displaced = _displaced_removals(change_set)

        try:
            for path in displaced:
                self._check_cancel(should_cancel)
                current = path
                record = _Touched(path, live[path])
                touched.append(record)
                self._backup(record, backup_dir)
                record.done = True
                synced_dirs.add(record.live.parent)

            for path in change_set.fetch_paths:
                self._check_cancel(should_cancel)
                current = path
                record = _Touched(path, live[path])
                touched.append(record)
                self._ensure_parent(record.live, created_dirs)
                self._backup(record, backup_dir)
                move_into_place(staging.tree_path(path), record.live)
                record.placed = True
                record.done = True
                synced_dirs.add(record.live.parent)
                if on_progress:
                    on_progress(path, manifest.files[path].size_bytes)

            for path in change_set.to_remove:
                if path in displaced:
                    if on_progress:
                        on_progress(path, 0)
                    continue
                self._check_cancel(should_cancel)
                current = path
                record = _Touched(path, live[path])
                touched.append(record)
                if _exists(record.live):
                    self._backup(record, backup_dir)
                else:
                    logger.info("%s already absent from the live tree", path)
                record.done = True
                synced_dirs.add(record.live.parent)
                if on_progress:
                    on_progress(path, 0)

            for directory in sorted(synced_dirs):
                if not directory.is_dir():
                    continue
                current = str(directory)
                fsync_dir(directory)
            current = None
            self.store.save(new_state)
        except SyncCancelled:
            logger.info("Cancellation honoured during commit; reverting %d paths", len(touched))
            self._abort(touched, created_dirs, backup_dir, None, None)
            raise
        except OSError as e:
            failed = current or str(self.store.path)
            logger.error("Commit failed at %s: %s", failed, e)
            self._abort(touched, created_dirs, backup_dir, failed, e)
            raise InstallError(
                f"Commit failed at {failed}: {e}",
                committed=[r.path for r in touched if r.done],
                failed_path=failed,
            ) from e

        shutil.rmtree(backup_dir)
        logger.info(
            "Committed %d changes (generation %d)", len(change_set), new_state.install_generation
        )
        return new_state

    @staticmethod
    def _check_cancel(should_cancel: Optional[Callable[[], bool]]) -> None:
        if should_cancel and should_cancel():
            raise SyncCancelled("Sync cancelled during commit.")

    def _ensure_parent(self, live: Path, created_dirs: List[Path]) -> None:
        missing: List[Path] = []
        parent = live.parent
        while parent != self.root and not parent.exists():
            missing.append(parent)
            parent = parent.parent
        for directory in reversed(missing):
            directory.mkdir(exist_ok=True)
            created_dirs.append(directory)

    @staticmethod
    def _backup(record: _Touched, backup_dir: Path) -> None:
        if not _exists(record.live):
            return
        backup = backup_dir / record.path
        backup.parent.mkdir(parents=True, exist_ok=True)
        os.replace(record.live, backup)
        record.backup = backup

    def _abort(
        self,
        touched: List[_Touched],
        created_dirs: List[Path],
        backup_dir: Path,
        failed_path: Optional[str],
        cause: Optional[BaseException],
    ) -> None:
        """Reverse touched paths newest first; raise if any cannot be restored."""
        inconsistent: List[str] = []
        restored: Set[Path] = set()
        for record in reversed(touched):
            try:
                if record.placed and _exists(record.live):
                    _delete(record.live)
                if record.backup is not None:
                    if record.live.is_dir() and not record.live.is_symlink() and not any(record.live.iterdir()):
                        # Directory created for an added child that was since reverted.
                        record.live.rmdir()
                    record.live.parent.mkdir(parents=True, exist_ok=True)
                    os.replace(record.backup, record.live)
                    restored.add(record.live)
                logger.info("Reverted %s", record.path)
            except OSError as e:
                logger.error("Could not revert %s: %s", record.path, e)
                inconsistent.append(record.path)

        for directory in reversed(created_dirs):
            if directory in restored:
                continue
            try:
                directory.rmdir()
            except OSError as e:
                logger.debug("Leaving directory %s: %s", directory, e)

        if inconsistent:
            raise InconsistentStateError(
                f"Install left {len(inconsistent)} paths inconsistent; backups kept in {backup_dir}",
                committed=[r.path for r in touched if r.done],
                failed_path=failed_path,
                inconsistent_paths=sorted(inconsistent),
                backup_dir=str(backup_dir),
            ) from cause
        shutil.rmtree(backup_dir, ignore_errors=True)


def _displaced_removals(change_set: ChangeSet) -> List[str]:
    """Removed paths that are ancestors of an added or updated path."""
    removed = set(change_set.to_remove)
    displaced: Set[str] = set()
    for path in change_set.fetch_paths:
        parts = path.split("/")
        for i in range(1, len(parts)):
            ancestor = "/".join(parts[:i])
            if ancestor in removed:
                displaced.add(ancestor)
    return sorted(displaced)

def _payload_matches(path: Path, entry: FileEntry) -> bool:
    return (
        path.is_file()
        and path.stat().st_size == entry.size_bytes
        and secure_compare(sha256_file(path), entry.checksum)
    )
