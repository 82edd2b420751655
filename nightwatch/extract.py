"""
Archive extractor.
Unpacks verified ZIP and tar payloads into staging with strict member validation.
"""
import logging
import lzma
import os
import shutil
import tarfile
import zipfile
import zlib
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

from .errors import ExtractError, UnsafePathError
from .staging import StagingArea
from .utils import is_safe_member_name, validate_path

logger = logging.getLogger(__name__)

_ZIP_SYMLINK = 0o120000
_FORMAT_ERRORS = (
    zipfile.BadZipFile,
    tarfile.TarError,
    zlib.error,
    lzma.LZMAError,
    EOFError,
    NotImplementedError,
    OSError,
)

# (member name, is directory)
Member = Tuple[str, bool]


def _check_members(members: List[Member]) -> None:
    for name, _ in members:
        if not is_safe_member_name(name):
            raise ExtractError(f"Archive member '{name}' escapes the extraction directory.")

def _single_root(members: List[Member]) -> Optional[str]:
    """Name of the one top-level directory wrapping every member, if any."""
    roots = set()
    for name, is_dir in members:
        parts = PurePosixPath(name).parts
        if not parts:
            continue
        roots.add(parts[0])
        if len(parts) == 1 and not is_dir:
            return None
    if len(roots) != 1:
        return None
    return roots.pop()

def _relative(name: str, root: Optional[str]) -> str:
    parts = PurePosixPath(name).parts
    if root is not None:
        parts = parts[1:]
    return "/".join(parts)

def _target_for(target: Path, rel: str) -> Path:
    try:
        return validate_path(target / rel, target)
    except UnsafePathError as e:
        raise ExtractError(str(e)) from e

def _extract_zip(archive_path: Path, target: Path, strip_single_root: bool) -> int:
    count = 0
    with zipfile.ZipFile(archive_path) as zf:
        infos = zf.infolist()
        for info in infos:
            if (info.external_attr >> 16) & 0o170000 == _ZIP_SYMLINK:
                raise ExtractError(f"Archive member '{info.filename}' is a symbolic link.")
        members = [(info.filename, info.is_dir()) for info in infos]
        _check_members(members)
        root = _single_root(members) if strip_single_root else None

        for info in infos:
            rel = _relative(info.filename, root)
            if not rel:
                continue
            out = _target_for(target, rel)
            if info.is_dir():
                out.mkdir(parents=True, exist_ok=True)
                continue
            out.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as f_in, out.open("wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            count += 1
    return count

def _extract_tar(archive_path: Path, target: Path, strip_single_root: bool) -> int:
    count = 0
    with tarfile.open(archive_path, mode="r:*") as tar:
        infos = tar.getmembers()
        for member in infos:
            if not (member.isfile() or member.isdir()):
                raise ExtractError(f"Archive member '{member.name}' is a link or special file.")
        members = [(member.name, member.isdir()) for member in infos]
        _check_members(members)
        root = _single_root(members) if strip_single_root else None

        for member in infos:
            rel = _relative(member.name, root)
            if not rel:
                continue
            out = _target_for(target, rel)
            if member.isdir():
                out.mkdir(parents=True, exist_ok=True)
                continue
            out.parent.mkdir(parents=True, exist_ok=True)
            f_in = tar.extractfile(member)
            if f_in is None:
                raise ExtractError(f"Archive member '{member.name}' has no data.")
            with f_in, out.open("wb") as f_out:
                shutil.copyfileobj(f_in, f_out)
            os.utime(out, (member.mtime, member.mtime))
            count += 1
    return count

def extract(
    archive_path: Path,
    dest: StagingArea,
    relative_path: str,
    *,
    strip_single_root: bool = True,
) -> Path:
    """
    Unpack archive_path into the staging tree at relative_path.
    On any failure everything written for this archive is removed.
    """
    archive_path = Path(archive_path)
    target = dest.tree_path(relative_path)
    try:
        target.mkdir(parents=True)
        if zipfile.is_zipfile(archive_path):
            count = _extract_zip(archive_path, target, strip_single_root)
        elif tarfile.is_tarfile(archive_path):
            count = _extract_tar(archive_path, target, strip_single_root)
        else:
            raise ExtractError(f"Unsupported archive format for {relative_path}.")
    except ExtractError:
        shutil.rmtree(target, ignore_errors=True)
        raise
    except _FORMAT_ERRORS as e:
        shutil.rmtree(target, ignore_errors=True)
        raise ExtractError(f"Failed to extract {relative_path}: {e}") from e

    logger.info("Extracted %d files from %s", count, relative_path)
    return target
