"""
Release publishing helpers.

A release directory is served as-is over HTTPS: manifest.json at its root,
every plain file at its relative path, and each archive entry as a ZIP file
stored under the name of the directory it installs to.
"""
import base64
import fnmatch
import logging
import os
import shutil
import zipfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .crypto import sign
from .errors import NightWatchError
from .manifest import manifest_from_document, serialize_manifest
from .models import FileEntry, Manifest
from .utils import STATE_DIR_NAME, atomic_write_bytes, check_relative_path, sha256_file

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
SIGNATURE_SUFFIX = ".sig"

# Fixed timestamp so packing the same tree twice yields identical bytes.
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


def _excluded(rel: str, patterns: Sequence[str]) -> bool:
    name = rel.rsplit("/", 1)[-1]
    return any(fnmatch.fnmatchcase(rel, p) or fnmatch.fnmatchcase(name, p) for p in patterns)

def _walk_files(base_dir: Path, exclude: Sequence[str], skip_dirs: Iterable[str] = ()) -> List[str]:
    """Relative POSIX paths of regular files under base_dir, sorted."""
    skip = set(skip_dirs)
    found: List[str] = []
    for root, dirs, files in os.walk(base_dir):
        root_path = Path(root)
        rel_root = root_path.relative_to(base_dir).as_posix()
        rel_root = "" if rel_root == "." else rel_root
        dirs[:] = sorted(
            d for d in dirs
            if (f"{rel_root}/{d}" if rel_root else d) not in skip
            and not (not rel_root and d == STATE_DIR_NAME)
            and not _excluded(f"{rel_root}/{d}" if rel_root else d, exclude)
        )
        for f in files:
            rel = f"{rel_root}/{f}" if rel_root else f
            if _excluded(rel, exclude) or not (root_path / f).is_file():
                continue
            found.append(rel)
    return sorted(found)

def _entry_for(base_dir: Path, rel: str, is_archive: bool) -> FileEntry:
    path = base_dir / rel
    return FileEntry(
        relative_path=rel,
        size_bytes=path.stat().st_size,
        checksum=sha256_file(path),
        is_archive=is_archive,
    )

def scan_tree(
    directory: Path,
    *,
    version: int,
    archives: Sequence[str] = (),
    exclude: Sequence[str] = (),
) -> Manifest:
    """
    Hash a release directory in parallel and build its Manifest.

    Paths listed in `archives` must be ZIP files in the directory; they become
    archive entries. manifest.json and its signature at the root are skipped.
    """
    base_dir = Path(directory).resolve()
    if not base_dir.is_dir():
        raise NightWatchError(f"Release directory not found: {directory}")

    archive_set = set(archives)
    for rel in archive_set:
        check_relative_path(rel)
        if not (base_dir / rel).is_file():
            raise NightWatchError(f"Archive entry '{rel}' is not a packed file in {base_dir}.")

    rels = _walk_files(
        base_dir,
        list(exclude) + [MANIFEST_NAME, MANIFEST_NAME + SIGNATURE_SUFFIX],
    )
    for rel in rels:
        check_relative_path(rel)

    max_workers = min(32, (os.cpu_count() or 1) * 4)
    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        entries = list(pool.map(lambda r: _entry_for(base_dir, r, r in archive_set), rels))

    document = {
        "version": version,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "files": [e.model_dump(mode="json", exclude_none=True) for e in entries],
    }
    manifest = manifest_from_document(document)
    logger.info("Scanned %d entries (%d archives) in %s", len(manifest), len(archive_set), base_dir)
    return manifest

def pack_directory(source: Path, dest: Path) -> Path:
    """
    Pack a directory into a deterministic ZIP file at dest. Members sit under
    one top-level folder named after the directory, which the client strips.
    """
    source = Path(source)
    dest.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for rel in _walk_files(source, ()):
            info = zipfile.ZipInfo(f"{source.name}/{rel}", date_time=_ZIP_EPOCH)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, (source / rel).read_bytes())
    return dest

def build_release(
    source: Path,
    out_dir: Path,
    *,
    version: int,
    archives: Sequence[str] = (),
    exclude: Sequence[str] = (),
    signing_key: Optional[bytes] = None,
) -> Manifest:
    """
    Lay out a servable release of `source` in `out_dir` and write its manifest.
    Sub-directories named in `archives` are packed as single ZIP entries.
    """
    source = Path(source).resolve()
    out_dir = Path(out_dir).resolve()
    if not source.is_dir():
        raise NightWatchError(f"Source directory not found: {source}")
    if out_dir == source or out_dir.is_relative_to(source):
        raise NightWatchError("Output directory must not be inside the source directory.")
    if out_dir.exists() and any(out_dir.iterdir()):
        raise NightWatchError(f"Output directory {out_dir} is not empty.")
    for rel in archives:
        check_relative_path(rel)
        if not (source / rel).is_dir():
            raise NightWatchError(f"Archive source '{rel}' is not a directory in {source}.")

    out_dir.mkdir(parents=True, exist_ok=True)
    for rel in _walk_files(source, exclude, skip_dirs=archives):
        target = out_dir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source / rel, target)
    for rel in archives:
        pack_directory(source / rel, out_dir / rel)
        logger.info("Packed %s", rel)

    manifest = scan_tree(out_dir, version=version, archives=archives)
    raw = serialize_manifest(manifest)
    atomic_write_bytes(out_dir / MANIFEST_NAME, raw)
    if signing_key is not None:
        write_signature(out_dir / MANIFEST_NAME, signing_key)
    return manifest

def write_signature(manifest_path: Path, signing_key: bytes) -> Path:
    """Write <manifest>.sig holding a base64 Ed25519 signature of the file bytes."""
    manifest_path = Path(manifest_path)
    signature = sign(manifest_path.read_bytes(), signing_key)
    sig_path = manifest_path.with_name(manifest_path.name + SIGNATURE_SUFFIX)
    atomic_write_bytes(sig_path, base64.b64encode(signature) + b"\n")
    logger.info("Wrote signature %s", sig_path)
    return sig_path
