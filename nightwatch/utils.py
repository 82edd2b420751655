"""
Core utilities for Night Watch.
"""
import hashlib
import os
import re
import signal
import sys
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Optional

from .errors import UnsafePathError

# Reserved directory under the install root for state, staging and backups.
STATE_DIR_NAME = ".nightwatch"

_DRIVE_RE = re.compile(r"^[A-Za-z]:")


def is_windows() -> bool:
    """Return True if running on Windows."""
    return sys.platform == "win32"

def mask_token(token: Optional[str]) -> str:
    """Mask a token, returning only the last 4 characters visible."""
    if not token or len(token) < 8:
        return "****"
    return "*" * (len(token) - 4) + token[-4:]

def check_relative_path(path: str) -> str:
    """
    Reject manifest paths that could escape the install root.

    Paths are POSIX-style and relative. Empty, '.', '..' and NUL segments,
    backslashes, drive prefixes and the reserved state directory are refused.
    """
    if not path:
        raise UnsafePathError("Empty path in manifest entry.", path)
    if "\\" in path or "\x00" in path:
        raise UnsafePathError(f"Path '{path}' contains a forbidden character.", path)
    if path.startswith("/") or _DRIVE_RE.match(path):
        raise UnsafePathError(f"Path '{path}' is absolute.", path)

    parts = path.split("/")
    for part in parts:
        if part in ("", ".", ".."):
            raise UnsafePathError(f"Path '{path}' contains a '{part or '//'}' segment.", path)
    if parts[0] == STATE_DIR_NAME:
        raise UnsafePathError(f"Path '{path}' targets the reserved {STATE_DIR_NAME} directory.", path)
    return path

def validate_path(path: str | Path, base_dir: str | Path) -> Path:
    """
    Resolve a path and ensure it falls strictly under the base_dir to prevent directory traversal.
    """
    resolved_path = Path(path).resolve()
    resolved_base = Path(base_dir).resolve()

    if resolved_path == resolved_base or not resolved_path.is_relative_to(resolved_base):
        raise UnsafePathError(f"Path '{path}' escapes base directory '{base_dir}'.", str(path))
    return resolved_path

def is_safe_member_name(name: str) -> bool:
    """True when an archive member name stays inside its extraction directory."""
    if not name or "\x00" in name or "\\" in name or _DRIVE_RE.match(name):
        return False
    pure = PurePosixPath(name)
    if pure.is_absolute():
        return False
    return ".." not in pure.parts

def sha256_file(path: Path) -> str:
    """Stream a file and return its SHA-256 hex digest."""
    hasher = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            hasher.update(chunk)
    return hasher.hexdigest()

def fsync_file(path: Path) -> None:
    """Flush a file's contents to stable storage."""
    with path.open("rb") as f:
        os.fsync(f.fileno())

def fsync_dir(path: Path) -> None:
    """Flush directory entries (renames) to stable storage. No-op on Windows."""
    if is_windows():
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)

def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write data beside path, fsync it, then rename it over path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
    fsync_dir(path.parent)

def human_size(nbytes: float) -> str:
    """Convert bytes to a human-readable string (e.g. 1.2 MiB)."""
    if nbytes == 0:
        return "0 B"
    suffixes = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    i = 0
    while nbytes >= 1024 and i < len(suffixes) - 1:
        nbytes /= 1024.0
        i += 1
    if i == 0:
        return f"{int(nbytes)} {suffixes[i]}"
    return f"{nbytes:.1f} {suffixes[i]}"

def setup_signal_handlers(on_signal: Callable[[], None]) -> None:
    """Install SIGINT/SIGTERM handlers that call on_signal instead of exiting."""
    def handler(signum: Any, frame: Any) -> None:
        on_signal()

    signal.signal(signal.SIGINT, handler)
    if not is_windows():
        signal.signal(signal.SIGTERM, handler)
