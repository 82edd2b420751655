"""
Durable record of the last committed manifest.

The state file lives in <root>/.nightwatch/, a directory no manifest entry
may target. A missing or unreadable state file means "no prior install".
"""
import fnmatch
import json
import logging
import shutil
from pathlib import Path
from typing import Iterable, List, Optional

from .crypto import secure_compare
from .errors import ParseError, UnsafePathError
from .manifest import empty_manifest, manifest_document, manifest_from_document
from .models import LocalState
from .utils import STATE_DIR_NAME, atomic_write_bytes, check_relative_path, sha256_file, validate_path

logger = logging.getLogger(__name__)

STATE_FILE_NAME = "state.json"
LEFTOVER_PREFIXES = ("staging-", "backup-")


class StateStore:
    def __init__(self, root: Path):
        self.root = Path(root).resolve()
        self.state_dir = self.root / STATE_DIR_NAME
        self.path = self.state_dir / STATE_FILE_NAME

    def load(self) -> Optional[LocalState]:
        """Return the persisted state, or None if missing or corrupt."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ParseError("State document must be a JSON object.")
            manifest = manifest_from_document(data.get("manifest"))
            return LocalState(manifest=manifest, install_generation=data.get("install_generation", 0))
        except (OSError, ValueError, ParseError) as e:
            logger.warning("Ignoring unreadable local state %s: %s", self.path, e)
            return None

    def load_or_empty(self) -> LocalState:
        return self.load() or LocalState(manifest=empty_manifest(), install_generation=0)

    def save(self, state: LocalState) -> None:
        """Persist atomically: temp file, fsync, rename, directory fsync."""
        payload = {
            "install_generation": state.install_generation,
            "manifest": manifest_document(state.manifest),
        }
        atomic_write_bytes(self.path, json.dumps(payload, indent=2).encode("utf-8"))
        logger.info("Persisted local state generation %d (manifest v%d)", state.install_generation, state.manifest.version)

    def leftovers(self) -> List[Path]:
        if not self.state_dir.is_dir():
            return []
        return sorted(
            p for p in self.state_dir.iterdir()
            if p.is_dir() and p.name.startswith(LEFTOVER_PREFIXES)
        )

    def clean_leftovers(self) -> List[Path]:
        """Remove staging/backup directories left by an interrupted cycle."""
        removed = self.leftovers()
        for path in removed:
            logger.warning("Removing leftover %s from an interrupted cycle", path)
            shutil.rmtree(path)
        return removed


def _is_critical(path: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch.fnmatchcase(path, pattern) for pattern in patterns)

def damaged_paths(root: Path, state: LocalState, patterns: Iterable[str] = ("*",)) -> List[str]:
    """
    Paths recorded in state whose live copy is missing or no longer matches.

    Only paths matching `patterns` are hashed. Archive entries are checked for
    presence of their directory; their contents have no per-file checksums.
    """
    root = Path(root).resolve()
    patterns = tuple(patterns)
    damaged: List[str] = []
    for path, entry in state.manifest.files.items():
        if not _is_critical(path, patterns):
            continue
        try:
            check_relative_path(path)
            live = validate_path(root / path, root)
        except UnsafePathError:
            damaged.append(path)
            continue
        if entry.is_archive:
            ok = live.is_dir()
        else:
            ok = (
                live.is_file()
                and live.stat().st_size == entry.size_bytes
                and secure_compare(sha256_file(live), entry.checksum)
            )
        if not ok:
            logger.warning("Live copy of %s does not match local state", path)
            damaged.append(path)
    return sorted(damaged)
