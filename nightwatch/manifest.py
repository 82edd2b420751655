"""
Manifest parsing and serialization.

A manifest document is JSON:

    {"version": 7, "generated_at": "2024-05-01T12:00:00Z",
     "files": [{"relative_path": "bin/app", "size_bytes": 10, "checksum": "<sha256>",
                "is_archive": false}, ...]}

Unknown fields are ignored at every level so newer publishers do not break
older clients. Anything else that is wrong rejects the whole document.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Set

from pydantic import Field, ValidationError

from .errors import ParseError
from .models import FileEntry, FrozenModel, Manifest


class ManifestDocument(FrozenModel):
    version: int = Field(..., strict=True)
    generated_at: datetime
    files: List[FileEntry]


def empty_manifest() -> Manifest:
    """Manifest of an install that has never been synced."""
    return Manifest(version=0, generated_at=datetime.fromtimestamp(0, tz=timezone.utc), files={})

def parse(raw: bytes) -> Manifest:
    """
    Deserialize and validate a manifest payload.

    Path safety is not checked here; diff() rejects unsafe paths as a whole.
    """
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ParseError(f"Manifest is not valid JSON: {e}") from e
    return manifest_from_document(data)

def manifest_from_document(data: Any) -> Manifest:
    if not isinstance(data, dict):
        raise ParseError("Manifest document must be a JSON object.")
    try:
        doc = ManifestDocument.model_validate(data)
    except ValidationError as e:
        raise ParseError(f"Failed to parse manifest: {e}") from e

    files: Dict[str, FileEntry] = {}
    for entry in doc.files:
        if entry.relative_path in files:
            raise ParseError(f"Duplicate relative_path in manifest: {entry.relative_path}")
        files[entry.relative_path] = entry
    _check_ancestor_conflicts(files)

    try:
        return Manifest(version=doc.version, generated_at=doc.generated_at, files=files)
    except ValidationError as e:
        raise ParseError(f"Failed to parse manifest: {e}") from e

def _check_ancestor_conflicts(files: Dict[str, FileEntry]) -> None:
    """A path cannot be both an entry and a directory holding another entry."""
    ancestors: Set[str] = set()
    for path in files:
        parts = path.split("/")
        for i in range(1, len(parts)):
            ancestors.add("/".join(parts[:i]))
    clashes = sorted(ancestors.intersection(files))
    if clashes:
        raise ParseError(f"Manifest entry '{clashes[0]}' is also a parent directory of other entries.")

def manifest_document(manifest: Manifest) -> Dict[str, Any]:
    return {
        "version": manifest.version,
        "generated_at": manifest.generated_at.isoformat(),
        "files": [entry.model_dump(mode="json", exclude_none=True) for entry in manifest.files.values()],
    }

def serialize_manifest(manifest: Manifest) -> bytes:
    """Serialize the manifest to JSON bytes deterministically."""
    return json.dumps(manifest_document(manifest), indent=2).encode("utf-8")
