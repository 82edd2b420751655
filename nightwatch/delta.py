"""
Delta Engine: computes the ordered change set between two manifests.
"""
from typing import Iterable, List, Set

from .models import ChangeSet, FileEntry, Manifest
from .utils import check_relative_path


def entries_differ(local: FileEntry, remote: FileEntry) -> bool:
    return local.checksum != remote.checksum or local.size_bytes != remote.size_bytes

def diff(local: Manifest, remote: Manifest, *, stale: Iterable[str] = ()) -> ChangeSet:
    """
    Compare the installed manifest against the remote one.

    `stale` lists paths whose live copy failed verification; if the remote
    still carries them they are re-fetched even when the manifests agree.
    Raises UnsafePathError if any path to fetch could escape the install root.
    """
    stale_paths: Set[str] = set(stale)

    to_add: List[str] = []
    to_update: List[str] = []
    to_remove: List[str] = []

    for path in local.files.keys() | remote.files.keys():
        local_entry = local.files.get(path)
        remote_entry = remote.files.get(path)
        if local_entry is None:
            to_add.append(path)
        elif remote_entry is None:
            to_remove.append(path)
        elif path in stale_paths or entries_differ(local_entry, remote_entry):
            to_update.append(path)

    # One bad entry invalidates the whole batch.
    for path in to_add + to_update:
        check_relative_path(path)

    return ChangeSet(
        to_add=tuple(sorted(to_add)),
        to_update=tuple(sorted(to_update)),
        to_remove=tuple(sorted(to_remove)),
    )
