"""
Pydantic v2 data models for Night Watch.
"""
import re
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

UINT64_MAX = 2**64 - 1
SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
DEFAULT_USER_AGENT = "NightWatchUpdater/1.0"


def require_https(url: str) -> str:
    if not url.lower().startswith("https://"):
        raise ValueError("URL must use https://")
    return url


class FrozenModel(BaseModel):
    model_config = ConfigDict(frozen=True)

class FileEntry(FrozenModel):
    relative_path: str
    size_bytes: int = Field(..., ge=0, le=UINT64_MAX, strict=True)
    checksum: str
    is_archive: bool = False
    url: Optional[str] = None  # Overrides <manifest dir>/<relative_path>

    @field_validator("checksum")
    @classmethod
    def validate_checksum(cls, v: str) -> str:
        v = v.lower()
        if not SHA256_RE.match(v):
            raise ValueError("checksum must be a 64 character SHA-256 hex digest")
        return v

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        return require_https(v) if v is not None else v

class Manifest(FrozenModel):
    """
    A versioned description of a file tree.

    Equality only considers the path -> entry mapping; version and
    generated_at are metadata.
    """
    version: int = Field(..., ge=0, strict=True)
    generated_at: datetime
    files: Dict[str, FileEntry] = Field(default_factory=dict)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Manifest):
            return NotImplemented
        return self.files == other.files

    def __hash__(self) -> int:
        return hash(frozenset(self.files.items()))

    def __contains__(self, path: object) -> bool:
        return path in self.files

    def __len__(self) -> int:
        return len(self.files)

    @property
    def total_size(self) -> int:
        return sum(e.size_bytes for e in self.files.values())

class ChangeSet(FrozenModel):
    to_add: Tuple[str, ...] = ()
    to_update: Tuple[str, ...] = ()
    to_remove: Tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_remove)

    @property
    def fetch_paths(self) -> Tuple[str, ...]:
        """Paths that need a payload, in commit order."""
        return tuple(sorted(self.to_add + self.to_update))

    def __len__(self) -> int:
        return len(self.to_add) + len(self.to_update) + len(self.to_remove)

class LocalState(FrozenModel):
    manifest: Manifest
    install_generation: int = Field(0, ge=0)

class SyncState(str, Enum):
    IDLE = "idle"
    FETCHING_MANIFEST = "fetching_manifest"
    DIFFING = "diffing"
    DOWNLOADING = "downloading"
    EXTRACTING = "extracting"
    INSTALLING = "installing"
    COMMITTED = "committed"
    FAILED = "failed"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncState.COMMITTED, SyncState.FAILED, SyncState.CANCELLED)

class ProgressSnapshot(FrozenModel):
    stage: SyncState
    files_done: int = 0
    files_total: int = 0
    bytes_done: int = 0
    bytes_total: int = 0

class SyncResult(FrozenModel):
    state: SyncState
    stage: Optional[SyncState] = None  # Stage that failed or was cancelled
    error: Optional[str] = None
    error_type: Optional[str] = None
    change_set: Optional[ChangeSet] = None
    install_generation: Optional[int] = None
    manifest_version: Optional[int] = None
    committed_paths: Tuple[str, ...] = ()
    failed_path: Optional[str] = None
    inconsistent_paths: Tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.state == SyncState.COMMITTED

class SyncConfig(FrozenModel):
    root_dir: Path
    manifest_url: str
    parallelism: int = Field(4, ge=1, le=64)
    retries: int = Field(3, ge=0)
    backoff_initial: float = Field(0.2, ge=0)
    backoff_factor: float = Field(2.0, ge=1)
    timeout: float = Field(60.0, gt=0)
    user_agent: str = DEFAULT_USER_AGENT
    token: Optional[str] = Field(None, repr=False)
    public_key: Optional[str] = None  # Base64 raw Ed25519 key
    critical_patterns: Tuple[str, ...] = ("*",)
    allow_downgrade: bool = False
    strip_single_root: bool = True
    chunk_size: int = Field(64 * 1024, ge=1024)

    @field_validator("manifest_url")
    @classmethod
    def validate_manifest_url(cls, v: str) -> str:
        return require_https(v)

class Profile(FrozenModel):
    name: str = Field(..., pattern=r"^[a-zA-Z0-9_-]+$")
    root_dir: str
    manifest_url: str
    parallelism: int = Field(4, ge=1, le=64)
    token_ref: Optional[str] = None  # Reference name in keyring
    public_key: Optional[str] = None
    created_at: datetime

    @field_validator("manifest_url")
    @classmethod
    def validate_manifest_url(cls, v: str) -> str:
        return require_https(v)

    def to_sync_config(self, token: Optional[str] = None) -> SyncConfig:
        return SyncConfig(
            root_dir=Path(self.root_dir),
            manifest_url=self.manifest_url,
            parallelism=self.parallelism,
            token=token,
            public_key=self.public_key,
        )

class DoctorCheck(FrozenModel):
    name: str
    status: Literal["pass", "warn", "fail", "info"]
    detail: str
