"""
Custom exception hierarchy for Night Watch.
"""
from typing import Optional, Sequence


class NightWatchError(Exception):
    """Base exception for all nightwatch errors."""
    pass

class ParseError(NightWatchError):
    """A manifest or state document could not be trusted."""
    pass

class SignatureError(ParseError):
    pass

class DowngradeError(ParseError):
    pass

class UnsafePathError(NightWatchError):
    """A path would resolve outside the install root."""

    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path

class TransferError(NightWatchError):
    """A manifest or payload transfer failed."""

    def __init__(
        self,
        message: str,
        *,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.transient = transient

class IntegrityError(TransferError):
    """Downloaded bytes do not match the manifest entry."""

    def __init__(self, message: str, *, path: str, url: Optional[str] = None):
        super().__init__(message, url=url)
        self.path = path

class ExtractError(NightWatchError):
    pass

class IncompleteStagingError(NightWatchError):
    def __init__(self, message: str, path: str = ""):
        super().__init__(message)
        self.path = path

class InstallError(NightWatchError):
    """The commit phase stopped; `committed` were reverted."""

    def __init__(self, message: str, *, committed: Sequence[str] = (), failed_path: Optional[str] = None):
        super().__init__(message)
        self.committed = list(committed)
        self.failed_path = failed_path

class InconsistentStateError(InstallError):
    """Reversal failed too. Manual intervention is required."""

    def __init__(
        self,
        message: str,
        *,
        committed: Sequence[str] = (),
        failed_path: Optional[str] = None,
        inconsistent_paths: Sequence[str] = (),
        backup_dir: Optional[str] = None,
    ):
        super().__init__(message, committed=committed, failed_path=failed_path)
        self.inconsistent_paths = list(inconsistent_paths)
        self.backup_dir = backup_dir

class SyncCancelled(NightWatchError):
    pass

class ConfigError(NightWatchError):
    pass

class ProfileNotFoundError(ConfigError):
    pass

class ProfileValidationError(ConfigError):
    pass
