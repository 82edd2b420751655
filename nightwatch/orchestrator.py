"""
Sync orchestrator: the single entry point for callers (CLI, GUI, daemon).

One instance per install root. A cycle walks
    FETCHING_MANIFEST -> DIFFING -> DOWNLOADING -> EXTRACTING -> INSTALLING -> COMMITTED
and ends in exactly one terminal state (COMMITTED, FAILED or CANCELLED), which
is reported once to the progress sink. LocalState is only written by a
successful commit.
"""
import concurrent.futures
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar, Union

from pydantic import ValidationError

from .audit import AuditLogger
from .delta import diff
from .errors import (
    ConfigError,
    DowngradeError,
    InconsistentStateError,
    InstallError,
    IntegrityError,
    NightWatchError,
    SyncCancelled,
)
from .extract import extract
from .installer import Installer
from .models import (
    ChangeSet,
    FileEntry,
    Manifest,
    ProgressSnapshot,
    SyncConfig,
    SyncResult,
    SyncState,
)
from .staging import StagingArea
from .state import StateStore, damaged_paths
from .transfer import TransferClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressEvent = Union[ProgressSnapshot, SyncResult]
ProgressSink = Callable[[ProgressEvent], None]

HISTORY_FILE_NAME = "history.jsonl"


class _StageProgress:
    """Thread-safe counters for one stage; emitted values never decrease."""

    def __init__(self, emit: Callable[[ProgressSnapshot], None], stage: SyncState, files_total: int, bytes_total: int):
        self._emit = emit
        self._lock = threading.Lock()
        self.stage = stage
        self.files_total = files_total
        self.bytes_total = bytes_total
        self.files_done = 0
        self._bytes: Dict[str, int] = {}

    def _snapshot_locked(self) -> None:
        self._emit(ProgressSnapshot(
            stage=self.stage,
            files_done=self.files_done,
            files_total=self.files_total,
            bytes_done=min(sum(self._bytes.values()), self.bytes_total),
            bytes_total=self.bytes_total,
        ))

    def start(self) -> None:
        with self._lock:
            self._snapshot_locked()

    def bytes_callback(self, path: str) -> Callable[[int], None]:
        def update(offset: int) -> None:
            with self._lock:
                if offset > self._bytes.get(path, 0):
                    self._bytes[path] = offset
                    self._snapshot_locked()
        return update

    def file_done(self, path: str, size: int) -> None:
        with self._lock:
            self._bytes[path] = max(self._bytes.get(path, 0), size)
            self.files_done += 1
            self._snapshot_locked()


class SyncOrchestrator:
    def __init__(
        self,
        config: Optional[SyncConfig] = None,
        sink: Optional[ProgressSink] = None,
        *,
        client: Optional[TransferClient] = None,
    ):
        self._config = config
        self._sink = sink
        self._client = client
        self._cancel = threading.Event()
        self._run_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = SyncState.IDLE

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def config(self) -> Optional[SyncConfig]:
        return self._config

    def configure(self, root_dir: Union[str, Path], manifest_url: str, parallelism: int = 4, **options: Any) -> SyncConfig:
        """Validate and store the configuration used by run()."""
        if self._run_lock.locked():
            raise ConfigError("Cannot reconfigure while a sync is running.")
        try:
            self._config = SyncConfig(root_dir=Path(root_dir), manifest_url=manifest_url, parallelism=parallelism, **options)
        except ValidationError as e:
            raise ConfigError(f"Invalid sync configuration: {e}") from e
        return self._config

    def cancel(self) -> None:
        """Request cooperative cancellation of the running cycle."""
        with self._state_lock:
            if self._state == SyncState.IDLE or self._state.is_terminal:
                return
            self._cancel.set()
            self._state = SyncState.CANCELLING
        logger.info("Cancellation requested")

    def run(self, config: Optional[SyncConfig] = None) -> SyncResult:
        """Run one full sync cycle and return its terminal result."""
        config = config or self._config
        if config is None:
            raise ConfigError("configure() must be called before run().")
        if not self._run_lock.acquire(blocking=False):
            raise NightWatchError("A sync is already running for this install root.")
        try:
            self._config = config
            with self._state_lock:
                self._cancel.clear()
                self._state = SyncState.FETCHING_MANIFEST
            return self._run_cycle(config)
        finally:
            self._run_lock.release()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------
    def _emit(self, event: ProgressEvent) -> None:
        if self._sink is not None:
            self._sink(event)

    def _enter(self, stage: SyncState) -> None:
        with self._state_lock:
            if self._cancel.is_set():
                raise SyncCancelled(f"Sync cancelled before {stage.value}.")
            self._state = stage
        logger.debug("Entering %s", stage.value)

    def _run_cycle(self, config: SyncConfig) -> SyncResult:
        root = Path(config.root_dir)
        stage = SyncState.FETCHING_MANIFEST
        change_set: Optional[ChangeSet] = None
        remote: Optional[Manifest] = None
        staging: Optional[StagingArea] = None
        client = self._client or TransferClient.from_config(config)

        try:
            root.mkdir(parents=True, exist_ok=True)
            store = StateStore(root)
            store.clean_leftovers()

            self._enter(stage)
            fetch_progress = _StageProgress(self._emit, stage, 1, 0)
            fetch_progress.start()
            remote = client.fetch_manifest(config.manifest_url, config.public_key)
            fetch_progress.file_done(config.manifest_url, 0)

            stage = SyncState.DIFFING
            self._enter(stage)
            previous = store.load_or_empty()
            if remote.version < previous.manifest.version and not config.allow_downgrade:
                raise DowngradeError(
                    f"Remote manifest v{remote.version} is older than installed v{previous.manifest.version}."
                )
            stale = damaged_paths(root, previous, config.critical_patterns)
            change_set = diff(previous.manifest, remote, stale=stale)
            _StageProgress(self._emit, stage, 1, 0).file_done("diff", 0)
            logger.info(
                "Change set: %d to add, %d to update, %d to remove",
                len(change_set.to_add), len(change_set.to_update), len(change_set.to_remove),
            )

            if change_set.is_empty and remote.version == previous.manifest.version:
                logger.info("Install is up to date (manifest v%d)", remote.version)
                result = SyncResult(
                    state=SyncState.COMMITTED,
                    change_set=change_set,
                    install_generation=previous.install_generation,
                    manifest_version=remote.version,
                )
                return self._finish(result, root)

            staging = StagingArea.create(store.state_dir)
            entries = [remote.files[path] for path in change_set.fetch_paths]

            stage = SyncState.DOWNLOADING
            self._enter(stage)
            self._download_all(client, config, entries, staging)

            stage = SyncState.EXTRACTING
            self._enter(stage)
            self._extract_all(config, [e for e in entries if e.is_archive], staging)

            stage = SyncState.INSTALLING
            self._enter(stage)
            install_progress = _StageProgress(
                self._emit, stage, len(change_set), sum(e.size_bytes for e in entries)
            )
            install_progress.start()
            new_state = Installer(root, store).install(
                change_set,
                staging,
                remote,
                previous=previous,
                should_cancel=self._cancel.is_set,
                on_progress=install_progress.file_done,
            )
            result = SyncResult(
                state=SyncState.COMMITTED,
                change_set=change_set,
                install_generation=new_state.install_generation,
                manifest_version=remote.version,
                committed_paths=change_set.fetch_paths + change_set.to_remove,
            )
        except SyncCancelled as e:
            logger.info("%s", e)
            result = SyncResult(state=SyncState.CANCELLED, stage=stage, change_set=change_set)
        except InconsistentStateError as e:
            logger.error("Install left the tree inconsistent: %s", e)
            result = self._failed(stage, e, change_set, committed_paths=tuple(e.committed),
                                  failed_path=e.failed_path, inconsistent_paths=tuple(e.inconsistent_paths))
        except InstallError as e:
            result = self._failed(stage, e, change_set, committed_paths=tuple(e.committed), failed_path=e.failed_path)
        except Exception as e:
            result = self._failed(stage, e, change_set, failed_path=getattr(e, "path", None))
        finally:
            if staging is not None:
                self._destroy_staging(staging)
            if self._client is None:
                client.close()

        return self._finish(result, root)

    def _failed(self, stage: SyncState, error: BaseException, change_set: Optional[ChangeSet], **fields: Any) -> SyncResult:
        logger.error("Sync failed during %s: %s", stage.value, error)
        return SyncResult(
            state=SyncState.FAILED,
            stage=stage,
            error=str(error),
            error_type=type(error).__name__,
            change_set=change_set,
            **fields,
        )

    @staticmethod
    def _destroy_staging(staging: StagingArea) -> None:
        try:
            staging.destroy()
        except OSError as e:
            # Removed by the next cycle's leftover sweep.
            logger.error("Could not remove staging area %s: %s", staging.path, e)

    def _finish(self, result: SyncResult, root: Path) -> SyncResult:
        with self._state_lock:
            self._state = result.state
        self._emit(result)
        AuditLogger(StateStore(root).state_dir / HISTORY_FILE_NAME).log(
            "sync_" + result.state.value,
            stage=result.stage.value if result.stage else None,
            error=result.error,
            manifest_version=result.manifest_version,
            install_generation=result.install_generation,
            changes=len(result.change_set) if result.change_set else 0,
            inconsistent_paths=list(result.inconsistent_paths),
        )
        return result

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------
    def _run_pool(self, parallelism: int, work: Callable[[T], None], items: Sequence[T]) -> None:
        """
        Run work over items on a bounded pool. The first failure stops
        scheduling of the remaining items; cancellation is checked between items.
        """
        abort = threading.Event()

        def guarded(item: T) -> None:
            if self._cancel.is_set():
                raise SyncCancelled("Sync cancelled.")
            if abort.is_set():
                return
            try:
                work(item)
            except BaseException:
                abort.set()
                raise

        with concurrent.futures.ThreadPoolExecutor(max_workers=parallelism, thread_name_prefix="nightwatch") as pool:
            futures = [pool.submit(guarded, item) for item in items]
            _, pending = concurrent.futures.wait(futures, return_when=concurrent.futures.FIRST_EXCEPTION)
            for future in pending:
                future.cancel()

        errors: List[BaseException] = []
        for future in futures:
            if future.cancelled():
                continue
            exc = future.exception()
            if exc is not None:
                errors.append(exc)
        real_errors = [e for e in errors if not isinstance(e, SyncCancelled)]
        if real_errors:
            raise real_errors[0]
        if errors or self._cancel.is_set():
            raise SyncCancelled("Sync cancelled.")

    def _download_all(self, client: TransferClient, config: SyncConfig, entries: List[FileEntry], staging: StagingArea) -> None:
        progress = _StageProgress(self._emit, SyncState.DOWNLOADING, len(entries), sum(e.size_bytes for e in entries))
        progress.start()

        def work(entry: FileEntry) -> None:
            on_bytes = progress.bytes_callback(entry.relative_path)
            try:
                client.fetch_file(config.manifest_url, entry, staging, on_bytes)
            except IntegrityError as e:
                if self._cancel.is_set():
                    raise SyncCancelled("Sync cancelled.") from e
                logger.warning("%s; downloading %s once more", e, entry.relative_path)
                client.fetch_file(config.manifest_url, entry, staging, on_bytes)
            progress.file_done(entry.relative_path, entry.size_bytes)

        self._run_pool(config.parallelism, work, entries)

    def _extract_all(self, config: SyncConfig, archives: List[FileEntry], staging: StagingArea) -> None:
        progress = _StageProgress(self._emit, SyncState.EXTRACTING, len(archives), sum(e.size_bytes for e in archives))
        progress.start()

        def work(entry: FileEntry) -> None:
            extract(
                staging.archive_path(entry.relative_path),
                staging,
                entry.relative_path,
                strip_single_root=config.strip_single_root,
            )
            progress.file_done(entry.relative_path, entry.size_bytes)

        self._run_pool(config.parallelism, work, archives)
