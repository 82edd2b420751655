"""
HTTPS transfer client using httpx[http2].
Handles retries with exponential backoff, resumable downloads and payload verification.
"""
import logging
import os
import ssl
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar
from urllib.parse import quote, urljoin, urlsplit, urlunsplit

import httpx

from .crypto import secure_compare, verify_detached
from .errors import IntegrityError, TransferError
from .manifest import parse
from .models import DEFAULT_USER_AGENT, FileEntry, Manifest, SyncConfig
from .staging import StagingArea
from .utils import sha256_file

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Retried alongside 5xx: request timeout and rate limiting.
RETRYABLE_4XX = {408, 429}

ProgressCallback = Callable[[int], None]


def _is_certificate_error(exc: BaseException) -> bool:
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        if isinstance(current, ssl.SSLCertVerificationError):
            return True
        if "CERTIFICATE_VERIFY_FAILED" in str(current):
            return True
        seen.add(id(current))
        current = current.__cause__ or current.__context__
    return False

def _require_https(url: str) -> str:
    if urlsplit(url).scheme.lower() != "https":
        raise TransferError(f"Refusing non-HTTPS URL: {url}", url=url)
    return url

def signature_url(source: str) -> str:
    """URL of the detached signature published beside a manifest."""
    parts = urlsplit(source)
    return urlunsplit(parts._replace(path=parts.path + ".sig"))

def payload_url(source: str, entry: FileEntry) -> str:
    if entry.url:
        return entry.url
    return urljoin(source, quote(entry.relative_path))


class TransferClient:
    def __init__(
        self,
        *,
        timeout: float = 60.0,
        retries: int = 3,
        backoff_initial: float = 0.2,
        backoff_factor: float = 2.0,
        user_agent: str = DEFAULT_USER_AGENT,
        token: Optional[str] = None,
        chunk_size: int = 64 * 1024,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.retries = retries
        self.backoff_initial = backoff_initial
        self.backoff_factor = backoff_factor
        self.chunk_size = chunk_size

        headers = {"User-Agent": user_agent}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        # Certificate validation stays on; there is no insecure fallback.
        self._client = httpx.Client(
            http2=True,
            headers=headers,
            timeout=timeout,
            verify=True,
            follow_redirects=True,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: SyncConfig, transport: Optional[httpx.BaseTransport] = None) -> "TransferClient":
        return cls(
            timeout=config.timeout,
            retries=config.retries,
            backoff_initial=config.backoff_initial,
            backoff_factor=config.backoff_factor,
            user_agent=config.user_agent,
            token=config.token,
            chunk_size=config.chunk_size,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "TransferClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    def _classify(self, exc: httpx.HTTPError, url: str) -> TransferError:
        if _is_certificate_error(exc):
            return TransferError(f"Certificate validation failed for {url}: {exc}", url=url)
        if isinstance(exc, httpx.UnsupportedProtocol):
            return TransferError(f"Unsupported protocol for {url}: {exc}", url=url)
        if isinstance(exc, httpx.TransportError):
            return TransferError(f"Network error for {url}: {exc!r}", url=url, transient=True)
        return TransferError(f"HTTP error for {url}: {exc}", url=url)

    def _check_response(self, response: httpx.Response, url: str) -> None:
        if response.url.scheme != "https":
            raise TransferError(f"Redirected to non-HTTPS URL: {response.url}", url=url)
        status = response.status_code
        if status < 400:
            return
        transient = status >= 500 or status in RETRYABLE_4XX
        raise TransferError(
            f"HTTP {status} for {url}",
            url=url,
            status_code=status,
            transient=transient,
        )

    def _with_retries(self, url: str, attempt_fn: Callable[[], T]) -> T:
        """Run attempt_fn, retrying transient failures with exponential backoff."""
        attempt = 0
        while True:
            try:
                try:
                    return attempt_fn()
                except httpx.HTTPError as e:
                    raise self._classify(e, url) from e
            except TransferError as e:
                if not e.transient or attempt >= self.retries:
                    raise
                wait = self.backoff_initial * (self.backoff_factor ** attempt)
                logger.warning("Transient failure (%s), retry %d/%d in %.2fs", e, attempt + 1, self.retries, wait)
                time.sleep(wait)
                attempt += 1

    def fetch_bytes(self, url: str) -> bytes:
        _require_https(url)

        def attempt() -> bytes:
            response = self._client.get(url)
            self._check_response(response, url)
            return response.content

        return self._with_retries(url, attempt)

    def fetch_manifest(self, source: str, public_key: Optional[str] = None) -> Manifest:
        """Download, optionally verify, and parse the remote manifest."""
        logger.info("Fetching manifest %s", source)
        raw = self.fetch_bytes(source)
        if public_key:
            signature = self.fetch_bytes(signature_url(source))
            verify_detached(raw, signature.decode("ascii", errors="replace"), public_key)
            logger.info("Manifest signature verified")
        manifest = parse(raw)
        logger.info("Manifest version %d lists %d entries", manifest.version, len(manifest))
        return manifest

    def fetch_file(
        self,
        source: str,
        entry: FileEntry,
        dest: StagingArea,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """
        Download one payload into staging and promote it once verified.
        Returns the promoted path.
        """
        url = _require_https(payload_url(source, entry))
        partial = dest.partial_path(entry.relative_path)
        dest.ensure_parent(partial)

        self._with_retries(url, lambda: self._download(url, entry, partial, on_progress))

        actual_size = partial.stat().st_size
        if actual_size != entry.size_bytes:
            dest.discard(entry.relative_path)
            raise IntegrityError(
                f"Size mismatch for {entry.relative_path}: expected {entry.size_bytes}, got {actual_size}",
                path=entry.relative_path,
                url=url,
            )
        digest = sha256_file(partial)
        if not secure_compare(digest, entry.checksum):
            dest.discard(entry.relative_path)
            raise IntegrityError(
                f"Checksum mismatch for {entry.relative_path}: expected {entry.checksum}, got {digest}",
                path=entry.relative_path,
                url=url,
            )
        logger.debug("Verified %s (%d bytes)", entry.relative_path, actual_size)
        return dest.promote(entry.relative_path, entry.is_archive)

    def _download(
        self,
        url: str,
        entry: FileEntry,
        partial: Path,
        on_progress: Optional[ProgressCallback],
    ) -> None:
        offset = partial.stat().st_size if partial.exists() else 0
        if offset > entry.size_bytes:
            partial.unlink()
            offset = 0
        if offset and offset == entry.size_bytes:
            return

        headers: Dict[str, Any] = {}
        if offset:
            headers["Range"] = f"bytes={offset}-"
            logger.info("Resuming %s at byte %d", entry.relative_path, offset)

        with self._client.stream("GET", url, headers=headers) as response:
            if response.status_code == 416:
                partial.unlink(missing_ok=True)
                raise TransferError(f"Range not satisfiable for {url}, restarting", url=url, status_code=416, transient=True)
            self._check_response(response, url)

            if response.status_code == 206:
                if not offset or _content_range_start(response) != offset:
                    partial.unlink(missing_ok=True)
                    raise TransferError(f"Unexpected partial content for {url}, restarting", url=url, status_code=206, transient=True)
                mode, written = "ab", offset
            else:
                if offset:
                    logger.info("Server ignored range request for %s, restarting", entry.relative_path)
                mode, written = "wb", 0

            with partial.open(mode) as f:
                for chunk in response.iter_bytes(self.chunk_size):
                    f.write(chunk)
                    written += len(chunk)
                    if on_progress:
                        on_progress(min(written, entry.size_bytes))
                f.flush()
                os.fsync(f.fileno())


def _content_range_start(response: httpx.Response) -> Optional[int]:
    """Start offset from a 'Content-Range: bytes START-END/TOTAL' header."""
    value = response.headers.get("Content-Range", "")
    unit, _, byte_range = value.partition(" ")
    if unit.strip().lower() != "bytes":
        return None
    start, _, _ = byte_range.partition("-")
    try:
        return int(start)
    except ValueError:
        return None
