import hashlib
import io
import json
import threading
import zipfile
from datetime import datetime, timezone
from typing import Dict, List, Optional, Union

import httpx
import keyring
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError

from nightwatch.models import FileEntry, Manifest
from nightwatch.transfer import TransferClient

BASE_URL = "https://updates.example.com/release/"
MANIFEST_URL = BASE_URL + "manifest.json"

GENERATED_AT = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()

def make_entry(path: str, data: bytes, *, is_archive: bool = False) -> FileEntry:
    return FileEntry(relative_path=path, size_bytes=len(data), checksum=sha(data), is_archive=is_archive)

def make_manifest(version: int, payloads: Dict[str, bytes], archives: tuple = ()) -> Manifest:
    return Manifest(
        version=version,
        generated_at=GENERATED_AT,
        files={p: make_entry(p, d, is_archive=p in archives) for p, d in payloads.items()},
    )

def manifest_json(version: int, payloads: Dict[str, bytes], archives: tuple = ()) -> bytes:
    doc = {
        "version": version,
        "generated_at": GENERATED_AT.isoformat(),
        "files": [
            {"relative_path": p, "size_bytes": len(d), "checksum": sha(d), "is_archive": p in archives}
            for p, d in sorted(payloads.items())
        ],
    }
    return json.dumps(doc).encode("utf-8")

def make_zip(files: Dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, data in files.items():
            zf.writestr(name, data)
    return buffer.getvalue()


Failure = Union[int, Exception]


class ReleaseServer:
    """In-memory HTTPS release host served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.failures: Dict[str, List[Failure]] = {}
        self.requests: List[httpx.Request] = []
        self.honor_range = True
        self._lock = threading.Lock()

    def publish(self, version: int, payloads: Dict[str, bytes], archives: tuple = ()) -> bytes:
        raw = manifest_json(version, payloads, archives)
        self.files = {"/release/manifest.json": raw}
        for path, data in payloads.items():
            self.files["/release/" + path] = data
        return raw

    def fail(self, path: str, *failures: Failure) -> None:
        self.failures.setdefault("/release/" + path, []).extend(failures)

    def requested(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == "/release/" + path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        with self._lock:
            self.requests.append(request)
            queued = self.failures.get(path)
            failure = queued.pop(0) if queued else None
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            return httpx.Response(failure, request=request)

        data = self.files.get(path)
        if data is None:
            return httpx.Response(404, request=request)
        range_header = request.headers.get("Range")
        if range_header and self.honor_range:
            start = int(range_header.split("=")[1].rstrip("-"))
            if start >= len(data):
                return httpx.Response(416, request=request)
            return httpx.Response(
                206,
                content=data[start:],
                headers={"Content-Range": f"bytes {start}-{len(data) - 1}/{len(data)}"},
                request=request,
            )
        return httpx.Response(200, content=data, request=request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def client(self, **kwargs) -> TransferClient:
        kwargs.setdefault("backoff_initial", 0.0)
        return TransferClient(transport=self.transport(), **kwargs)


class MemoryKeyring(KeyringBackend):
    priority = 1

    def __init__(self) -> None:
        super().__init__()
        self.store: Dict[tuple, str] = {}

    def get_password(self, service: str, username: str) -> Optional[str]:
        return self.store.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        self.store[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        if (service, username) not in self.store:
            raise PasswordDeleteError("not found")
        del self.store[(service, username)]


@pytest.fixture(autouse=True)
def _no_proxies(monkeypatch):
    for var in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.delenv("NIGHTWATCH_TOKEN", raising=False)

@pytest.fixture
def server() -> ReleaseServer:
    return ReleaseServer()

@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    path = tmp_path / "config"
    monkeypatch.setenv("NIGHTWATCH_CONFIG_DIR", str(path))
    return path

@pytest.fixture
def memory_keyring():
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)
