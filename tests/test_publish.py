import base64
import zipfile

import pytest

from nightwatch.crypto import generate_signing_keypair, verify_detached
from nightwatch.errors import NightWatchError
from nightwatch.manifest import parse
from nightwatch.models import SyncConfig, SyncState
from nightwatch.orchestrator import SyncOrchestrator
from nightwatch.publish import MANIFEST_NAME, build_release, pack_directory, scan_tree

from conftest import MANIFEST_URL, sha


@pytest.fixture
def source(tmp_path):
    src = tmp_path / "src"
    (src / "bin").mkdir(parents=True)
    (src / "bin" / "app").write_bytes(b"app-v1")
    (src / "readme.txt").write_text("hello")
    (src / "addons" / "pack" / "lua").mkdir(parents=True)
    (src / "addons" / "pack" / "lua" / "init.lua").write_text("print(1)")
    (src / "debug.log").write_text("noise")
    return src


def test_scan_tree_hashes_every_file(source):
    manifest = scan_tree(source, version=3)
    assert manifest.version == 3
    assert set(manifest.files) == {"bin/app", "readme.txt", "addons/pack/lua/init.lua", "debug.log"}
    assert manifest.files["bin/app"].checksum == sha(b"app-v1")
    assert manifest.files["bin/app"].size_bytes == 6

def test_scan_tree_honours_exclusions(source):
    manifest = scan_tree(source, version=1, exclude=["*.log"])
    assert "debug.log" not in manifest

def test_pack_directory_is_deterministic(source, tmp_path):
    first = pack_directory(source / "addons" / "pack", tmp_path / "one.zip")
    second = pack_directory(source / "addons" / "pack", tmp_path / "two.zip")
    assert first.read_bytes() == second.read_bytes()
    with zipfile.ZipFile(first) as zf:
        assert zf.namelist() == ["pack/lua/init.lua"]

def test_build_release_lays_out_servable_tree(source, tmp_path):
    out = tmp_path / "out"
    priv, pub = generate_signing_keypair()

    manifest = build_release(source, out, version=5, archives=["addons/pack"], exclude=["*.log"], signing_key=priv)

    assert (out / "bin" / "app").read_bytes() == b"app-v1"
    assert zipfile.is_zipfile(out / "addons" / "pack")
    assert not (out / "debug.log").exists()
    assert manifest.files["addons/pack"].is_archive
    assert "addons/pack/lua/init.lua" not in manifest

    raw = (out / MANIFEST_NAME).read_bytes()
    assert parse(raw) == manifest
    signature = (out / (MANIFEST_NAME + ".sig")).read_text()
    verify_detached(raw, signature, base64.b64encode(pub).decode("ascii"))

def test_build_release_refuses_non_empty_output(source, tmp_path):
    out = tmp_path / "out"
    out.mkdir()
    (out / "stale").write_text("x")
    with pytest.raises(NightWatchError, match="not empty"):
        build_release(source, out, version=1)

def test_build_release_refuses_output_inside_source(source):
    with pytest.raises(NightWatchError):
        build_release(source, source / "dist", version=1)

def test_published_release_installs_end_to_end(source, tmp_path, server):
    out = tmp_path / "out"
    build_release(source, out, version=1, archives=["addons/pack"])
    server.files = {
        "/release/" + p.relative_to(out).as_posix(): p.read_bytes()
        for p in out.rglob("*") if p.is_file()
    }

    root = tmp_path / "install"
    config = SyncConfig(root_dir=root, manifest_url=MANIFEST_URL, backoff_initial=0)
    with server.client() as client:
        result = SyncOrchestrator(config, client=client).run()

    assert result.state == SyncState.COMMITTED
    assert (root / "addons" / "pack" / "lua" / "init.lua").read_text() == "print(1)"
    assert (root / "debug.log").read_text() == "noise"
