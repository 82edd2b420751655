import json

from typer.testing import CliRunner

from nightwatch.cli import app
from nightwatch.daemon import generate_systemd_unit, generate_windows_task_xml
from nightwatch.doctor import run_diagnostics
from nightwatch.manifest import parse
from nightwatch.models import LocalState

from conftest import MANIFEST_URL, make_manifest

runner = CliRunner()


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "NIGHT WATCH" in result.output

def test_add_and_list_profiles(config_dir, memory_keyring, tmp_path):
    result = runner.invoke(app, [
        "add", "--name", "game", "--root", str(tmp_path / "game"), "--manifest-url", MANIFEST_URL,
    ])
    assert result.exit_code == 0, result.output

    listed = runner.invoke(app, ["profiles", "--json"])
    assert listed.exit_code == 0
    data = json.loads(listed.output)
    assert data[0]["name"] == "game"
    assert data[0]["manifest_url"] == MANIFEST_URL

def test_add_rejects_insecure_url(config_dir, memory_keyring, tmp_path):
    result = runner.invoke(app, [
        "add", "--name", "game", "--root", str(tmp_path), "--manifest-url", "http://example.com/m.json",
    ])
    assert result.exit_code == 1

def test_sync_unknown_profile_fails(config_dir):
    result = runner.invoke(app, ["sync", "missing"])
    assert result.exit_code == 1

def test_keygen_publish_and_sign(tmp_path):
    key = tmp_path / "signing.key"
    assert runner.invoke(app, ["keygen", "--out", str(key)]).exit_code == 0
    assert key.exists()

    src = tmp_path / "src"
    src.mkdir()
    (src / "a.txt").write_text("a")
    out = tmp_path / "out"
    result = runner.invoke(app, ["publish", str(src), str(out), "--version", "4", "--key-file", str(key)])
    assert result.exit_code == 0, result.output
    manifest = parse((out / "manifest.json").read_bytes())
    assert manifest.version == 4
    assert (out / "manifest.json.sig").exists()

    (out / "manifest.json.sig").unlink()
    assert runner.invoke(app, ["sign", str(out / "manifest.json"), "--key-file", str(key)]).exit_code == 0
    assert (out / "manifest.json.sig").exists()

def test_verify_reports_damage(config_dir, memory_keyring, tmp_path):
    root = tmp_path / "game"
    root.mkdir()
    (root / "a").write_bytes(b"1")
    from nightwatch.state import StateStore
    StateStore(root).save(LocalState(manifest=make_manifest(1, {"a": b"1", "b": b"2"}), install_generation=1))
    runner.invoke(app, ["add", "--name", "game", "--root", str(root), "--manifest-url", MANIFEST_URL])

    result = runner.invoke(app, ["verify", "game"])
    assert result.exit_code == 1
    assert "Damaged Entries" in result.output

def test_watch_generate_prints_service_definition(config_dir):
    result = runner.invoke(app, ["watch", "game", "--interval", "15", "--generate"])
    assert result.exit_code == 0

def test_service_definitions():
    unit = generate_systemd_unit("game", 15)
    assert "nightwatch.cli watch game --interval 15" in unit
    xml = generate_windows_task_xml("game", 15)
    assert "nightwatch.cli watch game --interval 15" in xml

def test_doctor_without_profile(config_dir, memory_keyring):
    checks = run_diagnostics()
    names = [c.name for c in checks]
    assert "Config directory" in names
    assert all(c.status != "fail" for c in checks)

def test_doctor_with_profile_masks_token(config_dir, memory_keyring, server, tmp_path):
    from datetime import datetime, timezone
    from nightwatch.config import save_profile
    from nightwatch.models import Profile

    server.publish(1, {"a": b"1"})
    profile = Profile(
        name="game",
        root_dir=str(tmp_path / "game"),
        manifest_url=MANIFEST_URL,
        token_ref="nightwatch_game_token",
        created_at=datetime.now(timezone.utc),
    )
    save_profile(profile, "supersecrettoken")
    with server.client() as client:
        checks = {c.name: c for c in run_diagnostics(profile, client)}

    assert checks["Token"].detail.endswith("oken")
    assert "supersecret" not in checks["Token"].detail
    assert checks["Remote manifest"].status == "pass"
    assert checks["Manifest signature"].status == "warn"

def _route_client_to(server, monkeypatch):
    from nightwatch.transfer import TransferClient

    monkeypatch.setattr(TransferClient, "from_config", classmethod(lambda cls, config, transport=None: server.client()))

def test_diff_lists_pending_changes(config_dir, memory_keyring, server, tmp_path, monkeypatch):
    _route_client_to(server, monkeypatch)
    server.publish(1, {"a": b"1"})
    runner.invoke(app, ["add", "--name", "game", "--root", str(tmp_path / "game"), "--manifest-url", MANIFEST_URL])

    result = runner.invoke(app, ["diff", "game"])
    assert result.exit_code == 0, result.output
    assert "remote v1" in result.output

def test_diff_reports_unsafe_remote_paths(config_dir, memory_keyring, server, tmp_path, monkeypatch):
    _route_client_to(server, monkeypatch)
    server.publish(1, {"ok": b"1", "../escape": b"e"})
    runner.invoke(app, ["add", "--name", "game", "--root", str(tmp_path / "game"), "--manifest-url", MANIFEST_URL])

    result = runner.invoke(app, ["diff", "game"])
    assert result.exit_code == 1
    assert result.exception is None or isinstance(result.exception, SystemExit)
