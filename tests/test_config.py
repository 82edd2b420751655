from datetime import datetime, timezone

import pytest

from nightwatch import config
from nightwatch.errors import ProfileNotFoundError, ProfileValidationError
from nightwatch.models import Profile

from conftest import MANIFEST_URL


def _profile(name="game", token_ref="nightwatch_game_token", **kwargs):
    return Profile(
        name=name,
        root_dir="/opt/game",
        manifest_url=MANIFEST_URL,
        token_ref=token_ref,
        created_at=datetime.now(timezone.utc),
        **kwargs,
    )


def test_profile_roundtrip_keeps_token_out_of_file(config_dir, memory_keyring):
    assert config.save_profile(_profile(), "tok-123") is True

    path = config.get_profile_path("game")
    assert "tok-123" not in path.read_text()
    loaded = config.load_profile("game")
    assert loaded.manifest_url == MANIFEST_URL
    assert config.get_profile_token(loaded) == "tok-123"
    assert config.list_profiles() == ["game"]

def test_environment_token_overrides_keyring(config_dir, memory_keyring, monkeypatch):
    config.save_profile(_profile(), "from-keyring")
    monkeypatch.setenv(config.TOKEN_ENV_VAR, "from-env")
    assert config.get_profile_token(config.load_profile("game")) == "from-env"

def test_profile_without_token(config_dir, memory_keyring):
    config.save_profile(_profile(token_ref=None))
    assert config.get_profile_token(config.load_profile("game")) is None
    assert memory_keyring.store == {}

def test_missing_profile(config_dir):
    with pytest.raises(ProfileNotFoundError):
        config.load_profile("nope")

def test_corrupt_profile(config_dir):
    config.get_profile_path("broken").write_text('{"name": "broken"}')
    with pytest.raises(ProfileValidationError):
        config.load_profile("broken")

def test_delete_profile_removes_token(config_dir, memory_keyring):
    config.save_profile(_profile(), "tok")
    config.delete_profile("game")
    assert config.list_profiles() == []
    assert memory_keyring.store == {}

def test_profile_to_sync_config(tmp_path):
    profile = _profile(public_key="AAAA", parallelism=6)
    sync_config = profile.to_sync_config("secret")
    assert sync_config.parallelism == 6
    assert sync_config.token == "secret"
    assert "secret" not in repr(sync_config)

def test_profile_rejects_plain_http():
    with pytest.raises(ValueError):
        Profile(name="x", root_dir="/x", manifest_url="http://example.com/m.json", created_at=datetime.now(timezone.utc))
