"""
Configuration, profile management, and token storage for Night Watch.

A profile names one install root and the manifest URL it tracks. Tokens for
private update servers live in the OS keyring, never in the profile file.
"""
import json
import logging
import os
import stat
import sys
from pathlib import Path
from typing import List, Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError
from pydantic import ValidationError

from .errors import ProfileNotFoundError, ProfileValidationError
from .models import Profile

logger = logging.getLogger(__name__)

APP_NAME = "nightwatch"
TOKEN_ENV_VAR = "NIGHTWATCH_TOKEN"


def get_config_dir() -> Path:
    """Returns the platform-specific configuration directory."""
    override = os.getenv("NIGHTWATCH_CONFIG_DIR")
    if override:
        base_dir = Path(override)
        base_dir.mkdir(parents=True, exist_ok=True)
        return base_dir

    if sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        base_dir = Path(appdata) if appdata else Path.home() / "AppData" / "Roaming"
    else:
        xdg_config = os.getenv("XDG_CONFIG_HOME")
        base_dir = Path(xdg_config) if xdg_config else Path.home() / ".config"

    config_dir = base_dir / APP_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir

def list_profiles() -> List[str]:
    """List all available profile names."""
    return sorted(
        fp.stem for fp in get_config_dir().glob("*.json")
        if fp.is_file() and not fp.name.startswith(".")
    )

def get_profile_path(name: str) -> Path:
    return get_config_dir() / f"{name}.json"

def apply_secure_permissions(path: Path) -> None:
    """Owner read/write only, where the platform supports it."""
    if sys.platform != "win32":
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)

def _write_profile(profile: Profile) -> Path:
    path = get_profile_path(profile.name)
    with path.open("w", encoding="utf-8") as f:
        f.write(profile.model_dump_json(indent=2))
    apply_secure_permissions(path)
    return path

def save_profile(profile: Profile, token: Optional[str] = None) -> bool:
    """
    Save a profile to disk and its token to the keyring.
    Returns False if a token was given but the keyring refused it.
    """
    stored = True
    if token and profile.token_ref:
        try:
            keyring.set_password(APP_NAME, profile.token_ref, token)
        except KeyringError as e:
            logger.warning("Keyring unavailable, token for '%s' not stored: %s", profile.name, e)
            stored = False

    _write_profile(profile)
    logger.info("Saved profile '%s'", profile.name)
    return stored

def load_profile(name: str) -> Profile:
    """Load a profile by name from disk."""
    path = get_profile_path(name)
    if not path.exists():
        raise ProfileNotFoundError(f"Profile '{name}' does not exist.")

    try:
        with path.open("r", encoding="utf-8") as f:
            return Profile(**json.load(f))
    except (OSError, ValueError, TypeError, ValidationError) as e:
        raise ProfileValidationError(f"Failed to load profile '{name}': {e}") from e

def update_profile(profile: Profile) -> None:
    """Rewrite an existing profile without touching the token."""
    if not get_profile_path(profile.name).exists():
        raise ProfileNotFoundError(f"Profile '{profile.name}' does not exist.")
    _write_profile(profile)

def get_profile_token(profile: Profile) -> Optional[str]:
    """Token from the environment override, then the keyring."""
    env_token = os.getenv(TOKEN_ENV_VAR)
    if env_token:
        return env_token
    if not profile.token_ref:
        return None
    try:
        return keyring.get_password(APP_NAME, profile.token_ref)
    except KeyringError as e:
        logger.warning("Could not read token for '%s' from keyring: %s", profile.name, e)
        return None

def delete_profile(name: str) -> None:
    """Delete a profile and its associated token."""
    profile = load_profile(name)
    if profile.token_ref:
        try:
            keyring.delete_password(APP_NAME, profile.token_ref)
        except PasswordDeleteError:
            logger.debug("No keyring entry for '%s'", name)
        except KeyringError as e:
            logger.warning("Could not remove token for '%s' from keyring: %s", name, e)
    get_profile_path(name).unlink()
    logger.info("Deleted profile '%s'", name)
