"""
Diagnostic suite for an install profile.
"""
import importlib
import shutil
import ssl
import time
from pathlib import Path
from typing import List, Optional

import keyring
from keyring.errors import KeyringError

from .config import get_config_dir, get_profile_token
from .crypto import PUBLIC_KEY_LEN, decode_b64
from .errors import NightWatchError, SignatureError
from .models import DoctorCheck, Profile
from .state import StateStore, damaged_paths
from .transfer import TransferClient
from .utils import mask_token

REQUIRED_MODULES = ("httpx", "pydantic", "typer", "rich", "keyring", "cryptography", "apscheduler")
LOW_DISK_BYTES = 1 << 30


def _check_manifest(profile: Profile, client: TransferClient) -> DoctorCheck:
    try:
        start = time.monotonic()
        manifest = client.fetch_manifest(profile.manifest_url, profile.public_key)
        ms = int((time.monotonic() - start) * 1000)
    except NightWatchError as e:
        return DoctorCheck(name="Remote manifest", status="fail", detail=str(e))
    return DoctorCheck(
        name="Remote manifest",
        status="pass",
        detail=f"v{manifest.version}, {len(manifest)} entries, fetched in {ms}ms",
    )

def _check_public_key(profile: Profile) -> DoctorCheck:
    if not profile.public_key:
        return DoctorCheck(name="Manifest signature", status="warn", detail="No public key configured; manifests are not signature-checked.")
    try:
        key = decode_b64(profile.public_key, "public key")
    except SignatureError as e:
        return DoctorCheck(name="Manifest signature", status="fail", detail=str(e))
    if len(key) != PUBLIC_KEY_LEN:
        return DoctorCheck(name="Manifest signature", status="fail", detail="Public key is not 32 raw Ed25519 bytes.")
    return DoctorCheck(name="Manifest signature", status="pass", detail="Ed25519 public key configured")

def _check_local_state(root: Path) -> List[DoctorCheck]:
    store = StateStore(root)
    checks: List[DoctorCheck] = []
    state = store.load()
    if state is None:
        detail = "Corrupt state file; next sync reinstalls everything" if store.path.exists() else "No install recorded yet"
        status = "fail" if store.path.exists() else "info"
        checks.append(DoctorCheck(name="Local state", status=status, detail=detail))
    else:
        damaged = damaged_paths(root, state)
        status = "warn" if damaged else "pass"
        detail = (
            f"generation {state.install_generation}, manifest v{state.manifest.version}"
            + (f", {len(damaged)} damaged paths will be repaired" if damaged else "")
        )
        checks.append(DoctorCheck(name="Local state", status=status, detail=detail))

    leftovers = store.leftovers()
    if leftovers:
        checks.append(DoctorCheck(
            name="Interrupted cycles",
            status="warn",
            detail=f"{len(leftovers)} leftover staging/backup directories; removed on next sync",
        ))
    else:
        checks.append(DoctorCheck(name="Interrupted cycles", status="pass", detail="None"))
    return checks

def run_diagnostics(profile: Optional[Profile] = None, client: Optional[TransferClient] = None) -> List[DoctorCheck]:
    """Execute the health checks synchronously."""
    checks: List[DoctorCheck] = []

    if profile is not None:
        root = Path(profile.root_dir)
        token = get_profile_token(profile)
        if profile.token_ref and not token:
            checks.append(DoctorCheck(name="Token", status="fail", detail=f"No token found for {profile.token_ref}"))
        elif token:
            checks.append(DoctorCheck(name="Token", status="pass", detail=mask_token(token)))
        owns_client = client is None
        if client is None:
            client = TransferClient.from_config(profile.to_sync_config(token))
        try:
            checks.append(_check_manifest(profile, client))
        finally:
            if owns_client:
                client.close()
        checks.append(_check_public_key(profile))
        if root.is_dir():
            checks.extend(_check_local_state(root))
        else:
            checks.append(DoctorCheck(name="Install root", status="info", detail=f"{root} does not exist yet"))
        disk_target = root if root.is_dir() else get_config_dir()
    else:
        checks.append(DoctorCheck(name="Profile", status="info", detail="No profile given; remote checks skipped"))
        disk_target = get_config_dir()

    try:
        free = shutil.disk_usage(disk_target).free
        status = "pass" if free > LOW_DISK_BYTES else "warn"
        checks.append(DoctorCheck(name="Disk space", status=status, detail=f"{free // (2**20)} MiB free at {disk_target}"))
    except OSError as e:
        checks.append(DoctorCheck(name="Disk space", status="fail", detail=str(e)))

    checks.append(DoctorCheck(name="Config directory", status="pass", detail=str(get_config_dir())))
    checks.append(DoctorCheck(name="OpenSSL", status="pass", detail=ssl.OPENSSL_VERSION))

    try:
        backend = keyring.get_keyring()
        checks.append(DoctorCheck(name="OS keyring backend", status="pass", detail=backend.__class__.__name__))
    except KeyringError as e:
        checks.append(DoctorCheck(name="OS keyring backend", status="warn", detail=str(e)))

    missing = []
    for module in REQUIRED_MODULES:
        try:
            importlib.import_module(module)
        except ImportError:
            missing.append(module)
    if missing:
        checks.append(DoctorCheck(name="Dependencies", status="fail", detail="Missing: " + ", ".join(missing)))
    else:
        checks.append(DoctorCheck(name="Dependencies", status="pass", detail="All core requirements met"))

    return checks
