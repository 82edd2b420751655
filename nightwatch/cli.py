"""
Command Line Interface entry point using Typer.
"""
import base64
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import typer
from rich.logging import RichHandler
from rich.panel import Panel

from .audit import read_history
from .config import (
    delete_profile,
    get_profile_token,
    list_profiles,
    load_profile,
    save_profile,
)
from .crypto import generate_signing_keypair
from .delta import diff
from .errors import NightWatchError
from .models import Profile, SyncState
from .orchestrator import HISTORY_FILE_NAME, SyncOrchestrator
from .state import StateStore, damaged_paths
from .transfer import TransferClient
from .ui import (
    ProgressRenderer,
    confirm,
    console,
    render_changeset,
    render_doctor,
    render_error,
    render_progress,
    render_result,
    render_status,
    render_table,
    render_warning,
)
from .utils import human_size, setup_signal_handlers

VERSION = "1.0.0"

EXIT_FAILED = 1
EXIT_CANCELLED = 130

app = typer.Typer(
    help=(
        "[bold cyan]NIGHT WATCH[/] [dim]v" + VERSION + "[/]\n\n"
        "Keeps an install directory in sync with a published manifest.\n"
        "Every sync either commits completely or leaves the install untouched."
    ),
    no_args_is_help=True,
    rich_markup_mode="rich",
)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show engine log output.")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _load(name: str) -> Profile:
    try:
        return load_profile(name)
    except NightWatchError as e:
        render_error(str(e))
        raise typer.Exit(EXIT_FAILED)


@app.command(name="add")
def add_profile(
    name: str = typer.Option(..., "--name", "-n", prompt="Profile name"),
    root: str = typer.Option(..., "--root", "-r", prompt="Install directory"),
    manifest_url: str = typer.Option(..., "--manifest-url", "-m", prompt="Manifest URL (https)"),
    parallelism: int = typer.Option(4, "--parallelism", "-j", help="Concurrent downloads"),
    public_key: Optional[str] = typer.Option(None, "--public-key", help="Base64 Ed25519 key for manifest signatures"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Bearer token for private update servers", hide_input=True),
):
    """Register an install directory and the manifest it tracks."""
    try:
        profile = Profile(
            name=name,
            root_dir=str(Path(root).expanduser().resolve()),
            manifest_url=manifest_url,
            parallelism=parallelism,
            token_ref=f"nightwatch_{name}_token" if token else None,
            public_key=public_key,
            created_at=datetime.now(timezone.utc),
        )
    except ValueError as e:
        render_error(f"Invalid profile: {e}")
        raise typer.Exit(EXIT_FAILED)

    if not save_profile(profile, token):
        render_warning("Failed to store token in the OS keyring. Provide it via NIGHTWATCH_TOKEN instead.")
    render_status("success", f"Profile '{name}' saved.")
    if not public_key:
        render_warning("No public key given: manifests for this profile will not be signature-checked.")


@app.command(name="profiles")
def list_profiles_cmd(json_output: bool = typer.Option(False, "--json", help="Output in JSON format.")):
    """List all configured profiles."""
    names = list_profiles()
    rows = []
    data = []
    for n in names:
        try:
            prof = load_profile(n)
        except NightWatchError as e:
            rows.append([n, "[red]ERROR[/]", str(e).split("\n")[0][:60]])
            continue
        rows.append([prof.name, prof.manifest_url, prof.root_dir])
        data.append({"name": prof.name, "manifest_url": prof.manifest_url, "root_dir": prof.root_dir})

    if json_output:
        typer.echo(json.dumps(data, indent=2))
        return
    if not rows:
        typer.echo("No profiles found.")
        return
    render_table("Configured Profiles", ["Name", "Manifest URL", "Install Directory"], rows)


@app.command(name="delete")
def delete_profile_cmd(
    name: str = typer.Argument(..., help="Profile to delete"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
):
    """Delete a profile and its stored token. The install directory is left alone."""
    if not yes and not confirm(f"Delete profile '{name}'?"):
        raise typer.Exit(0)
    try:
        delete_profile(name)
    except NightWatchError as e:
        render_error(str(e))
        raise typer.Exit(EXIT_FAILED)
    render_status("success", f"Profile '{name}' deleted.")


@app.command(name="sync")
def sync_cmd(
    name: str = typer.Argument(..., help="Profile to sync"),
    parallelism: Optional[int] = typer.Option(None, "--parallelism", "-j", min=1, max=64, help="Override concurrent downloads"),
    allow_downgrade: bool = typer.Option(False, "--allow-downgrade", help="Accept a remote manifest older than the install"),
):
    """Run one sync cycle: fetch, diff, download, extract, install."""
    profile = _load(name)
    config = profile.to_sync_config(get_profile_token(profile))
    overrides = {"allow_downgrade": allow_downgrade}
    if parallelism is not None:
        overrides["parallelism"] = parallelism
    config = config.model_copy(update=overrides)

    with render_progress(f"Syncing {profile.root_dir}") as progress:
        renderer = ProgressRenderer(progress)
        orchestrator = SyncOrchestrator(config, renderer)
        setup_signal_handlers(orchestrator.cancel)
        result = orchestrator.run()

    render_result(result)
    if result.state == SyncState.CANCELLED:
        raise typer.Exit(EXIT_CANCELLED)
    if not result.ok:
        raise typer.Exit(EXIT_FAILED)


@app.command(name="diff")
def diff_cmd(name: str = typer.Argument(..., help="Profile name")):
    """Show what the next sync would change, without changing anything."""
    profile = _load(name)
    config = profile.to_sync_config(get_profile_token(profile))
    try:
        with TransferClient.from_config(config) as client:
            with console.status("[cyan]Fetching manifest..."):
                remote = client.fetch_manifest(config.manifest_url, config.public_key)
        state = StateStore(config.root_dir).load_or_empty()
        stale = damaged_paths(config.root_dir, state, config.critical_patterns) if config.root_dir.is_dir() else []
        change_set = diff(state.manifest, remote, stale=stale)
    except (NightWatchError, OSError) as e:
        render_error(str(e))
        raise typer.Exit(EXIT_FAILED)

    render_status("manifest", f"Installed v{state.manifest.version}, remote v{remote.version}")
    render_changeset(change_set)
    if change_set.fetch_paths:
        total = sum(remote.files[p].size_bytes for p in change_set.fetch_paths)
        render_status("download", f"{human_size(total)} to download")


@app.command(name="status")
def status_cmd(
    name: str = typer.Argument(..., help="Profile name"),
    last_n: int = typer.Option(10, "--last", "-n", help="Number of recent sync events to show"),
):
    """Show the installed manifest and recent sync history."""
    profile = _load(name)
    store = StateStore(Path(profile.root_dir))
    state = store.load()
    if state is None:
        render_status("info", "Nothing installed yet.")
    else:
        render_table(
            f"Install state for {name}",
            ["Field", "Value"],
            [
                ["Install generation", str(state.install_generation)],
                ["Manifest version", str(state.manifest.version)],
                ["Generated at", state.manifest.generated_at.isoformat()],
                ["Entries", str(len(state.manifest))],
                ["Size", human_size(state.manifest.total_size)],
            ],
        )

    events = read_history(store.state_dir / HISTORY_FILE_NAME, last_n)
    if events:
        rows = [[e["timestamp"], e["event"], str(e.get("details", {}).get("error") or "")] for e in events]
        render_table("Sync History", ["Timestamp", "Event", "Error"], rows)


@app.command(name="verify")
def verify_cmd(name: str = typer.Argument(..., help="Profile name")):
    """Check the live install against the recorded state."""
    profile = _load(name)
    root = Path(profile.root_dir)
    state = StateStore(root).load()
    if state is None:
        render_status("info", "Nothing installed yet.")
        return
    with console.status("[cyan]Hashing installed files..."):
        damaged = damaged_paths(root, state)
    if not damaged:
        render_status("success", f"All {len(state.manifest)} entries match generation {state.install_generation}.")
        return
    render_table("Damaged Entries", ["#", "Path"], [[str(i + 1), p] for i, p in enumerate(damaged)])
    render_warning("Run 'nightwatch sync' to repair these entries.")
    raise typer.Exit(EXIT_FAILED)


@app.command(name="watch")
def watch_cmd(
    name: str = typer.Argument(..., help="Profile name"),
    interval: int = typer.Option(60, "--interval", "-i", min=1, help="Interval in minutes"),
    generate: bool = typer.Option(False, "--generate", help="Print a service definition instead of running"),
):
    """Sync periodically in the foreground."""
    from .daemon import WatchDaemon, generate_systemd_unit, generate_windows_task_xml

    if generate:
        if sys.platform == "win32":
            console.print(Panel(generate_windows_task_xml(name, interval), title="Windows Task Scheduler XML", border_style="cyan"))
        else:
            console.print(Panel(generate_systemd_unit(name, interval), title="Systemd Unit File", border_style="cyan"))
        return

    _load(name)
    render_status("daemon", f"Watching '{name}' every {interval}m. Ctrl+C to stop.")
    try:
        WatchDaemon(name, interval).start()
    except NightWatchError as e:
        render_error(str(e))
        raise typer.Exit(EXIT_FAILED)


@app.command(name="publish")
def publish_cmd(
    source: Path = typer.Argument(..., help="Directory holding the release contents"),
    out_dir: Path = typer.Argument(..., help="Empty directory to lay out the servable release in"),
    version: int = typer.Option(..., "--version", min=0, help="Manifest version number"),
    archive: List[str] = typer.Option([], "--archive", "-a", help="Sub-directory to ship as one ZIP entry"),
    exclude: List[str] = typer.Option([], "--exclude", "-x", help="Glob pattern to leave out"),
    key_file: Optional[Path] = typer.Option(None, "--key-file", "-k", help="Signing key from 'nightwatch keygen'"),
):
    """Build a release directory and its manifest."""
    from .publish import MANIFEST_NAME, build_release

    signing_key = _read_signing_key(key_file) if key_file else None
    try:
        with console.status("[cyan]Hashing release..."):
            manifest = build_release(
                source, out_dir, version=version, archives=archive, exclude=exclude, signing_key=signing_key
            )
    except NightWatchError as e:
        render_error(str(e))
        raise typer.Exit(EXIT_FAILED)
    render_status(
        "success",
        f"Wrote {out_dir / MANIFEST_NAME}: v{manifest.version}, {len(manifest)} entries, {human_size(manifest.total_size)}",
    )
    if signing_key:
        render_status("signature", "Manifest signed.")


@app.command(name="keygen")
def keygen_cmd(out: Path = typer.Option(Path("nightwatch-signing.key"), "--out", "-o", help="Where to write the private key")):
    """Generate an Ed25519 keypair for signing manifests."""
    from .config import apply_secure_permissions

    if out.exists():
        render_error(f"{out} already exists.")
        raise typer.Exit(EXIT_FAILED)
    priv, pub = generate_signing_keypair()
    out.write_text(base64.b64encode(priv).decode("ascii") + "\n", encoding="ascii")
    apply_secure_permissions(out)
    render_status("success", f"Private key written to {out}")
    console.print(Panel(base64.b64encode(pub).decode("ascii"), title="Public key (use with 'add --public-key')", border_style="cyan"))


@app.command(name="sign")
def sign_cmd(
    manifest: Path = typer.Argument(..., help="Manifest file to sign"),
    key_file: Path = typer.Option(..., "--key-file", "-k", help="Signing key from 'nightwatch keygen'"),
):
    """Write a detached signature next to a manifest."""
    from .publish import write_signature

    try:
        sig_path = write_signature(manifest, _read_signing_key(key_file))
    except (NightWatchError, OSError) as e:
        render_error(str(e))
        raise typer.Exit(EXIT_FAILED)
    render_status("signature", f"Signature written to {sig_path}")


def _read_signing_key(key_file: Path) -> bytes:
    from .crypto import decode_b64

    try:
        return decode_b64(key_file.read_text(encoding="ascii"), "signing key")
    except (NightWatchError, OSError, UnicodeDecodeError) as e:
        render_error(f"Cannot read signing key {key_file}: {e}")
        raise typer.Exit(EXIT_FAILED)


@app.command(name="doctor")
def doctor_cmd(name: Optional[str] = typer.Argument(None, help="Profile to diagnose")):
    """Run the diagnostic suite."""
    from .doctor import run_diagnostics

    profile = _load(name) if name else None
    with console.status("[cyan]Running diagnostic checks..."):
        checks = run_diagnostics(profile)
    render_doctor(checks)
    if any(c.status == "fail" for c in checks):
        raise typer.Exit(EXIT_FAILED)


@app.command(name="version")
def version_cmd():
    """Display version information."""
    console.print(Panel(f"[bold cyan]NIGHT WATCH[/] v{VERSION}", border_style="cyan", expand=False))


if __name__ == "__main__":
    app()
