"""
Rich terminal UI components.
Stage progress, change set previews and result panels, with an ASCII fallback.
"""
import sys
from contextlib import contextmanager
from typing import Dict, Generator, List, Optional, Union

import typer
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeRemainingColumn,
)
from rich.table import Table
from rich.text import Text

from .models import ChangeSet, DoctorCheck, ProgressSnapshot, SyncResult, SyncState

try:
    "✔".encode(sys.stdout.encoding or "utf-8" if sys.stdout else "utf-8")
    HAS_UNICODE = True
except (UnicodeEncodeError, LookupError):
    HAS_UNICODE = False

ICONS: Dict[str, str] = {
    "manifest": "\U0001f4dc",
    "download": "\U0001f4e5",
    "extract": "\U0001f4e6",
    "install": "\U0001f527",
    "verify": "\U0001f9ea",
    "success": "✅",
    "error": "❌",
    "warn": "⚠️",
    "info": "ℹ️",
    "daemon": "\U0001f319",
    "doctor": "\U0001fa7a",
    "delta": "⚡",
    "signature": "✍️",
}

ASCII_ICONS: Dict[str, str] = {
    "manifest": "[MNF]",
    "download": "[DWN]",
    "extract": "[EXT]",
    "install": "[INS]",
    "verify": "[CHK]",
    "success": "[OK]",
    "error": "[ERR]",
    "warn": "[WARN]",
    "info": "[INF]",
    "daemon": "[DMN]",
    "doctor": "[DOC]",
    "delta": "[DLT]",
    "signature": "[SIG]",
}

STAGE_LABELS: Dict[SyncState, str] = {
    SyncState.FETCHING_MANIFEST: "Fetching manifest",
    SyncState.DIFFING: "Comparing",
    SyncState.DOWNLOADING: "Downloading",
    SyncState.EXTRACTING: "Extracting",
    SyncState.INSTALLING: "Installing",
}

DOCTOR_STYLES = {"pass": "green", "warn": "yellow", "fail": "red", "info": "cyan"}


def icon(name: str) -> str:
    return ICONS.get(name, "") if HAS_UNICODE else ASCII_ICONS.get(name, "")

console = Console()
err_console = Console(stderr=True)

def render_status(action: str, message: str, style: str = "white") -> None:
    """Print a single line status update."""
    console.print(f"{icon(action)} [{style}]{message}[/]")

def render_error(message: str) -> None:
    err_console.print()
    err_console.print(Panel(Text(message, style="red"), border_style="red", expand=False, title=f"{icon('error')} ERROR"))

def render_warning(message: str) -> None:
    console.print()
    console.print(Panel(Text(message, style="yellow"), border_style="yellow", expand=False, title=f"{icon('warn')} WARNING"))

def confirm(prompt_text: str) -> bool:
    return typer.confirm(f"{icon('warn')} {prompt_text}", default=False)

def render_table(title: str, headers: List[str], rows: List[List[str]]) -> None:
    """Render a structured Rich table."""
    console.print()
    table = Table(
        title=title,
        border_style="cyan",
        header_style="bold magenta",
        show_lines=True,
        box=box.ROUNDED if HAS_UNICODE else box.ASCII,
    )
    if headers:
        table.add_column(headers[0], justify="center", no_wrap=True)
        for h in headers[1:]:
            table.add_column(h, justify="left", overflow="fold")
    for r in rows:
        table.add_row(*r)
    console.print(table)
    console.print()

def render_changeset(change_set: ChangeSet) -> None:
    """Render a change set as +/~/- lines."""
    console.print()
    if change_set.is_empty:
        console.print("[dim italic]No changes: the install matches the remote manifest.[/]")
        return
    if change_set.to_add:
        console.print("[bold green]Add:[/]")
        for p in change_set.to_add:
            console.print(f"  [green]+[/] {p}")
    if change_set.to_update:
        console.print("[bold yellow]Update:[/]")
        for p in change_set.to_update:
            console.print(f"  [yellow]~[/] {p}")
    if change_set.to_remove:
        console.print("[bold red]Remove:[/]")
        for p in change_set.to_remove:
            console.print(f"  [red]-[/] {p}")

def render_result(result: SyncResult) -> None:
    """Summary panel for a finished sync cycle."""
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("State", result.state.value)
    if result.manifest_version is not None:
        table.add_row("Manifest version", str(result.manifest_version))
    if result.install_generation is not None:
        table.add_row("Install generation", str(result.install_generation))
    if result.change_set is not None:
        cs = result.change_set
        table.add_row("Changes", f"+{len(cs.to_add)} ~{len(cs.to_update)} -{len(cs.to_remove)}")
    if result.stage is not None:
        table.add_row("Stage", result.stage.value)
    if result.failed_path:
        table.add_row("Failed path", result.failed_path)
    if result.error:
        table.add_row("Error", result.error)
    for path in result.inconsistent_paths:
        table.add_row("Inconsistent", path)

    if result.state == SyncState.COMMITTED:
        title, style = f"{icon('success')} Sync committed", "green"
    elif result.state == SyncState.CANCELLED:
        title, style = f"{icon('warn')} Sync cancelled", "yellow"
    else:
        title, style = f"{icon('error')} Sync failed", "red"
    console.print(Panel(table, title=f"[bold {style}]{title}[/]", border_style=style, expand=False))

def render_doctor(checks: List[DoctorCheck]) -> None:
    rows = [
        [f"[{DOCTOR_STYLES[c.status]}]{c.status.upper()}[/]", c.name, c.detail]
        for c in checks
    ]
    render_table(f"{icon('doctor')} Night Watch diagnostics", ["Status", "Check", "Detail"], rows)


class ProgressRenderer:
    """Progress sink that drives one Rich task per stage."""

    def __init__(self, progress: Progress):
        self.progress = progress
        self._tasks: Dict[SyncState, TaskID] = {}
        self.result: Optional[SyncResult] = None

    def __call__(self, event: Union[ProgressSnapshot, SyncResult]) -> None:
        if isinstance(event, SyncResult):
            self.result = event
            return
        task = self._tasks.get(event.stage)
        if task is None:
            label = STAGE_LABELS.get(event.stage, event.stage.value)
            task = self.progress.add_task(label, total=event.bytes_total or event.files_total or None)
            self._tasks[event.stage] = task
        if event.bytes_total:
            self.progress.update(task, completed=event.bytes_done, total=event.bytes_total)
        else:
            self.progress.update(task, completed=event.files_done, total=event.files_total or None)


@contextmanager
def render_progress(title: str = "Synchronizing...") -> Generator[Progress, None, None]:
    """Provide a unified Progress context manager."""
    progress = Progress(
        SpinnerColumn(spinner_name="dots2", style="cyan"),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=40, style="magenta", complete_style="cyan"),
        "[progress.percentage]{task.percentage:>3.1f}%",
        DownloadColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=False,
    )
    console.print(title, style="bold cyan")
    with progress:
        yield progress
