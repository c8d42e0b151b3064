"""
Human-readable output formatting.

Centralizes CLI output so commands stay thin. Rendering goes through a
``rich`` console that writes to stdout.
"""
from __future__ import annotations

from typing import Optional, Sequence

from rich.console import Console
from rich.table import Table

from ..coordinator import SyncReport
from ..models import Manifest
from ..reference import ImageReference
from ..transfer import TransferResult

_console = Console()


def set_console(console: Console) -> None:
    """Redirect output (used by tests to capture rendering)."""
    global _console
    _console = console


def print_sync_report(results: Sequence[TransferResult], verbose: bool = False) -> None:
    """
    Print one row per requested image, in request order.

    Args:
        results: Results returned by SyncCoordinator.run
        verbose: Include attempt and blob counts
    """
    report = SyncReport(tuple(results))
    table = Table(title="Image sync")
    table.add_column("Source", style="cyan")
    table.add_column("Destination", style="cyan")
    table.add_column("Result")
    table.add_column("Detail", overflow="fold")
    if verbose:
        table.add_column("Attempts", justify="right")
        table.add_column("Blobs", justify="right")

    for result in results:
        if result.ok:
            outcome = "[green]ok[/]"
            detail = result.digest or ""
        else:
            outcome = f"[red]{result.error_kind.value if result.error_kind else 'failed'}[/]"
            detail = result.message or ""
        row = [result.source, result.destination, outcome, detail]
        if verbose:
            row += [str(result.attempts), str(result.blobs_pushed)]
        table.add_row(*row)

    _console.print(table)
    summary = f"{report.succeeded} succeeded, {report.failed} failed"
    _console.print(f"[bold]{summary}[/]" if report.failed == 0 else f"[bold red]{summary}[/]")


def print_resolved(ref: ImageReference, manifest: Manifest, destination: Optional[ImageReference] = None) -> None:
    """Print a resolved reference with its manifest summary."""
    _console.print(f"[bold]Reference:[/] {ref}")
    _console.print(f"[bold]Manifest:[/] [dim]{manifest.digest}[/] ({manifest.media_type})")
    _console.print(f"[bold]Layers:[/] {len(manifest.layers)}")
    total = manifest.config.size + sum(layer.size for layer in manifest.layers)
    _console.print(f"[bold]Size:[/] {_format_bytes(total)}")
    if destination is not None:
        _console.print(f"[bold]Destination:[/] {destination}")


def print_prune_summary(root: str, removed: int) -> None:
    _console.print(f"Pruned {removed} artifact(s) from {root}")


def _format_bytes(size_bytes: int) -> str:
    """
    Format byte count as human-readable string.

    Returns:
        Formatted string (e.g., "1.5 MB", "42 KB")
    """
    if size_bytes == 0:
        return "0 B"
    elif size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"
