"""
imagesync CLI

Commands:
- sync: Mirror images from source to destination references
- resolve: Show the canonical reference and manifest an image resolves to
- prune: Empty a retained staging cache
"""
from __future__ import annotations

import dataclasses
import logging
import signal
from pathlib import Path
from typing import List, Optional, Tuple, Union

import typer
from rich.console import Console
from rich.logging import RichHandler

from .cli_context import CLIContext
from .coordinator import SyncReport
from .operations import run_and_exit
from .operations.printers import print_prune_summary, print_resolved, print_sync_report
from .reference import ImageReference, flatten_destination, parse_reference
from .storage.content_store import ContentStore
from .storage.oci_errors import OciParseError

app = typer.Typer(name="imagesync", help="Mirror container images between registries")

logger = logging.getLogger("imagesync")

Pair = Tuple[Union[str, ImageReference], Union[str, ImageReference]]


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=verbose)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


def _read_pair_file(path: Path) -> List[str]:
    """Read one request per line; blank lines and ``#`` comments are skipped."""
    if not path.exists():
        raise FileNotFoundError(f"Image list not found: {path}")
    lines = []
    for line in path.read_text().splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            lines.append(line)
    return lines


def _parse_pairs(entries: List[str], to: Optional[str], default_registry: str) -> List[Pair]:
    """
    Turn CLI entries into (source, destination) pairs.

    Supports formats:
    - "SRC=DST" -> explicit destination
    - "SRC" with --to REPO -> destination tag flattened from the source name

    Unparseable sources are passed through as strings so the coordinator
    reports them as failed requests.
    """
    pairs: List[Pair] = []
    for entry in entries:
        if "=" in entry:
            source, destination = (part.strip() for part in entry.split("=", 1))
            pairs.append((source, destination))
            continue
        if not to:
            raise ValueError(f"No destination for {entry!r}; use SRC=DST or --to REPOSITORY")
        try:
            source_ref = parse_reference(entry, default_registry=default_registry)
        except OciParseError:
            pairs.append((entry, to))
            continue
        pairs.append((source_ref, flatten_destination(source_ref, to, default_registry=default_registry)))
    return pairs


def _host_of(ref: Union[str, ImageReference], default_registry: str) -> Optional[str]:
    if isinstance(ref, ImageReference):
        return ref.registry
    try:
        return parse_reference(ref, default_registry=default_registry).registry
    except OciParseError:
        return None


@app.command()
def sync(
    images: Optional[List[str]] = typer.Argument(None, help="SRC=DST pairs, or sources when --to is given"),
    file: Optional[Path] = typer.Option(None, "--file", "-f", help="File with one request per line"),
    to: Optional[str] = typer.Option(None, "--to", help="Destination repository for bare sources"),
    concurrency: Optional[int] = typer.Option(None, "--concurrency", "-j", help="Parallel image transfers"),
    platform: Optional[str] = typer.Option(None, "--platform", help="Platform picked from manifest lists"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed output"),
) -> None:
    """Mirror images to their destination registries."""
    _configure_logging(verbose)

    def _sync() -> int:
        context = CLIContext.from_env()
        overrides = {}
        if concurrency is not None:
            overrides["concurrency"] = concurrency
        if platform is not None:
            overrides["platform"] = platform
        if overrides:
            context.settings = dataclasses.replace(context.settings, **overrides)

        entries = list(images or [])
        if file is not None:
            entries += _read_pair_file(file)
        if not entries:
            raise ValueError("Nothing to sync: pass SRC=DST pairs or --file")

        default_registry = context.settings.default_registry
        pairs = _parse_pairs(entries, to, default_registry)
        sources = {h for h in (_host_of(s, default_registry) for s, _ in pairs) if h}
        destinations = {h for h in (_host_of(d, default_registry) for _, d in pairs) if h}

        previous = signal.getsignal(signal.SIGINT)

        def _interrupt(signum, frame):
            logger.warning("Interrupt received; cancelling in-flight transfers")
            context.cancel_event.set()

        signal.signal(signal.SIGINT, _interrupt)
        try:
            coordinator = context.coordinator(context.credentials_for(sources, destinations))
            results = coordinator.run(pairs)
        finally:
            signal.signal(signal.SIGINT, previous)
            context.close()

        print_sync_report(results, verbose=verbose)
        return SyncReport(tuple(results)).exit_code

    code = run_and_exit(_sync)
    raise typer.Exit(code=code)


@app.command()
def resolve(
    image: str = typer.Argument(..., help="Image reference to resolve"),
    to: Optional[str] = typer.Option(None, "--to", help="Also show the flattened destination in REPOSITORY"),
    platform: Optional[str] = typer.Option(None, "--platform", help="Platform picked from manifest lists"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show detailed output"),
) -> None:
    """Resolve an image reference to its platform manifest."""
    _configure_logging(verbose)

    def _resolve() -> None:
        context = CLIContext.from_env()
        if platform is not None:
            context.settings = dataclasses.replace(context.settings, platform=platform)
        default_registry = context.settings.default_registry
        ref = parse_reference(image, default_registry=default_registry)
        destination = flatten_destination(ref, to, default_registry=default_registry) if to else None
        try:
            pool = context.registry_pool(context.credentials_for({ref.registry}, set()))
            manifest, _ = pool.client_for(ref).fetch_manifest(ref)
        finally:
            context.close()
        print_resolved(ref, manifest, destination)

    run_and_exit(_resolve)


@app.command()
def prune(
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", envvar="IMAGESYNC_CACHE_DIR",
                                             help="Retained staging cache to empty"),
) -> None:
    """Remove staged blobs kept by a retained cache."""

    def _prune() -> None:
        if cache_dir is None:
            raise ValueError("No cache directory configured (set IMAGESYNC_CACHE_DIR or --cache-dir)")
        store = ContentStore(cache_dir, retain=True)
        print_prune_summary(str(cache_dir), store.prune())

    run_and_exit(_prune)


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
