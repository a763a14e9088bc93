"""Click CLI for tryon-render: hash, render and inspect cached try-on renders."""

from __future__ import annotations

import asyncio
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tryon_render.cache.keys import canonical_render_payload, compute_render_hash
from tryon_render.config.loader import load_render_config, load_request_file
from tryon_render.core import build_cache_store, build_orchestrator
from tryon_render.errors.exceptions import QuotaExceeded, TryOnRenderError
from tryon_render.providers.registry import build_provider_registry
from tryon_render.types import GenerationResult, RenderAssets
from tryon_render.utils.image import load_image

console = Console()
error_console = Console(stderr=True)

_SECRET_KEYS = {"gemini_api_key", "openai_api_key", "supabase_service_key", "storage_signing_key"}


def _setup_logging(verbosity: int) -> None:
    """Configure logging based on verbosity level."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(console=error_console, show_time=False, show_path=False)],
    )


def _fail(message: str) -> None:
    error_console.print(f"[red]Error:[/red] {message}")
    sys.exit(1)


def _format_ts(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=UTC).strftime("%Y-%m-%d %H:%M:%S UTC")


@click.group()
@click.version_option(package_name="tryon-render")
def cli() -> None:
    """tryon-render: cached, deduplicated virtual try-on generation."""


@cli.command("hash")
@click.argument("request_file", type=click.Path(exists=True))
@click.option("--show-payload", is_flag=True, default=False, help="Print the canonical JSON too.")
def hash_request(request_file: str, show_payload: bool) -> None:
    """Print the render hash for a request file (JSON or YAML)."""
    try:
        request = load_request_file(request_file)
    except (TryOnRenderError, ValueError) as e:
        _fail(str(e))
        return

    console.print(compute_render_hash(request))
    if show_payload:
        console.print(canonical_render_payload(request).decode("utf-8"), highlight=False)


@cli.command()
@click.argument("request_file", type=click.Path(exists=True))
@click.option("--base-image", type=click.Path(exists=True), help="Photo of the person.")
@click.option(
    "--slot-image",
    "slot_images",
    multiple=True,
    metavar="SLOT=PATH",
    help="Garment image for a slot, e.g. top=shirt.png. Repeatable.",
)
@click.option("--face-ref", "face_refs", multiple=True, type=click.Path(exists=True))
@click.option("-o", "--output", type=click.Path(), help="Write the rendered image here.")
@click.option("--db", "db_path", type=click.Path(), default=None, help="Metadata SQLite path.")
@click.option("-v", "--verbose", count=True, help="Increase verbosity (-v info, -vv debug).")
def render(
    request_file: str,
    base_image: str | None,
    slot_images: tuple[str, ...],
    face_refs: tuple[str, ...],
    output: str | None,
    db_path: str | None,
    verbose: int,
) -> None:
    """Render a request, reusing the cache when possible."""
    _setup_logging(verbose)

    try:
        request = load_request_file(request_file)
        assets = RenderAssets(
            base_image=load_image(base_image) if base_image else None,
            slot_images=_parse_slot_images(slot_images),
            face_references=[load_image(p) for p in face_refs],
        )
        config = load_render_config(cache_db_path=db_path)
        orchestrator = build_orchestrator(config)
    except (TryOnRenderError, OSError, ValueError) as e:
        _fail(str(e))
        return

    async def _run() -> GenerationResult:
        try:
            return await orchestrator.generate_render(request, assets)
        finally:
            await orchestrator.aclose()

    try:
        result = asyncio.run(_run())
    except QuotaExceeded as e:
        _fail(f"{e} (retry in {e.retry_after_seconds}s)" if e.retry_after_seconds else str(e))
        return
    except TryOnRenderError as e:
        _fail(str(e))
        return

    if output:
        if result.image_bytes is None:
            error_console.print(
                "[yellow]Cache hit: image is served from storage, nothing written.[/yellow]"
            )
        else:
            Path(output).write_bytes(result.image_bytes)
            console.print(f"[green]Written to {output}[/green]")

    _print_result(result)


def _parse_slot_images(values: tuple[str, ...]) -> dict[str, bytes]:
    images: dict[str, bytes] = {}
    for value in values:
        slot, sep, path = value.partition("=")
        if not sep or not slot or not path:
            raise ValueError(f"--slot-image expects SLOT=PATH, got '{value}'")
        images[slot.strip()] = load_image(path.strip())
    return images


def _print_result(result: GenerationResult) -> None:
    table = Table(title="Render", show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Render hash", result.render_hash)
    table.add_row("Cache", "[green]hit[/green]" if result.cache_hit else "miss")
    table.add_row("Model", result.model)
    table.add_row("Slots", ", ".join(result.slots_used) or "-")
    table.add_row("Face references", str(result.face_references_used))
    table.add_row("Image URL", result.image_url or "-")
    if result.cache_warning:
        table.add_row("Warning", f"[yellow]{result.cache_warning}[/yellow]")

    console.print(table)


@cli.command("providers")
def list_providers() -> None:
    """List image providers that have credentials configured."""
    try:
        config = load_render_config()
        registry = build_provider_registry(config)
    except TryOnRenderError as e:
        _fail(str(e))
        return

    infos = registry.list_providers()
    asyncio.run(registry.close())
    if not infos:
        error_console.print(
            "[yellow]No providers configured. Set GEMINI_API_KEY or OPENAI_API_KEY.[/yellow]"
        )
        return

    roles = {config.primary_provider: "primary"}
    if config.fallback_provider and config.fallback_provider != config.primary_provider:
        roles[config.fallback_provider] = "fallback"

    table = Table(title="Image Providers", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Role")
    table.add_column("Flash model")
    table.add_column("Pro model")

    for info in sorted(infos, key=lambda p: p.name):
        table.add_row(info.name, roles.get(info.name, "-"), info.flash_model, info.pro_model)

    console.print(table)


@cli.group()
def cache() -> None:
    """Render cache management commands."""


@cache.command("stats")
@click.option("--db", "db_path", type=click.Path(), default=None, help="Metadata SQLite path.")
def cache_stats(db_path: str | None) -> None:
    """Show cache statistics."""
    config = load_render_config(cache_db_path=db_path)
    store = build_cache_store(config)

    table = Table(title="Render Cache", show_header=True)
    table.add_column("Metric", style="cyan")
    table.add_column("Value")

    stats = store.stats()
    table.add_row("Entries", str(stats.entries))
    table.add_row("Metadata backend", config.metadata_backend.value)
    table.add_row("Storage backend", config.storage_backend.value)
    table.add_row("TTL (days)", str(config.cache_ttl_days))

    console.print(table)
    asyncio.run(store.close())


@cache.command("show")
@click.argument("user_id")
@click.argument("render_hash")
@click.option("--db", "db_path", type=click.Path(), default=None, help="Metadata SQLite path.")
def cache_show(user_id: str, render_hash: str, db_path: str | None) -> None:
    """Show one cached render."""
    config = load_render_config(cache_db_path=db_path, cache_fail_open=False)
    store = build_cache_store(config)

    async def _lookup():
        try:
            return await store.lookup(user_id, render_hash)
        finally:
            await store.close()

    try:
        entry = asyncio.run(_lookup())
    except TryOnRenderError as e:
        _fail(str(e))
        return

    if entry is None:
        error_console.print(f"[yellow]No live cache entry for {user_id}/{render_hash}[/yellow]")
        sys.exit(1)

    table = Table(title=f"Cache entry {entry.id}", show_header=True)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("Storage path", entry.storage_path)
    table.add_row("Image URL", entry.image_url or "-")
    table.add_row("Model", entry.model)
    table.add_row("Preset", entry.preset)
    table.add_row("Quality / view", f"{entry.quality.value} / {entry.view.value}")
    table.add_row(
        "Slots", ", ".join(f"{k}={v}" for k, v in sorted(entry.slot_signature.items())) or "-"
    )
    table.add_row("Hits", str(entry.hit_count))
    table.add_row("Last hit", _format_ts(entry.last_hit_at))
    table.add_row("Expires", _format_ts(entry.expires_at))

    console.print(table)


@cache.command("purge")
@click.option("--db", "db_path", type=click.Path(), default=None, help="Metadata SQLite path.")
def cache_purge(db_path: str | None) -> None:
    """Delete expired cache rows."""
    config = load_render_config(cache_db_path=db_path)
    store = build_cache_store(config)
    removed = store.purge_expired()
    asyncio.run(store.close())
    console.print(f"[green]Purged {removed} expired entries.[/green]")


@cli.command("config")
def show_config() -> None:
    """Print the resolved configuration (secrets masked)."""
    try:
        config = load_render_config()
    except TryOnRenderError as e:
        _fail(str(e))
        return

    table = Table(title="Resolved Configuration", show_header=True)
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    for key, value in config.model_dump(mode="json").items():
        if key in _SECRET_KEYS and value:
            value = "****"
        table.add_row(key, "-" if value is None else str(value))

    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    cli()
