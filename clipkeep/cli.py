"""
CLI interface for clipboard history.

Usage:
    clipkeep watch
    clipkeep find "query text"
    clipkeep find --semantic "that docker compose snippet"
    clipkeep embeddings backfill
"""

import json
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import ClipKeeper
from .errors import EmbeddingError, StoreError
from .logging_config import configure_quiet_mode, enable_debug_mode
from .session import normalize_tag_name
from .types import DEFAULT_CATEGORY, ClipItem, ScoredItem, local_time

# Configure quiet mode by default (suppress verbose library output)
# Set CLIPKEEP_VERBOSE=1 to enable debug mode via environment
if os.environ.get("CLIPKEEP_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"clipkeep {version('clipkeep')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _store_callback(value: Optional[Path]):
    global _store_override
    if value is not None:
        _store_override = value


app = typer.Typer(
    name="clipkeep",
    help="Clipboard history with lexical and semantic search.",
    no_args_is_help=False,
    invoke_without_command=True,
    rich_markup_mode=None,
)


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="CLIPKEEP_STORE_PATH",
        help="Path to the store directory",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Clipboard history with lexical and semantic search."""
    # No subcommand: show the newest page
    if ctx.invoked_subcommand is None:
        ck = _get_keeper(None)
        _print_items(ck.recent())


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

StoreOption = Annotated[
    Optional[Path],
    typer.Option(
        "--store", "-s",
        envvar="CLIPKEEP_STORE_PATH",
        help="Path to the store directory (default: ~/.clipkeep/)"
    )
]

LimitOption = Annotated[
    Optional[int],
    typer.Option(
        "--limit", "-n",
        help="Maximum items to show (default: configured page size)"
    )
]


def _get_keeper(store: Optional[Path]) -> ClipKeeper:
    """Open the store, exiting with a message if that fails."""
    import atexit

    actual_store = store if store is not None else _store_override
    try:
        ck = ClipKeeper(actual_store)
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(ck.close)
    return ck


# -----------------------------------------------------------------------------
# Output
# -----------------------------------------------------------------------------

def _item_dict(item: ClipItem, score: Optional[float] = None) -> dict:
    result = {
        "id": item.id,
        "type": item.kind.value,
        "timestamp": item.timestamp,
        "source": item.source,
        "tags": sorted(item.tags),
    }
    if item.kind.has_text:
        result["content"] = item.content
    else:
        result["size"] = len(item.image_data or b"")
    if score is not None:
        result["score"] = round(score, 3)
    return result


def _format_line(item: ClipItem, score: Optional[float] = None) -> str:
    score_str = f" ({score:.2f})" if score is not None else ""
    line = f"{item.id:>6}{score_str} {local_time(item.timestamp)} {item.preview(60)}"
    if item.tags:
        line += f"  [{', '.join(sorted(item.tags))}]"
    return line


def _print_items(items: list[ClipItem]) -> None:
    if _json_output:
        typer.echo(json.dumps([_item_dict(i) for i in items], indent=2))
        return
    if not items:
        typer.echo("No items.", err=True)
        return
    for item in items:
        typer.echo(_format_line(item))


def _print_scored(results: list[ScoredItem]) -> None:
    if _json_output:
        typer.echo(json.dumps([_item_dict(r.item, r.score) for r in results], indent=2))
        return
    if not results:
        typer.echo("No similar items.", err=True)
        return
    for r in results:
        typer.echo(_format_line(r.item, r.score))


def _tag_name(name: str) -> str:
    try:
        return normalize_tag_name(name)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

@app.command()
def watch(
    store: StoreOption = None,
    interval: Annotated[Optional[float], typer.Option(
        "--interval", "-i",
        help="Seconds between clipboard polls (default: from config)"
    )] = None,
    once: Annotated[bool, typer.Option(
        "--once",
        help="Poll a single time and exit"
    )] = False,
):
    """Capture clipboard changes until interrupted."""
    ck = _get_keeper(store)

    def report(item: ClipItem) -> None:
        typer.echo(_format_line(item))

    loop = ck.capture_loop(on_captured=report)
    if interval is not None:
        loop.interval = interval

    if once:
        loop.tick()
        loop.stop()
        return

    stopped = threading.Event()

    def handle_signal(signum, frame):
        stopped.set()

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    typer.echo(f"Watching clipboard every {loop.interval:g}s (Ctrl+C to stop)", err=True)
    loop.start()
    try:
        while not stopped.wait(0.5):
            pass
    finally:
        loop.stop()
        typer.echo("Stopped.", err=True)


@app.command("list")
def list_cmd(
    store: StoreOption = None,
    limit: LimitOption = None,
    offset: Annotated[int, typer.Option(
        "--offset", help="Skip this many of the newest items"
    )] = 0,
):
    """List history, newest first."""
    ck = _get_keeper(store)
    _print_items(ck.recent(limit, offset))


@app.command()
def find(
    query: Annotated[str, typer.Argument(help="Search terms (all must match)")] = "",
    store: StoreOption = None,
    tag: Annotated[Optional[str], typer.Option(
        "--tag", "-t", help="Only items with this tag"
    )] = None,
    semantic: Annotated[bool, typer.Option(
        "--semantic", "-S", help="Similarity search with the active embedding provider"
    )] = False,
    limit: LimitOption = None,
):
    """Search the whole history."""
    ck = _get_keeper(store)
    if semantic:
        if not query.strip():
            typer.echo("Error: semantic search needs a query", err=True)
            raise typer.Exit(1)
        try:
            results = ck.semantic_search(query)
        except (EmbeddingError, StoreError) as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        _print_scored(results[:limit] if limit else results)
        return
    items = ck.find(query, tag or DEFAULT_CATEGORY)
    _print_items(items[:limit] if limit else items)


@app.command()
def get(
    item_id: Annotated[int, typer.Argument(help="Item id")],
    store: StoreOption = None,
):
    """Show one item in full."""
    ck = _get_keeper(store)
    item = ck.store.get_item(item_id)
    if item is None:
        typer.echo(f"Not found: {item_id}", err=True)
        raise typer.Exit(1)
    if _json_output:
        typer.echo(json.dumps(_item_dict(item), indent=2))
        return
    typer.echo(f"id: {item.id}")
    typer.echo(f"type: {item.kind.value}")
    typer.echo(f"captured: {local_time(item.timestamp)}")
    typer.echo(f"source: {item.source}")
    if item.tags:
        typer.echo(f"tags: {', '.join(sorted(item.tags))}")
    typer.echo("")
    typer.echo(item.content if item.kind.has_text else item.preview())


@app.command()
def delete(
    item_ids: Annotated[list[int], typer.Argument(help="Item ids")],
    store: StoreOption = None,
):
    """Delete items with their tag links and embeddings."""
    ck = _get_keeper(store)
    failed = 0
    for item_id in item_ids:
        if ck.store.delete_item(item_id):
            typer.echo(f"Deleted {item_id}", err=True)
        else:
            typer.echo(f"Not found: {item_id}", err=True)
            failed += 1
    if failed:
        raise typer.Exit(1)


@app.command()
def tag(
    item_id: Annotated[int, typer.Argument(help="Item id")],
    name: Annotated[str, typer.Argument(help="Tag name")],
    store: StoreOption = None,
):
    """Add a tag to an item."""
    ck = _get_keeper(store)
    name = _tag_name(name)
    if ck.store.get_item(item_id) is None:
        typer.echo(f"Not found: {item_id}", err=True)
        raise typer.Exit(1)
    if not ck.store.add_tag_to_item(item_id, name):
        typer.echo(f"Error: could not tag {item_id}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Tagged {item_id}: {name}", err=True)


@app.command()
def untag(
    item_id: Annotated[int, typer.Argument(help="Item id")],
    name: Annotated[str, typer.Argument(help="Tag name")],
    store: StoreOption = None,
):
    """Remove a tag from an item."""
    ck = _get_keeper(store)
    if not ck.store.remove_tag_from_item(item_id, name):
        typer.echo(f"Item {item_id} has no tag '{name}'", err=True)
        raise typer.Exit(1)
    typer.echo(f"Untagged {item_id}: {name}", err=True)


@app.command()
def tags(
    store: StoreOption = None,
    add: Annotated[Optional[str], typer.Option(
        "--add", "-a", help="Create an empty tag"
    )] = None,
):
    """List tags (or create one with --add)."""
    ck = _get_keeper(store)
    if add is not None:
        name = _tag_name(add)
        try:
            ck.store.add_tag(name)
        except StoreError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)
        typer.echo(f"Added tag: {name}", err=True)
        return
    names = ck.store.list_tags()
    if _json_output:
        typer.echo(json.dumps(names))
        return
    for name in names:
        typer.echo(name)


@app.command("tag-rename")
def tag_rename(
    old: Annotated[str, typer.Argument(help="Current tag name")],
    new: Annotated[str, typer.Argument(help="New tag name")],
    store: StoreOption = None,
):
    """Rename a tag on every item."""
    ck = _get_keeper(store)
    new = _tag_name(new)
    try:
        ck.store.rename_tag(old, new)
    except StoreError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Renamed '{old}' to '{new}'", err=True)


@app.command("tag-delete")
def tag_delete(
    name: Annotated[str, typer.Argument(help="Tag name")],
    store: StoreOption = None,
):
    """Delete a tag and remove it from every item."""
    ck = _get_keeper(store)
    if not ck.store.remove_tag(name):
        typer.echo(f"Tag '{name}' not found.", err=True)
        raise typer.Exit(1)
    typer.echo(f"Deleted tag: {name}", err=True)


@app.command()
def copy(
    item_ids: Annotated[list[int], typer.Argument(help="Item ids")],
    store: StoreOption = None,
):
    """Copy items back to the clipboard (texts joined by newlines)."""
    ck = _get_keeper(store)
    try:
        count = ck.copy_items(item_ids)
    except NotImplementedError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if not count:
        typer.echo("Nothing copied.", err=True)
        raise typer.Exit(1)
    typer.echo(f"Copied {count} item(s)", err=True)


def _mask(key: str) -> str:
    if not key:
        return "(not set)"
    return key[:4] + "..." if len(key) > 8 else "****"


@app.command()
def config(
    store: StoreOption = None,
    provider: Annotated[Optional[str], typer.Option(
        "--provider", "-p", help="Active provider: local, google or openai"
    )] = None,
    local_url: Annotated[Optional[str], typer.Option(
        "--local-url", help="Local embedding server URL"
    )] = None,
    google_key: Annotated[Optional[str], typer.Option(
        "--google-key", help="Google API key"
    )] = None,
    google_model: Annotated[Optional[str], typer.Option(
        "--google-model", help="Google embedding model"
    )] = None,
    openai_key: Annotated[Optional[str], typer.Option(
        "--openai-key", help="OpenAI API key"
    )] = None,
    openai_model: Annotated[Optional[str], typer.Option(
        "--openai-model", help="OpenAI embedding model"
    )] = None,
):
    """Show or change the embedding settings."""
    ck = _get_keeper(store)
    changes = {
        key: value for key, value in {
            "provider": provider,
            "local_base_url": local_url,
            "google_api_key": google_key,
            "google_model": google_model,
            "openai_api_key": openai_key,
            "openai_model": openai_model,
        }.items() if value is not None
    }
    if changes:
        try:
            ck.settings.update(**changes)
        except ValueError as e:
            typer.echo(f"Error: {e}", err=True)
            raise typer.Exit(1)

    s = ck.settings.current
    if _json_output:
        typer.echo(json.dumps({
            "store": str(ck.store_path),
            "provider": s.provider,
            "local_base_url": s.local_base_url,
            "google_model": s.google_model,
            "google_api_key_set": bool(s.provider_params("google")["api_key"]),
            "openai_model": s.openai_model,
            "openai_api_key_set": bool(s.provider_params("openai")["api_key"]),
        }, indent=2))
        return
    typer.echo(f"store: {ck.store_path}")
    typer.echo(f"provider: {s.provider} ({s.provider_display_name})")
    typer.echo(f"local.base_url: {s.local_base_url}")
    typer.echo(f"google.model: {s.google_model}")
    typer.echo(f"google.api_key: {_mask(s.provider_params('google')['api_key'])}")
    typer.echo(f"openai.model: {s.openai_model}")
    typer.echo(f"openai.api_key: {_mask(s.provider_params('openai')['api_key'])}")


# -----------------------------------------------------------------------------
# Embeddings
# -----------------------------------------------------------------------------

embeddings_app = typer.Typer(
    name="embeddings",
    help="Embedding maintenance: backfill, clear, status, test.",
    rich_markup_mode=None,
)
app.add_typer(embeddings_app)


@embeddings_app.command("backfill")
def embeddings_backfill(store: StoreOption = None):
    """Embed text items that have no vector for the active provider."""
    ck = _get_keeper(store)

    def progress(processed: int, total: int) -> None:
        if sys.stderr.isatty():
            typer.echo(f"\r{processed}/{total}", nl=False, err=True)

    job = ck.backfill_job(on_progress=progress)
    job.start()
    try:
        result = job.wait()
    except KeyboardInterrupt:
        job.cancel()
        result = job.wait()
    if sys.stderr.isatty() and result.total:
        typer.echo("", err=True)

    if _json_output:
        typer.echo(json.dumps({
            "state": result.state.value,
            "processed": result.processed,
            "total": result.total,
            "saved": result.saved,
            "failed": result.failed,
            "error": result.error,
        }))
    else:
        typer.echo(
            f"Backfill {result.state.value}: {result.saved} saved, "
            f"{result.failed} failed, {result.processed}/{result.total} processed",
            err=True,
        )
    if result.error:
        raise typer.Exit(1)


@embeddings_app.command("clear")
def embeddings_clear(
    store: StoreOption = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Don't ask for confirmation")] = False,
):
    """Delete every vector of the active provider."""
    ck = _get_keeper(store)
    name = ck.settings.current.provider_display_name
    if not yes:
        typer.confirm(f"Delete all {name} embeddings?", abort=True)
    removed = ck.clear_embeddings()
    typer.echo(f"Cleared {removed} {name} embeddings", err=True)


@embeddings_app.command("status")
def embeddings_status(store: StoreOption = None):
    """Vectors stored per provider."""
    ck = _get_keeper(store)
    counts = ck.store.embedding_counts()
    active = ck.settings.provider
    missing = len(ck.store.items_missing_embedding())
    if _json_output:
        typer.echo(json.dumps({
            "active": active,
            "items": ck.store.count(),
            "missing": missing,
            "embeddings": counts,
        }, indent=2))
        return
    typer.echo(f"items: {ck.store.count()}")
    for provider, count in counts.items():
        marker = "*" if provider == active else " "
        typer.echo(f"{marker} {provider}: {count}")
    typer.echo(f"missing ({active}): {missing}")


@embeddings_app.command("test")
def embeddings_test(store: StoreOption = None):
    """Check that the active provider answers."""
    ck = _get_keeper(store)
    name = ck.settings.current.provider_display_name
    try:
        dimension = ck.test_connection()
    except EmbeddingError as e:
        typer.echo(f"{name}: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"{name}: OK ({dimension} dimensions)")


def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        from .errors import log_exception
        log_path = log_exception(e, context="clipkeep CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
