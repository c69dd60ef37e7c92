"""
Command-line interface for chillfi-client.

This module implements the CLI using Click, with rich-click for the
help formatting and colors.

Commands:
    chillfi upload <path>...               Upload audio files and folders
    chillfi avatar <user-id> <image>       Upload a profile image
    chillfi album-art <image>              Upload album art
    chillfi songs                          List songs (offline from cache)
    chillfi sync                           Replay the offline queue
    chillfi queue                          Show queued offline actions
    chillfi cache clear                    Drop cached responses and songs

Usage:
    # Upload a whole album folder and a single track
    chillfi upload ~/Music/Album ~/Music/single.flac

    # Search the library
    chillfi songs --search "blue"

    # Push actions made while offline
    chillfi sync

Configuration:
    The CLI reads config.yaml from the current directory (or --config)
    with at least the server URL. The token is read from the file or
    from the CHILLFI_TOKEN environment variable (.env is loaded).

Exit codes:
    0  success
    1  configuration error, bad input, or failed or unfinished uploads
    2  local store error
    3  authentication rejected
    4  other client error
    130 interrupted
"""

import asyncio
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

import rich_click as click
from rich.markup import escape

click.rich_click.USE_RICH_MARKUP = True
click.rich_click.SHOW_ARGUMENTS = True
click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
click.rich_click.ERRORS_SUGGESTION = ""
click.rich_click.MAX_WIDTH = 100

from chillfi_client import __version__
from chillfi_client.client import ChillfiClient
from chillfi_client.core import (
    AuthenticationError,
    ChillfiError,
    Config,
    ConfigError,
    StoreError,
    get_logger,
    load_config,
    setup_logging,
    shutdown_logging,
)
from chillfi_client.core.progress import UploadProgressBar
from chillfi_client.transport.messages import ConnectionState
from chillfi_client.upload.models import (
    QueueProgress,
    TaskStatus,
    TaskStatusChanged,
    UploadEvent,
    UploadSummary,
)
from chillfi_client.utils import format_bytes, is_image_file, scan_audio_files

logger = get_logger(__name__)


ClientCommand = Callable[[ChillfiClient], Awaitable[int]]

# Poll interval while waiting for paused uploads to resume
QUEUE_POLL_INTERVAL = 0.5


@click.group()
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    metavar="<config.yaml>",
    help="Configuration file (default: ./config.yaml)"
)
@click.option(
    "--verbose", "-v",
    is_flag=True,
    help="Show debug output on the console"
)
@click.version_option(__version__, prog_name="chillfi")
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, verbose: bool) -> None:
    """
    [bold cyan]chillfi[/bold cyan] - resilient client for a self-hosted music service.

    Reads keep working offline from the local cache, writes are queued
    and replayed on reconnect, uploads pause and resume with the network.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


# =============================================================================
# Commands
# =============================================================================

@cli.command()
@click.argument(
    "paths",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, path_type=Path),
)
@click.pass_context
def upload(ctx: click.Context, paths: tuple[Path, ...]) -> None:
    """Upload audio files; folders are scanned recursively."""
    files = scan_audio_files(paths)
    if not files:
        click.echo("No audio files found.", err=True)
        sys.exit(1)

    total_size = sum(path.stat().st_size for path in files)
    click.echo(f"Found {len(files)} audio file{'s' if len(files) != 1 else ''} ({format_bytes(total_size)})")

    async def command(client: ChillfiClient) -> int:
        await client.start()

        with UploadProgressBar(total=len(files)) as progress:
            def on_event(event: UploadEvent) -> None:
                if isinstance(event, TaskStatusChanged):
                    progress.update(event.current, event.previous)
                    name = escape(event.task.path.name)
                    if event.current == TaskStatus.FAILED:
                        progress.log(f"[red]Failed[/red] {name}: {escape(event.task.error or '')}")
                    elif event.current == TaskStatus.DUPLICATE_SKIPPED:
                        progress.log(f"[yellow]Skipped[/yellow] {name}: already uploaded")
                elif isinstance(event, QueueProgress):
                    progress.set_overall(event.overall)

            client.pipeline.add_listener(on_event)
            await client.pipeline.submit(files)
            summary = await _wait_for_queue(client)

        waiting = [task for task in client.pipeline.tasks if not task.status.is_terminal]
        if waiting:
            click.echo(f"{len(waiting)} upload(s) did not finish:", err=True)
            for task in waiting:
                reason = f": {task.error}" if task.error else ""
                click.echo(f"  {task.path.name} ({task.status.value}{reason})", err=True)
        return 1 if summary.failed or waiting else 0

    _run(ctx.obj, command)


@cli.command()
@click.argument("user_id")
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def avatar(ctx: click.Context, user_id: str, image: Path) -> None:
    """Upload a profile image for USER_ID."""
    _require_image(image)

    async def command(client: ChillfiClient) -> int:
        await client.start(require_connection=True)
        image_url = await client.chunked.upload_avatar(user_id, image)
        click.echo(image_url)
        return 0

    _run(ctx.obj, command)


@cli.command("album-art")
@click.argument("image", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def album_art(ctx: click.Context, image: Path) -> None:
    """Upload an album cover image."""
    _require_image(image)

    async def command(client: ChillfiClient) -> int:
        await client.start(require_connection=True)
        image_url = await client.chunked.upload_album_art(image)
        click.echo(image_url)
        return 0

    _run(ctx.obj, command)


@cli.command()
@click.option("--search", "query", default=None, metavar="<text>", help="Match title, artist or album")
@click.option("--artist", default=None, metavar="<name>", help="Only this artist")
@click.option("--album", default=None, metavar="<title>", help="Only this album")
@click.option("--page", default=1, show_default=True, type=click.IntRange(min=1))
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
@click.pass_context
def songs(
    ctx: click.Context,
    query: str | None,
    artist: str | None,
    album: str | None,
    page: int,
    limit: int,
) -> None:
    """List songs. Served from the local cache while offline."""
    async def command(client: ChillfiClient) -> int:
        await client.start()

        filters = {key: value for key, value in (("artist", artist), ("album", album)) if value}
        if query:
            filters["search"] = query

        response = await client.api.get_songs(page=page, limit=limit, filters=filters or None)
        _print_songs(response)
        if not client.connection.is_connected:
            click.echo("(offline: showing cached songs)", err=True)
        return 0

    _run(ctx.obj, command)


@cli.command()
@click.pass_context
def sync(ctx: click.Context) -> None:
    """Replay actions queued while offline."""
    async def command(client: ChillfiClient) -> int:
        await client.start(require_connection=True)

        # Connecting already starts a replay when the queue is not empty
        if client.sync.task is not None:
            result = await client.sync.task
        else:
            result = await client.sync.sync()

        click.echo(f"Replayed {result.replayed} action(s), {result.remaining} still queued.")
        if result.failed_entry is not None:
            click.echo(
                f"Stopped at {result.failed_entry.action_type} ({result.failed_entry.id}): {result.error}",
                err=True
            )
            return 4
        return 0

    _run(ctx.obj, command)


@cli.command()
@click.option("--abandon", "abandon_id", default=None, metavar="<id>", help="Drop a queued action")
@click.pass_context
def queue(ctx: click.Context, abandon_id: str | None) -> None:
    """Show actions waiting to be replayed."""
    async def command(client: ChillfiClient) -> int:
        if abandon_id:
            if not client.sync.abandon(abandon_id):
                click.echo(f"No queued action with id {abandon_id}", err=True)
                return 1
            click.echo(f"Abandoned {abandon_id}")
            return 0

        entries = client.store.queued_actions()
        if not entries:
            click.echo("Offline queue is empty.")
            return 0
        for entry in entries:
            click.echo(f"{entry.id}  {entry.action_type}  {entry.payload}")
        return 0

    _run(ctx.obj, command)


@cli.group()
def cache() -> None:
    """Manage the local cache."""


@cache.command("clear")
@click.pass_context
def cache_clear(ctx: click.Context) -> None:
    """Drop cached responses and songs (the offline queue is kept)."""
    async def command(client: ChillfiClient) -> int:
        removed = client.store.clear_cache()
        click.echo(f"Removed {removed} cached entr{'ies' if removed != 1 else 'y'}.")
        return 0

    _run(ctx.obj, command)


# =============================================================================
# Helpers
# =============================================================================

def _run(options: dict, command: ClientCommand) -> None:
    """
    Load configuration, set up logging and run one command.

    Raises:
        SystemExit: With the command's exit code, or the code for the
                    error that stopped it.
    """
    exit_code = 0
    try:
        config = _load_configuration(options.get("config_path"))
        setup_logging(config.cache.directory, verbose=options.get("verbose", False))
        exit_code = asyncio.run(_with_client(config, command))

    except ConfigError as e:
        click.echo(f"Configuration error: {e.message}", err=True)
        exit_code = 1

    except StoreError as e:
        click.echo(f"Store error: {e.message}", err=True)
        logger.error(f"Store error: {e.message}", exc_info=True)
        exit_code = 2

    except AuthenticationError as e:
        click.echo(f"Authentication error: {e.message}", err=True)
        click.echo("Check auth.token in config.yaml or the CHILLFI_TOKEN variable", err=True)
        logger.error(f"Authentication error: {e.message}")
        exit_code = 3

    except ChillfiError as e:
        click.echo(f"Error: {e.message}", err=True)
        logger.error(f"Error: {e.message}", exc_info=True)
        exit_code = 4

    except KeyboardInterrupt:
        click.echo("\nInterrupted by user", err=True)
        logger.info("Interrupted by user")
        exit_code = 130

    except Exception as e:
        click.echo(f"Unexpected error: {e}", err=True)
        logger.exception("Unexpected error")
        exit_code = 1

    finally:
        shutdown_logging()

    if exit_code:
        sys.exit(exit_code)


def _require_image(path: Path) -> None:
    if not is_image_file(path):
        click.echo(f"Not an image file: {path.name}", err=True)
        sys.exit(1)


def _load_configuration(config_path: Path | None) -> Config:
    """
    Load and validate configuration.

    Raises:
        ConfigError: If configuration is invalid or missing.
    """
    return load_config(config_path)


async def _with_client(config: Config, command: ClientCommand) -> int:
    client = ChillfiClient(config)
    try:
        return await command(client)
    finally:
        await client.close()


async def _wait_for_queue(client: ChillfiClient) -> UploadSummary:
    """
    Wait for the upload queue, including paused files.

    Gives up on paused and pending files once the connection manager
    stops trying to reconnect, or when the files were paused while the
    connection stayed up and no reconnect will resume them.
    """
    while True:
        summary = await client.pipeline.join()
        if all(task.status.is_terminal for task in client.pipeline.tasks):
            return summary
        if client.pipeline.is_stalled:
            return summary
        if client.connection.state in (ConnectionState.OFFLINE, ConnectionState.DISCONNECTED):
            return summary
        await asyncio.sleep(QUEUE_POLL_INTERVAL)


def _print_songs(response: Any) -> None:
    data = response.get("data") if isinstance(response, dict) else None
    items = data.get("items", []) if isinstance(data, dict) else []
    if not items:
        click.echo("No songs found.")
        return

    for song in items:
        click.echo(
            f"{song.get('id')}  {song.get('title', '?')} - "
            f"{song.get('artist', 'Unknown Artist')} ({song.get('album', 'Unknown Album')})"
        )

    pagination = data.get("pagination") if isinstance(data, dict) else None
    if isinstance(pagination, dict) and pagination.get("totalPages"):
        click.echo(f"Page {pagination.get('page', 1)} of {pagination['totalPages']}")


def main() -> None:
    """
    Entry point for the CLI.

    This function is called when running `chillfi` from the command line.
    """
    cli(obj={})


if __name__ == "__main__":
    main()
