"""Command-line interface for Storyvoice.

Provides ``storyvoice serve``, ``status``, ``check-story`` and
``reset-progress``.  The entry point is registered via ``pyproject.toml``
as ``storyvoice = "storyvoice.cli:cli"``.
"""

import logging
from pathlib import Path

import click
import httpx

from storyvoice.config import STATE_PATH, STORY_PATH, get_port

logger = logging.getLogger(__name__)

_MIN_PORT = 1024
_MAX_PORT = 65535


def _resolve_port(port: int | None) -> int:
    port = get_port() if port is None else port
    if not (_MIN_PORT <= port <= _MAX_PORT):
        raise click.BadParameter(
            f"Port must be between {_MIN_PORT} and {_MAX_PORT}, got {port}."
        )
    return port


def _run_server(host: str, port: int, story: Path) -> None:
    """Start uvicorn with the Storyvoice app.  Blocks until shutdown."""
    import uvicorn

    from storyvoice.server.app import create_app

    app = create_app(story_path=story)
    uvicorn.run(app, host=host, port=port, log_level="info")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Storyvoice -- voice-driven branching audio stories."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", default=None, type=int, help="Server port (default: 7870)")
@click.option(
    "--story",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Story document (default: the bundled sample story)",
)
def serve(host: str, port: int | None, story: Path | None) -> None:
    """Run the Storyvoice server in the foreground."""
    port = _resolve_port(port)
    click.echo(f"Starting Storyvoice on {host}:{port}...")
    try:
        _run_server(host, port, story or STORY_PATH)
    except OSError as exc:
        if "address already in use" in str(exc).lower():
            click.echo(
                click.style(
                    f"Port {port} is already in use. Choose a different port with --port.",
                    fg="red",
                )
            )
            raise SystemExit(1)
        raise


@cli.command()
@click.option("--port", default=None, type=int, help="Server port to check")
def status(port: int | None) -> None:
    """Show the running server's health and speech engine state."""
    port = _resolve_port(port)
    try:
        data = httpx.get(f"http://127.0.0.1:{port}/health", timeout=2.0).json()
    except (httpx.HTTPError, ValueError):
        click.echo(click.style(f"Server is not responding on port {port}.", fg="yellow"))
        raise SystemExit(1)

    click.echo(click.style("Server is healthy.", fg="green"))
    click.echo(f"  Version:      {data.get('version', '?')}")
    click.echo(f"  Story loaded: {data.get('story_loaded', '?')}")
    click.echo(f"  Narration:    {data.get('tts_backend', '?')} ({data.get('tts_state', '?')})")
    click.echo(f"  Recognition:  {data.get('stt_backend', '?')} ({data.get('stt_state', '?')})")
    click.echo(f"  Subscribers:  {data.get('subscribers', '?')}")


@cli.command("check-story")
@click.argument("path", type=click.Path(dir_okay=False, path_type=Path))
def check_story(path: Path) -> None:
    """Validate a story document and summarize its graph."""
    from storyvoice.story.errors import StoryLoadError
    from storyvoice.story.loader import load_story

    try:
        story = load_story(path)
    except StoryLoadError as exc:
        click.echo(click.style(f"Invalid story: {exc}", fg="red"))
        raise SystemExit(1)

    endings = [node.id for node in story.nodes.values() if node.is_ending]
    dangling = [
        f"{node.id} -> {choice.next_node}"
        for node in story.nodes.values()
        for choice in node.choices
        if choice.next_node not in story.nodes
    ]
    click.echo(click.style(f"{story.title!r} is valid.", fg="green"))
    click.echo(f"  Nodes:   {len(story.nodes)} (start: {story.start_node})")
    click.echo(f"  Endings: {', '.join(endings) or 'none'}")
    if dangling:
        click.echo(click.style(f"  Dangling choices: {', '.join(dangling)}", fg="yellow"))


@cli.command("reset-progress")
@click.option(
    "--state-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help=f"State file (default: {STATE_PATH})",
)
@click.confirmation_option(prompt="Forget saved progress, preferences and voice?")
def reset_progress(state_file: Path | None) -> None:
    """Delete the saved reading state."""
    from storyvoice.storage.state_store import JsonFileStore, StateRepository, StorageError

    try:
        StateRepository(JsonFileStore(state_file or STATE_PATH)).clear()
    except StorageError as exc:
        click.echo(click.style(f"Failed to reset progress: {exc}", fg="red"))
        raise SystemExit(1)
    click.echo(click.style("Saved progress cleared.", fg="green"))
