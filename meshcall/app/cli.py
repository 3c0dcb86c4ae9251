"""CLI application entry point."""

import asyncio
import sys

import click

from meshcall import __version__
from meshcall.utils import load_config, settings, setup_logging
from meshcall.utils.logger import get_logger

logger = get_logger(__name__)


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Override MESHCALL_LOG_LEVEL")
def cli(log_level):
    """Room signaling relay and peer mesh client."""
    setup_logging(
        log_level=log_level or settings.log_level,
        log_file=settings.log_file,
        library_level=settings.library_log_level,
    )


@cli.command()
@click.option("--host", default=None, help="Server host")
@click.option("--port", default=None, type=int, help="Server port")
@click.option("--config", "config_path", type=click.Path(), default=None, help="Path to YAML config")
def server(host, port, config_path):
    """Start the signaling relay."""
    from meshcall.signaling.server import SignalingServer

    config = load_config(config_path or settings.config)
    host = host or config.server.host
    port = port or config.server.port
    config.server.host, config.server.port = host, port

    click.echo("=" * 60)
    click.echo("Room Signaling Server")
    click.echo(f"Listening on: ws://{host}:{port}")
    click.echo("=" * 60)
    click.echo()

    signaling_server = SignalingServer(host=host, port=port, config=config.server)

    try:
        asyncio.run(signaling_server.start())
    except KeyboardInterrupt:
        click.echo("\n\nShutting down server...")
    finally:
        click.echo("Server stopped.")


@cli.command()
@click.argument("room")
@click.option("--signaling", default=None, help="Signaling server URL (e.g., ws://localhost:3001)")
@click.option("--media", default=None, help="Capture device, file or URL (synthetic media if omitted)")
@click.option("--format", "media_format", default=None, help="FFmpeg input format for --media")
@click.option("--config", "config_path", type=click.Path(), default=None, help="Path to YAML config")
def join(room, signaling, media, media_format, config_path):
    """Join ROOM and connect to every participant."""
    from meshcall.app.room_client import build_media_source, run_room
    from meshcall.mesh.negotiator import MeshSession

    config = load_config(config_path or settings.config)
    session = MeshSession(
        room_id=room,
        media_source=build_media_source(config, media, media_format),
        signaling_url=signaling or settings.signaling_url,
        config=config.mesh,
    )

    try:
        asyncio.run(run_room(session))
    except KeyboardInterrupt:
        click.echo("\n\nShutting down...")
    finally:
        click.echo("Client stopped.")


def main():
    """Main entry point."""
    try:
        cli()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.opt(exception=e).error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
