"""Unified CLI for mesh-rtc using Click."""

import asyncio
import json
import logging
import sys
import uuid

import click
from loguru import logger


def _configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level)
    logging.getLogger().setLevel(level)
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose):
    _configure_logging(verbose)


@cli.command()
@click.option("--host", default="localhost", show_default=True, help="Host to bind to.")
@click.option("--port", type=int, default=8080, show_default=True, help="Port to listen on.")
def relay(host, port):
    """Run the signaling relay.

    Example:
        mesh-rtc relay --host 0.0.0.0 --port 8080
    """
    from mesh_rtc.relay.server import serve

    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped")


@cli.command()
@click.option("--room", "-r", required=True, help="Room ID to join.")
@click.option("--user", "-u", default=None, help="Participant id (default: random).")
@click.option("--name", "-n", default=None, help="Display name sent with JOIN_ROOM.")
@click.option("--signaling", "-s", default=None, help="Relay WebSocket URL (overrides config).")
@click.option(
    "--play",
    "source",
    default=None,
    help="File, URL or capture device to send as local media.",
)
@click.option("--format", "source_format", default=None, help="Container/device format (e.g. v4l2).")
@click.option("--no-video", is_flag=True, help="Do not send video.")
@click.option("--no-audio", is_flag=True, help="Do not send audio.")
@click.option("--offer-delay", type=float, default=None, help="Seconds to wait before offering to new peers.")
def join(room, user, name, signaling, source, source_format, no_video, no_audio, offer_delay):
    """Join a room and connect to every other participant.

    Without --play the peer joins receive-only.

    Example:
        mesh-rtc join --room demo --user alice --play clip.mp4
    """
    from mesh_rtc.rtc_peer import run_peer

    if no_video and no_audio and source:
        logger.error("--play given together with --no-video and --no-audio")
        sys.exit(1)

    user_id = user or uuid.uuid4().hex[:8]
    logger.info(f"Joining room {room} as {user_id}")
    run_peer(
        room_id=room,
        user_id=user_id,
        user_name=name,
        signaling_url=signaling,
        source=source,
        source_format=source_format,
        want_video=not no_video,
        want_audio=not no_audio,
        offer_delay=offer_delay,
    )


@cli.command(name="config")
def show_config():
    """Print the resolved configuration as JSON."""
    from mesh_rtc.config import get_config

    click.echo(json.dumps(get_config().to_dict(), indent=2))


if __name__ == "__main__":
    cli()
