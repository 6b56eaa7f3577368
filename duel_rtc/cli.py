"""Unified CLI for duel-rtc using Click."""

import json
import sys

import click
from loguru import logger

from duel_rtc.config import get_config
from duel_rtc.rtc_duel import run_duel, run_relay


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def cli(verbose):
    logger.remove()
    logger.add(sys.stderr, level="DEBUG" if verbose else "INFO")


# =============================================================================
# Relay
# =============================================================================


@cli.command()
@click.option("--host", default="localhost", help="Host to bind to.")
@click.option("--port", "-p", type=int, default=8765, help="Port to listen on.")
def relay(host, port):
    """Run the room broadcast relay.

    Every duelist connects to the relay and subscribes to a room; signaling
    messages are forwarded to the other member of the room.

    Example:
        duel-rtc relay --host 0.0.0.0 --port 8765
    """
    run_relay(host, port)


# =============================================================================
# Join
# =============================================================================


@cli.command()
@click.option("--room", "-r", required=True, help="Room ID to join.")
@click.option("--name", "-n", default=None, help="Display name shown to the opponent.")
@click.option(
    "--relay",
    "relay_url",
    default=None,
    help="Relay websocket URL. Overrides config and DUEL_RTC_RELAY_URL.",
)
@click.option(
    "--declare",
    "-d",
    multiple=True,
    help="Card name to declare once connected. May be repeated.",
)
def join(room, name, relay_url, declare):
    """Join a duel room receive-only.

    Prints the opponent's name, connection state changes and every card the
    opponent declares.

    Example:
        duel-rtc join --room room-42 --name Yugi --declare "Dark Magician"
    """
    if not room.strip():
        logger.error("Room ID cannot be empty")
        sys.exit(1)
    run_duel(room, display_name=name, relay_url=relay_url, declare=declare)


# =============================================================================
# Config Commands (subgroup)
# =============================================================================


@cli.group()
def config():
    """Inspect duel-rtc configuration."""
    pass


@config.command(name="show")
def show_config():
    """Print the effective configuration as JSON."""
    click.echo(json.dumps(get_config().as_dict(), indent=2))


if __name__ == "__main__":
    cli()
