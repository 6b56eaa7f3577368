"""Entry points for running a duel participant or the relay from the CLI."""

import asyncio
import contextlib
from typing import Optional, Sequence

from loguru import logger

from duel_rtc.cards import CardDeclaration
from duel_rtc.config import get_config
from duel_rtc.exceptions import ChannelNotReady
from duel_rtc.facade import ConnectionFacade, ConnectionHandle
from duel_rtc.negotiation.states import ConnectionState
from duel_rtc.relay_server import serve
from duel_rtc.signaling.websocket import WebSocketSignalingChannel


async def duel_session(
    facade: ConnectionFacade,
    room_id: str,
    display_name: Optional[str] = None,
    declare: Sequence[str] = (),
    echo=print,
) -> ConnectionHandle:
    """Join a room receive-only, report events and declare cards once connected.

    Returns when the connection is closed or has failed.

    Args:
        facade: Facade used to open the connection.
        room_id: Room to join.
        display_name: Name shown to the opponent.
        declare: Card names to declare as soon as the connection is up.
        echo: Output function for user-facing lines.

    Returns:
        The (closed or failed) connection handle.
    """
    handle = await facade.open(room_id, display_name=display_name)
    finished = asyncio.Event()
    connected = asyncio.Event()

    def on_state(state):
        echo(f"State: {state.value}")
        if state is ConnectionState.CONNECTED:
            connected.set()
        elif state in (ConnectionState.FAILED, ConnectionState.CLOSED):
            if handle.error:
                echo(f"Connection failed: {handle.error}")
            finished.set()

    handle.state.subscribe(on_state)
    handle.remote_name.subscribe(lambda name: echo(f"Opponent: {name}"))
    handle.latest_card.subscribe(lambda card: echo(f"Opponent declared: {card.name}"))

    async def declare_when_connected():
        await connected.wait()
        for name in declare:
            try:
                await handle.declare_card(CardDeclaration(name=name))
            except ChannelNotReady as e:
                logger.warning(f"Card '{name}' not declared: {e}")
                return
            echo(f"Declared: {name}")

    declarer = asyncio.create_task(declare_when_connected())
    try:
        await finished.wait()
    finally:
        declarer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await declarer
        await facade.close(handle)
    return handle


def run_duel(
    room_id: str,
    display_name: Optional[str] = None,
    relay_url: Optional[str] = None,
    declare: Sequence[str] = (),
):
    """Run a receive-only duel participant until interrupted.

    Args:
        room_id: Room to join.
        display_name: Name shown to the opponent (config default if None).
        relay_url: Relay websocket URL (config default if None).
        declare: Card names to declare once connected.
    """
    config = get_config()
    url = relay_url or config.relay_url
    facade = ConnectionFacade(
        channel_factory=lambda: WebSocketSignalingChannel(url), config=config
    )

    try:
        asyncio.run(duel_session(facade, room_id, display_name, declare))
    except KeyboardInterrupt:
        logger.info("Duel interrupted by user. Shutting down...")
    finally:
        logger.info("Duel exiting...")


def run_relay(host: str, port: int):
    """Run the relay server until interrupted."""
    try:
        asyncio.run(serve(host, port))
    except KeyboardInterrupt:
        logger.info("Relay stopped")
