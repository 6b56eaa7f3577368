"""Application payload surface layered on the negotiated connection.

Card declarations are small and infrequent, so they ride the signaling relay
as ``card-declared`` broadcasts rather than a second negotiated data channel.
Sending is only allowed once the connection is up; receiving is never gated.
"""

import inspect
from typing import Any, Callable, List

from loguru import logger

from duel_rtc.exceptions import ChannelNotReady
from duel_rtc.negotiation.states import ConnectionState
from duel_rtc.protocol import AppMessage
from duel_rtc.signaling.channel import SignalingChannel

AppCallback = Callable[[dict], Any]


class DataChannelBridge:
    """Typed send/receive surface for application payloads.

    Args:
        channel: Signaling channel the payloads are broadcast on.
        state_getter: Returns the owning connection's current state.
    """

    def __init__(self, channel: SignalingChannel, state_getter: Callable[[], ConnectionState]):
        self.channel = channel
        self._state_getter = state_getter
        self._callbacks: List[AppCallback] = []

    async def send(self, payload: dict) -> None:
        """Broadcast an application payload to the remote peer.

        Raises:
            ChannelNotReady: If the connection is not ``CONNECTED``.
        """
        state = self._state_getter()
        if state is not ConnectionState.CONNECTED:
            raise ChannelNotReady(state.value)
        logger.info(f"Sending application payload: {payload.get('name', '<unnamed>')}")
        await self.channel.send(AppMessage(payload=payload))

    def on_receive(self, callback: AppCallback) -> None:
        """Register a callback (plain function or coroutine function) for payloads."""
        self._callbacks.append(callback)

    async def deliver(self, payload: dict) -> None:
        """Hand a received payload to every callback, in registration order.

        No de-duplication is performed; a duplicated relay delivery reaches
        callbacks twice.
        """
        logger.debug(f"Application payload received: {payload.get('name', '<unnamed>')}")
        for callback in list(self._callbacks):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.exception(f"Application callback failed: {e}")
