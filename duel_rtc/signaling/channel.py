"""Abstract room-scoped broadcast channel used for out-of-band signaling.

A ``SignalingChannel`` is bound to one room at a time. Envelopes sent on it
are broadcast to every other subscriber of the room (never echoed back to the
sender). Delivery is at-least-once and ordered per sender; there is no
ordering guarantee across distinct senders and no delivery confirmation.
"""

import abc
import itertools
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from duel_rtc.exceptions import (
    AlreadySubscribed,
    DeliveryUnknown,
    InvalidRoom,
    MalformedEnvelope,
)
from duel_rtc.protocol import SignalEnvelope, decode_envelope, encode_envelope

ReceiveCallback = Callable[[SignalEnvelope], Awaitable[None]]

_handle_ids = itertools.count(1)


@dataclass(frozen=True)
class SubscriptionHandle:
    """Token returned by ``subscribe`` and consumed by ``unsubscribe``."""

    room_id: str
    handle_id: int


class SignalingChannel(abc.ABC):
    """Base class for relay-backed signaling channels.

    Subclasses implement the transport hooks ``_open``, ``_transmit`` and
    ``_close``; this class owns subscription bookkeeping, envelope encoding
    and sequential delivery to receive callbacks.
    """

    def __init__(self):
        self._callbacks: List[ReceiveCallback] = []
        self._handle: Optional[SubscriptionHandle] = None

    @property
    def room_id(self) -> Optional[str]:
        return self._handle.room_id if self._handle else None

    @property
    def subscribed(self) -> bool:
        return self._handle is not None

    async def subscribe(self, room_id: str) -> SubscriptionHandle:
        """Join a room and wait until the relay confirms the subscription.

        Args:
            room_id: Room identifier shared by both duelists.

        Returns:
            Handle to pass to ``unsubscribe``.

        Raises:
            InvalidRoom: If ``room_id`` is empty.
            AlreadySubscribed: If this channel already holds a live subscription.
        """
        if not room_id:
            raise InvalidRoom(room_id)
        if self._handle is not None:
            raise AlreadySubscribed(self._handle.room_id)

        handle = SubscriptionHandle(room_id=room_id, handle_id=next(_handle_ids))
        # Claimed before awaiting so a concurrent subscribe fails fast.
        self._handle = handle
        try:
            await self._open(room_id)
        except BaseException:
            self._handle = None
            raise
        logger.info(f"Subscribed to room '{room_id}'")
        return handle

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Release a subscription. Calling it again is a no-op."""
        if self._handle is None or self._handle != handle:
            logger.debug(f"Ignoring unsubscribe for inactive handle {handle}")
            return
        self._handle = None
        await self._close()
        logger.info(f"Unsubscribed from room '{handle.room_id}'")

    async def send(self, envelope: SignalEnvelope) -> None:
        """Broadcast an envelope to the room. Fire-and-forget, never raises."""
        message = encode_envelope(envelope)
        if self._handle is None:
            logger.warning(
                f"{DeliveryUnknown.__name__}: '{message['event']}' sent without a subscription"
            )
            return
        try:
            await self._transmit(message)
        except Exception as e:
            logger.warning(
                f"{DeliveryUnknown.__name__}: failed to send '{message['event']}': {e}"
            )
            return
        logger.debug(f"Sent '{message['event']}' to room '{self._handle.room_id}'")

    def on_receive(self, callback: ReceiveCallback) -> None:
        """Register an async callback invoked once per received envelope."""
        self._callbacks.append(callback)

    async def _deliver(self, message: dict) -> None:
        """Decode a wire message and hand it to every receive callback in turn."""
        try:
            envelope = decode_envelope(message)
        except MalformedEnvelope as e:
            logger.warning(f"Dropping malformed signaling message: {e}")
            return

        for callback in list(self._callbacks):
            try:
                await callback(envelope)
            except Exception as e:
                logger.exception(f"Receive callback failed for {type(envelope).__name__}: {e}")

    @abc.abstractmethod
    async def _open(self, room_id: str) -> None:
        """Open the transport and return once the room subscription is live."""

    @abc.abstractmethod
    async def _transmit(self, message: dict) -> None:
        """Send one wire message to the room."""

    @abc.abstractmethod
    async def _close(self) -> None:
        """Tear down the transport."""
