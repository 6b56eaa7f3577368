"""Public connection surface consumed by the duel room UI.

``ConnectionFacade.open`` joins a room and returns a ``ConnectionHandle``
whose observables track the negotiation (state, remote stream, remote
display name, latest declared card). The handle never touches negotiation
state directly; it only reads it and forwards application payloads through
the DataChannelBridge.

Example:
    facade = ConnectionFacade()
    handle = await facade.open("room-42", display_name="Yugi")
    handle.remote_name.subscribe(lambda name: print(f"Opponent: {name}"))
    handle.on_app(lambda payload: print(payload["name"]))
    ...
    await handle.declare_card(CardDeclaration(name="Dark Magician"))
    await facade.close(handle)
"""

from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Sequence, Set, TypeVar

from loguru import logger

from duel_rtc.cards import CardDeclaration, CardLog
from duel_rtc.config import Config, get_config
from duel_rtc.exceptions import InvalidRoom
from duel_rtc.negotiation.state_machine import NegotiationStateMachine
from duel_rtc.negotiation.states import ConnectionState
from duel_rtc.peer import create_peer_connection
from duel_rtc.protocol import PeerIdentity
from duel_rtc.signaling.channel import SignalingChannel
from duel_rtc.signaling.websocket import WebSocketSignalingChannel

T = TypeVar("T")


class Observable(Generic[T]):
    """A value that notifies subscribers whenever it changes."""

    def __init__(self, value: Optional[T] = None):
        self._value = value
        self._subscribers: List[Callable[[Optional[T]], None]] = []

    @property
    def value(self) -> Optional[T]:
        return self._value

    def set(self, value: Optional[T]) -> None:
        if value == self._value:
            return
        self._value = value
        for callback in list(self._subscribers):
            try:
                callback(value)
            except Exception as e:
                logger.exception(f"Observable subscriber failed: {e}")

    def subscribe(self, callback: Callable[[Optional[T]], None]) -> Callable[[], None]:
        """Register a change callback.

        Returns:
            Function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe


@dataclass(frozen=True)
class RemoteStream:
    """Media tracks received from the opponent."""

    tracks: tuple

    @property
    def audio_tracks(self) -> list:
        return [t for t in self.tracks if t.kind == "audio"]

    @property
    def video_tracks(self) -> list:
        return [t for t in self.tracks if t.kind == "video"]


class ConnectionHandle:
    """One open duel connection.

    Attributes:
        identity: Local identity generated for this connection attempt.
        room_id: Joined room.
        state: Observable negotiation state.
        remote_stream: Observable RemoteStream, None until connected with media
            and again once the connection has failed or closed.
        remote_name: Observable opponent display name (known before connecting).
        latest_card: Observable most recent card declared by the opponent.
        card_log: History of cards declared by either side.
    """

    def __init__(self, machine: NegotiationStateMachine):
        self._machine = machine
        self.identity = machine.identity
        self.room_id = machine.room_id
        self.state: Observable[ConnectionState] = Observable(machine.state)
        self.remote_stream: Observable[RemoteStream] = Observable()
        self.remote_name: Observable[str] = Observable(machine.remote_name)
        self.latest_card: Observable[CardDeclaration] = Observable()
        self.card_log = CardLog()

        machine.add_state_listener(self._on_state)
        machine.add_track_listener(self._on_track)
        machine.add_remote_name_listener(self.remote_name.set)
        machine.bridge.on_receive(self._on_card)

    @property
    def error(self) -> Optional[Exception]:
        return self._machine.error

    async def send_app(self, payload: dict) -> None:
        """Send an application payload to the opponent.

        Raises:
            ChannelNotReady: If the connection is not established yet.
        """
        await self._machine.bridge.send(payload)

    def on_app(self, callback: Callable[[dict], object]) -> None:
        """Register a callback for every application payload received."""
        self._machine.bridge.on_receive(callback)

    async def declare_card(self, card: CardDeclaration) -> None:
        """Announce a card to the opponent and record it locally."""
        await self.send_app(card.to_payload())
        self.card_log.record(card)

    async def close(self) -> None:
        await self._machine.close()

    def _on_state(self, state: ConnectionState, error: Optional[Exception]) -> None:
        self.state.set(state)
        self._refresh_remote_stream()

    def _on_track(self, track) -> None:
        self._refresh_remote_stream()

    def _refresh_remote_stream(self) -> None:
        tracks = self._machine.remote_tracks
        if self._machine.state is ConnectionState.CONNECTED and tracks:
            self.remote_stream.set(RemoteStream(tracks=tuple(tracks)))
        elif self._machine.state.is_terminal:
            self.remote_stream.set(None)

    def _on_card(self, payload: dict) -> None:
        try:
            card = CardDeclaration.from_payload(payload)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed card payload: {e}")
            return
        logger.info(f"Card received via network: {card.name}")
        if self.card_log.record(card):
            self.latest_card.set(card)


ChannelFactory = Callable[[], SignalingChannel]
PeerFactory = Callable[[Optional[Sequence]], object]


class ConnectionFacade:
    """Opens and closes duel connections tied to room membership.

    Args:
        channel_factory: Creates a fresh SignalingChannel per connection
            (defaults to the websocket relay from config).
        peer_factory: Creates a fresh peer connection from local tracks
            (defaults to an aiortc RTCPeerConnection).
        config: Configuration (global config if None).
    """

    def __init__(
        self,
        channel_factory: Optional[ChannelFactory] = None,
        peer_factory: Optional[PeerFactory] = None,
        config: Optional[Config] = None,
    ):
        self.config = config if config is not None else get_config()
        self.channel_factory = channel_factory or (
            lambda: WebSocketSignalingChannel(self.config.relay_url)
        )
        self.peer_factory = peer_factory or (
            lambda tracks: create_peer_connection(tracks, self.config)
        )
        self._handles: Set[ConnectionHandle] = set()

    async def open(
        self,
        room_id: str,
        local_tracks: Optional[Sequence] = None,
        display_name: Optional[str] = None,
    ) -> ConnectionHandle:
        """Join a room and start negotiating with whoever else is in it.

        Args:
            room_id: Room identifier.
            local_tracks: Local media tracks; receive-only when absent.
            display_name: Name shown to the opponent (config default if None).

        Returns:
            ConnectionHandle for the new connection.

        Raises:
            InvalidRoom: If ``room_id`` is empty or None.
        """
        if not room_id:
            raise InvalidRoom(room_id)

        identity = PeerIdentity.generate(display_name or self.config.display_name)
        machine = NegotiationStateMachine(
            self.channel_factory(),
            room_id,
            identity,
            self.peer_factory(local_tracks),
            self.config,
        )
        handle = ConnectionHandle(machine)

        logger.info(f"Joining room '{room_id}' as {identity.display_name} ({identity.client_id})")
        try:
            await machine.start()
        except BaseException:
            await machine.close()
            raise

        self._handles.add(handle)
        return handle

    async def close(self, handle: ConnectionHandle) -> None:
        """Tear down a connection. Idempotent."""
        await handle.close()
        self._handles.discard(handle)

    async def close_all(self) -> None:
        for handle in list(self._handles):
            await self.close(handle)
