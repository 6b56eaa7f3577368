"""Offer/answer negotiation between the two duelists of a room.

The NegotiationStateMachine drives one aiortc ``RTCPeerConnection`` using the
envelopes received over a SignalingChannel:

1. ``start()`` subscribes to the room and announces ``Ready``.
2. On a remote ``Ready`` the tie-break decides the role: the peer whose
   client id sorts lower creates and sends the ``Offer``; the other re-sends
   its own ``Ready`` so a missed announcement cannot stall the exchange.
3. The answerer applies the ``Offer``, drains buffered candidates and replies
   with an ``Answer``; the offerer applies the ``Answer`` and drains its own
   buffered candidates.
4. ``CONNECTED`` and ``FAILED`` are driven by the transport's
   ``connectionstatechange`` events, never by signaling messages.

All envelope handling for one instance is serialized by an asyncio lock.
``close()`` does not take the lock: a handler suspended in a description step
finds the instance closed when it resumes and discards its result.
"""

import asyncio
from typing import Callable, List, Optional

from aiortc import RTCPeerConnection
from loguru import logger

from duel_rtc.bridge import DataChannelBridge
from duel_rtc.config import Config, get_config
from duel_rtc.exceptions import (
    CandidateApplyFailed,
    DescriptionApplyFailed,
    NegotiationFailed,
)
from duel_rtc.negotiation.candidate_queue import CandidateQueue
from duel_rtc.negotiation.states import ConnectionState, Role
from duel_rtc.protocol import (
    Answer,
    AppMessage,
    IceCandidate,
    Offer,
    PeerIdentity,
    Ready,
    SignalEnvelope,
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
    description_to_dict,
)
from duel_rtc.signaling.channel import SignalingChannel, SubscriptionHandle

StateListener = Callable[[ConnectionState, Optional[Exception]], None]


class NegotiationStateMachine:
    """Owns the connection lifecycle of one duel participant.

    Attributes:
        channel: Signaling channel used for envelopes (subscribed by ``start``).
        room_id: Room both duelists join.
        identity: Local identity; its client id drives the tie-break.
        pc: The underlying peer connection, exclusively owned by this instance.
        bridge: Application payload surface sharing this instance's state.
        remote_name: Display name announced by the remote peer, if any.
        remote_tracks: Media tracks received from the remote peer.
        error: Failure that moved the instance to ``FAILED``.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        room_id: str,
        identity: PeerIdentity,
        pc: RTCPeerConnection,
        config: Optional[Config] = None,
    ):
        config = config if config is not None else get_config()
        self.channel = channel
        self.room_id = room_id
        self.identity = identity
        self.pc = pc
        self.max_description_failures = config.max_description_failures

        self._state = ConnectionState.IDLE
        self._role: Optional[Role] = None
        self._local_description: Optional[dict] = None
        self._remote_description: Optional[dict] = None
        self._candidates = CandidateQueue()
        self._lock = asyncio.Lock()
        self._handle: Optional[SubscriptionHandle] = None
        self._description_failures = 0

        self.remote_name: Optional[str] = None
        self.remote_tracks: list = []
        self.error: Optional[Exception] = None

        self._state_listeners: List[StateListener] = []
        self._track_listeners: List[Callable] = []
        self._remote_name_listeners: List[Callable[[str], None]] = []

        self.bridge = DataChannelBridge(channel, lambda: self._state)
        self._bind_peer_connection()

    # ===== Read-only views =====

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def role(self) -> Optional[Role]:
        return self._role

    @property
    def local_description(self) -> Optional[dict]:
        return self._local_description

    @property
    def remote_description(self) -> Optional[dict]:
        return self._remote_description

    @property
    def pending_candidates(self) -> int:
        return len(self._candidates)

    def add_state_listener(self, callback: StateListener) -> None:
        self._state_listeners.append(callback)

    def add_track_listener(self, callback: Callable) -> None:
        self._track_listeners.append(callback)

    def add_remote_name_listener(self, callback: Callable[[str], None]) -> None:
        self._remote_name_listeners.append(callback)

    # ===== Lifecycle =====

    async def start(self) -> None:
        """Subscribe to the room and announce this peer.

        Moves ``IDLE`` to ``AWAITING_REMOTE``. Holding the dispatch lock
        across the subscription keeps envelopes that arrive right after the
        relay confirms from being handled before the state change.

        Raises:
            InvalidRoom: If the room id is empty.
            AlreadySubscribed: If the channel is already subscribed.
        """
        if self._state is not ConnectionState.IDLE:
            raise RuntimeError(f"Cannot start negotiation in state '{self._state.value}'")

        self.channel.on_receive(self.dispatch)
        async with self._lock:
            handle = await self.channel.subscribe(self.room_id)
            if self._state is ConnectionState.CLOSED:
                await self.channel.unsubscribe(handle)
                return
            self._handle = handle
            self._set_state(ConnectionState.AWAITING_REMOTE)
            await self.channel.send(Ready(self.identity))

    async def close(self) -> None:
        """Tear down the connection. Terminal and idempotent."""
        if self._state is ConnectionState.CLOSED:
            return
        self._set_state(ConnectionState.CLOSED)
        self._candidates.clear()

        try:
            await self.pc.close()
        except Exception as e:
            logger.warning(f"Error while closing peer connection: {e}")

        if self._handle is not None:
            handle, self._handle = self._handle, None
            await self.channel.unsubscribe(handle)
        logger.info(f"Connection in room '{self.room_id}' closed")

    # ===== Envelope dispatch =====

    async def dispatch(self, envelope: SignalEnvelope) -> None:
        """Handle one envelope from the relay.

        Per-envelope failures are logged and swallowed so that later
        envelopes are still processed.
        """
        async with self._lock:
            if self._state is ConnectionState.CLOSED:
                logger.debug(f"Ignoring {type(envelope).__name__}: connection closed")
                return
            if self._state is ConnectionState.FAILED and not isinstance(envelope, AppMessage):
                logger.debug(f"Ignoring {type(envelope).__name__}: connection failed")
                return

            try:
                if isinstance(envelope, Ready):
                    await self._handle_ready(envelope)
                elif isinstance(envelope, Offer):
                    await self._handle_offer(envelope)
                elif isinstance(envelope, Answer):
                    await self._handle_answer(envelope)
                elif isinstance(envelope, IceCandidate):
                    await self._handle_candidate(envelope)
                elif isinstance(envelope, AppMessage):
                    await self.bridge.deliver(envelope.payload)
                else:
                    logger.debug(f"Unhandled envelope: {envelope!r}")
            except DescriptionApplyFailed as e:
                self._record_description_failure(e)

    async def _handle_ready(self, envelope: Ready) -> None:
        remote = envelope.identity
        if remote.client_id == self.identity.client_id:
            logger.debug("Ignoring our own ready announcement")
            return

        self._set_remote_name(remote.display_name)
        logger.info(
            f"Ready received from {remote.client_id} ({remote.display_name}). "
            f"My ID: {self.identity.client_id}"
        )

        if (
            self._state is not ConnectionState.AWAITING_REMOTE
            or self._remote_description is not None
        ):
            logger.debug(f"Already past awaiting remote ({self._state.value}); ready ignored")
            return

        if self.identity.sorts_before(remote):
            logger.info("I am the offerer.")
            self._role = Role.OFFERER
            self._set_state(ConnectionState.NEGOTIATING)
            try:
                offer = await self.pc.createOffer()
                if self._discarded("offer creation"):
                    return
                await self.pc.setLocalDescription(offer)
                if self._discarded("local offer"):
                    return
            except Exception as e:
                if not self._discarded("failed offer"):
                    self._fail(NegotiationFailed(f"Could not create offer: {e}"))
                return

            self._local_description = description_to_dict(self.pc.localDescription)
            await self.channel.send(
                Offer(self._local_description, self.identity.display_name)
            )
        else:
            # Repeated on every lower-sorting ready; the offerer ignores extras.
            self._role = Role.ANSWERER
            await self.channel.send(Ready(self.identity))

    async def _handle_offer(self, envelope: Offer) -> None:
        self._set_remote_name(envelope.display_name)

        if self._remote_description is not None:
            logger.debug("Duplicate offer ignored: remote description already set")
            return
        if self._role is Role.OFFERER or self._local_description is not None:
            raise DescriptionApplyFailed("Offer received while holding our own offer")

        self._role = Role.ANSWERER
        if self._state in (ConnectionState.IDLE, ConnectionState.AWAITING_REMOTE):
            self._set_state(ConnectionState.NEGOTIATING)

        await self._apply_remote_description(envelope.description)
        if self._discarded("remote offer"):
            return

        await self._candidates.drain_into(self._apply_candidate)
        if self._discarded("candidate drain"):
            return

        try:
            answer = await self.pc.createAnswer()
            if self._discarded("answer creation"):
                return
            await self.pc.setLocalDescription(answer)
            if self._discarded("local answer"):
                return
        except Exception as e:
            if not self._discarded("failed answer"):
                self._fail(NegotiationFailed(f"Could not create answer: {e}"))
            return

        self._local_description = description_to_dict(self.pc.localDescription)
        await self.channel.send(Answer(self._local_description, self.identity.display_name))

    async def _handle_answer(self, envelope: Answer) -> None:
        self._set_remote_name(envelope.display_name)

        if self._remote_description is not None:
            logger.debug("Duplicate answer ignored: remote description already set")
            return
        if self._role is not Role.OFFERER or self._local_description is None:
            raise DescriptionApplyFailed("Answer received without a pending offer")

        await self._apply_remote_description(envelope.description)
        if self._discarded("remote answer"):
            return

        await self._candidates.drain_into(self._apply_candidate)

    async def _handle_candidate(self, envelope: IceCandidate) -> None:
        if self._remote_description is None and not self._candidates.draining_started:
            logger.debug("Queueing ICE candidate (remote description not ready)")
            self._candidates.enqueue(envelope.candidate)
            return

        try:
            await self._apply_candidate(envelope.candidate)
        except Exception as e:
            logger.warning(f"{CandidateApplyFailed.__name__}: {e}")

    # ===== Peer connection operations =====

    async def _apply_remote_description(self, description: dict) -> None:
        try:
            await self.pc.setRemoteDescription(description_from_dict(description))
        except Exception as e:
            raise DescriptionApplyFailed(
                f"Could not apply remote {description.get('type', 'description')}: {e}"
            ) from e
        self._remote_description = description

    async def _apply_candidate(self, candidate: dict) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        parsed = candidate_from_dict(candidate)
        if parsed is None:
            logger.debug("Received end-of-candidates marker")
            return
        await self.pc.addIceCandidate(parsed)
        logger.debug(f"Added ICE candidate {parsed.ip}:{parsed.port}")

    def _bind_peer_connection(self) -> None:
        """Subscribe to peer connection events.

        aiortc does not trickle: gathered candidates travel inside the SDP and
        no "icecandidate" event is emitted. The handler below serves
        trickle-capable peer connections.
        """
        pc = self.pc

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            self._on_transport_state(pc.connectionState)

        @pc.on("track")
        def on_track(track):
            self._on_track(track)

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate is None or self._state.is_terminal:
                return
            await self.channel.send(IceCandidate(candidate_to_dict(candidate)))

    def _on_transport_state(self, transport_state: str) -> None:
        logger.info(f"Connection state is now {transport_state}")
        if self._state.is_terminal:
            return
        if transport_state == "connected":
            self._set_state(ConnectionState.CONNECTED)
        elif transport_state == "failed":
            self._fail(NegotiationFailed("Transport could not establish a path to the peer"))

    def _on_track(self, track) -> None:
        if self._state is ConnectionState.CLOSED:
            return
        logger.info(f"Received remote {track.kind} track")
        self.remote_tracks.append(track)
        for callback in list(self._track_listeners):
            self._notify(callback, track)

    # ===== State bookkeeping =====

    def _discarded(self, step: str) -> bool:
        if self._state is ConnectionState.CLOSED:
            logger.debug(f"Discarding {step} result: connection closed")
            return True
        return False

    def _set_state(self, state: ConnectionState, error: Optional[Exception] = None) -> None:
        if state is self._state:
            return
        logger.info(f"Negotiation state {self._state.value} -> {state.value}")
        self._state = state
        for callback in list(self._state_listeners):
            self._notify(callback, state, error)

    def _fail(self, error: NegotiationFailed) -> None:
        logger.error(f"{type(error).__name__}: {error}")
        self.error = error
        self._set_state(ConnectionState.FAILED, error)

    def _record_description_failure(self, error: DescriptionApplyFailed) -> None:
        if self._state.is_terminal:
            return
        self._description_failures += 1
        logger.warning(
            f"{type(error).__name__} ({self._description_failures}/"
            f"{self.max_description_failures}): {error}"
        )
        if self._description_failures >= self.max_description_failures:
            self._fail(NegotiationFailed(f"Repeated description failures: {error}"))

    def _set_remote_name(self, name: Optional[str]) -> None:
        if not name or name == self.remote_name:
            return
        self.remote_name = name
        for callback in list(self._remote_name_listeners):
            self._notify(callback, name)

    @staticmethod
    def _notify(callback, *args) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.exception(f"Listener {callback!r} failed: {e}")
