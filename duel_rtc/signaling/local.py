"""In-process broadcast relay.

``LocalRelay`` plays the role of the hosted relay for peers living in the
same event loop: tests, demos and hot-seat duels. Each subscribed channel has
its own inbox drained by a single pump task, so envelopes from one sender are
delivered in send order while envelopes from different senders interleave
freely.
"""

import asyncio
import json
from collections import defaultdict
from typing import Dict, List, Optional

from loguru import logger

from duel_rtc.signaling.channel import SignalingChannel


class LocalRelay:
    """Room-keyed broadcast hub.

    Attributes:
        duplicate: When True every message is delivered twice, emulating the
            at-least-once behaviour of hosted relays.
    """

    def __init__(self, duplicate: bool = False):
        self.duplicate = duplicate
        self.rooms: Dict[str, List["LocalSignalingChannel"]] = defaultdict(list)
        self.sent: List[dict] = []

    def channel(self) -> "LocalSignalingChannel":
        return LocalSignalingChannel(self)

    def join(self, room_id: str, channel: "LocalSignalingChannel") -> None:
        self.rooms[room_id].append(channel)
        logger.debug(f"Local relay room '{room_id}' now has {len(self.rooms[room_id])} member(s)")

    def leave(self, room_id: str, channel: "LocalSignalingChannel") -> None:
        members = self.rooms.get(room_id, [])
        if channel in members:
            members.remove(channel)
        if not members:
            self.rooms.pop(room_id, None)

    def broadcast(self, room_id: str, sender: "LocalSignalingChannel", message: dict) -> None:
        # Serialize to mimic the wire and to isolate receivers from sender mutation.
        raw = json.dumps(message)
        self.sent.append(json.loads(raw))
        copies = 2 if self.duplicate else 1
        for member in list(self.rooms.get(room_id, [])):
            if member is sender:
                continue
            for _ in range(copies):
                member.inbox.put_nowait(json.loads(raw))


class LocalSignalingChannel(SignalingChannel):
    """Signaling channel attached to a ``LocalRelay``."""

    def __init__(self, relay: LocalRelay):
        super().__init__()
        self.relay = relay
        self.inbox: asyncio.Queue = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._room: Optional[str] = None

    async def _open(self, room_id: str) -> None:
        self._room = room_id
        self.inbox = asyncio.Queue()
        self.relay.join(room_id, self)
        self._pump_task = asyncio.create_task(self._pump())
        # Confirmation arrives on a later loop turn, like a real relay ack.
        await asyncio.sleep(0)

    async def _transmit(self, message: dict) -> None:
        self.relay.broadcast(self._room, self, message)

    async def _close(self) -> None:
        self.relay.leave(self._room, self)
        if self._pump_task and self._pump_task is not asyncio.current_task():
            self._pump_task.cancel()
        self._pump_task = None

    async def _pump(self) -> None:
        while self.subscribed:
            message = await self.inbox.get()
            try:
                await self._deliver(message)
            finally:
                self.inbox.task_done()

    async def drain(self) -> None:
        """Wait until every queued message has been delivered."""
        if self._pump_task is None:
            return
        await self.inbox.join()
