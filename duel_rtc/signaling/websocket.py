"""Signaling channel backed by the duel-rtc websocket relay.

Relay protocol (JSON text frames):

    client → relay: {"type": "subscribe", "room": "<room id>"}
    relay → client: {"type": "subscribed", "room": "<room id>"}
    client → relay: {"type": "broadcast", "event": "...", "payload": {...}}
    relay → client: {"type": "broadcast", "event": "...", "payload": {...}}
    client → relay: {"type": "unsubscribe"}
"""

import asyncio
import json
from typing import Optional

import websockets
from loguru import logger
from websockets.asyncio.client import ClientConnection

from duel_rtc.signaling.channel import SignalingChannel

SUBSCRIBE_TIMEOUT = 10.0  # seconds


class WebSocketSignalingChannel(SignalingChannel):
    """Signaling channel talking to ``duel_rtc.relay_server`` over a websocket."""

    def __init__(self, url: str, subscribe_timeout: float = SUBSCRIBE_TIMEOUT):
        super().__init__()
        self.url = url
        self.subscribe_timeout = subscribe_timeout
        self.websocket: Optional[ClientConnection] = None
        self._reader_task: Optional[asyncio.Task] = None

    async def _open(self, room_id: str) -> None:
        logger.info(f"Connecting to relay at {self.url}")
        self.websocket = await websockets.connect(self.url)
        try:
            await self.websocket.send(json.dumps({"type": "subscribe", "room": room_id}))
            await asyncio.wait_for(self._await_confirmation(room_id), self.subscribe_timeout)
        except BaseException:
            await self.websocket.close()
            self.websocket = None
            raise
        self._reader_task = asyncio.create_task(self._read_loop())

    async def _await_confirmation(self, room_id: str) -> None:
        async for raw in self.websocket:
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                logger.debug("Ignoring invalid pre-subscription frame")
                continue
            if not isinstance(data, dict):
                logger.debug("Ignoring non-object pre-subscription frame")
                continue
            if data.get("type") == "subscribed" and data.get("room") == room_id:
                return
            # Broadcasts cannot precede the ack; anything else is noise.
            logger.debug(f"Ignoring pre-subscription message: {data.get('type')}")
        raise ConnectionError("Relay closed the connection before confirming subscription")

    async def _read_loop(self) -> None:
        """Receive relay frames and deliver broadcasts in arrival order."""
        try:
            async for raw in self.websocket:
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.error("Invalid JSON received from relay")
                    continue
                if not isinstance(data, dict):
                    logger.error("Non-object frame received from relay")
                    continue

                if data.get("type") == "broadcast":
                    await self._deliver(
                        {"event": data.get("event"), "payload": data.get("payload")}
                    )
                else:
                    logger.debug(f"Unhandled relay message type: {data.get('type')}")

        except websockets.exceptions.ConnectionClosed:
            logger.info("Relay connection closed")

    async def _transmit(self, message: dict) -> None:
        if self.websocket is None:
            raise ConnectionError("No relay connection")
        await self.websocket.send(json.dumps({"type": "broadcast", **message}))

    async def _close(self) -> None:
        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
        self._reader_task = None

        if self.websocket is not None:
            try:
                await self.websocket.send(json.dumps({"type": "unsubscribe"}))
            except websockets.exceptions.ConnectionClosed:
                pass
            await self.websocket.close()
            self.websocket = None
