"""Websocket broadcast relay for duel-rtc rooms.

Every connected client subscribes to one room; broadcasts are forwarded to all
other subscribers of that room. Nothing is persisted: a peer that subscribes
late only sees messages sent after its subscription.

Usage:
    duel-rtc relay [--host HOST] [--port PORT]
"""

import asyncio
import json
from collections import defaultdict
from typing import Dict, Optional, Set

import websockets
from loguru import logger
from websockets.asyncio.server import ServerConnection


class RelayServer:
    """Room-keyed broadcast relay.

    Attributes:
        rooms: Mapping of room id to the set of subscribed connections.
    """

    def __init__(self):
        self.rooms: Dict[str, Set[ServerConnection]] = defaultdict(set)

    async def handler(self, websocket: ServerConnection):
        """Handle a websocket connection."""
        room_id: Optional[str] = None

        try:
            async for message in websocket:
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON received, ignoring")
                    continue
                if not isinstance(data, dict):
                    logger.warning("Non-object frame received, ignoring")
                    continue
                msg_type = data.get("type")

                if msg_type == "subscribe":
                    requested = data.get("room")
                    if not requested:
                        await websocket.send(
                            json.dumps({"type": "error", "reason": "missing room"})
                        )
                        continue
                    if room_id is not None:
                        self._leave(room_id, websocket)
                    room_id = requested
                    self.rooms[room_id].add(websocket)
                    await websocket.send(json.dumps({"type": "subscribed", "room": room_id}))
                    logger.info(
                        f"Subscribed client to room '{room_id}' "
                        f"(members: {len(self.rooms[room_id])})"
                    )

                elif msg_type == "broadcast":
                    if room_id is None:
                        logger.warning("Broadcast from unsubscribed client dropped")
                        continue
                    await self._forward(room_id, websocket, data)

                elif msg_type == "unsubscribe":
                    if room_id is not None:
                        self._leave(room_id, websocket)
                        room_id = None

                else:
                    logger.debug(f"Unhandled message type: {msg_type}")

        except websockets.exceptions.ConnectionClosed:
            logger.info(f"Connection closed (room: {room_id})")
        finally:
            if room_id is not None:
                self._leave(room_id, websocket)

    async def _forward(self, room_id: str, sender: ServerConnection, data: dict):
        # Awaited per message, so each sender's frames go out in send order.
        outgoing = json.dumps(
            {"type": "broadcast", "event": data.get("event"), "payload": data.get("payload")}
        )
        for member in list(self.rooms.get(room_id, ())):
            if member is sender:
                continue
            try:
                await member.send(outgoing)
            except websockets.exceptions.ConnectionClosed:
                logger.debug(f"Skipping closed member of room '{room_id}'")
        logger.debug(f"Forwarded '{data.get('event')}' in room '{room_id}'")

    def _leave(self, room_id: str, websocket: ServerConnection):
        members = self.rooms.get(room_id)
        if not members:
            return
        members.discard(websocket)
        if not members:
            del self.rooms[room_id]
        logger.info(f"Client left room '{room_id}'")


async def serve(host: str, port: int):
    """Start the relay server and run forever."""
    relay = RelayServer()
    async with websockets.serve(relay.handler, host, port):
        logger.info(f"Relay server running on ws://{host}:{port}")
        await asyncio.Future()  # Run forever
