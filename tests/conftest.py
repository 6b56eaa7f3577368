"""Shared fixtures: a fake aiortc peer connection and candidate helpers."""

import asyncio
import inspect
from collections import defaultdict
from typing import Optional

import pytest
from aiortc import RTCSessionDescription

from duel_rtc.config import Config
from duel_rtc.protocol import decode_envelope
from duel_rtc.signaling.channel import SignalingChannel


class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind


class FakePeerConnection:
    """Stand-in for aiortc.RTCPeerConnection with the same method names.

    ``offer_gate`` / ``answer_gate`` futures, when set, suspend description
    creation until resolved. ``failing_ports`` makes addIceCandidate raise
    for candidates on those ports.
    """

    def __init__(self, name: str = "pc"):
        self.name = name
        self.handlers = defaultdict(list)
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.connectionState = "new"
        self.added_candidates = []
        self.failing_ports = set()
        self.offer_gate: Optional[asyncio.Future] = None
        self.answer_gate: Optional[asyncio.Future] = None
        self.calls = []
        self.closed = False

    def on(self, event, f=None):
        def register(handler):
            self.handlers[event].append(handler)
            return handler

        return register(f) if f is not None else register

    async def emit(self, event, *args):
        for handler in self.handlers[event]:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result

    async def createOffer(self):
        self.calls.append("createOffer")
        if self.offer_gate is not None:
            await self.offer_gate
        return RTCSessionDescription(sdp=f"v=0 offer from {self.name}", type="offer")

    async def createAnswer(self):
        self.calls.append("createAnswer")
        if self.answer_gate is not None:
            await self.answer_gate
        return RTCSessionDescription(sdp=f"v=0 answer from {self.name}", type="answer")

    async def setLocalDescription(self, description):
        self.calls.append("setLocalDescription")
        self.localDescription = description

    async def setRemoteDescription(self, description):
        self.calls.append("setRemoteDescription")
        self.remoteDescription = description

    async def addIceCandidate(self, candidate):
        if candidate.port in self.failing_ports:
            raise ValueError(f"simulated failure on port {candidate.port}")
        self.added_candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    async def set_connection_state(self, state: str):
        self.connectionState = state
        await self.emit("connectionstatechange")


def make_candidate(port: int, ip: str = "192.168.1.10") -> dict:
    """Browser-style candidate blob for the given host port."""
    return {
        "candidate": f"candidate:1 1 udp 2122260223 {ip} {port} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


@pytest.fixture
def config():
    """Config with defaults only (no file or environment lookup)."""
    return Config()


@pytest.fixture
def make_pc():
    def factory(name: str = "pc") -> FakePeerConnection:
        return FakePeerConnection(name)

    return factory


@pytest.fixture
def make_track():
    return FakeTrack


class RecordingChannel(SignalingChannel):
    """Signaling channel that records outgoing envelopes instead of relaying them."""

    def __init__(self):
        super().__init__()
        self.sent = []
        self.opened = 0
        self.closed = 0

    async def _open(self, room_id):
        self.opened += 1

    async def _transmit(self, message):
        self.sent.append(decode_envelope(message))

    async def _close(self):
        self.closed += 1

    def sent_of(self, kind):
        return [e for e in self.sent if isinstance(e, kind)]


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest.fixture
def candidate():
    return make_candidate


@pytest.fixture
def make_channel():
    return RecordingChannel
