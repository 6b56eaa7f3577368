"""Signaling module for duel-rtc.

This module provides:
- channel: the SignalingChannel contract shared by all relays
- local: in-process LocalRelay for tests and same-process duels
- websocket: WebSocketSignalingChannel talking to the duel-rtc relay server
"""

from duel_rtc.signaling.channel import SignalingChannel, SubscriptionHandle
from duel_rtc.signaling.local import LocalRelay, LocalSignalingChannel
from duel_rtc.signaling.websocket import WebSocketSignalingChannel

__all__ = [
    "SignalingChannel",
    "SubscriptionHandle",
    "LocalRelay",
    "LocalSignalingChannel",
    "WebSocketSignalingChannel",
]
