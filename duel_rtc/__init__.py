"""duel-rtc: two-party WebRTC negotiation core for video card-duel rooms.

This package provides:
- protocol: signaling envelopes and their JSON wire format
- signaling: room-scoped broadcast channels (in-process and websocket relay)
- negotiation: candidate buffering and the offer/answer state machine
- bridge: card declaration payloads over the negotiated connection
- facade: the open/close surface and observables consumed by the UI
"""

from duel_rtc.cards import CardDeclaration, CardLog
from duel_rtc.facade import ConnectionFacade, ConnectionHandle, Observable
from duel_rtc.negotiation.states import ConnectionState, Role
from duel_rtc.protocol import PeerIdentity

__version__ = "0.1.0"

__all__ = [
    "CardDeclaration",
    "CardLog",
    "ConnectionFacade",
    "ConnectionHandle",
    "ConnectionState",
    "Observable",
    "PeerIdentity",
    "Role",
]
