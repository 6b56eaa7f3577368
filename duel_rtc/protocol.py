"""Signaling envelope definitions for duel-rtc.

This module defines the envelopes exchanged between the two duelists of a
room over the broadcast relay, and the JSON wire format they travel in.

Wire Format
-----------

Every relay message is a JSON object of the form::

    {"event": <event name>, "payload": <event-specific payload>}

Events
------

**ready**
    Sent by: both peers, once the relay subscription is live (and again as an
    acknowledgement by the higher-sorting peer)
    Payload: ``{"clientId": "3f9c...", "username": "Yugi"}``

**offer**
    Sent by: the lower-sorting peer (the offerer)
    Payload: ``{"offer": {"sdp": "...", "type": "offer"}, "username": "Yugi"}``

**answer**
    Sent by: the answerer, after applying the offer
    Payload: ``{"answer": {"sdp": "...", "type": "answer"}, "username": "Kaiba"}``

**ice-candidate**
    Sent by: either peer, for every locally discovered network path
    Payload: the candidate itself, no wrapper fields::

        {"candidate": "candidate:1 1 UDP 2122252543 ...", "sdpMid": "0", "sdpMLineIndex": 0}

**card-declared**
    Sent by: either peer, once connected
    Payload: ``{"id", "name", "description", "imageUrl", "imageUrlSmall", "timestamp"}``

Message Flow
------------

1. A → relay: ready {clientId: "a1"}
2. B → relay: ready {clientId: "b2"}
3. A ("a1" < "b2") → B: offer
4. B → A: answer
5. A ↔ B: ice-candidate (any time, possibly before the offer/answer lands)
6. A ↔ B: card-declared
"""

import secrets
from dataclasses import dataclass, field
from typing import Optional, Union

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from duel_rtc.exceptions import MalformedEnvelope

# Event names on the wire
EVENT_READY = "ready"
EVENT_OFFER = "offer"
EVENT_ANSWER = "answer"
EVENT_ICE_CANDIDATE = "ice-candidate"
EVENT_CARD_DECLARED = "card-declared"

CANDIDATE_PREFIX = "candidate:"


@dataclass(frozen=True)
class PeerIdentity:
    """Locally generated identity of one connection attempt.

    Attributes:
        client_id: Random opaque identifier, used only for tie-breaking.
        display_name: Human-readable name shown to the opponent.
    """

    client_id: str
    display_name: str = field(default="Duelist", compare=False)

    @classmethod
    def generate(cls, display_name: str = "Duelist") -> "PeerIdentity":
        """Create a fresh identity with a random client id."""
        return cls(client_id=secrets.token_hex(8), display_name=display_name)

    def sorts_before(self, other: "PeerIdentity") -> bool:
        return self.client_id < other.client_id


@dataclass(frozen=True)
class Ready:
    identity: PeerIdentity


@dataclass(frozen=True)
class Offer:
    description: dict
    display_name: Optional[str] = None


@dataclass(frozen=True)
class Answer:
    description: dict
    display_name: Optional[str] = None


@dataclass(frozen=True)
class IceCandidate:
    candidate: dict


@dataclass(frozen=True)
class AppMessage:
    payload: dict


SignalEnvelope = Union[Ready, Offer, Answer, IceCandidate, AppMessage]


def encode_envelope(envelope: SignalEnvelope) -> dict:
    """Convert an envelope to its wire form.

    Args:
        envelope: One of the SignalEnvelope variants.

    Returns:
        Dictionary with ``event`` and ``payload`` keys.

    Raises:
        TypeError: If ``envelope`` is not a known variant.
    """
    if isinstance(envelope, Ready):
        return {
            "event": EVENT_READY,
            "payload": {
                "clientId": envelope.identity.client_id,
                "username": envelope.identity.display_name,
            },
        }
    if isinstance(envelope, Offer):
        return {
            "event": EVENT_OFFER,
            "payload": {"offer": envelope.description, "username": envelope.display_name},
        }
    if isinstance(envelope, Answer):
        return {
            "event": EVENT_ANSWER,
            "payload": {"answer": envelope.description, "username": envelope.display_name},
        }
    if isinstance(envelope, IceCandidate):
        return {"event": EVENT_ICE_CANDIDATE, "payload": envelope.candidate}
    if isinstance(envelope, AppMessage):
        return {"event": EVENT_CARD_DECLARED, "payload": envelope.payload}
    raise TypeError(f"Not a signal envelope: {envelope!r}")


def decode_envelope(message: dict) -> SignalEnvelope:
    """Parse a wire message into an envelope.

    Args:
        message: Dictionary with ``event`` and ``payload`` keys.

    Returns:
        The matching SignalEnvelope variant.

    Raises:
        MalformedEnvelope: If the event is unknown or required fields are missing.

    Examples:
        >>> decode_envelope({"event": "ready", "payload": {"clientId": "a1", "username": "Yugi"}})
        Ready(identity=PeerIdentity(client_id='a1', display_name='Yugi'))
    """
    if not isinstance(message, dict):
        raise MalformedEnvelope(f"Expected an object, got {type(message).__name__}")

    event = message.get("event")
    payload = message.get("payload")
    if not isinstance(payload, dict):
        raise MalformedEnvelope(f"Event '{event}' has no object payload")

    if event == EVENT_READY:
        client_id = payload.get("clientId")
        if not client_id:
            raise MalformedEnvelope("ready payload is missing clientId")
        return Ready(PeerIdentity(str(client_id), payload.get("username") or "Duelist"))

    if event in (EVENT_OFFER, EVENT_ANSWER):
        description = payload.get(event)
        if not isinstance(description, dict) or "sdp" not in description:
            raise MalformedEnvelope(f"{event} payload is missing its description")
        cls = Offer if event == EVENT_OFFER else Answer
        return cls(description=description, display_name=payload.get("username"))

    if event == EVENT_ICE_CANDIDATE:
        return IceCandidate(candidate=payload)

    if event == EVENT_CARD_DECLARED:
        return AppMessage(payload=payload)

    raise MalformedEnvelope(f"Unknown event: {event!r}")


# =============================================================================
# aiortc conversions
# =============================================================================


def description_to_dict(description: RTCSessionDescription) -> dict:
    return {"sdp": description.sdp, "type": description.type}


def description_from_dict(data: dict) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=data["sdp"], type=data["type"])


def candidate_to_dict(candidate: RTCIceCandidate) -> dict:
    """Serialize an aiortc candidate the way browsers do (RTCIceCandidate.toJSON)."""
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data: dict) -> Optional[RTCIceCandidate]:
    """Parse a browser-style candidate dictionary.

    Returns:
        The aiortc candidate, or None for an end-of-candidates marker
        (empty candidate string).

    Raises:
        ValueError: If the candidate line cannot be parsed.
    """
    line = data.get("candidate") or ""
    if not line:
        return None
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX) :]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, IndexError, ValueError) as e:
        raise ValueError(f"Unparseable candidate line: {data.get('candidate')!r}") from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate
