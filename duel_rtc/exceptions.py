"""Exceptions raised by the duel-rtc negotiation core.

Structural errors (``InvalidRoom``, ``AlreadySubscribed``, ``ChannelNotReady``)
are raised to the caller of the failing operation. Per-envelope errors
(``CandidateApplyFailed``, ``DescriptionApplyFailed``) and ``DeliveryUnknown``
are logged and swallowed where they occur so that later envelopes are still
processed. ``NegotiationFailed`` is stored on the state machine and surfaced
through its state listeners.
"""


class DuelRTCError(Exception):
    """Base class for all duel-rtc errors."""


class InvalidRoom(DuelRTCError, ValueError):
    """Raised when a room identifier is empty or missing."""

    def __init__(self, room_id=None):
        self.room_id = room_id
        super().__init__(f"Invalid room id: {room_id!r}")


class AlreadySubscribed(DuelRTCError):
    """Raised when a signaling channel is subscribed twice without unsubscribing."""

    def __init__(self, room_id: str):
        self.room_id = room_id
        super().__init__(f"Channel is already subscribed to room '{room_id}'")


class ChannelNotReady(DuelRTCError):
    """Raised when an application payload is sent before the connection is up."""

    def __init__(self, state):
        self.state = state
        super().__init__(f"Cannot send application payload in state '{state}'")


class DeliveryUnknown(DuelRTCError):
    """A send was attempted but the relay could not confirm delivery."""


class CandidateApplyFailed(DuelRTCError):
    """A single network candidate could not be applied. Non-fatal."""


class DescriptionApplyFailed(DuelRTCError):
    """A session description was malformed or arrived out of order."""


class NegotiationFailed(DuelRTCError):
    """The underlying transport could not establish a path to the remote peer."""


class MalformedEnvelope(DuelRTCError, ValueError):
    """A signaling message could not be decoded into an envelope."""
