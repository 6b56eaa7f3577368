"""Connection lifecycle states and negotiation roles."""

from enum import Enum


class ConnectionState(str, Enum):
    """Lifecycle of one negotiation instance.

    ``CLOSED`` is terminal. ``FAILED`` only leaves to ``CLOSED``.
    """

    IDLE = "idle"
    AWAITING_REMOTE = "awaiting_remote"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self in (ConnectionState.FAILED, ConnectionState.CLOSED)


class Role(str, Enum):
    """Side of the offer/answer exchange, fixed by the tie-break."""

    OFFERER = "offerer"
    ANSWERER = "answerer"
