"""Negotiation module for duel-rtc.

This module provides:
- states: ConnectionState lifecycle and offerer/answerer Role
- candidate_queue: buffering of candidates that precede the remote description
- state_machine: NegotiationStateMachine driving the offer/answer exchange
"""

from duel_rtc.negotiation.candidate_queue import CandidateQueue
from duel_rtc.negotiation.states import ConnectionState, Role

__all__ = [
    "CandidateQueue",
    "ConnectionState",
    "Role",
]
