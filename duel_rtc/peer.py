"""aiortc peer connection construction."""

from typing import Optional, Sequence

from aiortc import MediaStreamTrack, RTCPeerConnection
from loguru import logger

from duel_rtc.config import Config, get_config


def create_peer_connection(
    local_tracks: Optional[Sequence[MediaStreamTrack]] = None,
    config: Optional[Config] = None,
) -> RTCPeerConnection:
    """Create an RTCPeerConnection with the configured ICE servers.

    Local tracks are attached when given. Without them the connection is
    receive-only: recvonly audio and video transceivers are added so that an
    offer can still be produced and the opponent's camera still arrives.

    Args:
        local_tracks: Camera/microphone tracks to send, if any.
        config: Configuration to read ICE servers from (global config if None).

    Returns:
        RTCPeerConnection ready to be driven by a NegotiationStateMachine.
    """
    config = config if config is not None else get_config()
    rtc_config = config.get_rtc_configuration()
    logger.info(
        f"Creating RTCPeerConnection with {len(rtc_config.iceServers)} ICE server(s)"
    )
    pc = RTCPeerConnection(configuration=rtc_config)

    if local_tracks:
        for track in local_tracks:
            pc.addTrack(track)
            logger.debug(f"Added local {track.kind} track")
    else:
        logger.info("No local media; connecting receive-only")
        pc.addTransceiver("audio", direction="recvonly")
        pc.addTransceiver("video", direction="recvonly")

    return pc
