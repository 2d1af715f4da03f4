# coding=utf-8

from .audio_queue import IncomingAudioQueue
from .backlog import BacklogDecision, BacklogMonitor
from .backoff import ReconnectBackoff
from .bridge import BridgeConnector, BridgeState
from .broadcaster import Broadcaster, UIConnection, encode_event
from .transcoder import TranscoderSupervisor, build_transcoder_command
from .transcript_pool import TranscriptPool

__all__ = [
    "BacklogDecision",
    "BacklogMonitor",
    "BridgeConnector",
    "BridgeState",
    "Broadcaster",
    "IncomingAudioQueue",
    "ReconnectBackoff",
    "TranscoderSupervisor",
    "TranscriptPool",
    "UIConnection",
    "build_transcoder_command",
    "encode_event",
]
