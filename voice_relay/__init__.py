"""
Voice Relay - Live group voice from a Discord channel to web listeners.

Per-speaker Opus streams are decoded, mixed into one PCM stream, transcoded
by a supervised ffmpeg process and fanned out over WebSockets together with
speaker and listener-count metadata.
"""

from .broadcaster import Broadcaster, Listener
from .config import DiscordConfig, EncoderConfig, PipelineConfig, RelayConfig, ServerConfig
from .context import PipelineContext, PipelineStats
from .encoder import EncoderState, EncoderSupervisor
from .errors import (
    AlreadyActive,
    CapacityExceeded,
    EncoderUnavailable,
    RelayError,
    RoomNotFound,
    TeardownResult,
)
from .mixer import Mixer, MixerInput
from .restart import RestartCoordinator
from .speaker import SessionState, SpeakerSession
from .voice import ConnectionState, Subscription, VoiceConnectionManager, VoiceSource

__all__ = [
    "AlreadyActive",
    "Broadcaster",
    "CapacityExceeded",
    "ConnectionState",
    "DiscordConfig",
    "EncoderConfig",
    "EncoderState",
    "EncoderSupervisor",
    "EncoderUnavailable",
    "Listener",
    "Mixer",
    "MixerInput",
    "PipelineConfig",
    "PipelineContext",
    "PipelineStats",
    "RelayConfig",
    "RelayError",
    "RestartCoordinator",
    "RoomNotFound",
    "ServerConfig",
    "SessionState",
    "SpeakerSession",
    "Subscription",
    "TeardownResult",
    "VoiceConnectionManager",
    "VoiceSource",
]
