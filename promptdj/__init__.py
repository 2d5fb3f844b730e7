from __future__ import annotations

from .assistant import LiteLLMCompleter, PromptAssistant, TextCompleter
from .audio import CHANNELS, SAMPLE_RATE, AudioChunk, decode_chunk, write_wav
from .config import (
    ActiveEngine,
    EngineSettings,
    ParameterSet,
    ParameterUpdate,
    PlaybackState,
    Prompt,
    PromptSet,
    ReconnectState,
)
from .device import OutputDevice, SoundDeviceOutput, VirtualOutput, open_default_device
from .drift import AutoDrift, random_tuning
from .engine import MusicEngine, RemoteEngine
from .errors import (
    CompletionError,
    ConfigurationError,
    DecodeError,
    InvalidConfigError,
    PlaybackError,
    PromptDJError,
    TransportError,
)
from .events import EventBus, SessionEvent
from .logging_utils import configure_logging as _configure_logging
from .presets import PRESETS, Preset, custom_prompt_set, get_preset
from .reconnect import ReconnectPolicy, RetryDecision
from .remote import LyriaTransport, RemoteSession, RemoteTransport, ServerMessage
from .scheduler import AudioScheduler
from .session import SessionManager
from .synth import FallbackSynthesizer

__all__ = [
    "CHANNELS",
    "PRESETS",
    "SAMPLE_RATE",
    "ActiveEngine",
    "AudioChunk",
    "AudioScheduler",
    "AutoDrift",
    "CompletionError",
    "ConfigurationError",
    "DecodeError",
    "EngineSettings",
    "EventBus",
    "FallbackSynthesizer",
    "InvalidConfigError",
    "LiteLLMCompleter",
    "LyriaTransport",
    "MusicEngine",
    "OutputDevice",
    "ParameterSet",
    "ParameterUpdate",
    "PlaybackError",
    "PlaybackState",
    "Preset",
    "Prompt",
    "PromptAssistant",
    "PromptDJError",
    "PromptSet",
    "ReconnectPolicy",
    "ReconnectState",
    "RemoteEngine",
    "RemoteSession",
    "RemoteTransport",
    "RetryDecision",
    "ServerMessage",
    "SessionEvent",
    "SessionManager",
    "SoundDeviceOutput",
    "TextCompleter",
    "TransportError",
    "VirtualOutput",
    "custom_prompt_set",
    "decode_chunk",
    "get_preset",
    "open_default_device",
    "random_tuning",
    "write_wav",
]

__version__ = "0.1.0"

_configure_logging()
del _configure_logging
