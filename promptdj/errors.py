from __future__ import annotations


class PromptDJError(Exception):
    """Base error for the PromptDJ library."""


class InvalidConfigError(PromptDJError):
    """Raised when prompts, parameters or settings fail validation."""


class ConfigurationError(PromptDJError):
    """Raised when the environment lacks what the remote engine needs."""


class PlaybackError(PromptDJError):
    """Raised when no output device can be opened."""


class TransportError(PromptDJError):
    """Raised when the remote music session fails or drops."""


class DecodeError(PromptDJError):
    """Raised when an audio payload cannot be decoded."""


class CompletionError(PromptDJError):
    """Raised when the text completion provider fails."""
