from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable, Iterator, Sequence
from pathlib import Path
from typing import Any, Callable, cast

import numpy as np
import soundfile as sf  # type: ignore[import]
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict, model_validator

from .errors import DecodeError, InvalidConfigError

FloatArray = NDArray[np.float32]
AudioNumbers = NDArray[np.floating[Any]] | Sequence[float] | FloatArray

SAMPLE_RATE = 44_100
CHANNELS = 2
_PCM16_SCALE = 32_768.0
_BYTES_PER_FRAME = 2 * CHANNELS


def ensure_audio_contract(
    audio: AudioNumbers,
    *,
    channels: int = CHANNELS,
) -> FloatArray:
    """Normalize dtype/range/shape to ``(frames, channels)`` float32."""

    array: FloatArray = np.asarray(audio, dtype=np.float32)
    if array.ndim == 1:
        array = np.repeat(array.reshape(-1, 1), channels, axis=1)
    elif array.ndim != 2:
        raise InvalidConfigError("audio must be a 1-D or 2-D sample array")
    if array.size == 0:
        return np.zeros((0, array.shape[1] if array.ndim == 2 else channels), dtype=np.float32)
    peak = float(np.max(np.abs(array)))
    if peak > 1.0:
        array = array / peak
    return array


class AudioChunk(BaseModel):
    """A decoded block of audio ready to be scheduled."""

    samples: FloatArray
    sample_rate: int = SAMPLE_RATE

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    @model_validator(mode="after")
    def _normalize(self) -> "AudioChunk":
        normalized = ensure_audio_contract(self.samples)
        object.__setattr__(self, "samples", normalized)
        return self

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channel_count(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frames / self.sample_rate


def _payload_bytes(payload: bytes | bytearray | memoryview | str) -> bytes:
    match payload:
        case str():
            try:
                return base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise DecodeError(f"audio payload is not valid base64: {exc}") from exc
        case bytes() | bytearray() | memoryview():
            return bytes(payload)
        case _:
            raise DecodeError(f"unsupported audio payload type: {type(payload).__name__}")


def decode_chunk(
    payload: bytes | bytearray | memoryview | str,
    *,
    sample_rate: int = SAMPLE_RATE,
) -> AudioChunk:
    """Decode interleaved 16-bit little-endian stereo PCM into an AudioChunk."""

    raw = _payload_bytes(payload)
    if not raw:
        raise DecodeError("audio payload is empty")
    if len(raw) % _BYTES_PER_FRAME:
        raise DecodeError(
            f"audio payload length {len(raw)} is not a multiple of {_BYTES_PER_FRAME} bytes"
        )
    pcm = np.frombuffer(raw, dtype="<i2").reshape(-1, CHANNELS)
    samples = (pcm.astype(np.float32) / _PCM16_SCALE).astype(np.float32)
    return AudioChunk(samples=samples, sample_rate=sample_rate)


def encode_pcm16(samples: AudioNumbers) -> bytes:
    """Inverse of :func:`decode_chunk`, used for fixtures and recordings."""

    normalized = ensure_audio_contract(samples)
    clipped = np.clip(normalized, -1.0, 32_767 / _PCM16_SCALE)
    return (clipped * _PCM16_SCALE).astype("<i2").tobytes()


def iter_chunks(chunks: Iterable[AudioNumbers | AudioChunk]) -> Iterator[FloatArray]:
    for chunk in chunks:
        if isinstance(chunk, AudioChunk):
            yield chunk.samples
        else:
            yield ensure_audio_contract(chunk)


def write_wav(
    path: str | Path,
    audio_or_chunks: AudioNumbers | AudioChunk | Iterable[AudioNumbers | AudioChunk],
    *,
    sample_rate: int = SAMPLE_RATE,
) -> Path:
    """Write a full buffer or a chunk iterator to a stereo wav file."""

    target = Path(path)
    write_fn = getattr(sf, "write", None)
    assert callable(write_fn)
    write_audio = cast(Callable[[Path | str, FloatArray, int], None], write_fn)
    audio_obj: object = audio_or_chunks
    match audio_obj:
        case AudioChunk():
            write_audio(target, audio_obj.samples, audio_obj.sample_rate)
            return target
        case np.ndarray():
            write_audio(target, ensure_audio_contract(audio_obj), sample_rate)
            return target
        case str() | bytes():
            raise InvalidConfigError("audio_or_chunks must be audio samples or chunk iterables")
        case Iterable():
            chunks = cast(Iterable[AudioNumbers | AudioChunk], audio_obj)
        case _:
            raise InvalidConfigError("audio_or_chunks must be audio samples or chunk iterables")

    with sf.SoundFile(
        target,
        mode="w",
        samplerate=sample_rate,
        channels=CHANNELS,
        subtype="FLOAT",
    ) as handle:
        for block in iter_chunks(chunks):
            handle.write(block)
    return target
