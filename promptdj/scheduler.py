from __future__ import annotations

import logging

from .audio import SAMPLE_RATE, AudioChunk, decode_chunk
from .device import OutputDevice, OutputPath, ScheduledBuffer
from .errors import DecodeError
from .logging_utils import debug_enabled

_LOGGER = logging.getLogger("promptdj.scheduler")

ChunkInput = AudioChunk | bytes | bytearray | memoryview | str


class AudioScheduler:
    """Gapless, non-overlapping scheduling of audio chunks onto one device.

    The first chunk after a reset is placed ``lookahead_seconds`` into the
    future; every later chunk starts where the previous one ended. If the
    timeline fell more than ``starvation_tolerance`` behind the device clock,
    scheduling restarts at "now" instead of queueing an ever-growing backlog.
    This is the only writer to the output device.
    """

    def __init__(
        self,
        device: OutputDevice,
        *,
        lookahead_seconds: float = 1.5,
        starvation_tolerance: float = 0.1,
        sample_rate: int = SAMPLE_RATE,
    ) -> None:
        self._device = device
        self._lookahead = lookahead_seconds
        self._tolerance = starvation_tolerance
        self._sample_rate = sample_rate
        self._next_start_time: float | None = None
        self._path: OutputPath = device.create_path()
        self._starvations = 0
        self._dropped = 0

    @property
    def device(self) -> OutputDevice:
        return self._device

    @property
    def next_start_time(self) -> float | None:
        return self._next_start_time

    @property
    def is_primed(self) -> bool:
        return self._next_start_time is not None

    @property
    def lookahead_seconds(self) -> float:
        return self._lookahead

    @property
    def starvation_count(self) -> int:
        return self._starvations

    @property
    def dropped_count(self) -> int:
        return self._dropped

    @property
    def path(self) -> OutputPath:
        return self._path

    def enqueue(self, chunk: ChunkInput) -> ScheduledBuffer | None:
        """Schedule one chunk; returns None when the chunk could not be decoded."""

        if not isinstance(chunk, AudioChunk):
            try:
                chunk = decode_chunk(chunk, sample_rate=self._sample_rate)
            except DecodeError as exc:
                self._dropped += 1
                _LOGGER.warning("Dropping undecodable audio chunk: %s", exc, exc_info=debug_enabled())
                return None
        if chunk.frames == 0:
            return None

        now = self._device.current_time
        if self._next_start_time is None:
            self._next_start_time = now + self._lookahead
        elif self._next_start_time < now - self._tolerance:
            self._starvations += 1
            _LOGGER.debug(
                "Audio input starved (%.3fs behind); rescheduling from now.",
                now - self._next_start_time,
            )
            self._next_start_time = now

        start_time = max(self._next_start_time, now)
        buffer = self._device.schedule(chunk.samples, start_time=start_time, path=self._path)
        self._next_start_time = start_time + chunk.duration
        return buffer

    def reset(
        self,
        *,
        fade_seconds: float = 0.0,
        lookahead_seconds: float | None = None,
    ) -> None:
        """Forget the timeline and retire the current output path.

        Audio already handed to the device is faded out over ``fade_seconds``
        and then silenced; later chunks go through a fresh path.
        """

        now = self._device.current_time
        old_path = self._path
        if fade_seconds > 0:
            old_path.set_value_at(old_path.gain_at(now), now)
            old_path.linear_ramp_to(0.0, now + fade_seconds)
            old_path.disconnect(at=now + fade_seconds)
        else:
            old_path.disconnect(at=now)
        self._path = self._device.create_path()
        self._next_start_time = None
        if lookahead_seconds is not None:
            self._lookahead = lookahead_seconds
