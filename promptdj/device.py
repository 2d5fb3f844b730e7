from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

import numpy as np

from .audio import CHANNELS, SAMPLE_RATE, FloatArray
from .errors import PlaybackError

_LOGGER = logging.getLogger("promptdj.device")


class OutputPath:
    """Gain stage between scheduled buffers and the device output.

    Automation follows the usual set-value / linear-ramp model: between two
    automation points the gain is interpolated linearly, before the first
    point it holds the initial gain. After ``disconnect`` the path is silent.
    """

    def __init__(self, gain: float = 1.0) -> None:
        self._initial = gain
        self._times: list[float] = []
        self._values: list[float] = []
        self._disconnect_at: float | None = None
        self._lock = threading.Lock()

    def set_value_at(self, value: float, time: float) -> None:
        with self._lock:
            held = self._values[-1] if self._values else self._initial
            self._append(time, held)
            self._append(time, value)

    def linear_ramp_to(self, value: float, end_time: float) -> None:
        with self._lock:
            self._append(end_time, value)

    def _append(self, time: float, value: float) -> None:
        if self._times and time < self._times[-1]:
            # Automation is append-only; earlier points are clamped forward.
            time = self._times[-1]
        self._times.append(time)
        self._values.append(value)

    def disconnect(self, at: float = 0.0) -> None:
        with self._lock:
            if self._disconnect_at is None or at < self._disconnect_at:
                self._disconnect_at = at

    def is_connected(self, time: float) -> bool:
        with self._lock:
            return self._disconnect_at is None or time < self._disconnect_at

    def gain_at(self, time: float) -> float:
        return float(self.gains(np.asarray([time], dtype=np.float64))[0])

    def gains(self, times: np.ndarray) -> np.ndarray:
        with self._lock:
            xs = list(self._times)
            ys = list(self._values)
            cutoff = self._disconnect_at
        if not xs:
            values = np.full(times.shape, self._initial, dtype=np.float64)
        else:
            values = np.interp(times, xs, ys)
            values[times < xs[0]] = self._initial
        if cutoff is not None:
            values[times >= cutoff] = 0.0
        return values


@dataclass(frozen=True)
class ScheduledBuffer:
    start_time: float
    samples: FloatArray
    path: OutputPath
    sample_rate: int = SAMPLE_RATE
    start_frame: int = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "start_frame", int(round(self.start_time * self.sample_rate)))

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class OutputDevice(Protocol):
    sample_rate: int
    channels: int

    @property
    def current_time(self) -> float: ...

    @property
    def suspended(self) -> bool: ...

    async def resume(self) -> None: ...

    def create_path(self) -> OutputPath: ...

    def schedule(
        self,
        samples: FloatArray,
        *,
        start_time: float,
        path: OutputPath,
    ) -> ScheduledBuffer: ...

    def close(self) -> None: ...


class _BufferMixer:
    def __init__(self, sample_rate: int, channels: int) -> None:
        self._sample_rate = sample_rate
        self._channels = channels
        self._buffers: list[ScheduledBuffer] = []
        self._lock = threading.Lock()

    def add(self, buffer: ScheduledBuffer) -> None:
        with self._lock:
            self._buffers.append(buffer)

    def pending(self) -> int:
        with self._lock:
            return len(self._buffers)

    def clear(self) -> None:
        with self._lock:
            self._buffers.clear()

    def mix(self, start_frame: int, frames: int) -> FloatArray:
        out = np.zeros((frames, self._channels), dtype=np.float32)
        if frames <= 0:
            return out
        end_frame = start_frame + frames
        block_start = start_frame / self._sample_rate
        with self._lock:
            self._buffers = [
                buffer
                for buffer in self._buffers
                if buffer.start_frame + buffer.frames > start_frame
                and buffer.path.is_connected(block_start)
            ]
            active = [buffer for buffer in self._buffers if buffer.start_frame < end_frame]
        for buffer in active:
            offset = buffer.start_frame - start_frame
            src_from = max(0, -offset)
            dst_from = max(0, offset)
            count = min(buffer.frames - src_from, frames - dst_from)
            if count <= 0:
                continue
            times = (start_frame + dst_from + np.arange(count)) / self._sample_rate
            gains = buffer.path.gains(times).astype(np.float32)
            out[dst_from : dst_from + count] += (
                buffer.samples[src_from : src_from + count] * gains[:, None]
            )
        return out


class VirtualOutput:
    """Output device with a manually advanced clock.

    Nothing is played; ``advance`` mixes whatever is scheduled for the next
    ``seconds`` of the timeline and returns it. Every scheduled buffer is also
    kept in ``history`` for inspection.
    """

    def __init__(self, *, sample_rate: int = SAMPLE_RATE, channels: int = CHANNELS) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self.history: list[ScheduledBuffer] = []
        self._mixer = _BufferMixer(sample_rate, channels)
        self._frame = 0
        self._suspended = True
        self._closed = False

    @property
    def current_time(self) -> float:
        return self._frame / self.sample_rate

    @property
    def suspended(self) -> bool:
        return self._suspended

    @property
    def closed(self) -> bool:
        return self._closed

    async def resume(self) -> None:
        self._suspended = False

    def create_path(self) -> OutputPath:
        return OutputPath()

    def schedule(
        self,
        samples: FloatArray,
        *,
        start_time: float,
        path: OutputPath,
    ) -> ScheduledBuffer:
        buffer = ScheduledBuffer(
            start_time=start_time,
            samples=samples,
            path=path,
            sample_rate=self.sample_rate,
        )
        self.history.append(buffer)
        self._mixer.add(buffer)
        return buffer

    def advance(self, seconds: float) -> FloatArray:
        frames = max(0, int(round(seconds * self.sample_rate)))
        block = self._mixer.mix(self._frame, frames)
        self._frame += frames
        return block

    def close(self) -> None:
        self._closed = True
        self._mixer.clear()


class SoundDeviceOutput:
    """Real-time output through a sounddevice callback stream."""

    def __init__(
        self,
        sd: Any,
        *,
        sample_rate: int = SAMPLE_RATE,
        channels: int = CHANNELS,
        blocksize: int = 1024,
        device: int | str | None = None,
    ) -> None:
        self.sample_rate = sample_rate
        self.channels = channels
        self._sd = sd
        self._blocksize = blocksize
        self._device = device
        self._mixer = _BufferMixer(sample_rate, channels)
        self._frame = 0
        self._stream: Any = None

    @property
    def current_time(self) -> float:
        return self._frame / self.sample_rate

    @property
    def suspended(self) -> bool:
        return self._stream is None or not bool(getattr(self._stream, "active", False))

    async def resume(self) -> None:
        if self._stream is None:
            try:
                self._stream = self._sd.OutputStream(
                    samplerate=self.sample_rate,
                    channels=self.channels,
                    dtype="float32",
                    blocksize=self._blocksize,
                    device=self._device,
                    callback=self._callback,
                )
            except Exception as exc:
                raise PlaybackError(f"Could not open output stream: {exc}") from exc
        if not self._stream.active:
            self._stream.start()

    def create_path(self) -> OutputPath:
        return OutputPath()

    def schedule(
        self,
        samples: FloatArray,
        *,
        start_time: float,
        path: OutputPath,
    ) -> ScheduledBuffer:
        buffer = ScheduledBuffer(
            start_time=start_time,
            samples=samples,
            path=path,
            sample_rate=self.sample_rate,
        )
        self._mixer.add(buffer)
        return buffer

    def _callback(self, outdata: Any, frames: int, time_info: Any, status: Any) -> None:
        _ = time_info
        if status:
            _LOGGER.debug("Output stream status: %s", status)
        block = self._mixer.mix(self._frame, frames)
        outdata[:] = np.clip(block, -1.0, 1.0)
        self._frame += frames

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        self._mixer.clear()
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except Exception as exc:
            _LOGGER.warning("Output stream close failed: %s", exc, exc_info=True)


def _load_sounddevice() -> Any | None:
    try:
        import sounddevice as sd_module  # type: ignore[import]
    except (ImportError, OSError) as exc:
        _LOGGER.info("sounddevice not available: %s", exc, exc_info=True)
        return None
    return sd_module


def open_default_device(*, blocksize: int = 1024) -> SoundDeviceOutput:
    sd = _load_sounddevice()
    if sd is None:
        raise PlaybackError(
            "Playback requires sounddevice (and a PortAudio library). "
            "Install it, or run with a VirtualOutput device."
        )
    return SoundDeviceOutput(sd, blocksize=blocksize)
