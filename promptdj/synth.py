# pyright: reportUnknownVariableType=false
# pyright: reportUnknownMemberType=false
# pyright: reportUnknownArgumentType=false

"""
Local fallback synthesizer.

1. Primitives: oscillators, envelopes, filters
2. Layers: chord pad, kick/snare, probabilistic melody, filtered noise floor
3. Clock: one beat per chunk, rendered slightly ahead of real time
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections.abc import Callable, Mapping, Sequence
from functools import lru_cache
from types import MappingProxyType

import numpy as np
from numpy.typing import NDArray
from scipy.signal import butter, lfilter  # type: ignore[import]

from .audio import SAMPLE_RATE, AudioChunk, FloatArray
from .config import MAX_GUIDANCE, MAX_TEMPO, MIN_TEMPO, ActiveEngine, ParameterSet, Prompt
from .errors import InvalidConfigError
from .logging_utils import debug_enabled

_LOGGER = logging.getLogger("promptdj.synth")

# =============================================================================
# CONSTANTS
# =============================================================================

BEATS_PER_BAR = 4
KICK_BEATS = (0, 2)
SNARE_BEATS = (1, 3)
MELODY_STEPS_PER_BEAT = 2
NOISE_CUTOFF_MIN = 200.0
NOISE_CUTOFF_MAX = 20_000.0
MASTER_GAIN = 0.3

# Chord voicings as MIDI note numbers, four chords per progression.
PROGRESSIONS: Mapping[str, tuple[tuple[int, ...], ...]] = MappingProxyType(
    {
        "lofi": ((60, 64, 67, 71), (57, 60, 64, 67), (53, 57, 60, 64), (55, 59, 62, 65)),
        "jazz": ((62, 65, 69, 72), (55, 59, 62, 65), (60, 64, 67, 71), (57, 61, 64, 67)),
        "ambient": ((57, 64, 69, 71), (53, 60, 65, 67), (60, 67, 72, 74), (55, 62, 67, 69)),
        "retro": ((57, 60, 64, 69), (53, 57, 60, 65), (60, 64, 67, 72), (55, 59, 62, 67)),
        "dark": ((57, 60, 64, 67), (58, 62, 65, 69), (52, 55, 59, 62), (57, 60, 63, 67)),
        "classical": ((60, 64, 67, 72), (53, 57, 60, 65), (55, 59, 62, 67), (60, 64, 67, 72)),
    }
)

_PROGRESSION_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("jazz", "jazz"),
    ("sax", "jazz"),
    ("ambient", "ambient"),
    ("drone", "ambient"),
    ("meditat", "ambient"),
    ("synthwave", "retro"),
    ("80s", "retro"),
    ("retro", "retro"),
    ("cyber", "dark"),
    ("industrial", "dark"),
    ("dark", "dark"),
    ("classical", "classical"),
    ("orchestra", "classical"),
    ("lofi", "lofi"),
)

# Major pentatonic offsets used for passing tones when guidance is loose.
_PENTATONIC = (0, 2, 4, 7, 9, 12)


# =============================================================================
# PART 1: SYNTHESIS PRIMITIVES
# =============================================================================


def midi_to_freq(note: float) -> float:
    """A4 = 440 Hz = MIDI 69."""
    return 440.0 * 2 ** ((note - 69) / 12)


def seconds_per_beat(tempo: float) -> float:
    return 60.0 / tempo


def brightness_to_cutoff(brightness: float) -> float:
    """Map brightness 0..1 onto a log curve spanning two decades."""
    value = min(max(brightness, 0.0), 1.0)
    return NOISE_CUTOFF_MIN * (NOISE_CUTOFF_MAX / NOISE_CUTOFF_MIN) ** value


def density_to_probability(density: float) -> float:
    """Per-step melody trigger probability."""
    value = min(max(density, 0.0), 1.0)
    return 0.05 + 0.55 * value


def _triangle(freq: float, frames: int, sr: int) -> FloatArray:
    phase = 2 * np.pi * freq * np.arange(frames) / sr
    return (2 / np.pi) * np.arcsin(np.sin(phase))


def _envelope(frames: int, attack: float, release: float, sustain: float, sr: int) -> FloatArray:
    """Attack to 1, settle on ``sustain``, release to 0 over the note's tail."""
    env = np.full(frames, sustain)
    a = min(frames, max(int(attack * sr), 1))
    r = min(frames - a, max(int(release * sr), 1))
    env[:a] = np.linspace(0.0, 1.0, a, endpoint=False)
    if r > 0:
        env[frames - r :] = np.linspace(sustain, 0.0, r)
    return env


@lru_cache(maxsize=256)
def _filter_design(
    kind: str, cutoff_hz: int, sr: int
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    normalized = min(max(cutoff_hz / (sr / 2), 0.001), 0.99)
    b, a = butter(2, normalized, btype=kind)
    return np.asarray(b, dtype=np.float64), np.asarray(a, dtype=np.float64)


def _filter_coeffs(
    kind: str, cutoff: float, sr: int = SAMPLE_RATE
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    # 10 Hz buckets keep the cache small while brightness drifts.
    return _filter_design(kind, int(round(cutoff, -1)), sr)


def apply_lowpass(signal: FloatArray, cutoff: float, sr: int = SAMPLE_RATE) -> FloatArray:
    b, a = _filter_coeffs("low", cutoff, sr)
    return np.asarray(lfilter(b, a, signal), dtype=np.float64)


def apply_highpass(signal: FloatArray, cutoff: float, sr: int = SAMPLE_RATE) -> FloatArray:
    b, a = _filter_coeffs("high", cutoff, sr)
    return np.asarray(lfilter(b, a, signal), dtype=np.float64)


def _mix_into(buffer: FloatArray, note: FloatArray, offset: int) -> None:
    """Sum ``note`` into ``buffer`` at ``offset``; a clipped tail gets a 5 ms fade."""
    room = len(buffer) - offset
    if room <= 0:
        return
    if len(note) > room:
        note = note[:room].copy()
        fade = min(int(0.005 * SAMPLE_RATE), room)
        note[room - fade :] *= np.linspace(1.0, 0.0, fade)
    buffer[offset : offset + len(note)] += note


def _kick(sr: int) -> FloatArray:
    # Pitch falls from 110 Hz to 45 Hz over the hit.
    frames = int(sr * 0.15)
    freq = 45 + 65 * np.exp(-np.arange(frames) / (0.03 * sr))
    phase = 2 * np.pi * np.cumsum(freq) / sr
    kick = 0.45 * np.sin(phase) * np.exp(-np.linspace(0, 8, frames))
    return apply_lowpass(kick, 150, sr)


def _snare(rng: np.random.Generator, sr: int) -> FloatArray:
    frames = int(sr * 0.12)
    snare = apply_highpass(0.18 * rng.standard_normal(frames), 1800, sr)
    return snare * _envelope(frames, 0.001, 0.06, 0.3, sr)


def choose_progression(prompts: Sequence[Prompt]) -> str:
    """Pick a progression from the strongest prompt; stable for the same text."""
    active = [prompt for prompt in prompts if prompt.weight > 0]
    if not active:
        return "lofi"
    strongest = max(active, key=lambda prompt: prompt.weight)
    lowered = strongest.text.lower()
    for keyword, name in _PROGRESSION_KEYWORDS:
        if keyword in lowered:
            return name
    names = sorted(PROGRESSIONS)
    return names[zlib.crc32(lowered.encode("utf-8")) % len(names)]


# =============================================================================
# PART 2: ENGINE
# =============================================================================


ChunkSink = Callable[[AudioChunk], None]


class FallbackSynthesizer:
    """Self-contained generator used when the remote service is unreachable.

    Audio is produced one beat at a time. While playing, an asyncio task keeps
    ``render_ahead`` seconds of beats handed to the sink ahead of the clock.
    Coefficient changes (density, brightness, guidance) apply to the next
    rendered beat; a tempo change restarts the clock.
    """

    kind: ActiveEngine = "fallback"

    def __init__(
        self,
        sink: ChunkSink | None = None,
        *,
        parameters: ParameterSet | None = None,
        render_ahead: float = 0.5,
        seed: int | None = None,
        sample_rate: int = SAMPLE_RATE,
    ) -> None:
        self._sink = sink
        self._parameters = parameters or ParameterSet()
        self._render_ahead = render_ahead
        self._rng = np.random.default_rng(seed)
        self._sr = sample_rate
        self._progression = "lofi"
        self._beat = 0
        self._frame_cursor = 0
        self._noise_zi: NDArray[np.float64] | None = None
        self._task: asyncio.Task[None] | None = None
        self._clock_starts = 0
        self._kick_cache: FloatArray | None = None

    # -- properties -----------------------------------------------------------

    @property
    def tempo(self) -> int:
        return self._parameters.tempo

    @property
    def seconds_per_beat(self) -> float:
        return seconds_per_beat(self._parameters.tempo)

    @property
    def parameters(self) -> ParameterSet:
        return self._parameters

    @property
    def progression(self) -> str:
        return self._progression

    @property
    def noise_cutoff(self) -> float:
        return brightness_to_cutoff(self._parameters.brightness)

    @property
    def melody_probability(self) -> float:
        return density_to_probability(self._parameters.density)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def beat_index(self) -> int:
        return self._beat

    @property
    def clock_starts(self) -> int:
        return self._clock_starts

    def set_sink(self, sink: ChunkSink | None) -> None:
        self._sink = sink

    # -- lifecycle ------------------------------------------------------------

    async def play(self) -> None:
        if self.is_running:
            return
        self._start_clock()

    async def pause(self) -> None:
        await self._stop_clock()

    async def stop(self) -> None:
        await self._stop_clock()
        self._beat = 0
        self._frame_cursor = 0
        self._noise_zi = None

    async def set_prompts(self, prompts: Sequence[Prompt]) -> None:
        progression = choose_progression(prompts)
        if progression != self._progression:
            _LOGGER.debug("Fallback progression -> %s", progression)
        self._progression = progression

    async def set_parameters(self, parameters: ParameterSet) -> None:
        tempo_changed = parameters.tempo != self._parameters.tempo
        self._parameters = parameters
        if tempo_changed:
            await self._restart_clock()

    async def set_tempo(self, bpm: int) -> None:
        if not MIN_TEMPO <= bpm <= MAX_TEMPO:
            raise InvalidConfigError(f"tempo must be within {MIN_TEMPO}-{MAX_TEMPO} bpm")
        if bpm == self._parameters.tempo:
            return
        self._parameters = self._parameters.model_copy(update={"tempo": bpm})
        await self._restart_clock()

    # -- clock ----------------------------------------------------------------

    def _start_clock(self) -> None:
        self._clock_starts += 1
        self._task = asyncio.create_task(self._run_clock(), name="promptdj-fallback-clock")

    async def _stop_clock(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _restart_clock(self) -> None:
        if not self.is_running:
            return
        await self._stop_clock()
        # Restart on a bar line so the new tempo starts with a downbeat.
        self._beat -= self._beat % BEATS_PER_BAR
        self._start_clock()

    async def _run_clock(self) -> None:
        loop = asyncio.get_running_loop()
        spb = self.seconds_per_beat
        origin = loop.time()
        emitted = 0
        while True:
            while emitted * spb < (loop.time() - origin) + self._render_ahead:
                chunk = self.render_beat()
                emitted += 1
                self._emit(chunk)
            await asyncio.sleep(spb / 2)

    def _emit(self, chunk: AudioChunk) -> None:
        if self._sink is None:
            return
        try:
            self._sink(chunk)
        except Exception as exc:
            _LOGGER.warning("Fallback sink failed: %s", exc, exc_info=debug_enabled())

    # -- rendering ------------------------------------------------------------

    def render_beat(self) -> AudioChunk:
        """Render the next beat and advance the musical position."""
        sr = self._sr
        spb = self.seconds_per_beat
        frames = int(round(spb * sr))
        beat = self._beat
        bar_beat = beat % BEATS_PER_BAR
        chords = PROGRESSIONS[self._progression]
        chord = chords[(beat // BEATS_PER_BAR) % len(chords)]

        t_abs = (self._frame_cursor + np.arange(frames)) / sr
        pad = self._pad(chord, t_abs, bar_beat, frames)
        drums = self._drums(bar_beat, frames)
        melody = self._melody(chord, frames, spb)
        noise = self._noise_floor(frames)

        mono = 0.5 * pad + drums + noise
        left = mono + 0.6 * melody
        right = mono + 0.4 * melody
        stereo = np.stack([left, right], axis=1) * MASTER_GAIN
        samples = np.clip(stereo, -1.0, 1.0).astype(np.float32)

        self._beat += 1
        self._frame_cursor += frames
        return AudioChunk(samples=samples, sample_rate=sr)

    def render(self, seconds: float) -> FloatArray:
        """Render roughly ``seconds`` of audio offline, whole beats at a time."""
        beats = max(1, int(np.ceil(seconds / self.seconds_per_beat)))
        chunks = [self.render_beat().samples for _ in range(beats)]
        return np.concatenate(chunks, axis=0)

    def _pad(
        self, chord: tuple[int, ...], t_abs: np.ndarray, bar_beat: int, frames: int
    ) -> np.ndarray:
        position = (bar_beat + np.arange(frames) / frames) / BEATS_PER_BAR
        envelope = np.minimum(position / 0.05, 1.0) * np.minimum((1.0 - position) / 0.08, 1.0)
        voices = sum(np.sin(2 * np.pi * midi_to_freq(note) * t_abs) for note in chord)
        return np.asarray(voices) / len(chord) * envelope

    def _drums(self, bar_beat: int, frames: int) -> np.ndarray:
        signal = np.zeros(frames)
        if bar_beat in KICK_BEATS:
            if self._kick_cache is None:
                self._kick_cache = _kick(self._sr)
            _mix_into(signal, self._kick_cache, 0)
        if bar_beat in SNARE_BEATS:
            _mix_into(signal, _snare(self._rng, self._sr), 0)
        return signal

    def _melody(self, chord: tuple[int, ...], frames: int, spb: float) -> np.ndarray:
        signal = np.zeros(frames)
        probability = self.melody_probability
        adherence = self._parameters.guidance / MAX_GUIDANCE
        step_frames = frames // MELODY_STEPS_PER_BEAT
        step_seconds = spb / MELODY_STEPS_PER_BEAT
        for step in range(MELODY_STEPS_PER_BEAT):
            if self._rng.random() >= probability:
                continue
            if self._rng.random() < adherence:
                pitch = int(self._rng.choice(chord)) + 12
            else:
                pitch = chord[0] + 12 + int(self._rng.choice(_PENTATONIC))
            note_frames = int(step_seconds * 0.9 * self._sr)
            note = 0.25 * _triangle(midi_to_freq(pitch), note_frames, self._sr)
            note = note * _envelope(note_frames, 0.01, step_seconds * 0.4, 0.6, self._sr)
            _mix_into(signal, note, step * step_frames)
        return signal

    def _noise_floor(self, frames: int) -> np.ndarray:
        b, a = _filter_coeffs("low", self.noise_cutoff, self._sr)
        if self._noise_zi is None:
            self._noise_zi = np.zeros(max(len(a), len(b)) - 1)
        noise = 0.04 * self._rng.standard_normal(frames)
        filtered, self._noise_zi = lfilter(b, a, noise, zi=self._noise_zi)
        return np.asarray(filtered, dtype=np.float64)
