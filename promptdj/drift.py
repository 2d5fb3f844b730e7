from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable

from .config import MAX_GUIDANCE, MAX_TEMPO, MIN_TEMPO, ParameterSet, ParameterUpdate
from .events import SessionEvent
from .session import SessionManager

_LOGGER = logging.getLogger("promptdj.drift")

DRIFT_INTERVAL_SECONDS = 180.0
TEMPO_STEP = 10
GUIDANCE_STEP = 1.0
DENSITY_STEP = 0.15
BRIGHTNESS_STEP = 0.1


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def random_tuning(parameters: ParameterSet, rng: random.Random | None = None) -> ParameterUpdate:
    """Nudge every parameter by a bounded random amount, staying in range."""
    rng = rng or random.Random()
    tempo = int(_clamp(parameters.tempo + rng.randint(-TEMPO_STEP, TEMPO_STEP), MIN_TEMPO, MAX_TEMPO))
    guidance = _clamp(parameters.guidance + rng.uniform(-GUIDANCE_STEP, GUIDANCE_STEP), 0.0, MAX_GUIDANCE)
    density = _clamp(parameters.density + rng.uniform(-DENSITY_STEP, DENSITY_STEP), 0.0, 1.0)
    brightness = _clamp(
        parameters.brightness + rng.uniform(-BRIGHTNESS_STEP, BRIGHTNESS_STEP), 0.0, 1.0
    )
    return ParameterUpdate(
        tempo=tempo,
        guidance=round(guidance, 2),
        density=round(density, 2),
        brightness=round(brightness, 2),
    )


class AutoDrift:
    """Applies a random tuning after every ``interval`` seconds spent playing.

    Listening time only accrues while the session reports ``playing``; pauses
    and reconnects do not count toward the next drift.
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        interval: float = DRIFT_INTERVAL_SECONDS,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        poll_seconds: float = 1.0,
    ) -> None:
        self._session = session
        self._interval = interval
        self._rng = rng or random.Random()
        self._clock = clock
        self._poll = poll_seconds
        self._listened = 0.0
        self._playing_since: float | None = None
        self._task: asyncio.Task[None] | None = None
        self._drifts = 0
        self._unsubscribe = session.events.subscribe(
            self._on_state_changed, kind="playback_state_changed"
        )
        if session.state == "playing":
            self._playing_since = clock()

    @property
    def drift_count(self) -> int:
        return self._drifts

    def listened_seconds(self) -> float:
        total = self._listened
        if self._playing_since is not None:
            total += self._clock() - self._playing_since
        return total

    def _on_state_changed(self, event: SessionEvent) -> None:
        now = self._clock()
        if event.state == "playing":
            if self._playing_since is None:
                self._playing_since = now
        elif self._playing_since is not None:
            self._listened += now - self._playing_since
            self._playing_since = None

    async def tick(self) -> ParameterUpdate | None:
        """Apply a tuning if enough listening time has accrued."""
        if self.listened_seconds() < self._interval:
            return None
        self._listened = 0.0
        if self._playing_since is not None:
            self._playing_since = self._clock()
        update = random_tuning(self._session.parameters, self._rng)
        _LOGGER.info("Auto-drift: %s", update.model_dump(exclude_none=True))
        self._drifts += 1
        await self._session.set_parameters(update)
        return update

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._poll)
            await self.tick()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="promptdj-auto-drift")

    async def close(self) -> None:
        self._unsubscribe()
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
