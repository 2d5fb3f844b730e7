from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol

from .config import ActiveEngine, ParameterSet, Prompt
from .remote import RemoteSession

_LOGGER = logging.getLogger("promptdj.engine")


class MusicEngine(Protocol):
    """Capability set shared by the remote and the local engine."""

    kind: ActiveEngine

    async def play(self) -> None: ...

    async def pause(self) -> None: ...

    async def stop(self) -> None: ...

    async def set_prompts(self, prompts: Sequence[Prompt]) -> None: ...

    async def set_parameters(self, parameters: ParameterSet) -> None: ...

    async def set_tempo(self, bpm: int) -> None: ...


class RemoteEngine:
    """MusicEngine over one open RemoteSession.

    The remote service cannot change tempo during generation, so
    ``set_tempo`` only records the value; it is sent with the next ``play``.
    Live parameter updates keep the tempo the session is generating at.
    """

    kind: ActiveEngine = "remote"

    def __init__(self, session: RemoteSession, parameters: ParameterSet) -> None:
        self.session = session
        self._parameters = parameters
        self._applied_tempo = parameters.tempo
        self._pending_tempo: int | None = None

    @property
    def applied_tempo(self) -> int:
        return self._applied_tempo

    @property
    def pending_tempo(self) -> int | None:
        return self._pending_tempo

    async def configure(self, parameters: ParameterSet) -> None:
        """Send the full config, tempo included; used when a session opens."""
        self._parameters = parameters
        self._applied_tempo = parameters.tempo
        self._pending_tempo = None
        await self.session.send_config(parameters)

    async def play(self) -> None:
        if self._pending_tempo is not None:
            _LOGGER.info("Applying deferred tempo %s bpm", self._pending_tempo)
            await self.configure(self._parameters.model_copy(update={"tempo": self._pending_tempo}))
        await self.session.play()

    async def pause(self) -> None:
        await self.session.pause()

    async def stop(self) -> None:
        await self.session.stop()

    async def set_prompts(self, prompts: Sequence[Prompt]) -> None:
        await self.session.send_prompts(prompts)

    async def set_parameters(self, parameters: ParameterSet) -> None:
        if parameters.tempo != self._applied_tempo:
            self._pending_tempo = parameters.tempo
        self._parameters = parameters.model_copy(update={"tempo": self._applied_tempo})
        await self.session.send_config(self._parameters)

    async def set_tempo(self, bpm: int) -> None:
        self._pending_tempo = None if bpm == self._applied_tempo else bpm
