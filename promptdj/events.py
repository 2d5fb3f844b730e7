from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Literal

from pydantic import BaseModel, ConfigDict

from .config import ActiveEngine, PlaybackState
from .logging_utils import debug_enabled

_LOGGER = logging.getLogger("promptdj.events")

EventKind = Literal[
    "playback_state_changed",
    "engine_changed",
    "filtered_prompt",
    "reconnecting",
    "error",
]


class SessionEvent(BaseModel):
    kind: EventKind
    state: PlaybackState | None = None
    engine: ActiveEngine | None = None
    text: str | None = None
    reason: str | None = None
    attempt: int | None = None
    max_attempts: int | None = None
    delay: float | None = None
    message: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


EventCallback = Callable[[SessionEvent], None]


class EventBus:
    """Synchronous, ordered delivery of session events to observers.

    Observers run inline in ``publish``, in subscription order. An observer
    that raises is logged and skipped; it never breaks the publisher.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[EventKind | None, EventCallback]] = []
        self._queues: list[asyncio.Queue[SessionEvent]] = []

    def subscribe(
        self,
        callback: EventCallback,
        *,
        kind: EventKind | None = None,
    ) -> Callable[[], None]:
        entry = (kind, callback)
        self._subscribers.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, event: SessionEvent) -> None:
        for kind, callback in list(self._subscribers):
            if kind is not None and kind != event.kind:
                continue
            try:
                callback(event)
            except Exception as exc:
                _LOGGER.warning("Event observer failed: %s", exc, exc_info=debug_enabled())
        for queue in list(self._queues):
            queue.put_nowait(event)

    async def listen(self) -> AsyncIterator[SessionEvent]:
        """Yield events as they are published, for callers that prefer awaiting."""

        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)

    def playback_state_changed(self, state: PlaybackState) -> None:
        self.publish(SessionEvent(kind="playback_state_changed", state=state))

    def engine_changed(self, engine: ActiveEngine) -> None:
        self.publish(SessionEvent(kind="engine_changed", engine=engine))

    def filtered_prompt(self, text: str, reason: str | None = None) -> None:
        self.publish(SessionEvent(kind="filtered_prompt", text=text, reason=reason))

    def reconnecting(self, *, attempt: int, max_attempts: int, delay: float, reason: str) -> None:
        self.publish(
            SessionEvent(
                kind="reconnecting",
                attempt=attempt,
                max_attempts=max_attempts,
                delay=delay,
                reason=reason,
            )
        )

    def error(self, message: str) -> None:
        self.publish(SessionEvent(kind="error", message=message))
