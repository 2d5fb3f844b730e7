from __future__ import annotations

import sys
import traceback
from typing import IO

from rich.console import Console
from rich.panel import Panel
from rich.status import Status
from rich.text import Text
from rich.traceback import Traceback

from .config import ActiveEngine
from .events import EventBus, SessionEvent
from .logging_utils import debug_enabled, get_log_path

_ENGINE_LABELS: dict[ActiveEngine, str] = {
    "none": "no engine",
    "remote": "live model",
    "fallback": "local synth",
}


class RichIndicator:
    """Terminal status line that follows session events."""

    def __init__(
        self,
        events: EventBus,
        *,
        stream: IO[str] | None = None,
        enabled: bool | None = None,
    ) -> None:
        self._stream = stream or sys.stderr
        self._enabled = self._stream.isatty() if enabled is None else enabled
        self._console = Console(file=self._stream)
        self._status: Status | None = None
        self._engine: ActiveEngine = "none"
        self._messages: list[str] = []
        self._unsubscribe = events.subscribe(self._on_event)

    @property
    def messages(self) -> list[str]:
        return list(self._messages)

    def _show(self, message: str) -> None:
        self._messages.append(message)
        if not self._enabled:
            return
        if self._status is None:
            self._status = self._console.status(message)
            self._status.start()
            return
        self._status.update(message)

    def _note(self, message: str, style: str) -> None:
        self._messages.append(message)
        self._console.print(Text(message, style=style))

    def _on_event(self, event: SessionEvent) -> None:
        match event.kind:
            case "playback_state_changed":
                self._on_state(event)
            case "engine_changed":
                self._engine = event.engine or "none"
            case "filtered_prompt":
                reason = f" ({event.reason})" if event.reason else ""
                self._note(f"Prompt filtered: {event.text}{reason}", "yellow")
            case "reconnecting":
                self._show(
                    f"Reconnecting (attempt {event.attempt}/{event.max_attempts}) "
                    f"in {event.delay:.0f}s"
                )
            case "error":
                self._note(event.message or "Unknown error", "bold red")

    def _on_state(self, event: SessionEvent) -> None:
        match event.state:
            case "loading":
                self._show("Buffering")
            case "playing":
                self._show(f"Playing ({_ENGINE_LABELS[self._engine]})")
            case "paused":
                self._show("Paused")
            case _:
                self._messages.append("Stopped")
                self._stop_status()

    def _stop_status(self) -> None:
        if self._status is None:
            return
        self._status.stop()
        self._status = None

    def close(self) -> None:
        self._unsubscribe()
        self._stop_status()


def render_error(
    context: str,
    exc: BaseException,
    *,
    stream: IO[str] | None = None,
) -> None:
    target = stream or sys.stderr
    debug = debug_enabled()
    log_path = get_log_path()
    if target.isatty():
        console = Console(file=target)
        body = Text.assemble(
            ("PromptDJ error while ", "bold"),
            (context, "bold"),
            (":\n\n", "bold"),
            Text(type(exc).__name__, style="bold red"),
            (": ", "bold"),
            Text(str(exc)),
            (f"\nLogs: {log_path}", "dim"),
            ("\n\nSet PROMPTDJ_DEBUG=1 for console trace.", "dim"),
        )
        console.print(Panel(body, title="Error", border_style="red"))
        if debug:
            console.print(Traceback.from_exception(type(exc), exc, exc.__traceback__))
        return
    target.write(f"{context} failed: {type(exc).__name__}: {exc} (logs: {log_path})\n")
    if debug:
        traceback.print_exception(type(exc), exc, exc.__traceback__, file=target)
