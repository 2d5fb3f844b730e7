from __future__ import annotations

import io

from promptdj.events import EventBus
from promptdj.indicators import RichIndicator, render_error


def test_indicator_tracks_session_events() -> None:
    bus = EventBus()
    stream = io.StringIO()
    indicator = RichIndicator(bus, stream=stream, enabled=False)

    bus.playback_state_changed("loading")
    bus.engine_changed("fallback")
    bus.playback_state_changed("playing")
    bus.reconnecting(attempt=1, max_attempts=5, delay=1.0, reason="closed")
    bus.filtered_prompt("Banned", "policy")
    bus.error("Connection lost")
    bus.playback_state_changed("stopped")
    indicator.close()
    bus.error("after close")

    assert indicator.messages == [
        "Buffering",
        "Playing (local synth)",
        "Reconnecting (attempt 1/5) in 1s",
        "Prompt filtered: Banned (policy)",
        "Connection lost",
        "Stopped",
    ]
    assert "Connection lost" in stream.getvalue()


def test_render_error_plain_stream() -> None:
    stream = io.StringIO()

    render_error("playback", RuntimeError("device busy"), stream=stream)

    assert "playback failed: RuntimeError: device busy" in stream.getvalue()
