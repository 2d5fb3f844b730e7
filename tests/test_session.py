from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence

import numpy as np
import pytest

from promptdj.audio import encode_pcm16
from promptdj.config import EngineSettings, ParameterSet, Prompt, ReconnectState
from promptdj.device import VirtualOutput
from promptdj.errors import InvalidConfigError, PlaybackError, TransportError
from promptdj.events import SessionEvent
from promptdj.remote import ServerMessage
from promptdj.session import NO_ACTIVE_PROMPTS, NO_CREDENTIALS, SessionManager
from promptdj.synth import FallbackSynthesizer


class _FakeSession:
    def __init__(self) -> None:
        self.calls: list[tuple[object, ...]] = []
        self.closed = False
        self._inbox: asyncio.Queue[ServerMessage | None] = asyncio.Queue()

    async def send_prompts(self, prompts: Sequence[Prompt]) -> None:
        self.calls.append(("prompts", tuple(prompt.text for prompt in prompts)))

    async def send_config(self, parameters: ParameterSet) -> None:
        self.calls.append(("config", parameters))

    async def play(self) -> None:
        self.calls.append(("play",))

    async def pause(self) -> None:
        self.calls.append(("pause",))

    async def stop(self) -> None:
        self.calls.append(("stop",))

    async def receive(self) -> AsyncIterator[ServerMessage]:
        while True:
            message = await self._inbox.get()
            if message is None:
                return
            yield message

    async def close(self) -> None:
        self.closed = True

    def push(self, message: ServerMessage) -> None:
        self._inbox.put_nowait(message)

    def configs(self) -> list[ParameterSet]:
        return [call[1] for call in self.calls if call[0] == "config"]  # type: ignore[misc]


class _FakeTransport:
    def __init__(self, *, failures: int = 0, fail_forever: bool = False) -> None:
        self.sessions: list[_FakeSession] = []
        self.attempts = 0
        self._failures = failures
        self._fail_forever = fail_forever

    async def connect(self) -> _FakeSession:
        self.attempts += 1
        if self._fail_forever or self.attempts <= self._failures:
            raise TransportError("connection refused")
        session = _FakeSession()
        self.sessions.append(session)
        return session


class _GatedTransport:
    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.sessions: list[_FakeSession] = []

    async def connect(self) -> _FakeSession:
        await self.gate.wait()
        session = _FakeSession()
        self.sessions.append(session)
        return session


def _audio_message(seconds: float = 0.01) -> ServerMessage:
    frames = int(44_100 * seconds)
    samples = np.full((frames, 2), 0.1, dtype=np.float32)
    return ServerMessage(kind="audio", payloads=(encode_pcm16(samples),))


def _settings(**overrides: object) -> EngineSettings:
    values: dict[str, object] = {
        "api_key": "test-key",
        "base_delay": 0.01,
        "max_retries": 3,
        "lookahead_seconds": 0.02,
    }
    values.update(overrides)
    return EngineSettings.model_validate(values)


def _manager(
    transport: object | None = None,
    **overrides: object,
) -> tuple[SessionManager, list[SessionEvent]]:
    manager = SessionManager(
        _settings(**overrides),
        transport=transport,  # type: ignore[arg-type]
        device=VirtualOutput(),
        fallback=FallbackSynthesizer(seed=0),
    )
    events: list[SessionEvent] = []
    manager.events.subscribe(events.append)
    return manager, events


async def _settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def _errors(events: list[SessionEvent]) -> list[str]:
    return [event.message or "" for event in events if event.kind == "error"]


@pytest.mark.asyncio
async def test_play_sends_config_and_active_prompts() -> None:
    transport = _FakeTransport()
    manager, _ = _manager(transport)
    await manager.init()
    await manager.set_prompts([("Lofi hip hop", 1.5), ("Muted", 0.0)])

    await manager.play()

    assert manager.state == "loading"
    assert manager.engine == "remote"
    calls = transport.sessions[0].calls
    assert calls[0][0] == "config"
    assert calls[1] == ("prompts", ("Lofi hip hop",))
    assert calls[2] == ("play",)
    await manager.destroy()


@pytest.mark.asyncio
async def test_loading_becomes_playing_after_lookahead() -> None:
    transport = _FakeTransport()
    manager, _ = _manager(transport)
    await manager.set_prompts([("Ambient", 1.0)])
    await manager.play()

    transport.sessions[0].push(_audio_message())
    await _settle()
    assert manager.state == "loading"
    assert manager.scheduler is not None and manager.scheduler.is_primed

    await asyncio.sleep(0.05)
    assert manager.state == "playing"
    await manager.destroy()


@pytest.mark.asyncio
async def test_play_without_active_prompts_reports_error() -> None:
    transport = _FakeTransport()
    manager, events = _manager(transport)
    await manager.set_prompts([("Silent", 0.0)])

    await manager.play()

    assert manager.state == "stopped"
    assert transport.attempts == 0
    assert _errors(events) == [NO_ACTIVE_PROMPTS]


@pytest.mark.asyncio
async def test_filtered_prompts_are_excluded_and_pause_once() -> None:
    transport = _FakeTransport()
    manager, events = _manager(transport)
    await manager.set_prompts([("Jazz", 1.0), ("Banned", 1.0)])
    await manager.play()
    session = transport.sessions[0]
    session.push(_audio_message())
    await asyncio.sleep(0.05)
    assert manager.state == "playing"

    session.push(ServerMessage(kind="filtered_prompt", text="Banned", reason="policy"))
    await _settle()
    assert manager.filtered_prompts == frozenset({"Banned"})
    assert [p.text for p in manager.active_prompts()] == ["Jazz"]
    assert manager.state == "playing"

    session.push(ServerMessage(kind="filtered_prompt", text="Jazz"))
    await _settle()
    assert manager.state == "paused"
    assert ("pause",) in session.calls

    session.push(ServerMessage(kind="filtered_prompt", text="Jazz"))
    await _settle()
    assert _errors(events).count(NO_ACTIVE_PROMPTS) == 1
    filtered = [event.text for event in events if event.kind == "filtered_prompt"]
    assert filtered == ["Banned", "Jazz", "Jazz"]
    await manager.destroy()


@pytest.mark.asyncio
async def test_setting_only_inactive_prompts_while_playing_pauses() -> None:
    transport = _FakeTransport()
    manager, events = _manager(transport)
    await manager.set_prompts([("Techno", 1.0)])
    await manager.play()
    transport.sessions[0].push(_audio_message())
    await asyncio.sleep(0.05)

    await manager.set_prompts([("Techno", 0.0)])

    assert manager.state == "paused"
    assert _errors(events) == [NO_ACTIVE_PROMPTS]
    await manager.destroy()


@pytest.mark.asyncio
async def test_connect_failure_schedules_backoff_retry() -> None:
    transport = _FakeTransport(failures=1)
    manager, events = _manager(transport)
    await manager.set_prompts([("Lofi", 1.0)])

    await manager.play()

    assert manager.state == "loading"
    assert manager.reconnect_state == ReconnectState(retry_count=1, is_reconnecting=True)
    reconnecting = [event for event in events if event.kind == "reconnecting"]
    assert len(reconnecting) == 1
    assert reconnecting[0].attempt == 1
    assert reconnecting[0].max_attempts == 3
    assert reconnecting[0].delay == pytest.approx(0.01)

    await asyncio.sleep(0.05)
    assert transport.attempts == 2
    assert manager.engine == "remote"
    assert manager.reconnect_state == ReconnectState()
    assert ("play",) in transport.sessions[0].calls
    await manager.destroy()


@pytest.mark.asyncio
async def test_retries_exhausted_switches_to_fallback() -> None:
    transport = _FakeTransport(fail_forever=True)
    manager, events = _manager(transport, max_retries=2, base_delay=0.001)
    await manager.set_prompts([("Synthwave", 1.0)])

    await manager.play()
    await asyncio.sleep(0.1)

    assert transport.attempts == 3
    delays = [event.delay for event in events if event.kind == "reconnecting"]
    assert delays == [pytest.approx(0.001), pytest.approx(0.002)]
    assert manager.engine == "fallback"
    assert manager.state == "playing"
    assert manager.fallback.is_running
    assert manager.fallback.progression == "retro"
    assert any("local synthesizer" in message for message in _errors(events))

    await manager.stop()
    assert manager.engine == "fallback"
    assert not manager.fallback.is_running


@pytest.mark.asyncio
async def test_exhaustion_without_fallback_stops() -> None:
    transport = _FakeTransport(fail_forever=True)
    manager, events = _manager(
        transport, max_retries=1, base_delay=0.001, fallback_on_exhaustion=False
    )
    await manager.set_prompts([("Drone", 1.0)])

    await manager.play()
    await asyncio.sleep(0.05)

    assert manager.state == "stopped"
    assert manager.engine == "none"
    assert any("Giving up" in message for message in _errors(events))


@pytest.mark.asyncio
async def test_stop_cancels_pending_retry() -> None:
    transport = _FakeTransport(failures=1)
    manager, _ = _manager(transport, base_delay=0.05)
    await manager.set_prompts([("Lofi", 1.0)])
    await manager.play()

    await manager.stop()
    await asyncio.sleep(0.1)

    assert transport.attempts == 1
    assert manager.state == "stopped"
    assert manager.reconnect_state == ReconnectState()


@pytest.mark.asyncio
async def test_pause_discards_connect_in_flight() -> None:
    transport = _GatedTransport()
    manager, _ = _manager(transport)
    await manager.set_prompts([("Lofi", 1.0)])

    play_task = asyncio.create_task(manager.play())
    await _settle()
    assert manager.state == "loading"

    await manager.pause()
    transport.gate.set()
    await play_task

    assert manager.state == "paused"
    assert manager.engine == "none"
    assert transport.sessions == []


@pytest.mark.asyncio
async def test_second_play_while_loading_aborts() -> None:
    transport = _GatedTransport()
    manager, _ = _manager(transport)
    await manager.set_prompts([("Lofi", 1.0)])

    play_task = asyncio.create_task(manager.play())
    await _settle()
    await manager.play()
    await play_task

    assert manager.state == "stopped"


@pytest.mark.asyncio
async def test_server_close_reconnects_and_clears_filtered() -> None:
    transport = _FakeTransport()
    manager, events = _manager(transport)
    await manager.set_prompts([("Jazz", 1.0), ("Banned", 1.0)])
    await manager.play()
    first = transport.sessions[0]
    first.push(_audio_message())
    first.push(ServerMessage(kind="filtered_prompt", text="Banned"))
    await asyncio.sleep(0.05)
    assert manager.filtered_prompts == frozenset({"Banned"})

    first.push(ServerMessage(kind="closed", reason="going away"))
    await _settle()
    assert manager.reconnect_state.is_reconnecting
    assert first.closed

    await asyncio.sleep(0.05)
    assert len(transport.sessions) == 2
    assert manager.filtered_prompts == frozenset()
    assert ("prompts", ("Jazz", "Banned")) in transport.sessions[1].calls
    assert any(event.kind == "reconnecting" for event in events)
    await manager.destroy()


@pytest.mark.asyncio
async def test_remote_tempo_change_waits_for_next_play() -> None:
    transport = _FakeTransport()
    manager, _ = _manager(transport)
    await manager.set_prompts([("Lofi", 1.0)])
    await manager.play()
    session = transport.sessions[0]

    await manager.set_parameters({"tempo": 120, "density": 0.2})
    live = session.configs()[-1]
    assert live.tempo == 90
    assert live.density == pytest.approx(0.2)
    assert manager.parameters.tempo == 120

    await manager.pause()
    await manager.play()
    assert session.configs()[-1].tempo == 120
    assert session.calls[-1] == ("play",)
    await manager.destroy()


@pytest.mark.asyncio
async def test_invalid_parameters_raise_without_change() -> None:
    manager, _ = _manager(_FakeTransport())

    with pytest.raises(InvalidConfigError):
        await manager.set_parameters({"tempo": 500})
    with pytest.raises(InvalidConfigError):
        await manager.set_parameters({"brightness": -0.1})

    assert manager.parameters == ParameterSet()


@pytest.mark.asyncio
async def test_missing_credentials_engages_fallback_once() -> None:
    manager = SessionManager(
        EngineSettings(api_key=None),
        device=VirtualOutput(),
        fallback=FallbackSynthesizer(seed=1),
    )
    events: list[SessionEvent] = []
    manager.events.subscribe(events.append)

    await manager.init()
    await manager.init()
    assert manager.engine == "fallback"
    assert _errors(events) == [NO_CREDENTIALS]

    await manager.play()
    assert manager.state == "playing"
    await _settle()
    assert manager.scheduler is not None and manager.scheduler.is_primed
    await manager.destroy()


@pytest.mark.asyncio
async def test_play_pause_toggles_fallback_playback() -> None:
    manager = SessionManager(
        EngineSettings(), device=VirtualOutput(), fallback=FallbackSynthesizer(seed=2)
    )
    await manager.play_pause()
    assert manager.state == "playing"
    await manager.play_pause()
    assert manager.state == "paused"
    assert not manager.fallback.is_running
    await manager.play_pause()
    assert manager.state == "playing"
    await manager.destroy()
    assert manager.state == "stopped"


@pytest.mark.asyncio
async def test_fallback_tempo_change_restarts_clock() -> None:
    manager = SessionManager(
        EngineSettings(), device=VirtualOutput(), fallback=FallbackSynthesizer(seed=3)
    )
    await manager.play()
    assert manager.fallback.clock_starts == 1

    await manager.set_parameters({"tempo": 120})

    assert manager.fallback.tempo == 120
    assert manager.fallback.clock_starts == 2
    assert manager.fallback.is_running
    await manager.destroy()


@pytest.mark.asyncio
async def test_state_events_follow_transitions() -> None:
    transport = _FakeTransport()
    manager, events = _manager(transport)
    await manager.set_prompts([("Lofi", 1.0)])
    await manager.play()
    transport.sessions[0].push(_audio_message())
    await asyncio.sleep(0.05)
    await manager.pause()
    await manager.stop()

    states = [event.state for event in events if event.kind == "playback_state_changed"]
    assert states == ["loading", "playing", "paused", "stopped"]


@pytest.mark.asyncio
async def test_reconnect_while_playing_keeps_state() -> None:
    transport = _FakeTransport()
    manager, events = _manager(transport)
    await manager.set_prompts([("Lofi", 1.0)])
    await manager.play()
    transport.sessions[0].push(_audio_message())
    await asyncio.sleep(0.05)
    assert manager.state == "playing"
    seen = len(events)

    transport.sessions[0].push(ServerMessage(kind="closed", reason="going away"))
    await _settle()
    assert manager.reconnect_state.is_reconnecting
    await manager.play()
    assert manager.state == "playing"

    await asyncio.sleep(0.05)
    assert len(transport.sessions) == 2
    assert manager.engine == "remote"
    assert ("play",) in transport.sessions[1].calls
    transport.sessions[1].push(_audio_message())
    await asyncio.sleep(0.05)

    assert manager.state == "playing"
    later = [event.state for event in events[seen:] if event.kind == "playback_state_changed"]
    assert later == []
    await manager.destroy()


@pytest.mark.asyncio
async def test_missing_output_device_is_reported_not_raised(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _no_device() -> VirtualOutput:
        raise PlaybackError("sounddevice is not installed")

    monkeypatch.setattr("promptdj.session.open_default_device", _no_device)
    manager = SessionManager(_settings(), transport=_FakeTransport())  # type: ignore[arg-type]
    events: list[SessionEvent] = []
    manager.events.subscribe(events.append)

    async with manager:
        assert not manager.is_initialized
        await manager.play()
        assert manager.state == "stopped"

    assert _errors(events) == ["sounddevice is not installed"] * 2
