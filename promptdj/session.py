from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from types import TracebackType

from .audio import AudioChunk
from .config import (
    ActiveEngine,
    EngineSettings,
    ParameterSet,
    PlaybackState,
    Prompt,
    PromptInput,
    PromptSet,
    ReconnectState,
    UpdateInput,
    coerce_prompt_set,
    coerce_update,
)
from .device import OutputDevice, open_default_device
from .engine import RemoteEngine
from .errors import PlaybackError, TransportError
from .events import EventBus
from .logging_utils import debug_enabled
from .reconnect import ReconnectPolicy
from .remote import LyriaTransport, RemoteSession, RemoteTransport, ServerMessage
from .scheduler import AudioScheduler
from .synth import FallbackSynthesizer

_LOGGER = logging.getLogger("promptdj.session")

NO_ACTIVE_PROMPTS = "At least one active prompt is required."
NO_CREDENTIALS = "No API key configured; using the local synthesizer."


async def _close_quietly(session: RemoteSession) -> None:
    try:
        await session.close()
    except Exception as exc:
        _LOGGER.info("Closing remote session failed: %s", exc, exc_info=debug_enabled())


class SessionManager:
    """Owns playback state, the active engine and recovery from connection loss.

    Every transition runs on the caller's event loop. ``_epoch`` is bumped by
    ``pause`` and ``stop``; connects, retries and buffer timers started under
    an older epoch are discarded when they complete.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        transport: RemoteTransport | None = None,
        device: OutputDevice | None = None,
        fallback: FallbackSynthesizer | None = None,
        policy: ReconnectPolicy | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._transport = transport
        self._device = device
        self._fallback = fallback or FallbackSynthesizer()
        self._policy = policy or ReconnectPolicy(
            max_retries=self._settings.max_retries,
            base_delay=self._settings.base_delay,
        )
        self.events = events or EventBus()
        self._scheduler: AudioScheduler | None = None

        self._state: PlaybackState = "stopped"
        self._engine: ActiveEngine = "none"
        self._use_fallback = False
        self._remote: RemoteEngine | None = None
        self._reconnect = ReconnectState()
        self._prompts = PromptSet()
        self._parameters = ParameterSet()
        self._filtered: set[str] = set()

        self._epoch = 0
        self._connect_task: asyncio.Task[RemoteSession] | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._buffer_timer: asyncio.TimerHandle | None = None
        self._initialized = False

    # -- read-only views ------------------------------------------------------

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    @property
    def state(self) -> PlaybackState:
        return self._state

    @property
    def engine(self) -> ActiveEngine:
        return self._engine

    @property
    def prompts(self) -> PromptSet:
        return self._prompts

    @property
    def parameters(self) -> ParameterSet:
        return self._parameters

    @property
    def reconnect_state(self) -> ReconnectState:
        return self._reconnect

    @property
    def filtered_prompts(self) -> frozenset[str]:
        return frozenset(self._filtered)

    @property
    def scheduler(self) -> AudioScheduler | None:
        return self._scheduler

    @property
    def fallback(self) -> FallbackSynthesizer:
        return self._fallback

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    def active_prompts(self) -> tuple[Prompt, ...]:
        return self._prompts.active(self._filtered)

    # -- lifecycle ------------------------------------------------------------

    async def init(self) -> None:
        if self._initialized:
            return
        if self._device is None:
            try:
                self._device = open_default_device()
            except PlaybackError as exc:
                _LOGGER.warning("Output device unavailable: %s", exc, exc_info=debug_enabled())
                self.events.error(str(exc))
                return
        self._scheduler = AudioScheduler(
            self._device,
            lookahead_seconds=self._settings.lookahead_seconds,
            starvation_tolerance=self._settings.starvation_tolerance,
        )
        self._fallback.set_sink(self._on_fallback_chunk)
        self._initialized = True
        if self._transport is None:
            if self._settings.has_credentials:
                assert self._settings.api_key is not None
                self._transport = LyriaTransport(self._settings.api_key, model=self._settings.model)
            else:
                _LOGGER.warning(NO_CREDENTIALS)
                self._use_fallback = True
                self._scheduler.reset(lookahead_seconds=self._settings.fallback_lookahead_seconds)
                await self._fallback.set_prompts(self._prompts.prompts)
                await self._fallback.set_parameters(self._parameters)
                self._set_engine("fallback")
                self.events.error(NO_CREDENTIALS)

    async def destroy(self) -> None:
        await self.stop()
        if self._device is not None:
            self._device.close()
        self._initialized = False

    async def __aenter__(self) -> "SessionManager":
        await self.init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.destroy()

    # -- playback control -----------------------------------------------------

    async def play(self) -> None:
        match self._state:
            case "playing":
                return
            case "loading":
                # A second play while connecting aborts the first.
                await self.stop()
                return
            case _:
                pass

        await self.init()
        if self._device is None:
            return
        try:
            await self._device.resume()
        except PlaybackError as exc:
            _LOGGER.warning("Output device unavailable: %s", exc, exc_info=debug_enabled())
            self.events.error(str(exc))
            return

        if self._use_fallback:
            await self._fallback.play()
            self._set_state("playing")
            return

        if not self.active_prompts():
            self.events.error(NO_ACTIVE_PROMPTS)
            return

        epoch = self._epoch
        self._set_state("loading")
        remote = self._remote
        try:
            if remote is None:
                remote = await self._establish(epoch, start_playback=True)
            else:
                await self._send_active_prompts(remote)
                if epoch == self._epoch:
                    await remote.play()
        except TransportError as exc:
            if epoch == self._epoch:
                await self._fail(f"Failed to start: {exc}", remote)

    async def pause(self) -> None:
        if self._state not in ("loading", "playing"):
            return
        self._invalidate_pending()
        if self._scheduler is not None:
            self._scheduler.reset(fade_seconds=self._settings.fade_seconds)
        self._set_state("paused")

        if self._engine == "fallback":
            await self._fallback.pause()
            return
        remote = self._remote
        if remote is None:
            return
        try:
            await remote.pause()
        except TransportError as exc:
            await self._fail(f"Failed to pause: {exc}", remote)

    async def stop(self) -> None:
        self._invalidate_pending()
        self._reconnect = ReconnectState()
        remote = self._detach_remote()
        if remote is not None:
            try:
                await remote.stop()
            except TransportError as exc:
                _LOGGER.info("Remote stop failed: %s", exc, exc_info=debug_enabled())
            await _close_quietly(remote.session)
        await self._fallback.stop()
        if self._scheduler is not None:
            self._scheduler.reset()
        if not self._use_fallback:
            self._set_engine("none")
        self._set_state("stopped")

    async def play_pause(self) -> None:
        match self._state:
            case "playing":
                await self.pause()
            case "loading":
                await self.stop()
            case _:
                await self.play()

    # -- prompts and parameters -----------------------------------------------

    async def set_prompts(self, prompts: PromptSet | Iterable[PromptInput]) -> None:
        prompt_set = coerce_prompt_set(prompts)
        self._prompts = prompt_set
        if self._engine == "fallback":
            await self._fallback.set_prompts(prompt_set.prompts)
            return

        active = self.active_prompts()
        if not active and self._state == "playing":
            self.events.error(NO_ACTIVE_PROMPTS)
            await self.pause()
            return
        remote = self._remote
        if remote is None or not active:
            _LOGGER.debug("No session yet; prompts will be sent on play.")
            return
        try:
            await remote.set_prompts(active)
        except TransportError as exc:
            await self._fail(f"Failed to send prompts: {exc}", remote)

    async def set_parameters(self, update: UpdateInput) -> None:
        parameters = coerce_update(update).apply_to(self._parameters)
        if parameters == self._parameters:
            return
        tempo_changed = parameters.tempo != self._parameters.tempo
        self._parameters = parameters

        match self._engine:
            case "fallback":
                if tempo_changed and self._state == "playing" and self._scheduler is not None:
                    self._scheduler.reset(
                        fade_seconds=0.02,
                        lookahead_seconds=self._settings.fallback_lookahead_seconds,
                    )
                await self._fallback.set_parameters(parameters)
            case "remote":
                remote = self._remote
                if remote is None:
                    return
                try:
                    await remote.set_parameters(parameters)
                except TransportError as exc:
                    await self._fail(f"Failed to send parameters: {exc}", remote)
            case _:
                _LOGGER.debug("No active engine; parameters will be applied on play.")

    async def set_tempo(self, bpm: int) -> None:
        await self.set_parameters({"tempo": bpm})

    # -- remote session -------------------------------------------------------

    async def _open_session(self, epoch: int) -> RemoteSession | None:
        if self._transport is None:
            raise TransportError("No remote transport configured")
        task: asyncio.Task[RemoteSession] = asyncio.create_task(self._transport.connect())
        self._connect_task = task
        try:
            session = await task
        except asyncio.CancelledError:
            if task.cancelled() and epoch != self._epoch:
                return None
            raise
        except TransportError:
            raise
        except Exception as exc:
            raise TransportError(str(exc) or type(exc).__name__) from exc
        finally:
            if self._connect_task is task:
                self._connect_task = None
        if epoch != self._epoch:
            _LOGGER.debug("Discarding session that connected after cancellation.")
            await _close_quietly(session)
            return None
        return session

    async def _establish(self, epoch: int, *, start_playback: bool) -> RemoteEngine | None:
        session = await self._open_session(epoch)
        if session is None:
            return None
        remote = RemoteEngine(session, self._parameters)
        self._remote = remote
        self._filtered.clear()
        self._receive_task = asyncio.create_task(
            self._pump(remote), name="promptdj-remote-receive"
        )
        await remote.configure(self._parameters)
        await self._send_active_prompts(remote)
        if start_playback and epoch == self._epoch:
            await remote.play()
        if remote is not self._remote:
            return None
        self._reconnect = ReconnectState()
        self._set_engine("remote")
        return remote

    async def _send_active_prompts(self, remote: RemoteEngine) -> None:
        active = self.active_prompts()
        if active:
            await remote.set_prompts(active)

    async def _pump(self, remote: RemoteEngine) -> None:
        reason = "Connection closed by server."
        try:
            async for message in remote.session.receive():
                if remote is not self._remote:
                    return
                if message.kind == "closed":
                    reason = f"Connection closed: {message.reason or 'no reason provided'}"
                    break
                if message.kind == "error":
                    reason = f"Connection error: {message.message or 'unknown error'}"
                    break
                await self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            reason = f"Connection error: {exc}"
        if remote is self._remote:
            await self._fail(reason, remote)

    async def _dispatch(self, message: ServerMessage) -> None:
        match message.kind:
            case "setup_complete":
                _LOGGER.info("Remote session setup complete.")
            case "filtered_prompt":
                await self._on_filtered(message.text or "", message.reason)
            case "audio":
                self._on_audio(message.payloads)
            case _:
                _LOGGER.debug("Ignoring message of kind %s", message.kind)

    async def _on_filtered(self, text: str, reason: str | None) -> None:
        _LOGGER.info("Prompt filtered: %s (%s)", text, reason)
        self._filtered.add(text)
        self.events.filtered_prompt(text, reason)
        if self._state == "playing" and not self.active_prompts():
            self.events.error(NO_ACTIVE_PROMPTS)
            await self.pause()

    def _on_audio(self, payloads: Iterable[bytes | str]) -> None:
        scheduler = self._scheduler
        if scheduler is None or self._engine != "remote":
            return
        if self._state not in ("loading", "playing"):
            return
        for payload in payloads:
            was_primed = scheduler.is_primed
            scheduled = scheduler.enqueue(payload)
            if scheduled is not None and not was_primed:
                self._arm_buffer_timer(scheduler.lookahead_seconds)

    def _arm_buffer_timer(self, delay: float) -> None:
        self._cancel_buffer_timer()
        loop = asyncio.get_running_loop()
        self._buffer_timer = loop.call_later(delay, self._on_buffer_ready, self._epoch)

    def _on_buffer_ready(self, epoch: int) -> None:
        self._buffer_timer = None
        if epoch == self._epoch and self._state == "loading":
            self._set_state("playing")

    def _on_fallback_chunk(self, chunk: AudioChunk) -> None:
        if self._engine != "fallback" or self._state != "playing":
            return
        if self._scheduler is not None:
            self._scheduler.enqueue(chunk)

    # -- failure handling -----------------------------------------------------

    async def _fail(self, reason: str, source: RemoteEngine | None) -> None:
        if self._use_fallback:
            return
        if source is not None and source is not self._remote:
            _LOGGER.debug("Ignoring failure from a retired session: %s", reason)
            return
        _LOGGER.warning("Remote engine failure: %s", reason)
        remote = self._detach_remote()
        if remote is not None:
            await _close_quietly(remote.session)
        if self._scheduler is not None:
            self._scheduler.reset()
        self._set_engine("none")

        decision = self._policy.decide(self._reconnect)
        match decision.action:
            case "pending":
                _LOGGER.debug("Reconnect already pending; not scheduling another.")
                return
            case "exhausted":
                await self._on_retries_exhausted(reason)
                return
            case _:
                pass

        self._reconnect = ReconnectState(retry_count=decision.attempt, is_reconnecting=True)
        self.events.reconnecting(
            attempt=decision.attempt,
            max_attempts=decision.max_attempts,
            delay=decision.delay,
            reason=reason,
        )
        self._retry_task = asyncio.create_task(
            self._retry_after(decision.delay, self._epoch), name="promptdj-reconnect"
        )

    async def _retry_after(self, delay: float, epoch: int) -> None:
        await asyncio.sleep(delay)
        if epoch != self._epoch:
            return
        self._retry_task = None
        self._reconnect = self._reconnect.model_copy(update={"is_reconnecting": False})
        # State is left as is; the buffer timer re-primes without a transition.
        resume = self._state in ("loading", "playing")
        remote: RemoteEngine | None = None
        try:
            remote = await self._establish(epoch, start_playback=resume)
        except TransportError as exc:
            if epoch == self._epoch:
                await self._fail(f"Reconnect failed: {exc}", self._remote)
            return
        if remote is not None:
            _LOGGER.info("Reconnected to the remote engine.")

    async def _on_retries_exhausted(self, reason: str) -> None:
        self._reconnect = self._reconnect.model_copy(update={"is_reconnecting": False})
        if not self._settings.fallback_on_exhaustion:
            self.events.error(f"{reason} Giving up after {self._policy.max_retries} retries.")
            await self.stop()
            return
        await self._engage_fallback(reason)

    async def _engage_fallback(self, reason: str) -> None:
        _LOGGER.warning("Switching to the local synthesizer: %s", reason)
        self._use_fallback = True
        if self._scheduler is not None:
            self._scheduler.reset(lookahead_seconds=self._settings.fallback_lookahead_seconds)
        await self._fallback.set_prompts(self._prompts.prompts)
        await self._fallback.set_parameters(self._parameters)
        self._set_engine("fallback")
        self.events.error(f"{reason} Switching to the local synthesizer.")
        if self._state in ("loading", "playing"):
            await self._fallback.play()
            self._set_state("playing")

    # -- helpers --------------------------------------------------------------

    def _invalidate_pending(self) -> None:
        self._epoch += 1
        self._cancel_buffer_timer()
        retry = self._retry_task
        self._retry_task = None
        if retry is not None and not retry.done():
            retry.cancel()
        if self._reconnect.is_reconnecting:
            self._reconnect = self._reconnect.model_copy(update={"is_reconnecting": False})
        connect = self._connect_task
        self._connect_task = None
        if connect is not None and not connect.done():
            connect.cancel()

    def _cancel_buffer_timer(self) -> None:
        if self._buffer_timer is not None:
            self._buffer_timer.cancel()
            self._buffer_timer = None

    def _detach_remote(self) -> RemoteEngine | None:
        remote = self._remote
        self._remote = None
        self._cancel_buffer_timer()
        pump = self._receive_task
        self._receive_task = None
        if pump is not None and pump is not asyncio.current_task() and not pump.done():
            pump.cancel()
        return remote

    def _set_state(self, state: PlaybackState) -> None:
        if state == self._state:
            return
        _LOGGER.info("Playback state %s -> %s", self._state, state)
        self._state = state
        self.events.playback_state_changed(state)

    def _set_engine(self, engine: ActiveEngine) -> None:
        if engine == self._engine:
            return
        _LOGGER.info("Active engine %s -> %s", self._engine, engine)
        self._engine = engine
        self.events.engine_changed(engine)
