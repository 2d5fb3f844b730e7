from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import AsyncExitStack
from typing import Any, Literal, Protocol

from pydantic import BaseModel, ConfigDict

from .config import DEFAULT_MODEL, ParameterSet, Prompt
from .errors import ConfigurationError, TransportError

_LOGGER = logging.getLogger("promptdj.remote")
_API_VERSION = "v1alpha"

MessageKind = Literal["setup_complete", "filtered_prompt", "audio", "closed", "error"]


class ServerMessage(BaseModel):
    """Inbound message from the remote music session, transport-neutral."""

    kind: MessageKind
    text: str | None = None
    reason: str | None = None
    payloads: tuple[bytes | str, ...] = ()
    code: int | None = None
    message: str | None = None

    model_config = ConfigDict(frozen=True, extra="forbid")


class RemoteSession(Protocol):
    async def send_prompts(self, prompts: Sequence[Prompt]) -> None: ...

    async def send_config(self, parameters: ParameterSet) -> None: ...

    async def play(self) -> None: ...

    async def pause(self) -> None: ...

    async def stop(self) -> None: ...

    def receive(self) -> AsyncIterator[ServerMessage]: ...

    async def close(self) -> None: ...


class RemoteTransport(Protocol):
    async def connect(self) -> RemoteSession: ...


def translate_message(raw: Any) -> list[ServerMessage]:
    """Split one SDK message into the transport-neutral messages it carries."""

    messages: list[ServerMessage] = []
    if getattr(raw, "setup_complete", None) is not None:
        messages.append(ServerMessage(kind="setup_complete"))
    filtered = getattr(raw, "filtered_prompt", None)
    if filtered is not None:
        messages.append(
            ServerMessage(
                kind="filtered_prompt",
                text=getattr(filtered, "text", None) or "",
                reason=getattr(filtered, "filtered_reason", None),
            )
        )
    content = getattr(raw, "server_content", None)
    chunks = getattr(content, "audio_chunks", None) if content is not None else None
    if chunks:
        payloads = tuple(
            chunk.data for chunk in chunks if getattr(chunk, "data", None)
        )
        if payloads:
            messages.append(ServerMessage(kind="audio", payloads=payloads))
    return messages


class LyriaSession:
    """RemoteSession over a google-genai live music session."""

    def __init__(self, session: Any, stack: AsyncExitStack) -> None:
        self._session = session
        self._stack = stack
        self._closed = False

    async def _call(self, name: str, **kwargs: Any) -> None:
        if self._closed:
            raise TransportError(f"{name} called on a closed session")
        try:
            await getattr(self._session, name)(**kwargs)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise TransportError(f"{name} failed: {exc}") from exc

    async def send_prompts(self, prompts: Sequence[Prompt]) -> None:
        from google.genai import types  # type: ignore[import]

        weighted = [types.WeightedPrompt(text=prompt.text, weight=prompt.weight) for prompt in prompts]
        await self._call("set_weighted_prompts", prompts=weighted)

    async def send_config(self, parameters: ParameterSet) -> None:
        from google.genai import types  # type: ignore[import]

        config = types.LiveMusicGenerationConfig(
            bpm=parameters.tempo,
            guidance=parameters.guidance,
            density=parameters.density,
            brightness=parameters.brightness,
        )
        await self._call("set_music_generation_config", config=config)

    async def play(self) -> None:
        await self._call("play")

    async def pause(self) -> None:
        await self._call("pause")

    async def stop(self) -> None:
        await self._call("stop")

    async def receive(self) -> AsyncIterator[ServerMessage]:
        try:
            async for raw in self._session.receive():
                for message in translate_message(raw):
                    yield message
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            code = getattr(getattr(exc, "rcvd", None), "code", None)
            yield ServerMessage(kind="error", message=str(exc) or type(exc).__name__, code=code)
            return
        yield ServerMessage(kind="closed", reason="stream ended")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._stack.aclose()
        except Exception as exc:
            _LOGGER.info("Remote session close failed: %s", exc, exc_info=True)


class LyriaTransport:
    """Opens live music sessions with the Gemini API."""

    def __init__(
        self,
        api_key: str,
        *,
        model: str = DEFAULT_MODEL,
        client: Any | None = None,
    ) -> None:
        if not api_key and client is None:
            raise ConfigurationError("An API key is required for the remote music service")
        self._api_key = api_key
        self._model = model
        self._client = client

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from google import genai  # type: ignore[import]
        except ImportError as exc:
            _LOGGER.warning("google-genai not installed: %s", exc)
            raise ConfigurationError("google-genai is not installed") from exc
        self._client = genai.Client(api_key=self._api_key, http_options={"api_version": _API_VERSION})
        return self._client

    async def connect(self) -> LyriaSession:
        client = self._ensure_client()
        stack = AsyncExitStack()
        try:
            session = await stack.enter_async_context(client.aio.live.music.connect(model=self._model))
        except asyncio.CancelledError:
            await stack.aclose()
            raise
        except Exception as exc:
            await stack.aclose()
            raise TransportError(f"connect failed: {exc}") from exc
        _LOGGER.info("Connected to %s", self._model)
        return LyriaSession(session, stack)
