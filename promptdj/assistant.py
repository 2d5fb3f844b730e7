from __future__ import annotations

import logging
import random
import re
import warnings
from collections.abc import Mapping, Sequence
from typing import Any, Protocol

from pydantic import BaseModel

from .config import DEFAULT_TEXT_MODEL, MAX_PROMPT_CHARS
from .errors import CompletionError, ConfigurationError
from .logging_utils import debug_enabled

_LOGGER = logging.getLogger("promptdj.assistant")
_DEFAULT_TEMPERATURE = 0.9
_RESERVED_LITELLM_KWARGS = frozenset({"model", "messages", "api_key"})
_litellm_logging_configured = False

CREATIVE_GENRES: Sequence[str] = (
    "Lofi",
    "Jazz",
    "Ambient",
    "Synthwave",
    "Classical",
    "Techno",
    "Cinematic",
)
DEFAULT_CREATIVE_PROMPT = "Atmospheric lofi beats with soft rain texture"
OFFLINE_CREATIVE_PROMPT = "Lofi hip hop beats to study to"

_QUOTES = re.compile(r'^"|"$')


class TextCompleter(Protocol):
    async def complete(self, instruction: str) -> str: ...


def _configure_litellm_logging(litellm_module: Any) -> None:
    global _litellm_logging_configured
    if _litellm_logging_configured:
        return
    _litellm_logging_configured = True
    try:
        litellm_module.turn_off_message_logging = True
        litellm_module.disable_streaming_logging = True
        litellm_module.logging = False
    except Exception as exc:
        _LOGGER.info("LiteLLM logging config failed: %s", exc, exc_info=True)
    warnings.filterwarnings("ignore", message="Pydantic serializer warnings")


class _LiteLLMRequest(BaseModel):
    model: str
    messages: list[dict[str, str]]
    temperature: float | None = None
    api_key: str | None = None


class LiteLLMCompleter:
    """Single-turn text completion through LiteLLM."""

    def __init__(
        self,
        model: str = DEFAULT_TEXT_MODEL,
        *,
        api_key: str | None = None,
        temperature: float | None = _DEFAULT_TEMPERATURE,
        litellm_kwargs: Mapping[str, Any] | None = None,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._temperature = temperature
        self._litellm_kwargs = dict(litellm_kwargs or {})
        if self._api_key is None:
            _LOGGER.debug("No API key provided; letting LiteLLM read from env vars.")
        invalid_keys = _RESERVED_LITELLM_KWARGS.intersection(self._litellm_kwargs)
        if invalid_keys:
            keys = ", ".join(sorted(invalid_keys))
            raise ConfigurationError(f"litellm_kwargs cannot override: {keys}")

    @property
    def model(self) -> str:
        return self._model

    async def complete(self, instruction: str) -> str:
        try:
            import litellm  # type: ignore[import]
            from litellm import acompletion  # type: ignore[import]
        except ImportError as exc:
            _LOGGER.warning("LiteLLM not installed: %s", exc)
            raise ConfigurationError("litellm is not installed") from exc

        _configure_litellm_logging(litellm)
        request = _LiteLLMRequest(
            model=self._model,
            messages=[{"role": "user", "content": instruction}],
            temperature=self._temperature,
            api_key=self._api_key or None,
        ).model_dump(exclude_none=True)
        request.update(self._litellm_kwargs)

        try:
            response: Any = await acompletion(**request)
        except Exception as exc:  # pragma: no cover - provider errors
            _LOGGER.warning("LiteLLM request failed: %s", exc, exc_info=debug_enabled())
            raise CompletionError(str(exc)) from exc

        if response is None or not getattr(response, "choices", None):
            raise CompletionError("LiteLLM response missing choices")
        content = response.choices[0].message.content
        if not isinstance(content, str) or not content.strip():
            raise CompletionError("LiteLLM returned empty content")
        return content.strip()


def strip_quotes(text: str) -> str:
    return _QUOTES.sub("", text.strip()).strip()


def _fit_prompt(text: str) -> str:
    return text[:MAX_PROMPT_CHARS].strip()


class PromptAssistant:
    """Rewrites and invents prompts with a text model.

    Both operations degrade instead of raising: a failed completion returns
    the caller's input (or a stock prompt) so the UI always has text to use.
    """

    def __init__(self, completer: TextCompleter | None = None) -> None:
        self._completer = completer

    @property
    def available(self) -> bool:
        return self._completer is not None

    async def enhance_prompt(self, base_prompt: str) -> str:
        if self._completer is None or not base_prompt.strip():
            return base_prompt
        instruction = (
            "Rewrite the following music description to be more detailed, creative, "
            "and suitable for an AI music generator. Keep it under 20 words. "
            f'Focus on mood, instruments, and texture. Input: "{base_prompt}"'
        )
        try:
            enhanced = strip_quotes(await self._completer.complete(instruction))
        except Exception as exc:
            _LOGGER.warning("Prompt enhancement failed: %s", exc, exc_info=debug_enabled())
            return base_prompt
        return _fit_prompt(enhanced) or base_prompt

    async def generate_creative_prompt(self, rng: random.Random | None = None) -> str:
        if self._completer is None:
            return OFFLINE_CREATIVE_PROMPT
        genre = (rng or random).choice(CREATIVE_GENRES)
        instruction = (
            "Generate a creative, short music description (under 15 words) for the genre: "
            f"{genre}. Focus on unique textures and atmosphere. Do not include quotes."
        )
        try:
            created = strip_quotes(await self._completer.complete(instruction))
        except Exception as exc:
            _LOGGER.warning("Creative prompt failed: %s", exc, exc_info=debug_enabled())
            return DEFAULT_CREATIVE_PROMPT
        return _fit_prompt(created) or DEFAULT_CREATIVE_PROMPT
