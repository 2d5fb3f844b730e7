from __future__ import annotations

import logging
import os
from collections.abc import Collection, Iterable, Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import InvalidConfigError

_LOGGER = logging.getLogger("promptdj.config")

MAX_PROMPT_CHARS = 200
MIN_TEMPO = 60
MAX_TEMPO = 200
MAX_GUIDANCE = 6.0

PlaybackState = Literal["stopped", "loading", "playing", "paused"]
ActiveEngine = Literal["none", "remote", "fallback"]

DEFAULT_MODEL = "models/lyria-realtime-exp"
DEFAULT_TEXT_MODEL = "gemini/gemini-3-flash-preview"


class Prompt(BaseModel):
    """A weighted text prompt steering the generated audio."""

    text: str = Field(min_length=1, max_length=MAX_PROMPT_CHARS)
    weight: float = Field(default=1.0, ge=0.0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("text", mode="before")
    @classmethod
    def _strip_text(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value

    @property
    def is_active(self) -> bool:
        return self.weight > 0


PromptInput = Prompt | Mapping[str, Any] | tuple[str, float]


class PromptSet(BaseModel):
    """Ordered prompts sent as one unit; a new set replaces the old one wholesale."""

    prompts: tuple[Prompt, ...] = ()

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("prompts", mode="before")
    @classmethod
    def _coerce_prompts(cls, value: object) -> object:
        match value:
            case str():
                raise ValueError("prompts must be a sequence, not a string")
            case Iterable():
                return tuple(_coerce_prompt(item) for item in value)
            case _:
                return value

    @classmethod
    def of(cls, *items: PromptInput) -> "PromptSet":
        return coerce_prompt_set(list(items))

    @classmethod
    def from_pairs(cls, pairs: Iterable[tuple[str, float]]) -> "PromptSet":
        return coerce_prompt_set([Prompt(text=text, weight=weight) for text, weight in pairs])

    def active(self, filtered: Collection[str] = ()) -> tuple[Prompt, ...]:
        return tuple(
            prompt for prompt in self.prompts if prompt.is_active and prompt.text not in filtered
        )

    def __len__(self) -> int:
        return len(self.prompts)

    def __bool__(self) -> bool:
        return bool(self.prompts)


def _coerce_prompt(item: object) -> object:
    match item:
        case Prompt():
            return item
        case (str() as text, int() | float() as weight):
            return {"text": text, "weight": weight}
        case _:
            return item


def coerce_prompt_set(value: PromptSet | Iterable[PromptInput]) -> PromptSet:
    if isinstance(value, PromptSet):
        return value
    try:
        return PromptSet(prompts=value)  # type: ignore[arg-type]
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid prompts: {exc}") from exc


class ParameterSet(BaseModel):
    """Generation parameters; replaced on every update, never mutated."""

    tempo: int = Field(default=90, ge=MIN_TEMPO, le=MAX_TEMPO)
    guidance: float = Field(default=4.0, ge=0.0, le=MAX_GUIDANCE)
    density: float = Field(default=0.5, ge=0.0, le=1.0)
    brightness: float = Field(default=0.5, ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True, extra="forbid")


class ParameterUpdate(BaseModel):
    """Partial parameter update; unset fields keep their current value."""

    tempo: int | None = Field(default=None, ge=MIN_TEMPO, le=MAX_TEMPO)
    guidance: float | None = Field(default=None, ge=0.0, le=MAX_GUIDANCE)
    density: float | None = Field(default=None, ge=0.0, le=1.0)
    brightness: float | None = Field(default=None, ge=0.0, le=1.0)

    model_config = ConfigDict(frozen=True, extra="forbid")

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)

    def apply_to(self, base: ParameterSet) -> ParameterSet:
        changes = self.model_dump(exclude_none=True)
        if not changes:
            return base
        return ParameterSet.model_validate({**base.model_dump(), **changes})


UpdateInput = ParameterUpdate | Mapping[str, Any]


def coerce_update(value: UpdateInput) -> ParameterUpdate:
    if isinstance(value, ParameterUpdate):
        return value
    try:
        return ParameterUpdate.model_validate(dict(value))
    except ValidationError as exc:
        raise InvalidConfigError(f"Invalid parameters: {exc}") from exc


class ReconnectState(BaseModel):
    retry_count: int = Field(default=0, ge=0)
    is_reconnecting: bool = False

    model_config = ConfigDict(frozen=True, extra="forbid")


class EngineSettings(BaseModel):
    """Constructor-time configuration for the playback engine."""

    api_key: str | None = None
    model: str = DEFAULT_MODEL
    text_model: str = DEFAULT_TEXT_MODEL
    max_retries: int = Field(default=5, ge=0)
    base_delay: float = Field(default=1.0, ge=0.0)
    lookahead_seconds: float = Field(default=1.5, ge=0.0)
    starvation_tolerance: float = Field(default=0.1, ge=0.0)
    fade_seconds: float = Field(default=0.1, ge=0.0)
    fallback_lookahead_seconds: float = Field(default=0.05, ge=0.0)
    fallback_on_exhaustion: bool = True

    model_config = ConfigDict(frozen=True, extra="forbid")

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides: Any) -> "EngineSettings":
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        api_key = env.get("GEMINI_API_KEY") or env.get("GOOGLE_API_KEY")
        if api_key:
            values["api_key"] = api_key
        for key, field in (
            ("PROMPTDJ_MODEL", "model"),
            ("PROMPTDJ_TEXT_MODEL", "text_model"),
            ("PROMPTDJ_MAX_RETRIES", "max_retries"),
            ("PROMPTDJ_BASE_DELAY", "base_delay"),
            ("PROMPTDJ_LOOKAHEAD", "lookahead_seconds"),
        ):
            raw = env.get(key)
            if raw:
                values[field] = raw
        values.update(overrides)
        try:
            settings = cls.model_validate(values)
        except ValidationError as exc:
            raise InvalidConfigError(f"Invalid engine settings: {exc}") from exc
        if not settings.has_credentials:
            _LOGGER.info("No API key in environment; the remote engine will be unavailable.")
        return settings
