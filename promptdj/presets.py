from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict

from .config import Prompt, PromptSet
from .errors import InvalidConfigError

CUSTOM_PROMPT_WEIGHT = 1.5


class Preset(BaseModel):
    """A named starting prompt set."""

    id: str
    name: str
    prompts: PromptSet

    model_config = ConfigDict(frozen=True, extra="forbid")


def _preset(preset_id: str, name: str, *pairs: tuple[str, float]) -> Preset:
    return Preset(id=preset_id, name=name, prompts=PromptSet.from_pairs(pairs))


PRESETS: Mapping[str, Preset] = MappingProxyType(
    {
        preset.id: preset
        for preset in (
            _preset(
                "lofi-study",
                "Lofi Study",
                ("Lofi hip hop", 1.5),
                ("Soft piano", 0.8),
                ("Vinyl crackle", 0.4),
            ),
            _preset(
                "soft-classical",
                "Soft Classical",
                ("Classical strings", 1.5),
                ("Gentle orchestra", 1.0),
                ("Piano sonata", 0.6),
            ),
            _preset(
                "deep-ambient",
                "Deep Ambient",
                ("Ambient soundscape", 1.5),
                ("Ethereal pads", 1.2),
                ("Drone textures", 0.8),
            ),
            _preset(
                "chaos-jazz",
                "Chaos Jazz",
                ("Free jazz", 1.5),
                ("Experimental", 1.0),
                ("Saxophone improvisation", 0.8),
            ),
            _preset(
                "retrowave",
                "Retrowave",
                ("Synthwave", 1.5),
                ("Analog synthesizer", 1.2),
                ("80s nostalgic", 0.8),
            ),
            _preset(
                "cyberpunk",
                "Cyberpunk",
                ("Industrial cyberpunk", 1.4),
                ("Glitch electronics", 1.0),
                ("Dark synthesizer", 0.9),
            ),
            _preset(
                "meditative",
                "Meditative",
                ("Meditation music", 1.5),
                ("Singing bowls", 1.2),
                ("Focus", 1.0),
            ),
        )
    }
)

DEFAULT_PRESET = "lofi-study"


def get_preset(preset_id: str) -> Preset:
    try:
        return PRESETS[preset_id]
    except KeyError:
        known = ", ".join(sorted(PRESETS))
        raise InvalidConfigError(f"Unknown preset '{preset_id}' (known: {known})") from None


def custom_prompt_set(text: str, weight: float = CUSTOM_PROMPT_WEIGHT) -> PromptSet:
    """A single free-text prompt, weighted like a preset's lead prompt."""
    try:
        prompt = Prompt(text=text, weight=weight)
    except ValueError as exc:
        raise InvalidConfigError(f"Invalid prompt: {exc}") from exc
    return PromptSet(prompts=(prompt,))
