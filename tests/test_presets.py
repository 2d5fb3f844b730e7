from __future__ import annotations

import pytest

from promptdj.errors import InvalidConfigError
from promptdj.presets import CUSTOM_PROMPT_WEIGHT, PRESETS, custom_prompt_set, get_preset


def test_preset_library() -> None:
    assert list(PRESETS) == [
        "lofi-study",
        "soft-classical",
        "deep-ambient",
        "chaos-jazz",
        "retrowave",
        "cyberpunk",
        "meditative",
    ]
    lofi = get_preset("lofi-study")
    assert lofi.name == "Lofi Study"
    assert [(p.text, p.weight) for p in lofi.prompts.prompts] == [
        ("Lofi hip hop", 1.5),
        ("Soft piano", 0.8),
        ("Vinyl crackle", 0.4),
    ]


def test_every_preset_has_active_prompts() -> None:
    for preset in PRESETS.values():
        assert preset.prompts.active()


def test_unknown_preset() -> None:
    with pytest.raises(InvalidConfigError, match="Unknown preset"):
        get_preset("polka")


def test_custom_prompt_set() -> None:
    prompts = custom_prompt_set("  Rainy neon alleys  ")

    assert len(prompts) == 1
    assert prompts.prompts[0].text == "Rainy neon alleys"
    assert prompts.prompts[0].weight == CUSTOM_PROMPT_WEIGHT

    with pytest.raises(InvalidConfigError):
        custom_prompt_set("")
