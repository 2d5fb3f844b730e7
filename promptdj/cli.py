from __future__ import annotations

import argparse
import asyncio
import logging

from rich.console import Console
from rich.table import Table

from .assistant import LiteLLMCompleter, PromptAssistant
from .audio import SAMPLE_RATE, write_wav
from .config import EngineSettings, PromptSet
from .drift import AutoDrift
from .indicators import RichIndicator, render_error
from .logging_utils import configure_logging, debug_enabled, log_exception
from .presets import DEFAULT_PRESET, PRESETS, custom_prompt_set, get_preset
from .session import SessionManager
from .synth import FallbackSynthesizer

_LOGGER = logging.getLogger("promptdj.cli")
_CONSOLE = Console()


def _assistant(settings: EngineSettings) -> PromptAssistant:
    if not settings.has_credentials:
        return PromptAssistant()
    return PromptAssistant(LiteLLMCompleter(settings.text_model, api_key=settings.api_key))


async def _resolve_prompts(args: argparse.Namespace, settings: EngineSettings) -> PromptSet:
    if not args.prompt:
        return get_preset(args.preset).prompts
    text = " ".join(args.prompt)
    if args.enhance:
        text = await _assistant(settings).enhance_prompt(text)
        _CONSOLE.print(f"Prompt: [bold]{text}[/bold]")
    return custom_prompt_set(text)


async def _play(args: argparse.Namespace) -> int:
    overrides = {"api_key": None} if args.offline else {}
    settings = EngineSettings.from_env(**overrides)
    prompts = await _resolve_prompts(args, settings)
    session = SessionManager(settings)
    indicator = RichIndicator(session.events)
    drift: AutoDrift | None = None
    try:
        await session.init()
        await session.set_prompts(prompts)
        if args.tempo is not None:
            await session.set_parameters({"tempo": args.tempo})
        if args.drift:
            drift = AutoDrift(session)
            drift.start()
        await session.play()
        if args.duration is not None:
            await asyncio.sleep(args.duration)
        else:
            await asyncio.Event().wait()
    finally:
        if drift is not None:
            await drift.close()
        await session.destroy()
        indicator.close()
    return 0


def _demo(args: argparse.Namespace) -> int:
    prompts = custom_prompt_set(args.prompt) if args.prompt else get_preset(args.preset).prompts
    synth = FallbackSynthesizer(seed=args.seed)
    asyncio.run(synth.set_prompts(prompts.prompts))
    if args.tempo is not None:
        asyncio.run(synth.set_tempo(args.tempo))
    audio = synth.render(args.duration)
    path = write_wav(args.output, audio)
    _CONSOLE.print(
        f"Wrote {synth.progression} demo to {path} (sr={SAMPLE_RATE}, tempo={synth.tempo})"
    )
    return 0


def _presets() -> int:
    table = Table(title="Presets")
    table.add_column("id", no_wrap=True)
    table.add_column("name")
    table.add_column("prompts")
    for preset in PRESETS.values():
        prompts = ", ".join(f"{p.text} ({p.weight:g})" for p in preset.prompts.prompts)
        table.add_row(preset.id, preset.name, prompts)
    _CONSOLE.print(table)
    return 0


async def _enhance(args: argparse.Namespace) -> int:
    assistant = _assistant(EngineSettings.from_env())
    if args.creative:
        text = await assistant.generate_creative_prompt()
    else:
        text = await assistant.enhance_prompt(" ".join(args.prompt))
    _CONSOLE.print(text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="promptdj")
    sub = parser.add_subparsers(dest="command", required=True)

    play = sub.add_parser("play", help="Stream music for a preset or prompt.")
    play.add_argument("prompt", nargs="*", help="Custom prompt text (overrides --preset).")
    play.add_argument("--preset", choices=sorted(PRESETS), default=DEFAULT_PRESET)
    play.add_argument("--tempo", type=int, default=None)
    play.add_argument("--duration", type=float, default=None, help="Seconds to play.")
    play.add_argument("--offline", action="store_true", help="Use the local synthesizer only.")
    play.add_argument("--enhance", action="store_true", help="Rewrite the prompt first.")
    play.add_argument("--drift", action="store_true", help="Nudge parameters every 3 minutes.")

    demo = sub.add_parser("demo", help="Render a local synthesizer clip to a wav file.")
    demo.add_argument("--preset", choices=sorted(PRESETS), default=DEFAULT_PRESET)
    demo.add_argument("--prompt", type=str, default=None)
    demo.add_argument("--tempo", type=int, default=None)
    demo.add_argument("--duration", type=float, default=8.0)
    demo.add_argument("--seed", type=int, default=None)
    demo.add_argument("--output", type=str, default="demo.wav")

    sub.add_parser("presets", help="List the built-in presets.")

    enhance = sub.add_parser("enhance", help="Rewrite or invent a prompt with a text model.")
    enhance.add_argument("prompt", nargs="*")
    enhance.add_argument("--creative", action="store_true", help="Invent a new prompt.")
    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    try:
        parser = build_parser()
        args = parser.parse_args(argv)

        match args.command:
            case "play":
                return asyncio.run(_play(args))
            case "demo":
                return _demo(args)
            case "presets":
                return _presets()
            case "enhance":
                if not args.creative and not args.prompt:
                    parser.error("enhance needs a prompt or --creative")
                return asyncio.run(_enhance(args))

        parser.print_help()
        return 1
    except KeyboardInterrupt:
        return 130
    except Exception as exc:
        _LOGGER.warning("promptdj CLI failed: %s", exc, exc_info=debug_enabled())
        log_exception("promptdj CLI", exc)
        render_error("promptdj CLI", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
