"""
Command-line front-end for script generation.

Drives a GenerationOrchestrator against a running API server using the shared
CLI key, streaming the script to stdout and any reasoning to stderr.

Run:
  python -m src.scriptgen.cli "List files in a folder"
  python -m src.scriptgen.cli --provider openrouter --reasoning --save "Resize images"
"""
from __future__ import annotations

import argparse
import asyncio
import sys
import time
from typing import List, Optional

from .config import Settings
from .core.state_machine import EventType, GenerationState, Transition
from .services.interaction_log import InteractionLogListener
from .services.orchestrator import GenerationOrchestrator
from .services.persistence import HttpScriptPersistence
from .services.providers import build_engine


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    settings = Settings.from_env()
    parser = argparse.ArgumentParser(description="Generate a script from a prompt")
    parser.add_argument("prompt", help="What the script should do")
    parser.add_argument("--provider", default=settings.draft_provider, choices=["default", "openrouter", "ai-gateway"])
    parser.add_argument("--base-url", default=settings.base_url)
    parser.add_argument("--api-key", default=settings.cli_api_key, help="CLI API key (defaults to CLI_API_KEY)")
    parser.add_argument("--reasoning", action="store_true", default=settings.extract_reasoning, help="Request tagged reasoning")
    parser.add_argument("--reasoning-tag", default=settings.reasoning_tag, help="XML tag wrapping the reasoning block")
    parser.add_argument("--save", action="store_true", help="Save the script when generation completes")
    parser.add_argument("--install", action="store_true", help="Save and install the script")
    return parser.parse_args(argv)


def _printer(transition: Transition) -> None:
    ev = transition.event
    if ev.type == EventType.UPDATE_EDITABLE_SCRIPT and ev.get("delta"):
        sys.stdout.write(ev.get("delta"))
        sys.stdout.flush()
    elif ev.type == EventType.APPEND_REASONING:
        print(f"[reasoning] {ev.get('text')}", file=sys.stderr)
    elif ev.type == EventType.SET_ERROR:
        print(f"\n[error] {ev.get('notice') or ev.get('error')}", file=sys.stderr)


async def run(args: argparse.Namespace) -> int:
    engine = build_engine(
        args.provider,
        base_url=args.base_url,
        cli_api_key=args.api_key,
        extract_reasoning=args.reasoning or None,
        tag_name=args.reasoning_tag,
    )
    persistence = HttpScriptPersistence(args.base_url, cli_api_key=args.api_key)
    async with GenerationOrchestrator(engine, persistence=persistence, listeners=[InteractionLogListener(), _printer]) as orchestrator:
        try:
            session = await orchestrator.generate(args.prompt, timestamp=str(int(time.time() * 1000)))
        except asyncio.CancelledError:
            orchestrator.cancel()
            return 130
        sys.stdout.write("\n")
        if orchestrator.state != GenerationState.COMPLETE:
            if session.needs_sign_in:
                print("Authentication failed; check CLI_API_KEY.", file=sys.stderr)
            return 1
        if args.install:
            ok = await orchestrator.save_and_install()
        elif args.save:
            ok = await orchestrator.save()
        else:
            ok = True
        if not ok:
            print(f"[error] {orchestrator.session.notice or orchestrator.session.error}", file=sys.stderr)
            return 1
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
