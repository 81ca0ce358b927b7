#!/usr/bin/env python3
"""
One-off chat completion script.

Usage:
    python scripts/run_once.py --prompt "Your question here"
    python scripts/run_once.py --prompt "Summarize this" --attach notes.txt
    echo "What is Python?" | python scripts/run_once.py
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add the project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from localchat.accelerated import AcceleratedBackend
from localchat.config import config
from localchat.errors import EngineConstructionFailed
from localchat.events import SessionListener
from localchat.session import GenerationSettings, build_controller
from localchat.storage import MemoryKeyValueStore, SQLiteKeyValueStore

logger = logging.getLogger(__name__)


class StderrProgress(SessionListener):
    """Reports engine loading on stderr and streams the reply to stdout."""

    def __init__(self):
        self.streamed = ""

    def on_progress(self, phase, percent=None):
        suffix = "" if percent is None else f" ({percent:.0f}%)"
        print(f"{phase}{suffix}", file=sys.stderr)

    def on_stream_delta(self, partial_text):
        sys.stdout.write(partial_text[len(self.streamed) :])
        sys.stdout.flush()
        self.streamed = partial_text

    def on_error(self, message):
        print(f"Error: {message}", file=sys.stderr)

    def finish(self, reply):
        """Print whatever part of the final reply is not on stdout yet."""
        if reply is None:
            if self.streamed:
                print()
            return
        if reply.startswith(self.streamed):
            print(reply[len(self.streamed) :])
        else:
            # The stream failed part way and was replaced by a canned reply
            print()
            print(reply)


async def run(args, prompt: str) -> str:
    store = SQLiteKeyValueStore(args.store) if args.store else MemoryKeyValueStore()
    listener = StderrProgress()

    settings = GenerationSettings()
    if args.temperature is not None:
        settings.temperature = args.temperature
    if args.seed is not None:
        settings.seed = args.seed

    preferred = [args.model] if args.model else None
    primary = AcceleratedBackend(use_gpu=False if args.cpu else None)
    controller = build_controller(store, listeners=[listener], primary=primary, settings=settings)
    if preferred:
        controller.context.selector.preferred_models = preferred + list(config.PREFERRED_MODELS)

    try:
        try:
            await controller.context.selector.detect_and_initialize()
        except EngineConstructionFailed as e:
            logger.warning(f"Answering in demo mode: {e}")

        for path in args.attach or []:
            controller.context.attachments.add_file(path)

        print("-" * 60, file=sys.stderr)
        reply = await controller.send(prompt)

        listener.finish(reply)
        return reply or ""
    finally:
        controller.context.history.flush()
        if isinstance(store, SQLiteKeyValueStore):
            store.close()


def main():
    """Main entry point for one-off completion."""
    parser = argparse.ArgumentParser(
        description="Answer a single prompt with the local chat runtime",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_once.py --prompt "What is the meaning of life?"
  python scripts/run_once.py --prompt "Explain AI" --cpu
  python scripts/run_once.py --prompt "Review this" --attach main.py
  echo "What is Python?" | python scripts/run_once.py
        """,
    )

    parser.add_argument(
        "--prompt",
        type=str,
        default=None,
        help="The prompt to answer (if not provided, reads from stdin)",
    )
    parser.add_argument(
        "--attach", action="append", help="File to attach to the prompt (repeatable)"
    )
    parser.add_argument(
        "--model", type=str, default=None, help="Preferred model ID for the GPU backend"
    )
    parser.add_argument("--cpu", action="store_true", help="Use the CPU fallback only")
    parser.add_argument(
        "--temperature",
        type=float,
        default=None,
        help=f"Sampling temperature (default: {config.TEMPERATURE})",
    )
    parser.add_argument("--seed", type=int, default=None, help=f"Seed (default: {config.SEED})")
    parser.add_argument(
        "--store",
        type=str,
        default=None,
        help="Save the exchange to this history database (default: not saved)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()

    # Configure logging
    log_level = logging.DEBUG if args.verbose else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    # Get prompt from args or stdin
    if args.prompt:
        prompt = args.prompt
    else:
        if sys.stdin.isatty():
            parser.error("No prompt provided. Use --prompt or pipe input via stdin")
        prompt = sys.stdin.read().strip()
        if not prompt:
            parser.error("Empty prompt provided")

    logger.info(f"Prompt: {prompt[:100]}{'...' if len(prompt) > 100 else ''}")

    try:
        asyncio.run(run(args, prompt))
        logger.info("Generation completed successfully")

    except KeyboardInterrupt:
        print("\n\nInterrupted by user", file=sys.stderr)
        sys.exit(130)

    except Exception as e:
        logger.error(f"Error: {e}", exc_info=args.verbose)
        print(f"\nError: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
