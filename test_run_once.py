#!/usr/bin/env python3
"""
Tests for the one-off completion script's stdout handling.
"""

import contextlib
import importlib.util
import io
import logging
import sys
from pathlib import Path

from localchat.prompts import create_fallback_reply

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

SCRIPT = Path(__file__).parent / "scripts" / "run_once.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("run_once", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _printed(deltas, reply):
    listener = _load_script().StderrProgress()
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        for partial in deltas:
            listener.on_stream_delta(partial)
        listener.finish(reply)
    return out.getvalue()


def test_streamed_reply_printed_once():
    assert _printed(["Hi", "Hi there"], "Hi there!") == "Hi there!\n"
    assert _printed(["Hi", "Hi there"], "Hi there") == "Hi there\n"

    logger.info("✓ Streamed output tests passed")


def test_failed_stream_prints_templated_reply():
    """A stream cut short still ends with the reply that was stored."""
    reply = create_fallback_reply("Hello")
    output = _printed(["partial"], reply)

    assert output == f"partial\n{reply}\n", f"Unexpected output: {output!r}"

    logger.info("✓ Failed stream output tests passed")


def test_single_shot_and_cancelled_output():
    assert _printed([], "CPU answer") == "CPU answer\n"
    assert _printed(["Hi"], None) == "Hi\n", "Cancelled stream ends its line"
    assert _printed([], None) == ""

    logger.info("✓ Single-shot output tests passed")


def run_all_tests():
    """Run all run_once tests."""
    logger.info("=" * 60)
    logger.info("Run Once Tests")
    logger.info("=" * 60)

    tests = [
        ("Streamed reply", test_streamed_reply_printed_once),
        ("Failed stream", test_failed_stream_prints_templated_reply),
        ("Single-shot and cancelled", test_single_shot_and_cancelled_output),
    ]

    passed = 0
    failed = 0

    for test_name, test_func in tests:
        try:
            logger.info(f"\n{test_name}...")
            test_func()
            passed += 1
        except Exception as e:
            logger.error(f"✗ {test_name} failed: {e}", exc_info=True)
            failed += 1

    logger.info("\n" + "=" * 60)
    logger.info(f"Test Results: {passed} passed, {failed} failed")
    logger.info("=" * 60)

    return failed == 0


if __name__ == "__main__":
    success = run_all_tests()
    sys.exit(0 if success else 1)
