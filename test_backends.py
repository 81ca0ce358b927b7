#!/usr/bin/env python3
"""
Tests for backend helpers and configuration parsing that need no model.
"""

import asyncio
import logging
import sys
from types import SimpleNamespace

from localchat.accelerated import AcceleratedBackend, get_torch_dtype
from localchat.cancellation import CancellationToken
from localchat.config import _parse_catalog, _split_list
from localchat.engine import UNAVAILABLE_HANDLE, UNDETERMINED_HANDLE, EngineHandle, EngineKind
from localchat.errors import BackendUnavailable, StreamCancelled
from localchat.events import EventBus, SessionListener
from localchat.fallback import CpuFallbackBackend

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def test_config_parsing():
    assert _split_list(" a, b,,c ") == ["a", "b", "c"]
    assert _parse_catalog("org/a:small, org/b:large, org/c") == [
        ("org/a", "small"),
        ("org/b", "large"),
        ("org/c", "large"),
    ]

    logger.info("✓ Config parsing tests passed")


def test_torch_dtype():
    torch = SimpleNamespace(float16="f16", bfloat16="bf16", float32="f32")

    assert get_torch_dtype(torch, "auto") == "auto"
    assert get_torch_dtype(torch, "bf16") == "bf16"
    assert get_torch_dtype(torch, "Float32") == "f32"
    assert get_torch_dtype(torch, "unknown") == "f16"

    logger.info("✓ Dtype tests passed")


def test_accelerated_backend_guards():
    backend = AcceleratedBackend(catalog=[("org/tiny", "small")], use_gpu=False)

    assert backend.probe_capability() is False, "Disabled GPU is not probed"
    assert [m.model_id for m in backend.list_models()] == ["org/tiny"]

    async def scenario():
        try:
            await backend.request_adapter()
            assert False, "Adapter request needs the library loaded"
        except BackendUnavailable:
            pass
        try:
            await backend.construct("org/tiny", lambda phase, fraction: None)
            assert False, "Construct needs the library loaded"
        except BackendUnavailable:
            pass

    asyncio.run(scenario())

    fallback = CpuFallbackBackend(model_id="org/cpu-model")
    assert fallback.model_id == "org/cpu-model"

    logger.info("✓ Backend guard tests passed")


def test_engine_handles():
    assert not UNDETERMINED_HANDLE.ready
    assert not UNAVAILABLE_HANDLE.ready
    assert not EngineHandle(EngineKind.HARDWARE).ready, "A handle needs an engine"
    assert EngineHandle(EngineKind.SOFTWARE, engine=object()).ready

    logger.info("✓ Engine handle tests passed")


def test_cancellation_token():
    token = CancellationToken()
    assert not token.cancelled
    token.raise_if_cancelled()

    token.cancel()
    token.cancel()
    assert token.cancelled
    try:
        token.raise_if_cancelled()
        assert False, "Cancelled token should raise"
    except StreamCancelled:
        pass

    logger.info("✓ Cancellation token tests passed")


def test_event_bus_isolates_listeners():
    """One broken listener does not stop the others."""

    class Broken(SessionListener):
        def on_error(self, message):
            raise RuntimeError("render failed")

    class Collect(SessionListener):
        def __init__(self):
            self.messages = []

        def on_error(self, message):
            self.messages.append(message)

    collect = Collect()
    bus = EventBus([Broken(), collect])
    bus.subscribe(collect)
    bus.on_error("boom")
    assert collect.messages == ["boom"], "Listeners are notified once each"

    bus.unsubscribe(collect)
    bus.on_error("again")
    assert collect.messages == ["boom"]

    logger.info("✓ Event bus tests passed")


def run_all_tests():
    """Run all backend tests."""
    logger.info("=" * 60)
    logger.info("Backend Tests")
    logger.info("=" * 60)

    tests = [
        ("Config parsing", test_config_parsing),
        ("Torch dtype", test_torch_dtype),
        ("Accelerated backend guards", test_accelerated_backend_guards),
        ("Engine handles", test_engine_handles),
        ("Cancellation token", test_cancellation_token),
        ("Event bus", test_event_bus_isolates_listeners),
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
