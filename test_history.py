#!/usr/bin/env python3
"""
Tests for multi-conversation history and its persistence.

The history manager is exercised against in-memory stores; the debounce
tests run inside an event loop so saves are deferred.
"""

import asyncio
import json
import logging
import sys

from fakes import CountingStore, FailingStore, RecordingListener
from localchat.conversation import ConversationStore
from localchat.errors import MalformedHistory
from localchat.history import (
    ACTIVE_KEY,
    HISTORY_KEY,
    SessionHistoryManager,
    derive_title,
    dump_history,
    load_history,
)
from localchat.models import Message
from localchat.prompts import DEFAULT_TITLE
from localchat.storage import MemoryKeyValueStore

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def _manager(store=None, **kwargs):
    history = SessionHistoryManager(store if store is not None else MemoryKeyValueStore(), **kwargs)
    history.initialize()
    return history


def _stored(store):
    return json.loads(store.data[HISTORY_KEY])


def test_create_conversation():
    """New conversations get unique ids and hold only the system message."""
    history = _manager()

    ids = {history.active_id}
    for _ in range(5):
        conversation = history.create_conversation()
        assert conversation.id not in ids, "Duplicate conversation id"
        ids.add(conversation.id)
        assert len(conversation.messages) == 1
        assert conversation.messages[0].role == "system"
        assert conversation.title == DEFAULT_TITLE
        assert history.active_id == conversation.id
        assert history.conversations[0].id == conversation.id, "Newest first"

    assert len(history.conversation) == 1

    log = ConversationStore()
    assert SessionHistoryManager(MemoryKeyValueStore(), conversation=log).conversation is log

    logger.info("✓ Create tests passed")


def test_capacity_eviction():
    """The oldest conversation is dropped when the 21st is created."""
    store = MemoryKeyValueStore()
    history = _manager(store)
    assert history.capacity == 20

    created = [history.active_id]
    for _ in range(20):
        created.append(history.create_conversation().id)

    retained = [c.id for c in history.conversations]
    assert len(retained) == 20, f"Expected 20 conversations, got {len(retained)}"
    assert created[0] not in retained, "Oldest conversation should be evicted"
    assert retained == list(reversed(created[1:]))
    assert len(_stored(store)) == 20

    logger.info("✓ Capacity tests passed")


def test_minimum_capacity():
    """A zero or negative capacity still keeps the active conversation."""
    for capacity in (0, -3):
        history = _manager(capacity=capacity)
        assert history.capacity == 1
        assert history.active is not None, f"Active conversation lost with capacity {capacity}"

        created = history.create_conversation()
        assert [c.id for c in history.conversations] == [created.id]
        assert history.active_id == created.id

    logger.info("✓ Minimum capacity tests passed")


def test_delete_conversation():
    store = MemoryKeyValueStore()
    history = _manager(store)
    first = history.active_id
    second = history.create_conversation().id
    history.record(Message(role="user", content="keep me around"))

    # Deleting an inactive conversation leaves the active one alone
    assert history.delete_conversation(first)
    assert history.active_id == second
    assert history.get(first) is None

    assert not history.delete_conversation("no-such-id")

    # Deleting the active one always leaves some conversation active
    assert history.delete_conversation(second)
    assert history.active_id is not None
    assert history.active_id != second
    assert len(history.active.messages) == 1
    assert len(history.conversation) == 1
    assert store.data[ACTIVE_KEY] == history.active_id

    logger.info("✓ Delete tests passed")


def test_round_trip():
    """A saved history reads back as the same conversations."""
    store = MemoryKeyValueStore()
    history = _manager(store)
    history.record(Message(role="user", content="What is Python?"))
    history.record(Message(role="assistant", content="A programming language."))
    other = history.create_conversation()
    history.load_conversation(history.conversations[1].id)

    blob = dump_history(history.conversations)
    assert load_history(blob) == list(history.conversations)

    restored = _manager(store)
    assert [c.id for c in restored.conversations] == [c.id for c in history.conversations]
    assert restored.active_id == history.active_id != other.id
    assert [m.content for m in restored.conversation] == [m.content for m in history.conversation]
    assert restored.active.title == "What is Python?"

    logger.info("✓ Round trip tests passed")


def test_corrupt_history():
    """Unreadable stored data is treated as an empty history."""
    for blob in ["not json{", '{"id": 1}', '[{"id": "x", "messages": []}]']:
        store = MemoryKeyValueStore({HISTORY_KEY: blob, ACTIVE_KEY: "x"})
        history = _manager(store)
        assert len(history.conversations) == 1, f"Expected a fresh history for {blob!r}"
        assert history.active_id != "x"
        assert len(history.active.messages) == 1

    try:
        load_history('[{"id": "x", "messages": [{"role": "user", "content": "hi"}]}]')
        assert False, "History without a system message should be rejected"
    except MalformedHistory:
        pass

    # Stale active pointer starts a new conversation
    good = MemoryKeyValueStore()
    _manager(good)
    good.data[ACTIVE_KEY] = "gone"
    history = _manager(good)
    assert len(history.conversations) == 2

    logger.info("✓ Corrupt history tests passed")


def test_titles():
    history = _manager()

    history.record(Message(role="user", content="x" * 80))
    title = history.active.title
    assert title == "x" * 50 + "...", f"Unexpected title: {title!r}"
    assert len(title) == 53

    history.record(Message(role="assistant", content="ok"))
    history.record(Message(role="user", content="A second question"))
    assert history.active.title == title, "Only the first user message sets the title"

    assert derive_title("  Short question  ") == "Short question"
    assert derive_title("Hello\n\n--- ATTACHED FILES ---\n\nFile: a.txt\n") == "Hello"
    assert derive_title("a" * 50) == "a" * 50

    history.rename_conversation(history.active_id, "Renamed")
    assert history.active.title == "Renamed"

    logger.info("✓ Title tests passed")


def test_most_recent_first():
    history = _manager()
    older = history.active_id
    newer = history.create_conversation().id

    history.load_conversation(older)
    assert history.conversations[0].id == newer, "Loading does not reorder"

    history.record(Message(role="user", content="bump"))
    assert history.conversations[0].id == older, "A touched conversation moves to the front"

    logger.info("✓ Ordering tests passed")


def test_debounced_save():
    """A burst of appends results in a single history write."""
    store = CountingStore()
    history = _manager(store, save_delay=0.05)
    writes_before = store.writes[HISTORY_KEY]

    async def burst():
        history.record(Message(role="user", content="one"))
        history.record(Message(role="assistant", content="two"))
        history.record(Message(role="user", content="three"))
        assert history.save_pending
        assert store.writes[HISTORY_KEY] == writes_before, "Writes should be deferred"
        await asyncio.sleep(0.2)

    asyncio.run(burst())

    assert not history.save_pending
    assert store.writes[HISTORY_KEY] == writes_before + 1
    assert len(_stored(store)[0]["messages"]) == 4

    logger.info("✓ Debounce tests passed")


def test_flush_writes_pending_save():
    store = CountingStore()
    history = _manager(store, save_delay=60)

    async def append():
        history.record(Message(role="user", content="pending"))
        assert history.save_pending
        history.flush()
        assert not history.save_pending

    asyncio.run(append())
    assert _stored(store)[0]["messages"][-1]["content"] == "pending"

    logger.info("✓ Flush tests passed")


def test_replay_does_not_save():
    """Loading a conversation replays messages without scheduling saves."""
    store = CountingStore()
    listener = RecordingListener()
    history = _manager(store, events=listener, save_delay=0.05)
    first = history.active
    history.record(Message(role="user", content="question"))
    history.record(Message(role="assistant", content="answer"))
    stamp = first.last_modified
    history.create_conversation()
    listener.appended.clear()

    async def switch():
        history.load_conversation(first.id)
        assert not history.save_pending, "Replay must not schedule a save"

    asyncio.run(switch())

    assert listener.appended == [("user", "question"), ("assistant", "answer")]
    assert first.last_modified == stamp
    assert history.conversations[0].id != first.id

    logger.info("✓ Replay guard tests passed")


def test_clear_all():
    store = MemoryKeyValueStore()
    history = _manager(store)
    for _ in range(3):
        history.create_conversation()
    history.record(Message(role="user", content="secret"))

    fresh = history.clear_all()

    assert [c.id for c in history.conversations] == [fresh.id]
    assert len(fresh.messages) == 1
    assert len(_stored(store)) == 1
    assert store.data[ACTIVE_KEY] == fresh.id

    logger.info("✓ Clear all tests passed")


def test_store_failures():
    """Storage errors are logged and never stop the chat."""
    store = FailingStore()
    history = _manager(store)
    history.record(Message(role="user", content="still works"))
    assert history.active.title == "still works"
    assert history.save() is False
    assert store.write_attempts > 0
    history.clear_all()
    assert len(history.conversations) == 1

    unreadable = FailingStore(fail_reads=True)
    history = _manager(unreadable)
    assert len(history.conversations) == 1

    logger.info("✓ Store failure tests passed")


def run_all_tests():
    """Run all history tests."""
    logger.info("=" * 60)
    logger.info("History Tests")
    logger.info("=" * 60)

    tests = [
        ("Create conversation", test_create_conversation),
        ("Capacity eviction", test_capacity_eviction),
        ("Minimum capacity", test_minimum_capacity),
        ("Delete conversation", test_delete_conversation),
        ("Round trip", test_round_trip),
        ("Corrupt history", test_corrupt_history),
        ("Titles", test_titles),
        ("Most recent first", test_most_recent_first),
        ("Debounced save", test_debounced_save),
        ("Flush", test_flush_writes_pending_save),
        ("Replay guard", test_replay_does_not_save),
        ("Clear all", test_clear_all),
        ("Store failures", test_store_failures),
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
