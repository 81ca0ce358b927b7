#!/usr/bin/env python3
"""
Tests for the message log and the persisted conversation records.
"""

import logging
import sys

from pydantic import ValidationError

from localchat.conversation import ConversationStore
from localchat.models import Conversation, Message, system_message
from localchat.prompts import DEFAULT_TITLE, SYSTEM_PROMPT

# Setup logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def test_store_starts_with_system_message():
    """A fresh log holds exactly the system message."""
    store = ConversationStore()

    assert len(store) == 1
    assert store.messages[0].role == "system"
    assert store.messages[0].content == SYSTEM_PROMPT

    logger.info("✓ Fresh log tests passed")


def test_system_message_only_first():
    """System messages cannot be appended; the first one is never lost."""
    store = ConversationStore()
    store.append(Message(role="user", content="Hi"))
    store.append(Message(role="assistant", content="Hello!"))

    try:
        store.append(Message(role="system", content="new rules"))
        assert False, "Appending a system message should fail"
    except ValueError:
        pass

    roles = [m.role for m in store]
    assert roles == ["system", "user", "assistant"], f"Unexpected roles: {roles}"

    store.reset()
    assert [m.role for m in store] == ["system"]

    logger.info("✓ System-first tests passed")


def test_replace_all():
    store = ConversationStore()

    store.replace_all([])
    assert [m.role for m in store] == ["system"], "Empty replacement reseeds the log"

    stored = [system_message(), Message(role="user", content="a"), Message(role="assistant", content="b")]
    store.replace_all(stored)
    assert store.snapshot() == stored

    try:
        store.replace_all([Message(role="user", content="orphan")])
        assert False, "A log without a system message should be rejected"
    except ValueError:
        pass
    assert store.snapshot() == stored, "Rejected replacement must not change the log"

    logger.info("✓ Replace tests passed")


def test_subscribers_and_copies():
    store = ConversationStore()
    calls = []
    store.subscribe(lambda: calls.append(len(store)))

    store.append(Message(role="user", content="one"))
    store.replace_all(None)
    assert calls == [2, 1], f"Expected a notification per mutation, got {calls}"

    snapshot = store.snapshot()
    snapshot.append(Message(role="user", content="not in the log"))
    assert len(store) == 1, "Snapshot must be a copy"

    assert store.as_dicts() == [{"role": "system", "content": SYSTEM_PROMPT}]

    logger.info("✓ Subscriber tests passed")


def test_conversation_record():
    conversation = Conversation()

    assert conversation.title == DEFAULT_TITLE
    assert len(conversation.messages) == 1
    assert conversation.messages[0].role == "system"
    assert len(conversation.id) == 32
    assert conversation.last_modified > 0

    try:
        Conversation(messages=[Message(role="user", content="hi")])
        assert False, "Conversation must start with a system message"
    except ValidationError:
        pass

    try:
        Conversation(messages=[])
        assert False, "Conversation must not be empty"
    except ValidationError:
        pass

    message = Message(role="user", content="hi")
    try:
        message.content = "changed"
        assert False, "Messages are immutable"
    except ValidationError:
        pass

    try:
        Message(role="tool", content="x")
        assert False, "Unknown role should be rejected"
    except ValidationError:
        pass

    logger.info("✓ Conversation record tests passed")


def run_all_tests():
    """Run all conversation tests."""
    logger.info("=" * 60)
    logger.info("Conversation Tests")
    logger.info("=" * 60)

    tests = [
        ("Fresh log", test_store_starts_with_system_message),
        ("System message first", test_system_message_only_first),
        ("Replace all", test_replace_all),
        ("Subscribers", test_subscribers_and_copies),
        ("Conversation record", test_conversation_record),
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
