"""
Session history management.

Keeps a bounded, most-recently-touched-first list of conversations, tracks
which one is active, and persists both to a durable key/value store:

- ``localchat-chat-history``: JSON array of every retained conversation
- ``localchat-current-chat``: id of the active conversation

Message appends are saved through a debounced writer so a burst of
mutations results in a single write.
"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Callable, List, Optional, Sequence

from pydantic import ValidationError

from .config import config
from .conversation import ConversationStore
from .errors import MalformedHistory, PersistenceFailed
from .events import SessionListener
from .models import Conversation, HistoryAdapter, Message, new_conversation_id, system_message
from .prompts import DEFAULT_TITLE, strip_attachment_section
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "localchat-chat-history"
ACTIVE_KEY = "localchat-current-chat"


def dump_history(conversations: Sequence[Conversation]) -> str:
    """Serialize conversations into the stored JSON blob."""
    return HistoryAdapter.dump_json(list(conversations)).decode("utf-8")


def load_history(blob: str) -> List[Conversation]:
    """
    Parse a stored JSON blob back into conversations.

    Raises:
        MalformedHistory: If the blob is not a valid conversation list
    """
    try:
        return HistoryAdapter.validate_json(blob)
    except ValidationError as e:
        raise MalformedHistory(f"Stored chat history is corrupt: {e.error_count()} error(s)") from e


def derive_title(content: str, max_chars: Optional[int] = None) -> str:
    """
    Build a conversation title from the first user message.

    Attachments are ignored. Text longer than the limit is cut and ends
    with "...".

    Args:
        content: Content of the user message
        max_chars: Maximum title length (default: config.TITLE_MAX_CHARS)

    Returns:
        The title, or an empty string if the message has no text of its own
    """
    max_chars = max_chars or config.TITLE_MAX_CHARS
    text = strip_attachment_section(content).strip()
    title = text[:max_chars].strip()
    if len(text) > max_chars:
        title += "..."
    return title


class DebouncedSaver:
    """
    Coalesces save requests into one write after a quiet period.

    A single timer is used; each schedule() call restarts it. Without a
    running event loop the save happens immediately.
    """

    def __init__(self, save: Callable[[], object], delay: float):
        self._save = save
        self.delay = delay
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def schedule(self) -> None:
        self.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._save()
            return
        self._handle = loop.call_later(self.delay, self._fire)

    def _fire(self) -> None:
        self._handle = None
        self._save()

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def flush(self) -> None:
        """Run a pending save right away."""
        if self._handle is not None:
            self.cancel()
            self._save()


class SessionHistoryManager:
    """Multiple named conversations persisted across restarts."""

    def __init__(
        self,
        store: KeyValueStore,
        conversation: Optional[ConversationStore] = None,
        events: Optional[SessionListener] = None,
        capacity: Optional[int] = None,
        save_delay: Optional[float] = None,
    ):
        """
        Initialize the history manager.

        Args:
            store: Durable key/value store
            conversation: Message log of the active conversation
            events: Listener notified of replayed and appended messages
            capacity: Maximum retained conversations (default: config.HISTORY_CAPACITY)
            save_delay: Debounce delay in seconds (default: config.SAVE_DEBOUNCE_SECONDS)
        """
        self.store = store
        self.conversation = conversation if conversation is not None else ConversationStore()
        self.events = events or SessionListener()
        capacity = capacity if capacity is not None else config.HISTORY_CAPACITY
        # The active conversation must always be retained
        self.capacity = max(1, capacity)
        if save_delay is None:
            save_delay = config.SAVE_DEBOUNCE_SECONDS

        self._conversations: List[Conversation] = []
        self._active_id: Optional[str] = None
        self._replaying = False
        self._saver = DebouncedSaver(self.save, save_delay)

        self.conversation.subscribe(self._on_conversation_changed)

    # -- state ---------------------------------------------------------------

    @property
    def conversations(self) -> Sequence[Conversation]:
        return tuple(self._conversations)

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active(self) -> Optional[Conversation]:
        return self.get(self._active_id) if self._active_id else None

    @property
    def save_pending(self) -> bool:
        return self._saver.pending

    def get(self, conversation_id: str) -> Optional[Conversation]:
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    # -- lifecycle -----------------------------------------------------------

    def initialize(self) -> Conversation:
        """
        Load stored history and pick the active conversation.

        Missing or corrupt data is treated as an empty history. The stored
        active conversation is restored when it is still retained; otherwise
        a fresh conversation is created.

        Returns:
            The active conversation
        """
        logger.info("Loading chat history...")
        self._conversations = self._read_history()[: self.capacity]
        logger.info(f"Loaded {len(self._conversations)} previous chats")

        active_id = self._read_value(ACTIVE_KEY)
        if active_id and self.get(active_id) is not None:
            return self.load_conversation(active_id)
        return self.create_conversation()

    def create_conversation(self) -> Conversation:
        """
        Start a new conversation and make it active.

        Returns:
            The new conversation, holding only the system message
        """
        conversation = Conversation(messages=[system_message(self.conversation.system_prompt)])
        while self.get(conversation.id) is not None:
            conversation.id = new_conversation_id()

        self._conversations.insert(0, conversation)
        self._evict()
        self._activate(conversation)
        self.save()
        logger.info(f"Created chat {conversation.id}")
        return conversation

    def load_conversation(self, conversation_id: str) -> Conversation:
        """
        Make a stored conversation active and replay its messages.

        Raises:
            KeyError: If no retained conversation has this id
        """
        conversation = self.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)

        self._activate(conversation)
        self.save()
        logger.info(f"Loaded chat {conversation_id} ({len(conversation.messages)} messages)")
        return conversation

    def delete_conversation(self, conversation_id: str) -> bool:
        """
        Remove a conversation. Deleting the active one creates a replacement.

        Returns:
            False if the id was not found
        """
        remaining = [c for c in self._conversations if c.id != conversation_id]
        if len(remaining) == len(self._conversations):
            return False

        self._conversations = remaining
        if conversation_id == self._active_id:
            self._active_id = None
            self.create_conversation()
        else:
            self.save()
        logger.info(f"Chat deleted: {conversation_id}")
        return True

    def clear_all(self) -> Conversation:
        """Drop every conversation, stored data included, and start fresh."""
        self._saver.cancel()
        self._conversations = []
        self._active_id = None
        try:
            self.store.remove(HISTORY_KEY)
            self.store.remove(ACTIVE_KEY)
        except Exception as e:
            logger.warning(f"Could not clear stored chat history: {e}")
        logger.info("All chats cleared")
        return self.create_conversation()

    def rename_conversation(self, conversation_id: str, title: str) -> None:
        conversation = self.get(conversation_id)
        if conversation is None:
            raise KeyError(conversation_id)
        conversation.title = title.strip() or DEFAULT_TITLE
        self.save()

    def record(self, message: Message) -> Message:
        """Append a message to the active conversation and announce it."""
        self.conversation.append(message)
        self.events.on_message_appended(message.role, message.content)
        return message

    # -- persistence ---------------------------------------------------------

    def save(self) -> bool:
        """
        Write the history and active pointer now.

        Returns:
            True if the write succeeded
        """
        self._saver.cancel()
        try:
            self._write()
        except PersistenceFailed as e:
            logger.warning(f"Could not save chat history: {e}")
            return False
        return True

    def flush(self) -> None:
        """Write any pending debounced save (call before shutdown)."""
        self._saver.flush()

    def _write(self) -> None:
        try:
            self.store.set(HISTORY_KEY, dump_history(self._conversations))
            if self._active_id:
                self.store.set(ACTIVE_KEY, self._active_id)
        except Exception as e:
            raise PersistenceFailed(str(e)) from e

    def _read_value(self, key: str) -> Optional[str]:
        try:
            return self.store.get(key)
        except Exception as e:
            logger.warning(f"Could not read {key}: {e}")
            return None

    def _read_history(self) -> List[Conversation]:
        blob = self._read_value(HISTORY_KEY)
        if not blob:
            return []
        try:
            return load_history(blob)
        except MalformedHistory as e:
            logger.warning(f"{e}; starting with empty history")
            return []

    # -- internals -----------------------------------------------------------

    @contextmanager
    def _replaying_messages(self):
        """Suppress debounced saves while stored messages are replayed."""
        self._replaying = True
        try:
            yield
        finally:
            self._replaying = False

    def _activate(self, conversation: Conversation) -> None:
        self._active_id = conversation.id
        with self._replaying_messages():
            self.conversation.replace_all(list(conversation.messages))
            for message in conversation.messages:
                if message.role != "system":
                    self.events.on_message_appended(message.role, message.content)

    def _evict(self) -> None:
        if len(self._conversations) > self.capacity:
            evicted = self._conversations[self.capacity :]
            self._conversations = self._conversations[: self.capacity]
            logger.debug(f"Evicted {len(evicted)} oldest chat(s)")

    def _on_conversation_changed(self) -> None:
        if self._replaying:
            return
        active = self.active
        if active is None:
            return

        active.messages = self.conversation.snapshot()
        active.touch()
        self._autotitle(active)

        # Most recently touched first
        self._conversations.remove(active)
        self._conversations.insert(0, active)

        self._saver.schedule()

    def _autotitle(self, conversation: Conversation) -> None:
        if conversation.title != DEFAULT_TITLE:
            return
        first_user = next((m for m in conversation.messages if m.role == "user"), None)
        if first_user is None:
            return
        title = derive_title(first_user.content)
        if title:
            conversation.title = title
            logger.debug(f"Chat {conversation.id} titled {title!r}")
