"""
In-memory message log of the active conversation.
"""

import logging
from typing import Callable, Iterator, List, Optional, Sequence

from .models import Message, system_message
from .prompts import SYSTEM_PROMPT

logger = logging.getLogger(__name__)


class ConversationStore:
    """
    Ordered log of role-tagged messages for the active session.

    The first message is always the fixed system message. Subscribers are
    notified after every mutation.
    """

    def __init__(self, system_prompt: str = SYSTEM_PROMPT):
        self.system_prompt = system_prompt
        self._messages: List[Message] = [system_message(system_prompt)]
        self._subscribers: List[Callable[[], None]] = []

    @property
    def messages(self) -> Sequence[Message]:
        return tuple(self._messages)

    def subscribe(self, callback: Callable[[], None]) -> None:
        """Register a callback run after each mutation."""
        self._subscribers.append(callback)

    def _notify(self) -> None:
        for callback in list(self._subscribers):
            callback()

    def append(self, message: Message) -> None:
        """
        Append a user or assistant message.

        Raises:
            ValueError: If the message is a system message
        """
        if message.role == "system":
            raise ValueError("Only the first message of a conversation may be a system message")
        self._messages.append(message)
        self._notify()

    def replace_all(self, messages: Optional[Sequence[Message]]) -> None:
        """
        Replace the log with a stored conversation's messages.

        An empty sequence reseeds the log with the system message.

        Raises:
            ValueError: If the sequence does not start with a system message
        """
        messages = list(messages or [])
        if not messages:
            messages = [system_message(self.system_prompt)]
        elif messages[0].role != "system":
            raise ValueError("Conversation must start with a system message")
        self._messages = messages
        self._notify()

    def reset(self) -> None:
        self.replace_all(None)

    def snapshot(self) -> List[Message]:
        """Copy of the log, safe to persist or hand to an engine."""
        return list(self._messages)

    def as_dicts(self) -> List[dict]:
        """Messages in the {"role", "content"} form chat templates expect."""
        return [m.model_dump() for m in self._messages]

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._messages))
