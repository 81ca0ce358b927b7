"""
Data records for chat messages and conversations.

Both records are pydantic models so the persisted history blob is validated
when it is read back from the durable store.
"""

import time
import uuid
from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .prompts import DEFAULT_TITLE, SYSTEM_PROMPT


class Message(BaseModel):
    """Single message in a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"] = Field(
        ..., description="Message role (system, user, assistant)"
    )
    content: str = Field(..., description="Message content")


def system_message(prompt: str = SYSTEM_PROMPT) -> Message:
    """Build the fixed message every conversation starts with."""
    return Message(role="system", content=prompt)


def new_conversation_id() -> str:
    return uuid.uuid4().hex


def _now_ms() -> int:
    return int(time.time() * 1000)


class Conversation(BaseModel):
    """One persisted chat session."""

    id: str = Field(default_factory=new_conversation_id)
    title: str = DEFAULT_TITLE
    messages: List[Message] = Field(default_factory=lambda: [system_message()])
    last_modified: int = Field(
        default_factory=_now_ms, description="Milliseconds since the epoch"
    )

    @field_validator("messages")
    @classmethod
    def _starts_with_system(cls, messages: List[Message]) -> List[Message]:
        if not messages or messages[0].role != "system":
            raise ValueError("conversation must start with a system message")
        return messages

    def touch(self) -> None:
        self.last_modified = _now_ms()


HistoryAdapter = TypeAdapter(List[Conversation])
