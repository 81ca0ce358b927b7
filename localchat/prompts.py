"""
Prompt text used by the chat runtime.

Contains the assistant persona, the attachment section format that is merged
into user prompts, and the canned replies used when no engine can answer.
"""

import zlib
from typing import List


# Assistant system prompt
SYSTEM_PROMPT = (
    "You are a concise, helpful assistant that runs 100% locally on the user's "
    "device. You can analyze text files, code, and other documents that users "
    "upload as attachments."
)

# Title given to a conversation until its first user message arrives
DEFAULT_TITLE = "New Chat"

# Attachment rendering
ATTACHMENT_SECTION_HEADER = "--- ATTACHED FILES ---"
ATTACHMENT_SEPARATOR = "---"


def create_attachment_block(name: str, size: str, mime_type: str, content: str) -> str:
    """
    Render one attached file for inclusion in a prompt.

    Args:
        name: File name shown to the model
        size: Human readable size
        mime_type: MIME type, or "unknown"
        content: Text content or binary placeholder

    Returns:
        The file block, terminated by the separator line
    """
    return (
        f"\nFile: {name}\n"
        f"Size: {size}\n"
        f"Type: {mime_type}\n\n"
        f"{content}\n{ATTACHMENT_SEPARATOR}\n"
    )


def create_attachment_section(blocks: List[str]) -> str:
    """Join rendered file blocks under the attachment header."""
    if not blocks:
        return ""
    return f"\n\n{ATTACHMENT_SECTION_HEADER}\n" + "".join(blocks)


def compose_prompt(prompt: str, attachment_section: str) -> str:
    """Append the rendered attachments after the user's own text."""
    return prompt + attachment_section


def strip_attachment_section(content: str) -> str:
    """Return the user's own text from a composed prompt."""
    return content.split(f"\n\n{ATTACHMENT_SECTION_HEADER}\n", 1)[0]


# Replies used when the engine is unavailable or a completion fails
FALLBACK_REPLY_TEMPLATES = [
    'Hello! I received your message: "{prompt}". I\'m currently running in demo '
    "mode because the local model is not available. With the model loaded I "
    "would answer your question directly.",
    'Thanks for asking "{prompt}"! I\'m a local assistant that runs entirely on '
    "your device. Right now I'm in demo mode, but normally I'd analyze your "
    "question and give a helpful, contextual answer.",
    'I see you asked: "{prompt}". I\'m a small language model designed to run '
    "locally. While the model is unavailable I can acknowledge your messages "
    "and keep the conversation going.",
    'Your question "{prompt}" has been received! I process everything locally '
    "for privacy, but the model could not produce an answer this time.",
    'Hi there! You asked "{prompt}". I\'m running in demonstration mode right '
    "now. Once the model is loaded I can help with questions and analyze "
    "documents, all while keeping your data on this device.",
]


def create_fallback_reply(prompt: str) -> str:
    """
    Pick a canned reply quoting the user's prompt.

    The template is chosen from a checksum of the prompt, so the same prompt
    always gets the same reply.

    Args:
        prompt: The user's raw prompt text

    Returns:
        Reply text containing the prompt verbatim
    """
    index = zlib.crc32(prompt.encode("utf-8")) % len(FALLBACK_REPLY_TEMPLATES)
    return FALLBACK_REPLY_TEMPLATES[index].format(prompt=prompt)
