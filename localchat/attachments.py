"""
Attachment store for user supplied files.

Files are kept in memory for the current session only and rendered into a
text section that is appended to the next prompt. Binary files are never
embedded; a short placeholder describing the file is used instead.
"""

import logging
import mimetypes
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from .prompts import create_attachment_block, create_attachment_section

logger = logging.getLogger(__name__)

# Non text/* types whose payload is still readable text
TEXT_LIKE_TYPES = {
    "application/json",
    "application/xml",
    "application/javascript",
    "application/x-yaml",
    "application/yaml",
    "application/toml",
    "application/x-sh",
}


def format_file_size(size_bytes: int) -> str:
    """
    Format a byte count for display.

    Args:
        size_bytes: Size in bytes

    Returns:
        String like "0 Bytes", "512 Bytes" or "1.5 KB"
    """
    if size_bytes <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB"]
    value = float(size_bytes)
    exponent = 0
    while value >= 1024 and exponent < len(units) - 1:
        value /= 1024
        exponent += 1
    return f"{round(value, 2):g} {units[exponent]}"


def is_text_type(mime_type: Optional[str]) -> bool:
    if not mime_type:
        return False
    return mime_type.startswith("text/") or mime_type in TEXT_LIKE_TYPES


def binary_placeholder(name: str, mime_type: Optional[str], size_bytes: int) -> str:
    return f"[Binary file: {name} ({mime_type or 'unknown type'}) - {format_file_size(size_bytes)}]"


@dataclass(frozen=True)
class Attachment:
    """A file attached to the next prompt."""

    id: str
    name: str
    size_bytes: int
    mime_type: Optional[str]
    content: str


class AttachmentStore:
    """In-memory collection of attachments keyed by generated id."""

    def __init__(self):
        self._items: Dict[str, Attachment] = {}

    def add(self, name: str, data: bytes, mime_type: Optional[str] = None) -> Attachment:
        """
        Attach raw file data.

        Text files are decoded as UTF-8. Files with a non-text MIME type, and
        files of unknown type that do not decode, become a placeholder.

        Args:
            name: Display name of the file
            data: File contents
            mime_type: MIME type if known

        Returns:
            The stored Attachment
        """
        size = len(data)
        if mime_type and not is_text_type(mime_type):
            content = binary_placeholder(name, mime_type, size)
        else:
            try:
                content = data.decode("utf-8")
            except UnicodeDecodeError:
                logger.debug(f"{name} is not valid UTF-8, storing placeholder")
                content = binary_placeholder(name, mime_type, size)

        attachment = Attachment(
            id=uuid.uuid4().hex,
            name=name,
            size_bytes=size,
            mime_type=mime_type,
            content=content,
        )
        self._items[attachment.id] = attachment
        logger.info(f"Attached {name} ({format_file_size(size)})")
        return attachment

    def add_file(self, path: Union[str, Path]) -> Attachment:
        """Read a file from disk and attach it."""
        path = Path(path).expanduser()
        data = path.read_bytes()
        mime_type, _ = mimetypes.guess_type(path.name)
        return self.add(path.name, data, mime_type)

    def remove(self, attachment_id: str) -> bool:
        """Remove one attachment. Returns False if the id is unknown."""
        return self._items.pop(attachment_id, None) is not None

    def clear(self) -> None:
        self._items.clear()
        logger.debug("All attachments cleared")

    def get(self, attachment_id: str) -> Optional[Attachment]:
        return self._items.get(attachment_id)

    def items(self) -> List[Attachment]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Attachment]:
        return iter(list(self._items.values()))

    def render(self) -> str:
        """
        Render every attachment, in insertion order, as a prompt section.

        Returns:
            The attachment section, or an empty string when nothing is attached
        """
        blocks = [
            create_attachment_block(
                a.name,
                format_file_size(a.size_bytes),
                a.mime_type or "unknown",
                a.content,
            )
            for a in self._items.values()
        ]
        return create_attachment_section(blocks)
