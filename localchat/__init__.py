"""
Local chat with on-device language models.

A private chat runtime that supports:
- Accelerated inference on a GPU/MPS device with automatic CPU fallback
- Cancellable streaming responses
- Multiple persisted conversations with file attachments
"""

__version__ = "0.1.0"
