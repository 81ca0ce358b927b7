"""Cooperative cancellation for in-flight completions."""

import threading

from .errors import StreamCancelled


class CancellationToken:
    """
    Cancellation handle for exactly one streaming request.

    Cancellation only flips a flag; consumers check it at their own
    suspension points. The flag is a threading.Event so generation threads
    can read it too.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StreamCancelled("Request cancelled by user")
