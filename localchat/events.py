"""
Notification channel between the chat runtime and its user interface.

The runtime pushes state changes to SessionListener objects; an EventBus fans
each notification out to every subscribed listener.
"""

import logging
from typing import List, Optional

logger = logging.getLogger(__name__)


class SessionListener:
    """Receiver for runtime notifications. Override the hooks you need."""

    def on_progress(self, phase: str, percent: Optional[float] = None) -> None:
        pass

    def on_ready(self, kind) -> None:
        pass

    def on_message_appended(self, role: str, text: str) -> None:
        pass

    def on_stream_delta(self, partial_text: str) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass


class EventBus(SessionListener):
    """Dispatches every notification to all subscribed listeners."""

    def __init__(self, listeners: Optional[List[SessionListener]] = None):
        self._listeners: List[SessionListener] = list(listeners or [])

    def subscribe(self, listener: SessionListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SessionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _dispatch(self, hook: str, *args) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, hook)(*args)
            except Exception as e:
                logger.error(f"Listener {listener!r} failed in {hook}: {e}", exc_info=True)

    def on_progress(self, phase: str, percent: Optional[float] = None) -> None:
        self._dispatch("on_progress", phase, percent)

    def on_ready(self, kind) -> None:
        self._dispatch("on_ready", kind)

    def on_message_appended(self, role: str, text: str) -> None:
        self._dispatch("on_message_appended", role, text)

    def on_stream_delta(self, partial_text: str) -> None:
        self._dispatch("on_stream_delta", partial_text)

    def on_error(self, message: str) -> None:
        self._dispatch("on_error", message)
