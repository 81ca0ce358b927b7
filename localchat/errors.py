"""
Error taxonomy for the chat runtime.

Only EngineConstructionFailed is surfaced to the user; every other error is
absorbed by the component that raised it and logged.
"""


class LocalChatError(Exception):
    """Base class for all chat runtime errors."""

    pass


class BackendUnavailable(LocalChatError):
    """The accelerated backend cannot be used (no adapter, library missing)."""

    pass


class EngineConstructionFailed(LocalChatError):
    """Neither the accelerated nor the fallback engine could be built."""

    pass


class ReloadNotSupported(LocalChatError):
    """A model reload was requested while the fallback engine is active."""

    pass


class StreamCancelled(LocalChatError):
    """The user cancelled the in-flight request."""

    pass


class CompletionFailed(LocalChatError):
    """The engine raised while producing a completion."""

    pass


class PersistenceFailed(LocalChatError):
    """Reading from or writing to the durable store failed."""

    pass


class MalformedHistory(LocalChatError):
    """Stored session history could not be parsed."""

    pass
