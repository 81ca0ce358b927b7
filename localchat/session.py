"""
Streaming session controller.

Drives one request/response exchange at a time against whichever engine the
BackendSelector made active:
- composes the prompt from user text and attachments
- streams (accelerated) or fetches in one piece (fallback) the reply
- supports cooperative cancellation
- always answers, falling back to a templated reply on engine failure
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Optional

from .attachments import AttachmentStore
from .cancellation import CancellationToken
from .config import config
from .engine import CompletionEngine, EngineKind, StreamingEngine
from .errors import CompletionFailed, StreamCancelled
from .events import EventBus, SessionListener
from .history import SessionHistoryManager
from .models import Conversation, Message
from .prompts import compose_prompt, create_fallback_reply
from .selector import BackendSelector
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass
class GenerationSettings:
    """User adjustable sampling settings."""

    temperature: float = field(default_factory=lambda: config.TEMPERATURE)
    seed: int = field(default_factory=lambda: config.SEED)
    fallback_max_tokens: int = field(default_factory=lambda: config.FALLBACK_MAX_TOKENS)
    fallback_temperature: float = field(default_factory=lambda: config.FALLBACK_TEMPERATURE)


class SessionContext:
    """
    State shared by one chat session.

    Holds the history (and through it the active conversation), the backend
    selector owning the engine handle, the pending attachments, the
    processing flag and the token of the in-flight request.
    """

    def __init__(
        self,
        history: SessionHistoryManager,
        selector: BackendSelector,
        attachments: Optional[AttachmentStore] = None,
        events: Optional[SessionListener] = None,
        settings: Optional[GenerationSettings] = None,
    ):
        self.history = history
        self.selector = selector
        self.attachments = attachments if attachments is not None else AttachmentStore()
        self.events = events or history.events
        self.settings = settings or GenerationSettings()
        self.is_processing = False
        self.request_token: Optional[CancellationToken] = None

    @property
    def conversation(self):
        return self.history.conversation


class StreamingSessionController:
    """Sends prompts and reconciles engine output into the conversation."""

    def __init__(self, context: SessionContext):
        self.context = context

    @property
    def is_processing(self) -> bool:
        return self.context.is_processing

    @contextmanager
    def _processing_gate(self):
        """Hold the processing flag for the duration of one request."""
        if self.context.is_processing:
            raise RuntimeError("A request is already in flight")
        self.context.is_processing = True
        try:
            yield
        finally:
            self.context.is_processing = False

    async def send(self, prompt_text: str, attachments: Optional[AttachmentStore] = None) -> Optional[str]:
        """
        Send a prompt and append the reply to the active conversation.

        Args:
            prompt_text: The user's text
            attachments: Files to merge into the prompt (default: the session's)

        Returns:
            The assistant reply, or None if nothing was sent or the request
            was cancelled
        """
        prompt_text = (prompt_text or "").strip()
        if not prompt_text:
            logger.debug("Cannot send: empty prompt")
            return None
        if self.context.is_processing:
            logger.warning("Cannot send: already processing")
            return None

        if attachments is None:
            attachments = self.context.attachments

        with self._processing_gate():
            full_prompt = compose_prompt(prompt_text, attachments.render())
            self.context.history.record(Message(role="user", content=full_prompt))
            logger.info(f"Sending message ({len(attachments)} file(s) attached)")

            token = CancellationToken()
            self.context.request_token = token
            try:
                reply = await self._complete(prompt_text, full_prompt, token)
            except StreamCancelled:
                logger.info("Request cancelled by user")
                return None
            except Exception as e:
                if token.cancelled:
                    logger.info(f"Request cancelled by user ({e})")
                    return None
                failure = CompletionFailed(str(e))
                logger.error(f"Processing error, answering with templated reply: {failure}", exc_info=True)
                reply = create_fallback_reply(prompt_text)
            finally:
                if self.context.request_token is token:
                    self.context.request_token = None

            self.context.history.record(Message(role="assistant", content=reply))
            return reply

    async def _complete(self, prompt_text: str, full_prompt: str, token: CancellationToken) -> str:
        handle = self.context.selector.handle
        if not handle.ready:
            logger.info(f"Engine {handle.kind.value}, answering in demo mode")
            return create_fallback_reply(prompt_text)

        if handle.kind == EngineKind.HARDWARE:
            return await self._stream(handle.engine, token)
        return await self._complete_once(handle.engine, full_prompt, token)

    async def _stream(self, engine: StreamingEngine, token: CancellationToken) -> str:
        settings = self.context.settings
        accumulated = ""
        stream = engine.stream_complete(
            self.context.conversation.as_dicts(),
            temperature=settings.temperature,
            seed=settings.seed,
            cancel_token=token,
        )
        try:
            async for chunk in stream:
                token.raise_if_cancelled()
                if chunk.delta:
                    accumulated += chunk.delta
                    self.context.events.on_stream_delta(accumulated)
                if chunk.done:
                    if chunk.usage:
                        logger.debug(f"Usage: {chunk.usage}")
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        token.raise_if_cancelled()
        logger.info("Streaming response completed")
        return accumulated

    async def _complete_once(self, engine: CompletionEngine, full_prompt: str, token: CancellationToken) -> str:
        settings = self.context.settings
        # Generation cannot be interrupted; cancellation is honoured afterwards
        output = await engine.complete(
            full_prompt,
            max_tokens=settings.fallback_max_tokens,
            temperature=settings.fallback_temperature,
        )
        token.raise_if_cancelled()
        logger.info("Fallback response completed")
        return output or ""

    def cancel(self) -> bool:
        """
        Cancel the in-flight request.

        Returns:
            False if no request was active
        """
        token = self.context.request_token
        if token is None:
            return False
        logger.info("Stopping current request...")
        token.cancel()
        return True

    async def wait_until_idle(self, poll_interval: float = 0.05) -> None:
        while self.context.is_processing:
            await asyncio.sleep(poll_interval)

    async def reload_model(self, model_id: str):
        """Cancel any in-flight request, then switch the accelerated model."""
        self.cancel()
        await self.wait_until_idle()
        return await self.context.selector.reload(model_id)

    # -- conversation commands ------------------------------------------------

    def new_conversation(self) -> Conversation:
        self.cancel()
        self.context.attachments.clear()
        return self.context.history.create_conversation()

    def select_conversation(self, conversation_id: str) -> Conversation:
        self.cancel()
        return self.context.history.load_conversation(conversation_id)

    def delete_conversation(self, conversation_id: str) -> bool:
        if conversation_id == self.context.history.active_id:
            self.cancel()
            self.context.attachments.clear()
        return self.context.history.delete_conversation(conversation_id)

    def clear_conversation(self) -> Conversation:
        """Discard the active conversation and start a new one."""
        self.cancel()
        self.context.attachments.clear()
        history = self.context.history
        if history.active_id is not None and history.delete_conversation(history.active_id):
            return history.active
        return history.create_conversation()

    def clear_all_history(self) -> Conversation:
        self.cancel()
        self.context.attachments.clear()
        return self.context.history.clear_all()


def build_controller(
    store: KeyValueStore,
    listeners=None,
    primary=None,
    fallback=None,
    settings: Optional[GenerationSettings] = None,
) -> StreamingSessionController:
    """
    Wire up a complete chat session.

    Args:
        store: Durable key/value store for session history
        listeners: SessionListener objects to notify
        primary: Accelerated backend (default: AcceleratedBackend)
        fallback: CPU backend (default: CpuFallbackBackend)
        settings: Sampling settings

    Returns:
        Controller whose history is initialized; call
        ``context.selector.detect_and_initialize()`` to load an engine
    """
    if primary is None:
        from .accelerated import AcceleratedBackend

        primary = AcceleratedBackend()
    if fallback is None:
        from .fallback import CpuFallbackBackend

        fallback = CpuFallbackBackend()

    events = EventBus(listeners)
    history = SessionHistoryManager(store, events=events)
    history.initialize()
    selector = BackendSelector(primary, fallback, events=events)
    context = SessionContext(history, selector, events=events, settings=settings)
    return StreamingSessionController(context)
