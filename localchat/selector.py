"""
Backend discovery and fallback.

Tries the hardware-accelerated backend first and degrades to the CPU
fallback on any failure. Progress and readiness are pushed to the session
listener while engines load.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from .config import config
from .engine import (
    UNAVAILABLE_HANDLE,
    UNDETERMINED_HANDLE,
    EngineHandle,
    EngineKind,
    FallbackBackend,
    ModelInfo,
    PrimaryBackend,
)
from .errors import BackendUnavailable, EngineConstructionFailed, ReloadNotSupported
from .events import SessionListener
from .health import log_memory_usage

logger = logging.getLogger(__name__)


def select_default_model(catalog: Sequence[ModelInfo], preferred: Sequence[str]) -> str:
    """
    Choose the model to load by default.

    Args:
        catalog: Models the backend offers
        preferred: Model ids in order of preference, smallest first

    Returns:
        The first preferred id present in the catalog, else the first catalog
        entry, else the first preferred id

    Raises:
        BackendUnavailable: If both lists are empty
    """
    available = [m.model_id for m in catalog]
    for model_id in preferred:
        if model_id in available:
            return model_id
    if available:
        return available[0]
    if preferred:
        return preferred[0]
    raise BackendUnavailable("No models available")


class BackendSelector:
    """Owns the single live EngineHandle."""

    def __init__(
        self,
        primary: Optional[PrimaryBackend],
        fallback: Optional[FallbackBackend],
        events: Optional[SessionListener] = None,
        preferred_models: Optional[List[str]] = None,
        load_warning_seconds: Optional[float] = None,
    ):
        """
        Initialize the selector.

        Args:
            primary: Hardware-accelerated backend, or None to skip it
            fallback: CPU backend, or None if there is no fallback
            events: Listener for progress, readiness and errors
            preferred_models: Model ids to try first (default: config.PREFERRED_MODELS)
            load_warning_seconds: Delay before a "still loading" notice
        """
        self.primary = primary
        self.fallback = fallback
        self.events = events or SessionListener()
        self.preferred_models = (
            preferred_models if preferred_models is not None else list(config.PREFERRED_MODELS)
        )
        self.load_warning_seconds = (
            load_warning_seconds if load_warning_seconds is not None else config.LOAD_WARNING_SECONDS
        )
        self._handle: EngineHandle = UNDETERMINED_HANDLE

    @property
    def handle(self) -> EngineHandle:
        return self._handle

    @property
    def kind(self) -> EngineKind:
        return self._handle.kind

    def models(self) -> List[ModelInfo]:
        """Catalog of the accelerated backend, for the model picker."""
        if self.primary is None:
            return []
        return self.primary.list_models()

    def _progress(self, phase: str, percent: Optional[float] = None) -> None:
        if percent is None:
            logger.info(phase)
        else:
            logger.info(f"{phase} ({percent:.0f}%)")
        self.events.on_progress(phase, percent)

    def _progress_callback(self, phase: str, fraction: Optional[float]) -> None:
        self._progress(phase, None if fraction is None else round(fraction * 100))

    def _warn_still_loading(self) -> None:
        if self._handle.kind == EngineKind.UNDETERMINED:
            self._progress(
                "AI model is still loading... This can take a few minutes on first "
                "run while the weights download."
            )

    async def detect_and_initialize(self) -> EngineHandle:
        """
        Build the best available engine.

        Returns:
            Handle whose kind is hardware or software

        Raises:
            EngineConstructionFailed: If the fallback engine also fails
        """
        self._progress("Detecting runtime...")
        warning = asyncio.get_running_loop().call_later(
            self.load_warning_seconds, self._warn_still_loading
        )
        log_memory_usage("before model load")

        try:
            handle = await self._try_primary()
            if handle is None:
                handle = await self._start_fallback()
        except EngineConstructionFailed as e:
            logger.error(f"Initialization failed: {e}")
            self._handle = UNAVAILABLE_HANDLE
            self.events.on_error(str(e))
            raise
        finally:
            warning.cancel()

        self._handle = handle
        log_memory_usage("after model load")
        self._progress("Ready." if handle.kind == EngineKind.HARDWARE else "Ready (fallback).", 100)
        self.events.on_ready(handle.kind)
        return handle

    async def _try_primary(self) -> Optional[EngineHandle]:
        if self.primary is None or not self.primary.probe_capability():
            logger.info("No accelerator capability, using fallback engine")
            return None

        try:
            self._progress("Loading AI library...")
            await self.primary.load()

            adapter = await self.primary.request_adapter()
            if not adapter:
                raise BackendUnavailable("No accelerator adapter available")

            model_id = select_default_model(self.primary.list_models(), self.preferred_models)
            logger.info(f"Using model {model_id} on {adapter}")

            self._progress("Loading model (first run downloads weights)...")
            engine = await self.primary.construct(model_id, self._progress_callback)
        except Exception as e:
            logger.warning(f"Accelerated path failed, falling back to CPU: {e}")
            return None

        return EngineHandle(EngineKind.HARDWARE, engine, model_id)

    async def _start_fallback(self) -> EngineHandle:
        if self.fallback is None:
            raise EngineConstructionFailed("AI model failed to load: no fallback engine configured")

        try:
            self._progress("Loading fallback model (first run downloads)...")
            assets = await self.fallback.load_assets()
            engine = await self.fallback.bootstrap(assets)
        except Exception as e:
            raise EngineConstructionFailed(f"AI model failed to load: {e}") from e

        return EngineHandle(EngineKind.SOFTWARE, engine, assets.model_id)

    async def reload(self, model_id: str) -> EngineHandle:
        """
        Replace the accelerated engine with another model.

        The new engine is built before the old handle is released; if
        construction fails the error propagates and the old engine stays live.

        Raises:
            ReloadNotSupported: If the accelerated engine is not active
        """
        if self._handle.kind != EngineKind.HARDWARE or self.primary is None:
            raise ReloadNotSupported("Model reload only applies to the accelerated backend")

        self._progress(f"Reloading model {model_id}...")
        engine = await self.primary.construct(model_id, self._progress_callback)

        previous = self._handle
        self._handle = EngineHandle(EngineKind.HARDWARE, engine, model_id)
        logger.info(f"Model switched from {previous.model_id} to {model_id}")
        log_memory_usage("after model reload")

        self._progress("Ready.", 100)
        self.events.on_ready(self._handle.kind)
        return self._handle
