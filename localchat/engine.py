"""
Inference engine interfaces.

Two kinds of backend can serve a chat:
- a primary, hardware-accelerated backend that streams completions
- a fallback, CPU-only backend that returns whole completions

Concrete implementations live in accelerated.py and fallback.py.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from .cancellation import CancellationToken

# Receives (phase_text, fraction between 0 and 1 or None)
ProgressCallback = Callable[[str, Optional[float]], None]


class EngineKind(str, Enum):
    """Which compute path is serving completions."""

    UNDETERMINED = "undetermined"
    HARDWARE = "hardware"
    SOFTWARE = "software"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ModelInfo:
    """Entry of the primary backend's model catalog."""

    model_id: str
    size_class: str = "large"


@dataclass(frozen=True)
class StreamChunk:
    """One partial-content delta of a streaming completion."""

    delta: str
    done: bool = False
    usage: Optional[Dict[str, int]] = None


@dataclass(frozen=True)
class AssetBundle:
    """Files the fallback engine is bootstrapped from."""

    model_id: str
    model_dir: str
    extra: Dict[str, Any] = field(default_factory=dict)


class StreamingEngine:
    """Engine that yields a completion delta by delta."""

    def stream_complete(
        self,
        messages: List[dict],
        temperature: float,
        seed: int,
        cancel_token: CancellationToken,
    ) -> AsyncIterator[StreamChunk]:
        raise NotImplementedError


class CompletionEngine:
    """Engine that returns a completion in one piece."""

    async def complete(self, prompt: str, max_tokens: int, temperature: float) -> str:
        raise NotImplementedError


class PrimaryBackend:
    """Factory for the hardware-accelerated engine."""

    name = "primary"

    def probe_capability(self) -> bool:
        """Whether an accelerator can be queried at all on this host."""
        raise NotImplementedError

    async def load(self) -> None:
        """Import the engine library. Raises BackendUnavailable on failure."""
        raise NotImplementedError

    async def request_adapter(self) -> Optional[str]:
        """Name of a usable accelerator, or None if none is granted."""
        raise NotImplementedError

    def list_models(self) -> List[ModelInfo]:
        raise NotImplementedError

    async def construct(self, model_id: str, progress_callback: ProgressCallback) -> StreamingEngine:
        raise NotImplementedError


class FallbackBackend:
    """Factory for the software (CPU) engine."""

    name = "fallback"

    async def load_assets(self) -> AssetBundle:
        raise NotImplementedError

    async def bootstrap(self, assets: AssetBundle) -> CompletionEngine:
        raise NotImplementedError


@dataclass(frozen=True)
class EngineHandle:
    """The engine currently serving completions and its kind."""

    kind: EngineKind
    engine: Any = None
    model_id: Optional[str] = None

    @property
    def ready(self) -> bool:
        return self.kind in (EngineKind.HARDWARE, EngineKind.SOFTWARE) and self.engine is not None


UNDETERMINED_HANDLE = EngineHandle(EngineKind.UNDETERMINED)
UNAVAILABLE_HANDLE = EngineHandle(EngineKind.UNAVAILABLE)
