"""Inference engine interface definitions.

This module defines the contract for the component that owns a loaded model
and runs generation on it, so the llama.cpp implementation can be swapped for
another runtime (or a fake in tests) without touching the chat layer.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from enum import Enum

from core.errors import ValidationFailure


class EnginePhase(str, Enum):
    """Lifecycle phases of an inference engine."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    GENERATING = "generating"
    ERROR = "error"


@dataclass(frozen=True)
class EngineState:
    """Snapshot of the engine lifecycle."""

    phase: EnginePhase = EnginePhase.UNLOADED
    progress: float = 0.0  # Only meaningful while LOADING
    error: str | None = None  # Only set in ERROR
    model_path: str | None = None


@dataclass(frozen=True)
class LoadConfig:
    """Runtime options fixed at load time."""

    context_length: int = 2048
    num_threads: int = 4
    n_gpu_layers: int = 0
    seed: int = 0xFFFFFFFF
    use_mmap: bool = True

    def __post_init__(self):
        if self.context_length <= 0:
            raise ValidationFailure("context_length must be > 0")
        if self.num_threads <= 0:
            raise ValidationFailure("num_threads must be > 0")


@dataclass(frozen=True)
class GenerationParams:
    """Sampling parameters for one generation.

    ``temperature == 0`` or ``top_k == 0`` selects greedy decoding.
    """

    max_tokens: int = 512
    temperature: float = 0.1
    top_k: int = 50
    top_p: float = 0.1
    repetition_penalty: float = 1.05

    def __post_init__(self):
        if self.max_tokens <= 0:
            raise ValidationFailure("max_tokens must be > 0")
        if self.temperature < 0:
            raise ValidationFailure("temperature must be >= 0")
        if self.top_k < 0:
            raise ValidationFailure("top_k must be >= 0")
        if not 0 < self.top_p <= 1:
            raise ValidationFailure("top_p must be in (0, 1]")
        if self.repetition_penalty < 1:
            raise ValidationFailure("repetition_penalty must be >= 1")

    @property
    def is_greedy(self) -> bool:
        return self.temperature == 0 or self.top_k == 0


StateListener = Callable[[EngineState], None]
ProgressCallback = Callable[[float], None]


class IGenerationStream(ABC):
    """A cancellable, pull-based stream of generated text fragments."""

    @abstractmethod
    def __aiter__(self) -> AsyncIterator[str]:
        ...

    @abstractmethod
    async def __anext__(self) -> str:
        ...

    @abstractmethod
    def cancel(self) -> None:
        """Request the stream to stop before the next decode step."""
        ...

    @abstractmethod
    async def aclose(self) -> None:
        """Cancel and wait until the engine is released."""
        ...

    @property
    @abstractmethod
    def text(self) -> str:
        """Everything emitted so far."""
        ...

    @property
    @abstractmethod
    def finish_reason(self) -> str | None:
        """stop, length, cancelled or error once the stream has ended."""
        ...


class IInferenceEngine(ABC):
    """Interface for a single-model inference engine.

    At most one generation may be in flight per engine instance.
    """

    @property
    @abstractmethod
    def state(self) -> EngineState:
        ...

    @abstractmethod
    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener. Returns a function that unregisters it."""
        ...

    @abstractmethod
    async def load(
        self,
        model_path: str,
        config: LoadConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Load a model file. Valid from UNLOADED or ERROR.

        Raises:
            EngineStateError: if a model is already loaded or loading
            ModelNotFoundFailure: if the file does not exist
            ModelLoadFailure: if the runtime cannot load the file
        """
        ...

    @abstractmethod
    async def generate(self, prompt: str, params: GenerationParams | None = None) -> str:
        """Generate a full completion for a framed prompt."""
        ...

    @abstractmethod
    def generate_stream(
        self,
        prompt: str,
        params: GenerationParams | None = None,
    ) -> IGenerationStream:
        """Start a streaming generation. Fails fast if one is already running."""
        ...

    @abstractmethod
    async def dispose(self) -> None:
        """Cancel any generation, release the model and return to UNLOADED."""
        ...

    @abstractmethod
    async def get_service_info(self) -> dict[str, str | int | float | bool | None]:
        """Get information about the engine and the loaded model."""
        ...
