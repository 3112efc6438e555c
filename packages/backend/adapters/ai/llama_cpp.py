"""Llama.cpp inference engine.

Implements IInferenceEngine for local GGUF models using llama-cpp-python.
The engine exclusively owns the native ``Llama`` handle and runs it as a
small state machine::

    UNLOADED -> LOADING -> READY | ERROR
    READY <-> GENERATING

Generation is pulled one native decode step at a time on a worker thread,
so a stream can be cancelled between tokens and the event loop never blocks
for longer than a single step.
"""

import asyncio
import logging
from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from adapters.ai.gguf import GgufFormatError, GgufHeader, read_gguf_header
from core.errors import (
    AssistantError,
    EngineBusyError,
    EngineStateError,
    InferenceFailure,
    ModelLoadFailure,
    ModelNotFoundFailure,
)
from core.interfaces import (
    EnginePhase,
    EngineState,
    GenerationParams,
    IGenerationStream,
    IInferenceEngine,
    LoadConfig,
    ProgressCallback,
    StateListener,
)
from core.prompt_codec import END_OF_TURN

if TYPE_CHECKING:
    from services.model_store import ModelStore

logger = logging.getLogger(__name__)

ModelLoader = Callable[[str, LoadConfig], Any]

# Coarse load progress checkpoints
_PROGRESS_MAPPED = 0.3
_PROGRESS_RUNTIME_INIT = 0.5


def load_llama(model_path: str, config: LoadConfig) -> Any:
    """Create a llama.cpp model handle."""
    try:
        from llama_cpp import Llama
    except ImportError as e:
        raise ModelLoadFailure(
            "llama-cpp-python is not installed. Install with: pip install llama-cpp-python"
        ) from e

    return Llama(
        model_path=model_path,
        n_ctx=config.context_length,
        n_threads=config.num_threads,
        n_threads_batch=config.num_threads,
        n_gpu_layers=config.n_gpu_layers,
        seed=config.seed,
        use_mmap=config.use_mmap,
        verbose=False,
    )


def sampling_kwargs(params: GenerationParams) -> dict[str, Any]:
    """Map generation parameters onto llama.cpp completion arguments.

    Greedy requests become ``temperature=0, top_k=1``: llama.cpp then takes
    the argmax token, keeping the lowest token id on ties.
    """
    if params.is_greedy:
        temperature, top_k = 0.0, 1
    else:
        temperature, top_k = params.temperature, params.top_k

    return {
        "max_tokens": params.max_tokens,
        "temperature": temperature,
        "top_k": top_k,
        "top_p": params.top_p,
        "repeat_penalty": params.repetition_penalty,
    }


def _close_handle(handle: Any) -> None:
    close = getattr(handle, "close", None)
    if callable(close):
        close()


class LlamaGenerationStream(IGenerationStream):
    """One in-flight generation on a LlamaCppEngine."""

    def __init__(
        self,
        engine: "LlamaCppEngine",
        handle: Any,
        prompt: str,
        params: GenerationParams,
    ):
        self._engine = engine
        self._handle = handle
        self._prompt = prompt
        self._params = params
        self._iterator: Iterator[dict] | None = None
        self._pending: asyncio.Future | None = None
        self._parts: list[str] = []
        self._steps = 0
        self._stop_reason: str | None = None
        self._finish_reason: str | None = None
        self._cancelled = False
        self._finishing = False
        self._closed = asyncio.Event()

    def __aiter__(self) -> "LlamaGenerationStream":
        return self

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def finish_reason(self) -> str | None:
        return self._finish_reason

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    async def aclose(self) -> None:
        self.cancel()
        await self._finish("cancelled")

    async def __anext__(self) -> str:
        while True:
            if self._finishing:
                raise StopAsyncIteration
            if self._cancelled:
                await self._finish("cancelled")
                raise StopAsyncIteration
            if self._stop_reason is not None:
                await self._finish(self._stop_reason)
                raise StopAsyncIteration
            if self._steps >= self._params.max_tokens:
                await self._finish("length")
                raise StopAsyncIteration

            try:
                chunk = await self._step()
            except asyncio.CancelledError:
                self._cancelled = True
                await self._finish("cancelled")
                raise
            except Exception as exc:
                logger.exception("Generation step failed")
                await self._finish("error")
                raise InferenceFailure(f"Generation failed: {exc}") from exc

            # A step that completed after cancel() is discarded
            if self._cancelled:
                await self._finish("cancelled")
                raise StopAsyncIteration
            if chunk is None:
                await self._finish("stop")
                raise StopAsyncIteration

            self._steps += 1
            choice = chunk["choices"][0]
            text = choice.get("text") or ""
            reason = choice.get("finish_reason")

            if END_OF_TURN in text:
                text = text.split(END_OF_TURN, 1)[0]
                reason = "stop"
            if reason:
                self._stop_reason = reason

            if text:
                self._parts.append(text)
                return text

    async def _step(self) -> dict | None:
        self._pending = asyncio.ensure_future(asyncio.to_thread(self._next_native_chunk))
        return await asyncio.shield(self._pending)

    def _next_native_chunk(self) -> dict | None:
        """Run one native decode step. Called on a worker thread."""
        if self._iterator is None:
            self._iterator = iter(self._handle.create_completion(
                self._prompt,
                stream=True,
                stop=[END_OF_TURN],
                **sampling_kwargs(self._params),
            ))
        try:
            return next(self._iterator)
        except StopIteration:
            return None

    async def _finish(self, reason: str) -> None:
        """Stop native decoding and hand the engine back. Safe to call twice."""
        if self._finishing:
            await self._closed.wait()
            return
        self._finishing = True
        self._finish_reason = reason

        try:
            pending = self._pending
            if pending is not None and not pending.done():
                try:
                    await asyncio.shield(pending)
                except Exception:
                    logger.debug("Discarded failing in-flight step after %s", reason, exc_info=True)

            iterator, self._iterator = self._iterator, None
            if iterator is not None:
                close = getattr(iterator, "close", None)
                if callable(close):
                    close()
        finally:
            self._engine._generation_finished(self)
            self._closed.set()

        logger.debug("Generation finished (%s, %d steps)", reason, self._steps)


class LlamaCppEngine(IInferenceEngine):
    """Llama.cpp-based inference engine for one local GGUF model.

    The model is loaded explicitly with ``load()`` and released with
    ``dispose()``. State changes are pushed to subscribed listeners.
    """

    def __init__(
        self,
        store: "ModelStore | None" = None,
        loader: ModelLoader | None = None,
    ):
        self._store = store
        self._loader = loader or load_llama
        self._state = EngineState()
        self._listeners: list[StateListener] = []
        self._handle: Any = None
        self._config: LoadConfig | None = None
        self._header: GgufHeader | None = None
        self._active: LlamaGenerationStream | None = None
        self._lifecycle_lock = asyncio.Lock()

    # ── State ─────────────────────────────────────────────────────────

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def header(self) -> GgufHeader | None:
        return self._header

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: EngineState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Engine state listener failed")

    def _report_progress(self, progress: float, on_progress: ProgressCallback | None) -> None:
        self._set_state(replace(self._state, progress=progress))
        if on_progress is not None:
            try:
                on_progress(progress)
            except Exception:
                logger.exception("Load progress callback failed")

    def _load_failed(self, error: AssistantError) -> AssistantError:
        logger.error("Model load failed: %s", error.reason)
        self._set_state(replace(self._state, phase=EnginePhase.ERROR, error=error.reason))
        return error

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def load(
        self,
        model_path: str,
        config: LoadConfig | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        config = config or LoadConfig()

        async with self._lifecycle_lock:
            phase = self._state.phase
            if phase not in (EnginePhase.UNLOADED, EnginePhase.ERROR):
                raise EngineStateError(f"Cannot load a model while the engine is {phase.value}")

            path = Path(model_path)
            self._set_state(EngineState(phase=EnginePhase.LOADING, model_path=str(path)))
            self._report_progress(0.0, on_progress)

            if not path.is_file():
                raise self._load_failed(ModelNotFoundFailure(f"Model file not found: {model_path}"))

            # Phase 1: map the file and validate its header
            try:
                header = await asyncio.to_thread(read_gguf_header, path)
            except (GgufFormatError, OSError) as exc:
                raise self._load_failed(ModelLoadFailure(f"Invalid model file {path.name}: {exc}")) from exc

            logger.info(
                "GGUF v%d: architecture=%s name=%s tensors=%d",
                header.version,
                header.architecture,
                header.model_name,
                header.tensor_count,
            )
            self._report_progress(_PROGRESS_MAPPED, on_progress)

            # Phase 2: runtime init
            self._report_progress(_PROGRESS_RUNTIME_INIT, on_progress)
            logger.info(
                "Loading llama.cpp model: %s (context=%d tokens, threads=%d, gpu_layers=%d)",
                path.name,
                config.context_length,
                config.num_threads,
                config.n_gpu_layers,
            )
            try:
                handle = await asyncio.to_thread(self._loader, str(path), config)
            except MemoryError as exc:
                raise self._load_failed(ModelLoadFailure(f"Out of memory while loading {path.name}")) from exc
            except ModelLoadFailure as exc:
                raise self._load_failed(exc)
            except Exception as exc:
                logger.exception("llama.cpp could not load %s", path.name)
                raise self._load_failed(ModelLoadFailure(f"Failed to load {path.name}: {exc}")) from exc

            try:
                if self._store is not None:
                    self._store.mark_in_use(path)
            except Exception as exc:
                _close_handle(handle)
                raise self._load_failed(ModelLoadFailure(f"Failed to register {path.name}: {exc}")) from exc

            self._handle = handle
            self._config = config
            self._header = header
            self._set_state(EngineState(phase=EnginePhase.READY, model_path=str(path)))
            self._report_progress(1.0, on_progress)
            logger.info("Model loaded: %s", path.name)

    async def dispose(self) -> None:
        async with self._lifecycle_lock:
            if self._active is not None:
                await self._active.aclose()

            if self._handle is None and self._state.phase == EnginePhase.UNLOADED:
                return

            handle, self._handle = self._handle, None
            model_path = self._state.model_path
            if handle is not None:
                logger.info("Unloading llama.cpp model to free memory")
                try:
                    _close_handle(handle)
                except Exception:
                    logger.exception("Error while closing llama.cpp model")
                del handle

            if self._store is not None and model_path:
                self._store.release(model_path)

            self._config = None
            self._header = None
            self._set_state(EngineState())

    # ── Generation ────────────────────────────────────────────────────

    def generate_stream(
        self,
        prompt: str,
        params: GenerationParams | None = None,
    ) -> LlamaGenerationStream:
        params = params or GenerationParams()
        phase = self._state.phase
        if phase == EnginePhase.GENERATING:
            raise EngineBusyError()
        if phase != EnginePhase.READY or self._handle is None:
            raise EngineStateError(f"No model ready for generation (engine is {phase.value})")

        stream = LlamaGenerationStream(self, self._handle, prompt, params)
        self._active = stream
        self._set_state(replace(self._state, phase=EnginePhase.GENERATING))
        return stream

    async def generate(self, prompt: str, params: GenerationParams | None = None) -> str:
        stream = self.generate_stream(prompt, params)
        try:
            async for _ in stream:
                pass
        finally:
            # Only interrupted streams need closing; finished ones keep their reason
            if stream.finish_reason is None:
                await stream.aclose()
        return stream.text

    def _generation_finished(self, stream: LlamaGenerationStream) -> None:
        if self._active is not stream:
            return
        self._active = None
        if self._state.phase == EnginePhase.GENERATING:
            self._set_state(replace(self._state, phase=EnginePhase.READY))

    # ── Info ──────────────────────────────────────────────────────────

    async def get_service_info(self) -> dict[str, str | int | float | bool | None]:
        info: dict[str, str | int | float | bool | None] = {
            "name": "llama.cpp",
            "phase": self._state.phase.value,
            "model_loaded": self._handle is not None,
            "model_path": self._state.model_path,
            "error": self._state.error,
        }
        if self._config is not None:
            info["n_ctx"] = self._config.context_length
            info["n_threads"] = self._config.num_threads
            info["n_gpu_layers"] = self._config.n_gpu_layers
        if self._header is not None:
            info["architecture"] = self._header.architecture
            info["model_name"] = self._header.model_name
        return info
