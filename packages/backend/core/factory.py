"""Service container for dependency injection.

Builds the assistant's component graph from settings. The container is owned
by whoever creates it (the FastAPI lifespan stores it on ``app.state``); there
are no global singletons for the engine or the download coordinator.
"""

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import httpx

from .config import Settings
from .interfaces import GenerationParams, LoadConfig
from .prompt_codec import PromptCodec

if TYPE_CHECKING:
    from adapters.ai.llama_cpp import LlamaCppEngine, ModelLoader
    from services.chat_session import ChatSession
    from services.downloads import DownloadCoordinator
    from services.manifest import ManifestResolver, ModelCatalog
    from services.model_store import ModelStore

logger = logging.getLogger(__name__)


def generation_params_from_settings(settings: Settings, **overrides) -> GenerationParams:
    """Build sampling parameters from settings. ``None`` overrides are ignored.

    Raises:
        ValidationFailure: if a value is out of range
    """
    values = {
        "max_tokens": settings.AI_MAX_TOKENS,
        "temperature": settings.AI_TEMPERATURE,
        "top_k": settings.AI_TOP_K,
        "top_p": settings.AI_TOP_P,
        "repetition_penalty": settings.AI_REPETITION_PENALTY,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    return GenerationParams(**values)


@dataclass
class ServiceContainer:
    """The assistant's components, wired together.

    Usage:
        from core.config import settings
        from core.factory import create_services_from_settings

        services = create_services_from_settings(settings)
        catalog = await services.get_catalog()
        services.downloads.start(catalog.recommended())
    """

    settings: Settings
    store: "ModelStore"
    manifest: "ManifestResolver"
    downloads: "DownloadCoordinator"
    engine: "LlamaCppEngine"
    codec: PromptCodec
    session: "ChatSession"
    _catalog: "ModelCatalog | None" = field(default=None, repr=False)

    def load_config(self) -> LoadConfig:
        """Runtime options for the next model load."""
        return LoadConfig(
            context_length=self.settings.AI_N_CTX,
            num_threads=self.settings.AI_N_THREADS,
            n_gpu_layers=self.settings.AI_N_GPU_LAYERS,
            seed=self.settings.AI_SEED,
            use_mmap=self.settings.AI_USE_MMAP,
        )

    def generation_params(self, **overrides) -> GenerationParams:
        """Configured sampling defaults, with per-request overrides."""
        return generation_params_from_settings(self.settings, **overrides)

    async def get_catalog(self, refresh: bool = False) -> "ModelCatalog":
        """The model catalog, fetched once and then cached."""
        if self._catalog is None or refresh:
            self._catalog = await self.manifest.resolve()
            recommended = self._catalog.recommended()
            if recommended is not None:
                self.store.default_model_id = recommended.id
        return self._catalog

    async def aclose(self) -> None:
        """Stop downloads and release the model."""
        await self.downloads.aclose()
        await self.engine.dispose()


def create_services_from_settings(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
    loader: "ModelLoader | None" = None,
) -> ServiceContainer:
    """Create the service container from application settings.

    Args:
        settings: Application settings
        transport: HTTP transport for manifest and downloads (tests)
        loader: Replacement for the llama.cpp model constructor (tests)
    """
    from adapters.ai.llama_cpp import LlamaCppEngine
    from services.chat_session import ChatSession
    from services.downloads import DownloadCoordinator
    from services.manifest import ManifestResolver, default_catalog
    from services.model_store import ModelStore

    recommended = default_catalog().recommended()
    store = ModelStore(settings.MODELS_DIR, default_model_id=recommended.id if recommended else None)
    manifest = ManifestResolver(
        settings.MANIFEST_URL,
        timeout=settings.MANIFEST_TIMEOUT,
        transport=transport,
    )
    downloads = DownloadCoordinator(
        store,
        chunk_size=settings.DOWNLOAD_CHUNK_SIZE,
        transport=transport,
    )
    engine = LlamaCppEngine(store=store, loader=loader)
    codec = PromptCodec(system_prompt=settings.SYSTEM_PROMPT)

    session = ChatSession(engine, codec=codec, params=generation_params_from_settings(settings))

    container = ServiceContainer(
        settings=settings,
        store=store,
        manifest=manifest,
        downloads=downloads,
        engine=engine,
        codec=codec,
        session=session,
    )

    logger.info(
        "Services created (models_dir=%s, manifest=%s)",
        settings.MODELS_DIR,
        settings.MANIFEST_URL,
    )
    return container
