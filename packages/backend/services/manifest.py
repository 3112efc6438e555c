"""Remote model manifest: parsing, fetching and offline fallback."""

import logging

import httpx
from huggingface_hub import hf_hub_url
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from core.errors import AssistantError, ModelNotFoundFailure, NetworkFailure, ValidationFailure
from core.model_catalog import DEFAULT_MANIFEST

logger = logging.getLogger(__name__)

ManifestFailure = NetworkFailure | ValidationFailure


class ModelDescriptor(BaseModel):
    """A downloadable GGUF model as described by the manifest."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    display_name: str = Field(validation_alias=AliasChoices("name", "displayName", "display_name"))
    description: str = ""
    file_name: str = Field(validation_alias=AliasChoices("fileName", "file_name"))
    source_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("downloadUrl", "sourceUrl", "source_url"),
    )
    repo: str | None = None  # HuggingFace repo, used when no direct URL is given
    size_bytes: int = Field(gt=0, validation_alias=AliasChoices("sizeBytes", "size_bytes"))
    quantization_tag: str = Field(
        default="",
        validation_alias=AliasChoices("quantization", "quantizationTag", "quantization_tag"),
    )
    context_length: int = Field(
        default=4096,
        gt=0,
        validation_alias=AliasChoices("contextLength", "contextSize", "context_length"),
    )
    is_recommended: bool = Field(
        default=False,
        validation_alias=AliasChoices("recommended", "isRecommended", "is_recommended"),
    )
    capability_tags: tuple[str, ...] = Field(
        default=(),
        validation_alias=AliasChoices("tags", "capabilities", "capability_tags"),
    )
    sha256: str | None = None

    @field_validator("file_name")
    @classmethod
    def _bare_file_name(cls, value: str) -> str:
        if not value or "/" in value or "\\" in value or value in (".", ".."):
            raise ValueError(f"fileName must be a plain file name: {value!r}")
        return value

    @field_validator("sha256")
    @classmethod
    def _normalize_digest(cls, value: str | None) -> str | None:
        return value.lower() if value else None


class ModelCatalog(BaseModel):
    """A versioned list of downloadable models."""

    version: int
    last_updated: str | None = Field(default=None, validation_alias=AliasChoices("lastUpdated", "last_updated"))
    base_url: str | None = Field(default=None, validation_alias=AliasChoices("baseUrl", "base_url"))
    models: tuple[ModelDescriptor, ...]
    recommended_id: str | None = Field(
        default=None,
        validation_alias=AliasChoices("recommendedModelId", "recommendedId", "recommended_id"),
    )

    @model_validator(mode="after")
    def _resolve_source_urls(self) -> "ModelCatalog":
        """Fill in download URLs from the HuggingFace repo or the catalog base URL."""
        resolved = []
        for model in self.models:
            if model.source_url:
                resolved.append(model)
                continue
            if model.repo:
                url = hf_hub_url(repo_id=model.repo, filename=model.file_name)
            elif self.base_url:
                url = f"{self.base_url.rstrip('/')}/{model.file_name}"
            else:
                raise ValueError(f"Model {model.id!r} has no downloadUrl, repo or catalog baseUrl")
            resolved.append(model.model_copy(update={"source_url": url}))
        self.models = tuple(resolved)
        return self

    def get(self, model_id: str) -> ModelDescriptor | None:
        """Get model by ID."""
        for model in self.models:
            if model.id == model_id:
                return model
        return None

    def recommended(self) -> ModelDescriptor | None:
        """Get the recommended model, or the first model if none is recommended."""
        if not self.models:
            return None

        if self.recommended_id is not None:
            found = self.get(self.recommended_id)
            if found is not None:
                return found

        for model in self.models:
            if model.is_recommended:
                return model

        return self.models[0]


def default_catalog() -> ModelCatalog:
    """The embedded catalog used when the remote manifest is unavailable."""
    return ModelCatalog.model_validate(DEFAULT_MANIFEST)


def recommended_of(catalog: ModelCatalog) -> ModelDescriptor:
    """Resolve the recommended model of a catalog.

    Raises:
        ModelNotFoundFailure: if the catalog has no models
    """
    model = catalog.recommended()
    if model is None:
        raise ModelNotFoundFailure("Model catalog is empty")
    return model


class ManifestResolver:
    """Fetches the remote model manifest with an offline fallback.

    ``fetch()`` reports failures as values; ``resolve()`` never fails.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url
        self._timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return self._url

    async def fetch(self) -> ModelCatalog | ManifestFailure:
        """Fetch and parse the manifest with a single bounded request."""
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.get(self._url)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Failed to fetch model manifest from %s: %s", self._url, exc)
            return NetworkFailure(f"Failed to fetch manifest: {exc}")
        except httpx.InvalidURL as exc:
            logger.warning("Invalid model manifest URL %s: %s", self._url, exc)
            return NetworkFailure(f"Invalid manifest URL: {exc}")
        except ValueError as exc:
            logger.warning("Model manifest is not valid JSON: %s", exc)
            return ValidationFailure(f"Manifest is not valid JSON: {exc}")
        except Exception as exc:
            logger.exception("Unexpected error fetching model manifest from %s", self._url)
            return NetworkFailure(f"Failed to fetch manifest: {exc}")

        try:
            return ModelCatalog.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Model manifest failed validation: %s", exc)
            return ValidationFailure(f"Malformed manifest: {exc}")

    async def resolve(self) -> ModelCatalog:
        """Fetch the manifest, falling back to the embedded catalog."""
        catalog = await self.fetch()
        if isinstance(catalog, AssistantError):
            logger.info("Using embedded model catalog (%s)", catalog.reason)
            return default_catalog()
        if not catalog.models:
            logger.warning("Remote manifest lists no models, using embedded catalog")
            return default_catalog()

        logger.info("Fetched model manifest v%d with %d models", catalog.version, len(catalog.models))
        return catalog
