"""Pytest configuration and fixtures."""

import os
import struct
import tempfile
import time
from collections.abc import AsyncGenerator
from pathlib import Path

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# Set test environment before imports
os.environ.setdefault("HARBOR_DATA_DIR", tempfile.mkdtemp(prefix="harbor-test-"))

from adapters.ai.llama_cpp import LlamaCppEngine
from api.main import create_app
from core.config import Settings
from core.factory import ServiceContainer, create_services_from_settings
from services.manifest import ModelDescriptor
from services.model_store import ModelStore

MANIFEST_URL = "https://models.test/manifest.json"
MODEL_URL = "https://models.test/files/test-model.gguf"
MODEL_FILE_NAME = "test-model.gguf"


# ── GGUF files ─────────────────────────────────────────────────────────

def _gguf_string(value: str) -> bytes:
    data = value.encode("utf-8")
    return struct.pack("<Q", len(data)) + data


def build_gguf(metadata: dict[str, str | int], version: int = 3) -> bytes:
    """Build a GGUF header with string and uint32 metadata and no tensors."""
    out = b"GGUF" + struct.pack("<I", version) + struct.pack("<Q", 0) + struct.pack("<Q", len(metadata))
    for key, value in metadata.items():
        out += _gguf_string(key)
        if isinstance(value, str):
            out += struct.pack("<I", 8) + _gguf_string(value)
        else:
            out += struct.pack("<I", 4) + struct.pack("<I", value)
    return out


@pytest.fixture
def gguf_bytes() -> bytes:
    """A small but valid GGUF header."""
    return build_gguf({
        "general.architecture": "llama",
        "general.name": "Test Model",
        "llama.context_length": 2048,
    })


@pytest.fixture
def make_gguf():
    """Factory for GGUF headers with custom metadata or version."""
    return build_gguf


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def gguf_file(models_dir: Path, gguf_bytes: bytes) -> Path:
    """A valid model file inside the models directory."""
    path = models_dir / MODEL_FILE_NAME
    path.write_bytes(gguf_bytes)
    return path


@pytest.fixture
def store(models_dir: Path) -> ModelStore:
    return ModelStore(models_dir, default_model_id="test-model")


# ── llama.cpp fake ─────────────────────────────────────────────────────

class FakeLlama:
    """Stand-in for llama_cpp.Llama's streaming completion API."""

    def __init__(
        self,
        model_path: str,
        pieces: tuple[str, ...] = ("Hello", " there", "!"),
        step_delay: float = 0.0,
        fail_at: int | None = None,
        finish_reason: str = "stop",
    ):
        self.model_path = model_path
        self.pieces = list(pieces)
        self.step_delay = step_delay
        self.fail_at = fail_at
        self.finish_reason = finish_reason
        self.calls: list[dict] = []
        self.steps_started = 0
        self.closed = False

    def create_completion(self, prompt, stream=False, stop=None, **kwargs):
        self.calls.append({"prompt": prompt, "stream": stream, "stop": stop, **kwargs})
        return self._stream()

    def _stream(self):
        for i, piece in enumerate(self.pieces):
            self.steps_started += 1
            if self.step_delay:
                time.sleep(self.step_delay)
            if self.fail_at == i:
                raise RuntimeError("decode failed")
            yield {"choices": [{"text": piece, "index": 0, "finish_reason": None}]}
        yield {"choices": [{"text": "", "index": 0, "finish_reason": self.finish_reason}]}

    def close(self):
        self.closed = True


@pytest.fixture
def fake_loader():
    """Model loader creating FakeLlama handles.

    ``fake_loader.options`` configures the next handles; ``fake_loader.created``
    lists every handle created.
    """
    created: list[FakeLlama] = []
    options: dict = {}

    def loader(model_path, config):
        llm = FakeLlama(model_path, **options)
        llm.config = config
        created.append(llm)
        return llm

    loader.created = created
    loader.options = options
    return loader


@pytest_asyncio.fixture
async def engine(store: ModelStore, fake_loader) -> AsyncGenerator[LlamaCppEngine, None]:
    engine = LlamaCppEngine(store=store, loader=fake_loader)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def ready_engine(engine: LlamaCppEngine, gguf_file: Path) -> LlamaCppEngine:
    """An engine with the fake model loaded."""
    await engine.load(str(gguf_file))
    return engine


# ── Remote manifest and model server ───────────────────────────────────

@pytest.fixture
def descriptor(gguf_bytes: bytes) -> ModelDescriptor:
    return ModelDescriptor.model_validate({
        "id": "test-model",
        "name": "Test Model",
        "fileName": MODEL_FILE_NAME,
        "downloadUrl": MODEL_URL,
        "sizeBytes": len(gguf_bytes),
        "quantization": "q4_k_m",
        "contextLength": 2048,
        "recommended": True,
    })


@pytest.fixture
def manifest_payload(gguf_bytes: bytes) -> dict:
    return {
        "version": 2,
        "lastUpdated": "2025-02-01T00:00:00Z",
        "recommendedModelId": "test-model",
        "models": [
            {
                "id": "test-model",
                "name": "Test Model",
                "description": "Tiny test model",
                "fileName": MODEL_FILE_NAME,
                "downloadUrl": MODEL_URL,
                "sizeBytes": len(gguf_bytes),
                "quantization": "q4_k_m",
                "contextLength": 2048,
                "recommended": True,
                "tags": ["chat"],
            },
        ],
    }


@pytest.fixture
def model_server(manifest_payload: dict, gguf_bytes: bytes) -> httpx.MockTransport:
    """Serves the manifest and the model file."""

    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == MANIFEST_URL:
            return httpx.Response(200, json=manifest_payload)
        if str(request.url) == MODEL_URL:
            return httpx.Response(200, content=gguf_bytes)
        return httpx.Response(404)

    return httpx.MockTransport(handler)


# ── API ────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(DATA_DIR=tmp_path / "data", MANIFEST_URL=MANIFEST_URL)


@pytest_asyncio.fixture
async def services(
    test_settings: Settings,
    model_server: httpx.MockTransport,
    fake_loader,
) -> AsyncGenerator[ServiceContainer, None]:
    test_settings.ensure_directories()
    services = create_services_from_settings(test_settings, transport=model_server, loader=fake_loader)
    yield services
    await services.aclose()


@pytest_asyncio.fixture
async def client(services: ServiceContainer) -> AsyncGenerator[AsyncClient, None]:
    """Create test client bound to the test services."""
    app = create_app(services)

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

