"""Application configuration."""

import os
import sys
from pathlib import Path

from pydantic_settings import BaseSettings

from core.prompt_codec import DEFAULT_SYSTEM_PROMPT


def _default_data_dir() -> Path:
    """Return the platform-specific default data directory."""
    if sys.platform == "win32":
        base = os.environ.get("APPDATA", str(Path.home() / "AppData" / "Roaming"))
        return Path(base) / "Harbor Assistant"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Harbor Assistant"
    base = os.environ.get("XDG_DATA_HOME", str(Path.home() / ".local" / "share"))
    return Path(base) / "harbor-assistant"


class Settings(BaseSettings):
    """Application settings."""

    # API settings
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 52790
    LOG_LEVEL: str = "INFO"

    # Data paths
    DATA_DIR: Path = _default_data_dir()
    MODELS_DIR: Path | None = None

    # Model manifest
    MANIFEST_URL: str = "https://huggingface.co/datasets/harbor-assistant/models/resolve/main/manifest.json"
    MANIFEST_TIMEOUT: float = 30.0  # Seconds, covers connect + read
    DOWNLOAD_CHUNK_SIZE: int = 256 * 1024

    # Runtime settings (llama.cpp), fixed at load time
    AI_N_CTX: int = 2048  # 32K context runs out of memory on small devices
    AI_N_THREADS: int = 4
    AI_N_GPU_LAYERS: int = 0  # 0 = CPU, -1 = all
    AI_SEED: int = 0xFFFFFFFF
    AI_USE_MMAP: bool = True

    # Generation defaults (LFM2.5 recommended sampling)
    AI_MAX_TOKENS: int = 512
    AI_TEMPERATURE: float = 0.1
    AI_TOP_K: int = 50
    AI_TOP_P: float = 0.1
    AI_REPETITION_PENALTY: float = 1.05

    SYSTEM_PROMPT: str = DEFAULT_SYSTEM_PROMPT

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        # Set derived paths
        if self.MODELS_DIR is None:
            self.MODELS_DIR = self.DATA_DIR / "models"

    def ensure_directories(self) -> None:
        """Create required directories."""
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)
        self.MODELS_DIR.mkdir(parents=True, exist_ok=True)

    model_config = {"env_prefix": "HARBOR_", "env_file": ".env"}


settings = Settings()
