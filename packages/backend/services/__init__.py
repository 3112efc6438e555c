"""Services layer.

Model acquisition (manifest, local store, downloads) and chat orchestration.
The llama.cpp runtime is imported lazily by the engine, so these import
without it installed.
"""

from .chat_session import ChatSession
from .downloads import DownloadCoordinator, DownloadJob, DownloadState
from .manifest import ManifestResolver, ModelCatalog, ModelDescriptor
from .model_store import ModelStore

__all__ = [
    "ChatSession",
    "DownloadCoordinator",
    "DownloadJob",
    "DownloadState",
    "ManifestResolver",
    "ModelCatalog",
    "ModelDescriptor",
    "ModelStore",
]
