"""Core configuration, interfaces, and service factory.

This module provides the foundation of the assistant:
- Settings: Application configuration
- Interfaces: Contracts for the inference engine and conversation storage
- Errors: The assistant error hierarchy
- Factory: Builds the service container (import from core.factory)
"""

from .config import Settings, settings
from .errors import (
    AssistantError,
    EngineBusyError,
    EngineStateError,
    InferenceFailure,
    ModelDownloadFailure,
    ModelFailure,
    ModelLoadFailure,
    ModelNotFoundFailure,
    NetworkFailure,
    ValidationFailure,
)

__all__ = [
    # Configuration
    "Settings",
    "settings",
    # Errors
    "AssistantError",
    "NetworkFailure",
    "ValidationFailure",
    "ModelFailure",
    "ModelNotFoundFailure",
    "ModelDownloadFailure",
    "ModelLoadFailure",
    "InferenceFailure",
    "EngineStateError",
    "EngineBusyError",
]
