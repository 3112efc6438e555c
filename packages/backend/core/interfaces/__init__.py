"""Core interfaces for the adapter pattern.

These interfaces define contracts that allow swapping the inference runtime
and the conversation storage without touching the chat orchestration.
"""

from .chat import (
    ChatStreamChunk,
    ConversationTurn,
    IHistoryProvider,
    IReplySink,
    Role,
)
from .inference import (
    EnginePhase,
    EngineState,
    GenerationParams,
    IGenerationStream,
    IInferenceEngine,
    LoadConfig,
    ProgressCallback,
    StateListener,
)

__all__ = [
    # Chat
    "Role",
    "ConversationTurn",
    "ChatStreamChunk",
    "IHistoryProvider",
    "IReplySink",
    # Inference
    "IInferenceEngine",
    "IGenerationStream",
    "EnginePhase",
    "EngineState",
    "LoadConfig",
    "GenerationParams",
    "ProgressCallback",
    "StateListener",
]
