"""Inference engine adapter implementations.

LlamaCppEngine runs local GGUF models through llama-cpp-python.
"""

from .gguf import GgufFormatError, GgufHeader, read_gguf_header
from .llama_cpp import LlamaCppEngine, LlamaGenerationStream

__all__ = [
    "LlamaCppEngine",
    "LlamaGenerationStream",
    "GgufHeader",
    "GgufFormatError",
    "read_gguf_header",
]
