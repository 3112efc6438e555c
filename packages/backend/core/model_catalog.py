"""Embedded model manifest for local LLM inference.

Used whenever the remote manifest cannot be fetched or parsed, so a first run
without network still has one downloadable, recommended GGUF model.
"""

DEFAULT_MODEL_ID = "lfm25-1.2b-q4km"

DEFAULT_MANIFEST: dict = {
    "version": 1,
    "lastUpdated": "2025-01-15T00:00:00Z",
    "recommendedModelId": DEFAULT_MODEL_ID,
    "models": [
        {
            "id": DEFAULT_MODEL_ID,
            "name": "LFM2.5 1.2B",
            "description": (
                "Compact and efficient model for mobile devices. "
                "Great balance of quality and speed."
            ),
            "repo": "LiquidAI/LFM2.5-1.2B-Instruct-GGUF",
            "fileName": "LFM2.5-1.2B-Instruct-Q4_K_M.gguf",
            "sizeBytes": 730_000_000,
            "quantization": "q4_k_m",
            "contextLength": 32768,
            "recommended": True,
            "tags": ["chat", "multilingual"],
        },
    ],
}
