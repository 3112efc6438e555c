"""Assistant error hierarchy.

Model acquisition and inference raise these; the HTTP layer maps them to
status codes. Where an operation reports failures as values (manifest fetch,
download jobs) the same classes are used as the value.
"""


class AssistantError(Exception):
    """Base error for the assistant core."""

    default_message = "Assistant error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def reason(self) -> str:
        return str(self)


class NetworkFailure(AssistantError):
    """Manifest fetch or model download transport error."""

    default_message = "Network error occurred"


class ValidationFailure(AssistantError):
    """Malformed manifest or out-of-range parameters."""

    default_message = "Validation failed"


class ModelFailure(AssistantError):
    """Base model error."""

    default_message = "Model error occurred"


class ModelNotFoundFailure(ModelFailure):
    """Empty catalog, unknown model id or missing model file."""

    default_message = "Model not found"


class ModelDownloadFailure(ModelFailure):
    """Size mismatch, checksum mismatch or write error."""

    default_message = "Failed to download model"


class ModelLoadFailure(ModelFailure):
    """Corrupt file, incompatible format or out of memory."""

    default_message = "Failed to load model"


class InferenceFailure(AssistantError):
    """Generation-time runtime error."""

    default_message = "Inference failed"


class EngineStateError(InferenceFailure):
    """Operation is not valid in the engine's current phase."""

    default_message = "Engine is not in a valid state for this operation"


class EngineBusyError(EngineStateError):
    """A generation is already in flight."""

    default_message = "A generation is already in progress"
