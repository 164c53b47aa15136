"""Error taxonomy shared by the HTTP layer, the queue, and the pipeline."""


class ScriptShiftError(Exception):
    """Base class for all application errors."""


class InputValidationError(ScriptShiftError):
    """Request rejected at the boundary; never enters the queue."""

    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(ScriptShiftError):
    """Unknown job or transcript. Returned to the caller, never retried."""


class ProviderError(ScriptShiftError, RuntimeError):
    """An external capability call failed or returned something unusable."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider

    def __str__(self) -> str:
        message = super().__str__()
        if self.provider:
            return f"{self.provider}: {message}"
        return message


class ProviderTimeoutError(ProviderError):
    """A bounded polling loop ran past its maximum wait."""


class CacheConsistencyError(ProviderError):
    """Stored data (JSON columns, cache values) could not be decoded."""


class MediaError(ProviderError):
    """ffmpeg or pydub failed while processing local media."""


class StageError(ScriptShiftError):
    """A pipeline stage failed; wraps the underlying cause with the stage name."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        detail = str(cause) or cause.__class__.__name__
        super().__init__(f"{stage} failed: {detail}")
        self.stage = stage
        self.cause = cause
