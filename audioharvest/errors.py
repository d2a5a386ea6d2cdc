from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from .models import ExtractionAttempt


class ConversionError(RuntimeError):
    """Friendly failure surfaced to callers, tagged with a stable kind."""

    kind = "SERVER_ERROR"

    def __init__(self, user_message: str, *, kind: Optional[str] = None) -> None:
        super().__init__(user_message)
        self.user_message = user_message
        if kind:
            self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind}: {self.user_message}"


class InputError(ConversionError):
    """Rejected before any subprocess work is attempted."""

    kind = "NO_INPUT"


class ExtractionError(ConversionError):
    kind = "VIDEO_UNAVAILABLE"

    def __init__(
        self,
        user_message: str,
        *,
        kind: Optional[str] = None,
        attempts: Optional[List["ExtractionAttempt"]] = None,
        raw_output: str = "",
    ) -> None:
        super().__init__(user_message, kind=kind)
        self.attempts = list(attempts or [])
        self.raw_output = raw_output


class PipeError(ConversionError):
    """The streaming fast path failed; callers fall back to the discrete flow."""

    kind = "PIPE_FAILED"

    def __init__(self, user_message: str, *, stderr: str = "") -> None:
        super().__init__(user_message)
        self.stderr = stderr


class PipeTimeoutError(PipeError):
    kind = "PIPE_TIMEOUT"

    def __init__(self, user_message: str, *, reason: str, stderr: str = "") -> None:
        super().__init__(user_message, stderr=stderr)
        self.reason = reason


class TranscodeError(ConversionError):
    kind = "TRANSCODE_FAILED"


class CacheWriteError(ConversionError):
    kind = "CACHE_WRITE_FAILED"


class ToolMissingError(ConversionError):
    kind = "SERVER_ERROR"
