"""
Exceptions raised by the training session core and its collaborators.

They live under trainer.core so the services, the orchestrator and the API
layer share one set of types without circular imports.
"""
from enum import Enum


class TrainingError(Exception):
    """Base class for all training session errors."""


class ValidationError(TrainingError):
    """
    Raised when a turn is rejected before it reaches the transcript
    (empty text, unknown sender).
    """


class SessionNotFoundError(TrainingError):
    """Raised when no live or persisted session matches the given id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class ConversationGenerationError(TrainingError):
    """Raised when the language model cannot produce the client's next reply."""


class EvaluationScoringError(TrainingError):
    """Raised when the remote scorer fails or returns unusable data."""


class SpeechSynthesisError(TrainingError):
    """Raised when text-to-speech synthesis fails."""


class PlaybackError(TrainingError):
    """Raised by a playback sink when audio cannot be played (e.g. autoplay blocked)."""


class CaptureErrorKind(str, Enum):
    NO_SPEECH = "no_speech"
    PERMISSION_DENIED = "permission_denied"
    OTHER = "other"


class CaptureError(TrainingError):
    """
    Raised or reported by a capture source.

    The kind decides recovery: no_speech restarts silently, permission_denied
    needs the user to act before capture can resume.
    """

    def __init__(self, kind: CaptureErrorKind, details: str = ""):
        self.kind = kind
        self.details = details
        msg = f"Speech capture error: {kind.value}"
        if details:
            msg += f" ({details})"
        super().__init__(msg)

    @classmethod
    def from_code(cls, code: str, details: str = "") -> "CaptureError":
        """Map browser speech-recognition error codes onto a CaptureError."""
        normalized = (code or "").replace("-", "_").lower()
        if normalized in ("no_speech", "aborted"):
            return cls(CaptureErrorKind.NO_SPEECH, details)
        if normalized in ("not_allowed", "permission_denied", "service_not_allowed"):
            return cls(CaptureErrorKind.PERMISSION_DENIED, details)
        return cls(CaptureErrorKind.OTHER, details or code)
