"""Pydantic models, enums and errors for the recognition subsystem."""

from enum import Enum

from pydantic import BaseModel, Field


class STTState(str, Enum):
    """Operational state of the recognition subsystem."""

    ACTIVE = "active"
    DISABLED = "disabled"
    LISTENING = "listening"


class MatchMethod(str, Enum):
    """Which rule produced a choice match."""

    KEYWORD = "keyword"
    TEXT = "text"
    KEYWORD_SIMILARITY = "keyword_similarity"
    WORD_OVERLAP = "word_overlap"


class MatchResult(BaseModel):
    """Best choice for a transcript.  Never persisted."""

    index: int
    confidence: float = Field(ge=0.0, le=1.0)
    method: MatchMethod


class RecognitionAlternative(BaseModel):
    transcript: str
    confidence: float | None = None


class RecognitionResult(BaseModel):
    """One recognized segment with its ranked alternatives."""

    alternatives: list[RecognitionAlternative] = Field(default_factory=list)
    is_final: bool = False


class RecognitionEvent(BaseModel):
    """A batch of results; entries from ``result_index`` on are new."""

    result_index: int = 0
    results: list[RecognitionResult] = Field(default_factory=list)


class RecognitionConfig(BaseModel):
    """Per-session recognition settings."""

    language: str = "en-US"
    continuous: bool = False
    interim_results: bool = True
    max_alternatives: int = 3


class RecognitionErrorCode(str, Enum):
    """Stable error classes surfaced to callers."""

    NOT_SUPPORTED = "not-supported"
    ALREADY_LISTENING = "already-listening"
    NOT_ALLOWED = "not-allowed"
    NETWORK = "network"
    NO_SPEECH = "no-speech"
    AUDIO_CAPTURE = "audio-capture"
    ABORTED = "aborted"
    GENERIC = "generic"


_ENGINE_CODES: dict[str, RecognitionErrorCode] = {
    "not-allowed": RecognitionErrorCode.NOT_ALLOWED,
    "service-not-allowed": RecognitionErrorCode.NOT_ALLOWED,
    "network": RecognitionErrorCode.NETWORK,
    "no-speech": RecognitionErrorCode.NO_SPEECH,
    "audio-capture": RecognitionErrorCode.AUDIO_CAPTURE,
    "aborted": RecognitionErrorCode.ABORTED,
    "not-supported": RecognitionErrorCode.NOT_SUPPORTED,
    "already-listening": RecognitionErrorCode.ALREADY_LISTENING,
}

_MESSAGES: dict[RecognitionErrorCode, str] = {
    RecognitionErrorCode.NOT_SUPPORTED: "Speech recognition not available",
    RecognitionErrorCode.ALREADY_LISTENING: "Already listening",
    RecognitionErrorCode.NOT_ALLOWED: (
        "Microphone access was denied. Please allow microphone access to use voice choices."
    ),
    RecognitionErrorCode.NETWORK: (
        "Network error during speech recognition. Please check your connection."
    ),
    RecognitionErrorCode.NO_SPEECH: "No speech was detected. Please try again.",
    RecognitionErrorCode.AUDIO_CAPTURE: "No microphone was found or it could not be opened.",
    RecognitionErrorCode.ABORTED: "Speech recognition was aborted.",
}


def classify_recognition_error(engine_code: str) -> RecognitionErrorCode:
    """Map a raw engine error code onto :class:`RecognitionErrorCode`."""
    return _ENGINE_CODES.get(engine_code, RecognitionErrorCode.GENERIC)


class RecognitionError(Exception):
    """A classified recognition failure with a human-readable message."""

    def __init__(
        self,
        code: RecognitionErrorCode,
        message: str | None = None,
        cause: object | None = None,
    ) -> None:
        self.code = code
        self.message = message or _MESSAGES.get(
            code, f"Speech recognition error: {code.value}"
        )
        self.cause = cause
        super().__init__(self.message)

    @classmethod
    def from_engine_code(
        cls, engine_code: str, detail: str | None = None
    ) -> "RecognitionError":
        code = classify_recognition_error(engine_code)
        message = None
        if code == RecognitionErrorCode.GENERIC:
            message = f"Speech recognition error: {engine_code}"
        return cls(code, message, cause=detail or engine_code)
