"""Types, enums and errors for the narration subsystem."""

from enum import Enum

from pydantic import BaseModel


class TTSState(str, Enum):
    """Operational state of the narration subsystem."""

    ACTIVE = "active"
    DISABLED = "disabled"
    SPEAKING = "speaking"


class Voice(BaseModel):
    """One entry of a narration engine's voice catalog."""

    voice_id: str
    name: str
    lang: str = ""
    local_service: bool = False
    default: bool = False


class SynthesisErrorCode(str, Enum):
    """Stable error classes surfaced to callers."""

    NOT_ALLOWED = "not-allowed"
    NETWORK = "network"
    CANCELED = "canceled"
    SYNTHESIS_FAILED = "synthesis-failed"


_ENGINE_CODES: dict[str, SynthesisErrorCode] = {
    "not-allowed": SynthesisErrorCode.NOT_ALLOWED,
    "network": SynthesisErrorCode.NETWORK,
    "canceled": SynthesisErrorCode.CANCELED,
    "interrupted": SynthesisErrorCode.CANCELED,
}

_MESSAGES: dict[SynthesisErrorCode, str] = {
    SynthesisErrorCode.NOT_ALLOWED: (
        "Speech synthesis blocked. Please press play to enable audio."
    ),
    SynthesisErrorCode.NETWORK: (
        "Network error during speech synthesis. Please check your connection."
    ),
    SynthesisErrorCode.CANCELED: "Speech synthesis was interrupted.",
}


def classify_synthesis_error(engine_code: str) -> SynthesisErrorCode:
    """Map a raw engine error code onto :class:`SynthesisErrorCode`."""
    return _ENGINE_CODES.get(engine_code, SynthesisErrorCode.SYNTHESIS_FAILED)


class NarrationError(Exception):
    """A classified narration failure with a human-readable message."""

    def __init__(
        self,
        code: SynthesisErrorCode,
        message: str | None = None,
        cause: object | None = None,
    ) -> None:
        self.code = code
        self.message = message or _MESSAGES.get(
            code, f"Speech synthesis error: {code.value}"
        )
        self.cause = cause
        super().__init__(self.message)

    @classmethod
    def from_engine_code(cls, engine_code: str) -> "NarrationError":
        code = classify_synthesis_error(engine_code)
        message = None
        if code == SynthesisErrorCode.SYNTHESIS_FAILED:
            message = f"Speech synthesis error: {engine_code}"
        return cls(code, message, cause=engine_code)
