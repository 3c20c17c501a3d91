"""Narration subsystem: output session, engines and voice catalog."""

from storyvoice.tts.backend import NarrationBackend, Utterance
from storyvoice.tts.narration_session import SpeechOutputSession
from storyvoice.tts.types import (
    NarrationError,
    SynthesisErrorCode,
    TTSState,
    Voice,
)

__all__ = [
    "NarrationBackend",
    "NarrationError",
    "SpeechOutputSession",
    "SynthesisErrorCode",
    "TTSState",
    "Utterance",
    "Voice",
]
