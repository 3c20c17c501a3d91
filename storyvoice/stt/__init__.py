"""Speech recognition subsystem: input session, engines and choice matching."""

from storyvoice.stt.backend import RecognitionBackend, RecognitionListener
from storyvoice.stt.choice_matcher import ChoiceMatcher, similarity
from storyvoice.stt.recognition_session import SpeechInputSession
from storyvoice.stt.types import (
    MatchMethod,
    MatchResult,
    RecognitionConfig,
    RecognitionError,
    RecognitionErrorCode,
    RecognitionEvent,
    STTState,
)

__all__ = [
    "ChoiceMatcher",
    "MatchMethod",
    "MatchResult",
    "RecognitionBackend",
    "RecognitionConfig",
    "RecognitionError",
    "RecognitionErrorCode",
    "RecognitionEvent",
    "RecognitionListener",
    "STTState",
    "SpeechInputSession",
    "similarity",
]
