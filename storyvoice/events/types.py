"""Pydantic models for Storyvoice engine events and reported errors."""

import time
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class EngineEventType(str, Enum):
    """Types of events emitted by the engine coordinator."""

    NODE_ENTERED = "node_entered"
    CHOICE_MADE = "choice_made"
    STORY_COMPLETED = "story_completed"
    PROGRESS_SAVED = "progress_saved"
    ERROR_REPORTED = "error_reported"
    TRANSCRIPT = "transcript"
    PLAYBACK_CHANGED = "playback_changed"
    LISTENING_CHANGED = "listening_changed"


class ErrorType(str, Enum):
    """Categories of errors surfaced to the presentation layer."""

    TTS_ERROR = "TTS_ERROR"
    STT_ERROR = "STT_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    STORY_ERROR = "STORY_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"


class AppError(BaseModel):
    """A reported, human-readable error with its raw cause."""

    type: ErrorType
    message: str
    details: str | None = None
    timestamp: float = Field(default_factory=time.time)
    error_id: str = Field(default_factory=lambda: str(uuid4()))


class EngineEvent(BaseModel):
    """A single event flowing from the coordinator to its observers.

    Fields beyond ``type`` and ``timestamp`` are populated by event type:
      - node_entered / story_completed: node_id, ending_type
      - choice_made: node_id (origin), choice_id, next_node_id, via_voice
      - transcript: transcript, confidence, is_final
      - playback_changed: playing
      - listening_changed: listening
      - error_reported: error
    """

    type: EngineEventType
    timestamp: float = Field(default_factory=time.time)
    event_id: str = Field(default_factory=lambda: str(uuid4()))

    node_id: str | None = None
    ending_type: str | None = None

    choice_id: str | None = None
    next_node_id: str | None = None
    via_voice: bool | None = None

    transcript: str | None = None
    confidence: float | None = None
    is_final: bool | None = None

    playing: bool | None = None
    listening: bool | None = None

    error: AppError | None = None
