"""Pydantic models for stories, progress records and user preferences.

Story documents are authored with camelCase keys (``startNode``,
``nextNode``, ``isEnding``); the models expose snake_case attributes and
accept either spelling on input.
"""

import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _StoryModel(BaseModel):
    """Base for story document models (camelCase aliases, immutable)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


# ---------------------------------------------------------------------------
# Story document
# ---------------------------------------------------------------------------


class Choice(_StoryModel):
    """A labeled edge from one node to another."""

    id: str
    text: str
    keywords: list[str] = Field(default_factory=list)
    next_node: str
    consequence: str = ""


class AudioData(_StoryModel):
    background: str = ""
    voice: str = ""


class Atmosphere(_StoryModel):
    mood: str = ""
    lighting: str = ""
    sounds: list[str] = Field(default_factory=list)


class StoryNode(_StoryModel):
    """One narrative unit with text and outgoing choices."""

    id: str
    title: str = ""
    text: str
    choices: list[Choice] = Field(default_factory=list)
    is_ending: bool = False
    ending_type: str | None = None
    audio_data: AudioData | None = None
    atmosphere: Atmosphere | None = None


class VoiceSettings(_StoryModel):
    rate: float = 0.9
    pitch: float = 1.0
    volume: float = 0.8


class ChoiceSettings(_StoryModel):
    timeout_ms: int = 30000
    allow_voice_input: bool = True
    fuzzy_matching: bool = True


class AtmosphereSettings(_StoryModel):
    enable_background_sounds: bool = False
    sound_volume: float = 0.5
    enable_visual_effects: bool = True


class StorySettings(_StoryModel):
    voice_settings: VoiceSettings = Field(default_factory=VoiceSettings)
    choices: ChoiceSettings = Field(default_factory=ChoiceSettings)
    atmosphere: AtmosphereSettings = Field(default_factory=AtmosphereSettings)


class Story(_StoryModel):
    """A read-only story graph plus its metadata."""

    title: str
    description: str = ""
    author: str = ""
    version: str = "1.0"
    start_node: str
    nodes: dict[str, StoryNode]
    settings: StorySettings = Field(default_factory=StorySettings)


# ---------------------------------------------------------------------------
# Progress
# ---------------------------------------------------------------------------


class ChoiceRecord(BaseModel):
    """One entry in the choice history."""

    node_id: str
    choice_id: str
    timestamp: float = Field(default_factory=time.time)


class Progress(BaseModel):
    """Where the reader is and has been in the story."""

    current_node_id: str
    visited_nodes: list[str] = Field(default_factory=list)
    choice_history: list[ChoiceRecord] = Field(default_factory=list)
    consequences: list[str] = Field(default_factory=list)
    choices_made: list[str] = Field(default_factory=list)
    start_time: float = Field(default_factory=time.time)
    last_save_time: float = Field(default_factory=time.time)
    total_play_time: float = 0.0
    voice_commands_used: int = 0


# ---------------------------------------------------------------------------
# Preferences
# ---------------------------------------------------------------------------


class FontSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class Preferences(BaseModel):
    """User-mutable playback, recognition and display preferences."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    narration_enabled: bool = True
    recognition_enabled: bool = True
    volume: float = Field(default=0.8, ge=0.0, le=1.0)
    autoplay: bool = True
    dark_mode: bool = True
    reduced_motion: bool = False
    font_size: FontSize = FontSize.MEDIUM
    narration_rate: float = Field(default=1.0, gt=0.0, le=10.0)
    narration_volume: float = Field(default=0.8, ge=0.0, le=1.0)
    recognition_language: str = "en-US"
    continuous_recognition: bool = False


# ---------------------------------------------------------------------------
# Persisted snapshot
# ---------------------------------------------------------------------------


class VoiceIdentity(BaseModel):
    """Enough of a voice to find it again in a freshly loaded catalog."""

    name: str
    lang: str = ""


class PersistedState(BaseModel):
    """The tuple written to the key/value store."""

    progress: Progress | None = None
    preferences: Preferences = Field(default_factory=Preferences)
    selected_voice: VoiceIdentity | None = None
    saved_at: float = Field(default_factory=time.time)
