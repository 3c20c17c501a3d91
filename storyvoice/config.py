"""Configuration constants and helpers for Storyvoice."""

import os
from pathlib import Path

DEFAULT_PORT: int = 7870

PACKAGE_DIR: Path = Path(__file__).resolve().parent
SAMPLE_STORY_PATH: Path = PACKAGE_DIR / "data" / "sample_story.json"

STORY_PATH: Path = Path(os.environ.get("STORYVOICE_STORY_PATH", str(SAMPLE_STORY_PATH)))


def get_port() -> int:
    """Return the server port from STORYVOICE_PORT, or DEFAULT_PORT."""
    raw = os.environ.get("STORYVOICE_PORT")
    if raw is None:
        return DEFAULT_PORT
    try:
        return int(raw)
    except ValueError:
        return DEFAULT_PORT


# --- Narration (speech output) ---

VOICE_LOAD_ATTEMPTS: int = int(os.environ.get("STORYVOICE_VOICE_LOAD_ATTEMPTS", "10"))
VOICE_LOAD_INTERVAL: float = float(
    os.environ.get("STORYVOICE_VOICE_LOAD_INTERVAL", "0.1")
)  # Seconds between voice catalog polls.

PROBE_TIMEOUT: float = float(os.environ.get("STORYVOICE_PROBE_TIMEOUT", "1.0"))
PREVIEW_TIMEOUT: float = float(os.environ.get("STORYVOICE_PREVIEW_TIMEOUT", "10.0"))
PREVIEW_TEXT: str = "Hello! This is how I will read your story."

DEFAULT_NARRATION_RATE: float = 0.9
DEFAULT_NARRATION_PITCH: float = 1.0
DEFAULT_NARRATION_VOLUME: float = 0.8

DEFAULT_LANGUAGE: str = os.environ.get("STORYVOICE_LANGUAGE", "en-US")


# --- Choice matching ---

MATCH_THRESHOLD: float = float(os.environ.get("STORYVOICE_MATCH_THRESHOLD", "0.3"))
VOICE_CHOICE_MIN_CONFIDENCE: float = float(
    os.environ.get("STORYVOICE_VOICE_CHOICE_MIN_CONFIDENCE", "0.5")
)  # A spoken match must score strictly above this to navigate.


# --- Error queue ---

ERROR_TTL: float = float(os.environ.get("STORYVOICE_ERROR_TTL", "5.0"))
MAX_ERRORS: int = int(os.environ.get("STORYVOICE_MAX_ERRORS", "10"))


# --- Persistence ---

STORAGE_NAMESPACE: str = os.environ.get("STORYVOICE_STORAGE_NAMESPACE", "audio-storybook")
STATE_PATH: Path = Path(
    os.environ.get("STORYVOICE_STATE_PATH", str(Path.home() / ".storyvoice" / "state.json"))
)


# --- ElevenLabs TTS configuration ---

ELEVENLABS_API_KEY: str = os.environ.get("STORYVOICE_ELEVENLABS_API_KEY", "")
ELEVENLABS_BASE_URL: str = os.environ.get(
    "STORYVOICE_ELEVENLABS_BASE_URL", "https://api.elevenlabs.io"
)
TTS_VOICE_ID: str = os.environ.get("STORYVOICE_TTS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
TTS_MODEL: str = os.environ.get("STORYVOICE_TTS_MODEL", "eleven_turbo_v2_5")
TTS_TIMEOUT: float = float(os.environ.get("STORYVOICE_TTS_TIMEOUT", "10.0"))
TTS_HEALTH_CHECK_INTERVAL: float = float(
    os.environ.get("STORYVOICE_TTS_HEALTH_CHECK_INTERVAL", "60.0")
)


# --- Whisper STT configuration ---

STT_API_KEY: str = os.environ.get("STORYVOICE_STT_API_KEY", "")
STT_BASE_URL: str = os.environ.get("STORYVOICE_STT_BASE_URL", "https://api.openai.com")
STT_MODEL: str = os.environ.get("STORYVOICE_STT_MODEL", "whisper-1")
STT_TIMEOUT: float = float(os.environ.get("STORYVOICE_STT_TIMEOUT", "10.0"))
STT_HEALTH_CHECK_INTERVAL: float = float(
    os.environ.get("STORYVOICE_STT_HEALTH_CHECK_INTERVAL", "60.0")
)


# --- Audio pipeline configuration ---

AUDIO_SAMPLE_RATE: int = int(os.environ.get("STORYVOICE_AUDIO_SAMPLE_RATE", "16000"))

STT_LISTEN_TIMEOUT: float = float(
    os.environ.get("STORYVOICE_STT_LISTEN_TIMEOUT", "8.0")
)  # Seconds to wait for speech onset.
STT_MAX_RECORD_DURATION: float = float(
    os.environ.get("STORYVOICE_STT_MAX_RECORD_DURATION", "15.0")
)
STT_SILENCE_THRESHOLD: float = float(
    os.environ.get("STORYVOICE_STT_SILENCE_THRESHOLD", "0.01")
)  # RMS amplitude, 0.0-1.0.
STT_SILENCE_DURATION: float = float(
    os.environ.get("STORYVOICE_STT_SILENCE_DURATION", "1.2")
)
