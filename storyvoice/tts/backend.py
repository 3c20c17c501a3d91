"""Abstract narration engine capability.

All narration backends implement this interface.  The
:class:`~storyvoice.tts.narration_session.SpeechOutputSession` uses it to
narrate without knowing which engine is active.  Utterance callbacks
must be invoked on the event loop thread.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

from storyvoice.tts.types import Voice


@dataclass
class Utterance:
    """One request to speak, with its lifecycle callbacks.

    ``on_error`` receives the raw engine error code.
    """

    text: str
    voice: Voice | None = None
    rate: float = 1.0
    pitch: float = 1.0
    volume: float = 1.0
    on_start: Callable[[], None] | None = None
    on_end: Callable[[], None] | None = None
    on_error: Callable[[str], None] | None = None


class NarrationBackend(ABC):
    """Abstract base class for narration engines.

    ``speak`` returns immediately; progress is reported through the
    utterance callbacks.  ``cancel`` must silence the engine before it
    returns and is a no-op when nothing is playing.  An utterance with
    empty text is accepted and reports start and end without sound.
    """

    @abstractmethod
    async def start(self) -> None:
        """Initialize the engine (HTTP clients, devices, voice catalog)."""

    @abstractmethod
    async def stop(self) -> None:
        """Shut down the engine and release resources."""

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Whether the engine is currently healthy and can narrate."""

    @property
    @abstractmethod
    def is_speaking(self) -> bool:
        """Whether an utterance is in flight."""

    @abstractmethod
    def get_voices(self) -> list[Voice]:
        """Return the voices known right now (may be empty while loading)."""

    @abstractmethod
    def on_voices_changed(self, callback: Callable[[], None]) -> None:
        """Register *callback* to run whenever the voice catalog changes."""

    @abstractmethod
    def speak(self, utterance: Utterance) -> None:
        """Queue *utterance* for narration."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop the in-flight utterance without firing its callbacks."""

    @property
    def backend_name(self) -> str:
        """Human-readable engine name for health/status display."""
        return type(self).__name__
