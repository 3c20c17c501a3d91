"""Abstract recognition engine capability.

A backend wraps one platform speech-recognition engine.  The
:class:`~storyvoice.stt.recognition_session.SpeechInputSession` drives it
and never touches engine specifics, so tests can plug in an in-memory
fake.  All listener callbacks must be invoked on the event loop thread.
"""

from abc import ABC, abstractmethod
from typing import Protocol

from storyvoice.stt.types import RecognitionConfig, RecognitionEvent


class RecognitionListener(Protocol):
    """Receives the events of one recognition run."""

    def on_start(self) -> None: ...

    def on_result(self, event: RecognitionEvent) -> None: ...

    def on_error(self, code: str, message: str | None = None) -> None: ...

    def on_end(self) -> None: ...


class RecognitionBackend(ABC):
    """Abstract base class for recognition engines.

    Contract:
    - ``start_recognition`` begins one run and returns once it is under
      way; results, errors and the final ``on_end`` arrive through the
      listener.  An error is followed by ``on_end``.
    - ``stop_recognition`` ends the run gracefully: audio already heard is
      still transcribed and delivered before ``on_end``.
    - ``abort_recognition`` discards in-flight audio; the backend may skip
      further callbacks.
    - Both stop and abort are no-ops when nothing is running.
    """

    @abstractmethod
    async def start(self) -> None:
        """Initialize the engine (devices, HTTP clients, health checks)."""

    @abstractmethod
    async def stop(self) -> None:
        """Shut down the engine and release resources."""

    @property
    @abstractmethod
    def is_available(self) -> bool:
        """Whether the engine can currently recognize speech."""

    @abstractmethod
    async def start_recognition(
        self, config: RecognitionConfig, listener: RecognitionListener
    ) -> None:
        """Begin a recognition run.  Raises on immediate failure."""

    @abstractmethod
    def stop_recognition(self) -> None:
        """Finish the current run, flushing its final result."""

    @abstractmethod
    def abort_recognition(self) -> None:
        """Cancel the current run without delivering a result."""

    @property
    def backend_name(self) -> str:
        """Human-readable engine name for health/status display."""
        return type(self).__name__
