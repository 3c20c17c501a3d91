"""Speech input session: at most one recognition run at a time.

Each run gets a generation number.  Callbacks from a run that was
aborted or superseded carry a stale generation and are dropped, so a
late engine event can never leak into the caller after ``abort()``.
"""

from __future__ import annotations

import logging
from typing import Callable

from storyvoice.config import DEFAULT_LANGUAGE
from storyvoice.stt.backend import RecognitionBackend
from storyvoice.stt.types import (
    RecognitionConfig,
    RecognitionError,
    RecognitionErrorCode,
    RecognitionEvent,
    STTState,
)

logger = logging.getLogger(__name__)

# Engines that report no confidence for a final result are trusted this much.
_DEFAULT_CONFIDENCE = 0.5

_SUPPORTED_LANGUAGES: tuple[str, ...] = (
    "en-US", "en-GB", "en-AU", "en-CA", "en-IN",
    "es-ES", "es-MX", "fr-FR", "de-DE", "it-IT",
    "pt-BR", "ru-RU", "ja-JP", "ko-KR", "zh-CN",
    "zh-TW", "ar-SA", "hi-IN", "th-TH", "sv-SE",
    "no-NO", "da-DK", "fi-FI", "pl-PL", "tr-TR",
)

ResultCallback = Callable[[str, float, bool], None]
ErrorCallback = Callable[[RecognitionError], None]


class _RunListener:
    """Routes backend events for one run back into the session."""

    def __init__(
        self,
        session: SpeechInputSession,
        generation: int,
        on_result: ResultCallback,
        on_error: ErrorCallback | None,
        on_end: Callable[[], None] | None,
        on_start: Callable[[], None] | None,
    ) -> None:
        self._session = session
        self._generation = generation
        self._on_result = on_result
        self._on_error = on_error
        self._on_end = on_end
        self._on_start = on_start

    @property
    def _current(self) -> bool:
        return self._session._generation == self._generation

    def on_start(self) -> None:
        if self._current and self._on_start:
            self._on_start()

    def on_result(self, event: RecognitionEvent) -> None:
        if not self._current:
            logger.debug("Dropping result from stale recognition run")
            return
        reported = transcript_from_event(event)
        if reported is None:
            return
        transcript, confidence, is_final = reported
        logger.debug(
            "Transcript (%s, %.2f): %s",
            "final" if is_final else "interim",
            confidence,
            transcript,
        )
        self._on_result(transcript, confidence, is_final)

    def on_error(self, code: str, message: str | None = None) -> None:
        if not self._current:
            return
        error = RecognitionError.from_engine_code(code, message)
        logger.warning("Speech recognition error: %s (%s)", error.code.value, message or code)
        self._session._listening = False
        if self._on_error:
            self._on_error(error)

    def on_end(self) -> None:
        if not self._current:
            return
        self._session._listening = False
        logger.info("Recognition run ended")
        if self._on_end:
            self._on_end()


def transcript_from_event(event: RecognitionEvent) -> tuple[str, float, bool] | None:
    """Fold the new results of *event* into one reportable transcript.

    Final segments are concatenated and their best confidence kept;
    interim segments are concatenated separately.  The final transcript
    wins when non-empty.  Returns ``(transcript, confidence, is_final)``
    or ``None`` when nothing but whitespace was heard.
    """
    final_text = ""
    interim_text = ""
    max_confidence = 0.0

    for result in event.results[event.result_index:]:
        if not result.alternatives:
            continue
        best = result.alternatives[0]
        if result.is_final:
            final_text += best.transcript
            confidence = best.confidence or _DEFAULT_CONFIDENCE
            max_confidence = max(max_confidence, confidence)
        else:
            interim_text += best.transcript

    if final_text.strip():
        return final_text.strip(), max_confidence, True
    if interim_text.strip():
        return interim_text.strip(), max_confidence, False
    return None


class SpeechInputSession:
    """Runs one recognition session at a time against a backend."""

    def __init__(self, backend: RecognitionBackend) -> None:
        self._backend = backend
        self._listening: bool = False
        self._generation: int = 0

    async def open(self) -> None:
        """Start the underlying engine."""
        await self._backend.start()
        logger.info("Speech input session opened (state=%s)", self.state.value)

    async def close(self) -> None:
        """Abort any run and shut the engine down."""
        self.abort()
        await self._backend.stop()
        logger.info("Speech input session closed")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> STTState:
        if self._listening:
            return STTState.LISTENING
        if self._backend.is_available:
            return STTState.ACTIVE
        return STTState.DISABLED

    @property
    def is_supported(self) -> bool:
        return self._backend.is_available

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def backend_name(self) -> str:
        return self._backend.backend_name

    @staticmethod
    def supported_languages() -> list[str]:
        """Common recognition language tags."""
        return list(_SUPPORTED_LANGUAGES)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start_listening(
        self,
        *,
        on_result: ResultCallback,
        on_error: ErrorCallback | None = None,
        on_end: Callable[[], None] | None = None,
        on_start: Callable[[], None] | None = None,
        language: str = DEFAULT_LANGUAGE,
        continuous: bool = False,
        interim_results: bool = True,
        max_alternatives: int = 3,
    ) -> None:
        """Begin a recognition run.

        Raises :class:`RecognitionError` when the engine is unavailable,
        a run is already active, or the engine refuses to start.
        """
        if not self._backend.is_available:
            raise RecognitionError(RecognitionErrorCode.NOT_SUPPORTED)
        if self._listening:
            raise RecognitionError(RecognitionErrorCode.ALREADY_LISTENING)

        self._generation += 1
        self._listening = True
        config = RecognitionConfig(
            language=language,
            continuous=continuous,
            interim_results=interim_results,
            max_alternatives=max_alternatives,
        )
        listener = _RunListener(
            self, self._generation, on_result, on_error, on_end, on_start
        )
        try:
            await self._backend.start_recognition(config, listener)
        except RecognitionError:
            self._listening = False
            raise
        except Exception as exc:
            self._listening = False
            raise RecognitionError(RecognitionErrorCode.GENERIC, cause=exc) from exc

        logger.info(
            "Listening (language=%s, continuous=%s)", config.language, config.continuous
        )

    def stop_listening(self) -> None:
        """Stop gracefully; the final result and ``on_end`` still arrive."""
        if not self._listening:
            return
        self._backend.stop_recognition()

    def abort(self) -> None:
        """Stop immediately and drop anything the run would still report."""
        if not self._listening:
            return
        self._generation += 1
        self._listening = False
        self._backend.abort_recognition()
        logger.info("Recognition aborted")
