"""Speech output session: narrates one text at a time through a backend.

The session owns the voice catalog and the single in-flight utterance.
Every ``speak()`` or ``stop()`` bumps a generation counter; callbacks
from an utterance of an older generation are ignored, so a cancelled
narration can never report an end or an error after the fact.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from storyvoice.config import (
    DEFAULT_LANGUAGE,
    DEFAULT_NARRATION_PITCH,
    DEFAULT_NARRATION_RATE,
    DEFAULT_NARRATION_VOLUME,
    PREVIEW_TEXT,
    PREVIEW_TIMEOUT,
    PROBE_TIMEOUT,
    VOICE_LOAD_ATTEMPTS,
    VOICE_LOAD_INTERVAL,
)
from storyvoice.tts.backend import NarrationBackend, Utterance
from storyvoice.tts.types import (
    NarrationError,
    SynthesisErrorCode,
    TTSState,
    Voice,
    classify_synthesis_error,
)

logger = logging.getLogger(__name__)


class SpeechOutputSession:
    """Narrates exactly one text at a time and tracks the voice catalog."""

    def __init__(
        self,
        backend: NarrationBackend,
        *,
        voice_load_attempts: int = VOICE_LOAD_ATTEMPTS,
        voice_load_interval: float = VOICE_LOAD_INTERVAL,
        probe_timeout: float = PROBE_TIMEOUT,
        preview_timeout: float = PREVIEW_TIMEOUT,
        default_language: str = DEFAULT_LANGUAGE,
    ) -> None:
        self._backend = backend
        self._voice_load_attempts = voice_load_attempts
        self._voice_load_interval = voice_load_interval
        self._probe_timeout = probe_timeout
        self._preview_timeout = preview_timeout
        self._default_language = default_language

        self._voices: list[Voice] = []
        self._catalog_task: asyncio.Task | None = None
        self._catalog_changed = asyncio.Event()
        self._subscribed: bool = False

        self._generation: int = 0
        self._pending: asyncio.Future | None = None

    async def open(self) -> None:
        """Start the backend and begin loading its voice catalog."""
        await self._backend.start()
        self._subscribe()
        if self._catalog_task is None:
            self._catalog_task = asyncio.create_task(self._resolve_catalog())
        logger.info("Speech output session opened (state=%s)", self.state.value)

    async def close(self) -> None:
        """Cancel narration and shut the backend down."""
        self.stop()
        if self._catalog_task is not None and not self._catalog_task.done():
            self._catalog_task.cancel()
            try:
                await self._catalog_task
            except asyncio.CancelledError:
                pass
        self._catalog_task = None
        await self._backend.stop()
        logger.info("Speech output session closed")

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> TTSState:
        if self.is_speaking:
            return TTSState.SPEAKING
        if self._backend.is_available:
            return TTSState.ACTIVE
        return TTSState.DISABLED

    @property
    def is_speaking(self) -> bool:
        return self._pending is not None and not self._pending.done()

    @property
    def voices(self) -> list[Voice]:
        return list(self._voices)

    @property
    def backend_name(self) -> str:
        return self._backend.backend_name

    # ------------------------------------------------------------------
    # Voice catalog
    # ------------------------------------------------------------------

    async def load_voices(self) -> list[Voice]:
        """Wait for the catalog to resolve and return it.

        Resolves with the first non-empty catalog seen by polling or via a
        change notification, or with an empty list once the retry budget
        is spent.
        """
        self._subscribe()
        if self._catalog_task is None:
            self._catalog_task = asyncio.create_task(self._resolve_catalog())
        return await asyncio.shield(self._catalog_task)

    def voices_by_language(self, language: str) -> list[Voice]:
        prefix = language.lower()
        return [voice for voice in self._voices if voice.lang.lower().startswith(prefix)]

    def find_best_voice(
        self, language: str | None = None, name: str | None = None
    ) -> Voice | None:
        """Pick a voice: same language, then name match, then local, then first."""
        if not self._voices:
            return None

        candidates = self._voices
        if language:
            same_language = self.voices_by_language(language)
            if not same_language:
                same_language = self.voices_by_language(language.split("-")[0])
            if same_language:
                candidates = same_language

        if name:
            wanted = name.lower()
            for voice in candidates:
                if wanted in voice.name.lower():
                    return voice

        for voice in candidates:
            if voice.local_service:
                return voice
        return candidates[0]

    def _subscribe(self) -> None:
        if not self._subscribed:
            self._backend.on_voices_changed(self._handle_catalog_changed)
            self._subscribed = True

    def _handle_catalog_changed(self) -> None:
        voices = self._backend.get_voices()
        if voices:
            self._voices = list(voices)
        logger.debug("Voice catalog changed (%d voices)", len(voices))
        self._catalog_changed.set()

    async def _resolve_catalog(self) -> list[Voice]:
        for attempt in range(self._voice_load_attempts):
            voices = self._backend.get_voices()
            if voices:
                self._voices = list(voices)
                logger.info(
                    "Loaded %d narration voices (attempt %d)", len(voices), attempt + 1
                )
                return self.voices
            self._catalog_changed.clear()
            try:
                await asyncio.wait_for(
                    self._catalog_changed.wait(), timeout=self._voice_load_interval
                )
            except asyncio.TimeoutError:
                continue

        voices = self._backend.get_voices()
        self._voices = list(voices)
        if not voices:
            logger.warning(
                "No narration voices after %d attempts — using the engine default",
                self._voice_load_attempts,
            )
        return self.voices

    def _resolve_voice(self, requested: Voice | None) -> Voice | None:
        language = self._default_language
        if requested is not None:
            for voice in self._voices:
                if voice.voice_id == requested.voice_id:
                    return voice
            logger.info("Voice %r is no longer available — choosing another", requested.name)
            language = requested.lang or language
        return self.find_best_voice(language=language)

    # ------------------------------------------------------------------
    # Narration
    # ------------------------------------------------------------------

    async def speak(
        self,
        text: str,
        voice: Voice | None = None,
        *,
        rate: float = DEFAULT_NARRATION_RATE,
        volume: float = DEFAULT_NARRATION_VOLUME,
        pitch: float = DEFAULT_NARRATION_PITCH,
        on_start: Callable[[], None] | None = None,
        on_end: Callable[[], None] | None = None,
        on_error: Callable[[NarrationError], None] | None = None,
    ) -> bool:
        """Narrate *text*, replacing any narration in flight.

        Returns ``True`` once the narration finished and ``False`` if it
        was stopped or superseded.  Raises :class:`NarrationError` (after
        calling *on_error*) when the engine fails.
        """
        self.stop()
        generation = self._generation

        await self.load_voices()
        if generation != self._generation:
            logger.debug("Narration superseded while loading voices")
            return False

        done: asyncio.Future[bool] = asyncio.get_running_loop().create_future()

        def _is_current() -> bool:
            return generation == self._generation and not done.done()

        def _started() -> None:
            if _is_current() and on_start:
                on_start()

        def _ended() -> None:
            if not _is_current():
                return
            self._pending = None
            done.set_result(True)
            if on_end:
                on_end()

        def _failed(engine_code: str) -> None:
            if not _is_current():
                return
            self._pending = None
            error = NarrationError.from_engine_code(engine_code)
            if error.code == SynthesisErrorCode.CANCELED:
                done.set_result(False)
                return
            logger.warning("Narration failed: %s", error.message)
            done.set_exception(error)
            if on_error:
                on_error(error)

        utterance = Utterance(
            text=text,
            voice=self._resolve_voice(voice),
            rate=rate,
            pitch=pitch,
            volume=volume,
            on_start=_started,
            on_end=_ended,
            on_error=_failed,
        )
        self._pending = done
        try:
            self._backend.speak(utterance)
        except Exception as exc:
            self._pending = None
            error = NarrationError(SynthesisErrorCode.SYNTHESIS_FAILED, cause=exc)
            logger.warning("Narration engine refused utterance", exc_info=True)
            if on_error:
                on_error(error)
            raise error from exc

        logger.info(
            "Narrating %d chars (voice=%s, rate=%.2f)",
            len(text),
            utterance.voice.name if utterance.voice else "default",
            rate,
        )
        return await done

    def stop(self) -> None:
        """Cancel the narration in flight.  Safe to call at any time."""
        self._generation += 1
        pending, self._pending = self._pending, None
        self._backend.cancel()
        if pending is not None and not pending.done():
            pending.set_result(False)
            logger.info("Narration stopped")

    async def preview(
        self, voice: Voice | None = None, text: str = PREVIEW_TEXT
    ) -> bool:
        """Speak a short sample, giving up after the preview timeout."""
        try:
            return await asyncio.wait_for(
                self.speak(text, voice), timeout=self._preview_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Voice preview timed out after %.1fs", self._preview_timeout)
            self.stop()
            return False

    async def probe(self) -> bool:
        """Check, silently, whether the engine is currently allowed to narrate.

        Speaks an empty zero-volume utterance and reports ``False`` only
        when the engine refuses with ``not-allowed`` or does not answer
        within the probe timeout.
        """
        if self.is_speaking or self._backend.is_speaking:
            return True

        answer: asyncio.Future[bool] = asyncio.get_running_loop().create_future()

        def _resolve(value: bool) -> None:
            if not answer.done():
                answer.set_result(value)

        def _started() -> None:
            self._backend.cancel()
            _resolve(True)

        def _failed(engine_code: str) -> None:
            _resolve(classify_synthesis_error(engine_code) != SynthesisErrorCode.NOT_ALLOWED)

        probe = Utterance(
            text="",
            volume=0.0,
            on_start=_started,
            on_end=lambda: _resolve(True),
            on_error=_failed,
        )
        try:
            self._backend.speak(probe)
        except Exception:
            logger.debug("Narration probe refused by engine", exc_info=True)
            return False

        try:
            return await asyncio.wait_for(answer, timeout=self._probe_timeout)
        except asyncio.TimeoutError:
            logger.info("Narration probe timed out after %.1fs", self._probe_timeout)
            if self._pending is None:
                self._backend.cancel()
            return False
