"""Engine coordinator: ties narration, recognition and navigation together.

The coordinator is the single writer of the story progress.  It owns the
playback and listening flags, turns transcripts into choices through the
matcher, restarts narration whenever the current node changes, persists
durable state after every change and reports every failure as an
:class:`AppError` instead of raising it.

Late callbacks are filtered by two generation counters, one per channel:
turning playback or listening off bumps the counter, so a narration end
or a transcript from the superseded run can no longer change any state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from functools import partial
from typing import Any

from storyvoice.config import DEFAULT_NARRATION_PITCH, VOICE_CHOICE_MIN_CONFIDENCE
from storyvoice.engine.error_queue import ErrorQueue
from storyvoice.events.event_bus import EventBus
from storyvoice.events.types import AppError, EngineEvent, EngineEventType, ErrorType
from storyvoice.storage.state_store import MemoryStore, StateRepository, StorageError
from storyvoice.story.errors import StoryError
from storyvoice.story.navigator import NavigationState, StoryNavigator
from storyvoice.story.types import (
    Choice,
    PersistedState,
    Preferences,
    Progress,
    Story,
    StoryNode,
    VoiceIdentity,
)
from storyvoice.stt.choice_matcher import ChoiceMatcher
from storyvoice.stt.recognition_session import SpeechInputSession
from storyvoice.stt.types import RecognitionError
from storyvoice.tts.narration_session import SpeechOutputSession
from storyvoice.tts.types import NarrationError, Voice

logger = logging.getLogger(__name__)

# Preference fields that change how the current node is narrated.
_NARRATION_FIELDS = ("narration_rate", "narration_volume")


class EngineCoordinator:
    """Drives one story through the two speech sessions."""

    def __init__(
        self,
        narration: SpeechOutputSession,
        recognition: SpeechInputSession,
        *,
        repository: StateRepository | None = None,
        event_bus: EventBus[EngineEvent] | None = None,
        matcher: ChoiceMatcher | None = None,
        errors: ErrorQueue | None = None,
        min_voice_confidence: float = VOICE_CHOICE_MIN_CONFIDENCE,
    ) -> None:
        self._narration = narration
        self._recognition = recognition
        self._repository = repository or StateRepository(MemoryStore())
        self._event_bus: EventBus[EngineEvent] = event_bus or EventBus()
        self._matcher = matcher or ChoiceMatcher()
        self._errors = errors or ErrorQueue()
        self._min_voice_confidence = min_voice_confidence

        self._navigator = StoryNavigator()
        self._preferences = Preferences()
        self._selected_voice: Voice | None = None
        self._saved_voice: VoiceIdentity | None = None
        self._saved_progress: Progress | None = None

        self._playing: bool = False
        self._listening: bool = False
        self._transcript: str = ""
        self._confidence: float = 0.0

        self._playback_generation: int = 0
        self._listen_generation: int = 0
        self._narration_task: asyncio.Task | None = None
        self._voice_task: asyncio.Task | None = None
        self._pending: set[asyncio.Task] = set()
        self._play_clock: float = time.monotonic()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open both sessions and restore persisted state."""
        await self._narration.open()
        await self._recognition.open()
        self._restore_persisted()
        self._voice_task = asyncio.create_task(self._init_voices())
        logger.info(
            "Engine started (narration=%s, recognition=%s)",
            self._narration.state.value,
            self._recognition.state.value,
        )

    async def stop(self) -> None:
        """Silence everything, save, and close both sessions."""
        self._silence()
        tasks = [t for t in (self._voice_task, self._narration_task) if t is not None]
        tasks.extend(self._pending)
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._pending.clear()
        self._voice_task = None
        self._narration_task = None
        if self._navigator.progress is not None:
            self._persist()
        await self._recognition.close()
        await self._narration.close()
        logger.info("Engine stopped")

    async def drain(self) -> None:
        """Wait for voice-triggered commands that are still being applied."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def event_bus(self) -> EventBus[EngineEvent]:
        return self._event_bus

    @property
    def story(self) -> Story | None:
        return self._navigator.story

    @property
    def current_node(self) -> StoryNode | None:
        return self._navigator.current_node

    @property
    def progress(self) -> Progress | None:
        return self._navigator.progress

    @property
    def navigation_state(self) -> NavigationState:
        return self._navigator.state

    @property
    def preferences(self) -> Preferences:
        return self._preferences

    @property
    def is_playing(self) -> bool:
        return self._playing

    @property
    def is_listening(self) -> bool:
        return self._listening

    @property
    def transcript(self) -> str:
        return self._transcript

    @property
    def confidence(self) -> float:
        return self._confidence

    @property
    def errors(self) -> list[AppError]:
        return self._errors.errors()

    @property
    def voices(self) -> list[Voice]:
        return self._narration.voices

    @property
    def selected_voice(self) -> Voice | None:
        return self._selected_voice

    @property
    def narration(self) -> SpeechOutputSession:
        return self._narration

    @property
    def recognition(self) -> SpeechInputSession:
        return self._recognition

    def snapshot(self) -> dict[str, Any]:
        """Everything the presentation layer renders, as plain JSON data."""
        story = self.story
        node = self.current_node
        progress = self.progress
        return {
            "story": (
                {"title": story.title, "author": story.author, "version": story.version}
                if story
                else None
            ),
            "navigation_state": self.navigation_state.value,
            "current_node": node.model_dump(mode="json", by_alias=True) if node else None,
            "progress": progress.model_dump(mode="json") if progress else None,
            "preferences": self._preferences.model_dump(mode="json"),
            "is_playing": self._playing,
            "is_listening": self._listening,
            "transcript": self._transcript,
            "confidence": self._confidence,
            "errors": [error.model_dump(mode="json") for error in self.errors],
            "selected_voice": (
                self._selected_voice.model_dump(mode="json") if self._selected_voice else None
            ),
            "narration_state": self._narration.state.value,
            "recognition_state": self._recognition.state.value,
        }

    # ------------------------------------------------------------------
    # Story and navigation commands
    # ------------------------------------------------------------------

    async def load_story(self, story: Story, *, resume: bool = False) -> StoryNode:
        """Install *story*; with *resume*, continue from the saved progress."""
        node = self._navigator.load_story(story)
        saved, self._saved_progress = self._saved_progress, None
        if resume and saved is not None:
            try:
                node = self._navigator.resume(saved)
            except StoryError as exc:
                self._report(ErrorType.STORY_ERROR, f"Could not resume: {exc}", exc)
        self._play_clock = time.monotonic()
        logger.info("Loaded story %r at node %s", story.title, node.id)
        await self._after_navigation(node)
        return node

    async def set_current_node(self, node_id: str) -> bool:
        """Jump to *node_id*; an unknown id is reported and changes nothing."""
        try:
            node = self._navigator.goto_node(node_id)
        except StoryError as exc:
            self._report(ErrorType.STORY_ERROR, str(exc), exc)
            return False
        await self._after_navigation(node)
        return True

    async def make_choice(self, choice: Choice, *, via_voice: bool = False) -> bool:
        """Apply *choice* and move to its target node."""
        origin = self.current_node
        try:
            node = self._navigator.make_choice(choice)
        except StoryError as exc:
            self._report(ErrorType.STORY_ERROR, str(exc), exc)
            return False

        if via_voice:
            self._navigator.progress.voice_commands_used += 1
        self._publish(
            EngineEventType.CHOICE_MADE,
            node_id=origin.id if origin else None,
            choice_id=choice.id,
            next_node_id=node.id,
            via_voice=via_voice,
        )
        await self._after_navigation(node)
        return True

    async def select_choice(self, index: int) -> bool:
        """Apply the current node's choice at 0-based *index*, if there is one."""
        node = self.current_node
        if node is None or not 0 <= index < len(node.choices):
            logger.debug("No choice at index %d", index)
            return False
        return await self.make_choice(node.choices[index])

    async def restart(self) -> bool:
        """Start over at the start node with a fresh progress record."""
        self._abort_listening()
        try:
            node = self._navigator.restart()
        except StoryError as exc:
            self._report(ErrorType.STORY_ERROR, str(exc), exc)
            return False
        self._transcript = ""
        self._confidence = 0.0
        self._errors.clear()
        self._play_clock = time.monotonic()
        await self._after_navigation(node)
        return True

    async def reset(self) -> bool:
        return await self.restart()

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    async def set_playing(self, playing: bool) -> bool:
        """Turn narration of the current node on or off."""
        if not playing:
            self._stop_playback()
            return True
        if self._playing:
            return True
        node = self.current_node
        if node is None:
            logger.info("Nothing to narrate yet")
            return False
        if not self._preferences.narration_enabled:
            logger.info("Narration disabled in preferences")
            return False
        self._set_playing_flag(True)
        self._start_narration(node)
        return True

    async def toggle_playback(self) -> bool:
        return await self.set_playing(not self._playing)

    def _stop_playback(self) -> None:
        self._playback_generation += 1
        self._narration.stop()
        self._set_playing_flag(False)

    def _start_narration(self, node: StoryNode) -> None:
        self._playback_generation += 1
        self._narration_task = asyncio.create_task(
            self._narrate(node, self._playback_generation)
        )

    async def _narrate(self, node: StoryNode, generation: int) -> None:
        prefs = self._preferences
        try:
            finished = await self._narration.speak(
                node.text,
                self._selected_voice,
                rate=prefs.narration_rate,
                volume=prefs.narration_volume,
                pitch=DEFAULT_NARRATION_PITCH,
            )
        except NarrationError as exc:
            if generation == self._playback_generation:
                self._set_playing_flag(False)
                self._report(ErrorType.TTS_ERROR, exc.message, exc)
            return
        if generation != self._playback_generation:
            return
        if finished:
            logger.info("Finished narrating node %s", node.id)
        else:
            logger.info("Narration of node %s was cut short", node.id)
        self._set_playing_flag(False)

    def _set_playing_flag(self, playing: bool) -> None:
        if self._playing == playing:
            return
        self._playing = playing
        self._publish(EngineEventType.PLAYBACK_CHANGED, playing=playing)

    async def _maybe_autoplay(self, node: StoryNode) -> None:
        prefs = self._preferences
        if self._playing or not prefs.autoplay or not prefs.narration_enabled:
            return
        if not await self._narration.probe():
            logger.info("Narration not permitted yet — autoplay waits for the user")
            return
        if self.current_node is node and not self._playing:
            await self.set_playing(True)

    # ------------------------------------------------------------------
    # Listening
    # ------------------------------------------------------------------

    async def set_listening(self, listening: bool) -> bool:
        """Turn voice choice recognition on or off."""
        if not listening:
            self._stop_listening()
            return True
        if self._listening:
            return True
        if self.current_node is None:
            logger.info("Nothing to listen for yet")
            return False
        if not self._preferences.recognition_enabled:
            logger.info("Speech recognition disabled in preferences")
            return False

        # A run disowned by an earlier toggle may still be flushing.
        if self._recognition.is_listening:
            self._recognition.abort()

        self._listen_generation += 1
        generation = self._listen_generation
        self._set_listening_flag(True)
        prefs = self._preferences
        try:
            await self._recognition.start_listening(
                on_result=partial(self._handle_transcript, generation),
                on_error=partial(self._handle_recognition_error, generation),
                on_end=partial(self._handle_recognition_end, generation),
                language=prefs.recognition_language,
                continuous=prefs.continuous_recognition,
            )
        except RecognitionError as exc:
            if generation == self._listen_generation:
                self._set_listening_flag(False)
            self._report(ErrorType.STT_ERROR, exc.message, exc)
            return False
        return True

    async def toggle_listening(self) -> bool:
        return await self.set_listening(not self._listening)

    def _stop_listening(self) -> None:
        self._listen_generation += 1
        self._recognition.stop_listening()
        self._set_listening_flag(False)

    def _abort_listening(self) -> None:
        self._listen_generation += 1
        self._recognition.abort()
        self._set_listening_flag(False)

    def _set_listening_flag(self, listening: bool) -> None:
        if self._listening == listening:
            return
        self._listening = listening
        self._publish(EngineEventType.LISTENING_CHANGED, listening=listening)

    def _handle_transcript(
        self, generation: int, transcript: str, confidence: float, is_final: bool
    ) -> None:
        if generation != self._listen_generation or not self._listening:
            logger.debug("Ignoring transcript from a stopped recognition run")
            return

        self._transcript = transcript
        self._confidence = confidence
        self._publish(
            EngineEventType.TRANSCRIPT,
            transcript=transcript,
            confidence=confidence,
            is_final=is_final,
        )

        node = self.current_node
        if node is None or not node.choices:
            return
        result = self._matcher.match(transcript, node.choices)
        if result is None or result.confidence <= self._min_voice_confidence:
            logger.debug("No confident choice for %r", transcript)
            return

        choice = node.choices[result.index]
        logger.info(
            "Voice selected choice %s (%s, %.2f)",
            choice.id,
            result.method.value,
            result.confidence,
        )
        self._stop_listening()
        task = asyncio.create_task(self.make_choice(choice, via_voice=True))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _handle_recognition_error(self, generation: int, error: RecognitionError) -> None:
        if generation != self._listen_generation:
            return
        self._set_listening_flag(False)
        self._report(ErrorType.STT_ERROR, error.message, error)

    def _handle_recognition_end(self, generation: int) -> None:
        if generation != self._listen_generation:
            return
        self._set_listening_flag(False)

    # ------------------------------------------------------------------
    # Preferences and voices
    # ------------------------------------------------------------------

    async def update_preferences(self, changes: dict[str, Any]) -> Preferences:
        """Merge *changes* into the preferences.

        Raises ``pydantic.ValidationError`` for unknown fields or invalid
        values, leaving the preferences untouched.
        """
        previous = self._preferences
        updated = Preferences.model_validate({**previous.model_dump(), **changes})
        self._preferences = updated
        logger.info("Preferences updated: %s", sorted(changes))

        if not updated.narration_enabled and self._playing:
            self._stop_playback()
        elif self._playing and any(
            getattr(previous, field) != getattr(updated, field) for field in _NARRATION_FIELDS
        ):
            self._start_narration(self.current_node)

        if not updated.recognition_enabled and self._listening:
            self._stop_listening()

        self._persist()
        return updated

    async def toggle_theme(self) -> bool:
        updated = await self.update_preferences({"dark_mode": not self._preferences.dark_mode})
        return updated.dark_mode

    async def select_voice(self, voice_id: str) -> bool:
        """Narrate with the catalog voice *voice_id* from now on."""
        voice = next((v for v in self._narration.voices if v.voice_id == voice_id), None)
        if voice is None:
            self._report(ErrorType.TTS_ERROR, f"Voice {voice_id} is not available")
            return False
        self._selected_voice = voice
        logger.info("Selected voice %s (%s)", voice.name, voice.lang)
        if self._playing and self.current_node is not None:
            self._start_narration(self.current_node)
        self._persist()
        return True

    async def preview_voice(self, voice: Voice | None = None, text: str | None = None) -> bool:
        """Stop story narration, then speak a sample with *voice*.

        Raises :class:`NarrationError` when the sample could not be spoken.
        """
        self._stop_playback()
        if text:
            return await self._narration.preview(voice, text)
        return await self._narration.preview(voice)

    async def _init_voices(self) -> None:
        voices = await self._narration.load_voices()
        if self._selected_voice is not None or not voices:
            return
        saved = self._saved_voice
        if saved is not None:
            self._selected_voice = next(
                (v for v in voices if v.name == saved.name and v.lang == saved.lang), None
            )
        if self._selected_voice is None:
            self._selected_voice = next(
                (v for v in voices if v.lang.lower().startswith("en")), voices[0]
            )
        logger.info("Narration voice: %s", self._selected_voice.name)

    # ------------------------------------------------------------------
    # Errors
    # ------------------------------------------------------------------

    def add_error(self, error: AppError) -> None:
        """Queue an already-classified error for display."""
        self._errors.add(error)
        logger.warning("%s: %s", error.type.value, error.message)
        self._publish(EngineEventType.ERROR_REPORTED, error=error)

    def record_error(
        self, error_type: ErrorType, message: str, details: str | None = None
    ) -> AppError:
        """Report an error caught by the presentation layer."""
        error = AppError(type=error_type, message=message, details=details)
        self.add_error(error)
        return error

    def clear_errors(self) -> None:
        self._errors.clear()

    def _report(
        self, error_type: ErrorType, message: str, cause: BaseException | None = None
    ) -> None:
        self.add_error(
            AppError(
                type=error_type,
                message=message,
                details=repr(cause) if cause is not None else None,
            )
        )

    # ------------------------------------------------------------------
    # Other commands
    # ------------------------------------------------------------------

    async def stop_all(self) -> None:
        """Stop narration and listening at once."""
        self._silence()

    def _silence(self) -> None:
        self._stop_playback()
        self._abort_listening()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _after_navigation(self, node: StoryNode) -> None:
        self._persist()
        self._publish(
            EngineEventType.NODE_ENTERED, node_id=node.id, ending_type=node.ending_type
        )
        if node.is_ending:
            logger.info("Story completed at %s (%s)", node.id, node.ending_type or "ending")
            self._publish(
                EngineEventType.STORY_COMPLETED, node_id=node.id, ending_type=node.ending_type
            )
        if self._playing:
            self._start_narration(node)
        else:
            await self._maybe_autoplay(node)

    def _persist(self) -> None:
        progress = self._navigator.progress
        if progress is not None:
            now = time.monotonic()
            progress.total_play_time += now - self._play_clock
            self._play_clock = now
            progress.last_save_time = time.time()

        voice = self._selected_voice
        state = PersistedState(
            progress=progress,
            preferences=self._preferences,
            selected_voice=VoiceIdentity(name=voice.name, lang=voice.lang) if voice else None,
        )
        try:
            self._repository.save(state)
        except StorageError as exc:
            self._report(ErrorType.STORAGE_ERROR, "Failed to save progress", exc)
            return
        self._publish(EngineEventType.PROGRESS_SAVED)

    def _restore_persisted(self) -> None:
        try:
            state = self._repository.load()
        except StorageError as exc:
            self._report(ErrorType.STORAGE_ERROR, "Failed to load saved progress", exc)
            return
        if state is None:
            return
        self._preferences = state.preferences
        self._saved_voice = state.selected_voice
        self._saved_progress = state.progress
        logger.info(
            "Restored saved state (progress=%s)",
            state.progress.current_node_id if state.progress else None,
        )

    def _publish(self, event_type: EngineEventType, **fields: Any) -> None:
        self._event_bus.publish(EngineEvent(type=event_type, **fields))
