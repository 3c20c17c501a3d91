"""Tests for storyvoice.engine.coordinator — EngineCoordinator."""

import asyncio
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from storyvoice.engine.coordinator import EngineCoordinator
from storyvoice.engine.error_queue import ErrorQueue
from storyvoice.events.types import EngineEventType, ErrorType
from storyvoice.storage.state_store import MemoryStore, StateRepository
from storyvoice.story.navigator import NavigationState
from storyvoice.story.types import PersistedState, Preferences, Progress, VoiceIdentity
from storyvoice.stt.recognition_session import SpeechInputSession
from storyvoice.stt.types import MatchMethod, MatchResult
from storyvoice.tts.narration_session import SpeechOutputSession

from conftest import FakeNarrationBackend, FakeRecognitionBackend, wait_until


def _drain_events(queue: asyncio.Queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def _choice(story, node_id: str, choice_id: str):
    return next(c for c in story.nodes[node_id].choices if c.id == choice_id)


class BrokenStore(MemoryStore):
    def set(self, key: str, value: str) -> None:
        raise OSError("disk full")


# ---------------------------------------------------------------------------
# Loading and navigation
# ---------------------------------------------------------------------------


class TestLoadAndNavigate:
    async def test_load_story_enters_start_node(self, coordinator, story, event_bus):
        queue = event_bus.subscribe()
        node = await coordinator.load_story(story)
        assert node.id == "A"
        assert coordinator.current_node.id == "A"
        assert coordinator.progress.visited_nodes == ["A"]
        assert coordinator.navigation_state == NavigationState.AT_NODE

        types = [event.type for event in _drain_events(queue)]
        assert EngineEventType.PROGRESS_SAVED in types
        assert EngineEventType.NODE_ENTERED in types

    async def test_make_choice_updates_progress(self, coordinator, story, memory_store):
        await coordinator.load_story(story)
        assert await coordinator.make_choice(_choice(story, "A", "south")) is True
        assert coordinator.current_node.id == "C"
        assert coordinator.progress.consequences == ["went-south"]

        saved = StateRepository(memory_store).load()
        assert saved.progress.current_node_id == "C"
        assert saved.progress.visited_nodes == ["A", "C"]

    async def test_unknown_node_reported(self, coordinator, story):
        await coordinator.load_story(story)
        before = coordinator.progress.model_dump()
        assert await coordinator.set_current_node("Q") is False
        assert coordinator.current_node.id == "A"
        assert coordinator.progress.model_dump() == before
        error = coordinator.errors[-1]
        assert error.type == ErrorType.STORY_ERROR
        assert error.message == "Node Q not found"

    async def test_choice_with_missing_target_reported(self, coordinator, story):
        await coordinator.load_story(story)
        await coordinator.make_choice(_choice(story, "A", "south"))
        history = list(coordinator.progress.choice_history)
        assert await coordinator.make_choice(_choice(story, "C", "nowhere")) is False
        assert coordinator.progress.choice_history == history
        assert coordinator.errors[-1].type == ErrorType.STORY_ERROR

    async def test_choice_at_ending_reported(self, coordinator, story, event_bus):
        queue = event_bus.subscribe()
        await coordinator.load_story(story)
        await coordinator.make_choice(_choice(story, "A", "north"))
        assert coordinator.navigation_state == NavigationState.AT_ENDING
        assert EngineEventType.STORY_COMPLETED in [e.type for e in _drain_events(queue)]

        assert await coordinator.make_choice(_choice(story, "C", "back")) is False
        assert coordinator.current_node.id == "B"
        assert coordinator.errors[-1].type == ErrorType.STORY_ERROR

    async def test_select_choice_by_index(self, coordinator, story):
        await coordinator.load_story(story)
        assert await coordinator.select_choice(1) is True
        assert coordinator.current_node.id == "C"

    async def test_select_choice_out_of_range(self, coordinator, story):
        await coordinator.load_story(story)
        assert await coordinator.select_choice(4) is False
        assert coordinator.current_node.id == "A"
        assert coordinator.errors == []

    async def test_commands_before_story_loaded(self, coordinator):
        assert await coordinator.set_current_node("A") is False
        assert await coordinator.restart() is False
        assert await coordinator.set_playing(True) is False
        assert await coordinator.set_listening(True) is False

    async def test_restart_clears_transient_state(self, coordinator, story, recognition_backend):
        await coordinator.load_story(story)
        await coordinator.set_listening(True)
        recognition_backend.emit_final("walk into the forest", 0.9)
        await coordinator.drain()
        await coordinator.set_current_node("Q")
        assert coordinator.transcript

        assert await coordinator.restart() is True
        assert coordinator.current_node.id == "A"
        assert coordinator.progress.visited_nodes == ["A"]
        assert coordinator.progress.choice_history == []
        assert coordinator.transcript == ""
        assert coordinator.confidence == 0.0
        assert coordinator.errors == []

    async def test_reset_matches_restart(self, coordinator, story):
        await coordinator.load_story(story)
        await coordinator.make_choice(_choice(story, "A", "north"))
        assert await coordinator.reset() is True
        assert coordinator.navigation_state == NavigationState.AT_NODE
        assert coordinator.progress.visited_nodes == ["A"]


# ---------------------------------------------------------------------------
# Voice choices
# ---------------------------------------------------------------------------


class TestVoiceChoices:
    async def test_spoken_keyword_navigates(
        self, coordinator, story, recognition_backend, event_bus
    ):
        queue = event_bus.subscribe()
        await coordinator.load_story(story)
        assert await coordinator.set_listening(True) is True

        recognition_backend.emit_final("I want to go north", 0.8)
        await coordinator.drain()

        progress = coordinator.progress
        assert coordinator.current_node.id == "B"
        assert progress.visited_nodes == ["A", "B"]
        assert len(progress.choice_history) == 1
        assert progress.choice_history[0].node_id == "A"
        assert progress.voice_commands_used == 1
        assert coordinator.transcript == "I want to go north"
        assert coordinator.confidence == 0.8
        assert coordinator.is_listening is False
        assert recognition_backend.stop_calls == 1

        choice_events = [
            e for e in _drain_events(queue) if e.type == EngineEventType.CHOICE_MADE
        ]
        assert len(choice_events) == 1
        assert choice_events[0].node_id == "A"
        assert choice_events[0].next_node_id == "B"
        assert choice_events[0].via_voice is True

    async def test_unmatched_transcript_only_recorded(
        self, coordinator, story, recognition_backend
    ):
        await coordinator.load_story(story)
        await coordinator.set_listening(True)
        recognition_backend.emit_final("xyz", 0.7)
        await coordinator.drain()
        assert coordinator.current_node.id == "A"
        assert coordinator.transcript == "xyz"
        assert coordinator.is_listening is True

    async def test_weak_match_does_not_navigate(self, narration, recognition, recognition_backend, story):
        matcher = MagicMock()
        matcher.match.return_value = MatchResult(index=0, confidence=0.5, method=MatchMethod.TEXT)
        engine = EngineCoordinator(narration, recognition, matcher=matcher)
        await engine.start()
        await engine.update_preferences({"autoplay": False})
        await engine.load_story(story)
        await engine.set_listening(True)

        recognition_backend.emit_final("go nerth", 0.9)
        await engine.drain()
        assert engine.current_node.id == "A"
        matcher.match.assert_called_once()
        await engine.stop()

    async def test_transcript_after_toggle_off_ignored(
        self, coordinator, story, recognition_backend
    ):
        await coordinator.load_story(story)
        await coordinator.set_listening(True)
        await coordinator.set_listening(False)
        assert recognition_backend.stop_calls == 1

        # The graceful stop still flushes a final result; the coordinator drops it.
        recognition_backend.emit_final("go north", 0.9)
        await coordinator.drain()
        assert coordinator.current_node.id == "A"
        assert coordinator.transcript == ""
        assert coordinator.is_listening is False

    async def test_relisten_supersedes_flushing_run(
        self, coordinator, story, recognition_backend
    ):
        await coordinator.load_story(story)
        await coordinator.set_listening(True)
        await coordinator.set_listening(False)
        assert await coordinator.set_listening(True) is True
        assert recognition_backend.abort_calls == 1
        assert len(recognition_backend.runs) == 2
        assert coordinator.errors == []

    async def test_recognition_settings_from_preferences(
        self, coordinator, story, recognition_backend
    ):
        await coordinator.load_story(story)
        await coordinator.update_preferences(
            {"recognition_language": "en-GB", "continuous_recognition": True}
        )
        await coordinator.set_listening(True)
        config = recognition_backend.runs[-1]
        assert config.language == "en-GB"
        assert config.continuous is True

    async def test_unsupported_recognition_reported(
        self, coordinator, story, recognition_backend
    ):
        recognition_backend.available = False
        await coordinator.load_story(story)
        assert await coordinator.set_listening(True) is False
        assert coordinator.is_listening is False
        error = coordinator.errors[-1]
        assert error.type == ErrorType.STT_ERROR
        assert error.message == "Speech recognition not available"

    async def test_recognition_error_reported(
        self, coordinator, story, recognition_backend
    ):
        await coordinator.load_story(story)
        await coordinator.set_listening(True)
        recognition_backend.emit_error("no-speech")
        assert coordinator.is_listening is False
        assert coordinator.errors[-1].type == ErrorType.STT_ERROR

    async def test_recognition_end_clears_flag(self, coordinator, story, recognition_backend):
        await coordinator.load_story(story)
        await coordinator.toggle_listening()
        assert coordinator.is_listening is True
        recognition_backend.end()
        assert coordinator.is_listening is False

    async def test_recognition_disabled_in_preferences(self, coordinator, story):
        await coordinator.load_story(story)
        await coordinator.set_listening(True)
        await coordinator.update_preferences({"recognition_enabled": False})
        assert coordinator.is_listening is False
        assert await coordinator.set_listening(True) is False


# ---------------------------------------------------------------------------
# Playback
# ---------------------------------------------------------------------------


class TestPlayback:
    async def test_playback_narrates_current_node(
        self, coordinator, story, narration_backend, event_bus
    ):
        queue = event_bus.subscribe()
        await coordinator.load_story(story)
        assert await coordinator.toggle_playback() is True
        await wait_until(lambda: narration_backend.current is not None)
        utterance = narration_backend.current
        assert utterance.text == story.nodes["A"].text
        assert utterance.rate == coordinator.preferences.narration_rate
        assert utterance.volume == coordinator.preferences.narration_volume

        narration_backend.finish()
        await wait_until(lambda: not coordinator.is_playing)
        changes = [e.playing for e in _drain_events(queue) if e.type == EngineEventType.PLAYBACK_CHANGED]
        assert changes == [True, False]

    async def test_toggle_off_cancels_synchronously(self, coordinator, story, narration_backend):
        await coordinator.load_story(story)
        await coordinator.set_playing(True)
        await wait_until(lambda: narration_backend.current is not None)
        stale = narration_backend.current

        await coordinator.set_playing(False)
        assert narration_backend.current is None
        assert coordinator.is_playing is False

        stale.on_end()
        await asyncio.sleep(0)
        assert coordinator.is_playing is False

    async def test_navigation_restarts_narration(self, coordinator, story, narration_backend):
        await coordinator.load_story(story)
        await coordinator.set_playing(True)
        await wait_until(lambda: narration_backend.current is not None)

        await coordinator.make_choice(_choice(story, "A", "south"))
        await wait_until(
            lambda: narration_backend.current is not None
            and narration_backend.current.text == story.nodes["C"].text
        )
        assert coordinator.is_playing is True
        assert [u.text for u in narration_backend.narrations] == [
            story.nodes["A"].text,
            story.nodes["C"].text,
        ]

    async def test_narration_error_reported(self, coordinator, story, narration_backend):
        await coordinator.load_story(story)
        await coordinator.set_playing(True)
        await wait_until(lambda: narration_backend.current is not None)
        narration_backend.fail("network")
        await wait_until(lambda: not coordinator.is_playing)
        error = coordinator.errors[-1]
        assert error.type == ErrorType.TTS_ERROR
        assert "Network" in error.message

    async def test_interrupted_narration_turns_playback_off(
        self, coordinator, story, narration_backend
    ):
        await coordinator.load_story(story)
        await coordinator.set_playing(True)
        await wait_until(lambda: narration_backend.current is not None)

        narration_backend.fail("interrupted")
        await wait_until(lambda: not coordinator.is_playing)
        assert coordinator.errors == []

        assert await coordinator.set_playing(True) is True
        await wait_until(lambda: narration_backend.current is not None)
        assert len(narration_backend.narrations) == 2

    async def test_narration_superseded_elsewhere_turns_playback_off(
        self, coordinator, story, narration_backend
    ):
        await coordinator.load_story(story)
        await coordinator.set_playing(True)
        await wait_until(lambda: narration_backend.current is not None)

        sample = asyncio.create_task(coordinator.narration.preview(None, "sample"))
        await wait_until(
            lambda: narration_backend.current is not None
            and narration_backend.current.text == "sample"
        )
        narration_backend.finish()
        assert await sample is True
        await wait_until(lambda: not coordinator.is_playing)

    async def test_preview_voice_stops_story_narration(
        self, coordinator, story, narration_backend
    ):
        await coordinator.load_story(story)
        await coordinator.set_playing(True)
        await wait_until(lambda: narration_backend.current is not None)

        sample = asyncio.create_task(coordinator.preview_voice(None, "sample"))
        await wait_until(
            lambda: narration_backend.current is not None
            and narration_backend.current.text == "sample"
        )
        assert coordinator.is_playing is False
        narration_backend.finish()
        assert await sample is True
        assert coordinator.is_playing is False

    async def test_narration_disabled(self, coordinator, story, narration_backend):
        await coordinator.load_story(story)
        await coordinator.set_playing(True)
        await wait_until(lambda: narration_backend.current is not None)
        await coordinator.update_preferences({"narration_enabled": False})
        assert coordinator.is_playing is False
        assert narration_backend.current is None
        assert await coordinator.set_playing(True) is False

    async def test_rate_change_restarts_narration(self, coordinator, story, narration_backend):
        await coordinator.load_story(story)
        await coordinator.set_playing(True)
        await wait_until(lambda: narration_backend.current is not None)
        await coordinator.update_preferences({"narration_rate": 1.5})
        await wait_until(
            lambda: narration_backend.current is not None
            and narration_backend.current.rate == 1.5
        )
        assert coordinator.is_playing is True

    async def test_stop_all(self, coordinator, story, narration_backend, recognition_backend):
        await coordinator.load_story(story)
        await coordinator.set_playing(True)
        await coordinator.set_listening(True)
        await wait_until(lambda: narration_backend.current is not None)

        await coordinator.stop_all()
        assert coordinator.is_playing is False
        assert coordinator.is_listening is False
        assert narration_backend.current is None
        assert recognition_backend.abort_calls == 1

    async def test_autoplay_when_probe_allows(self, coordinator, story, narration_backend):
        await coordinator.update_preferences({"autoplay": True})
        await coordinator.load_story(story)
        assert coordinator.is_playing is True
        await wait_until(lambda: narration_backend.current is not None)
        assert narration_backend.current.text == story.nodes["A"].text

    async def test_autoplay_waits_for_permission(self, coordinator, story, narration_backend):
        narration_backend.probe_reply = "not-allowed"
        await coordinator.update_preferences({"autoplay": True})
        await coordinator.load_story(story)
        assert coordinator.is_playing is False
        assert narration_backend.narrations == []

    async def test_voice_catalog_never_resolves(self, story):
        backend = FakeNarrationBackend([])
        narration = SpeechOutputSession(backend, voice_load_attempts=3, voice_load_interval=0.01)
        engine = EngineCoordinator(narration, SpeechInputSession(FakeRecognitionBackend()))
        await engine.start()
        await engine.update_preferences({"autoplay": False})
        await engine.load_story(story)

        await engine.set_playing(True)
        await wait_until(lambda: backend.current is not None)
        assert backend.current.voice is None
        backend.finish()
        await wait_until(lambda: not engine.is_playing)
        assert engine.selected_voice is None
        await engine.stop()


# ---------------------------------------------------------------------------
# Preferences, voices and persistence
# ---------------------------------------------------------------------------


class TestPreferences:
    async def test_partial_update(self, coordinator):
        updated = await coordinator.update_preferences({"volume": 0.3, "font_size": "large"})
        assert updated.volume == 0.3
        assert updated.font_size.value == "large"
        assert updated.dark_mode is True

    async def test_invalid_value_rejected(self, coordinator):
        before = coordinator.preferences
        with pytest.raises(ValidationError):
            await coordinator.update_preferences({"volume": 3})
        assert coordinator.preferences == before

    async def test_unknown_field_rejected(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.update_preferences({"loudness": 1})

    async def test_toggle_theme(self, coordinator, memory_store):
        assert await coordinator.toggle_theme() is False
        assert coordinator.preferences.dark_mode is False
        assert StateRepository(memory_store).load().preferences.dark_mode is False
        assert await coordinator.toggle_theme() is True


class TestVoices:
    async def test_first_english_voice_auto_selected(self, coordinator):
        await wait_until(lambda: coordinator.selected_voice is not None)
        assert coordinator.selected_voice.name == "Rachel"

    async def test_select_voice(self, coordinator, story, memory_store):
        await wait_until(lambda: coordinator.selected_voice is not None)
        await coordinator.load_story(story)
        assert await coordinator.select_voice("en-2") is True
        assert coordinator.selected_voice.name == "Daniel"
        saved = StateRepository(memory_store).load()
        assert saved.selected_voice == VoiceIdentity(name="Daniel", lang="en-GB")

    async def test_unknown_voice_reported(self, coordinator):
        await wait_until(lambda: coordinator.selected_voice is not None)
        assert await coordinator.select_voice("missing") is False
        assert coordinator.errors[-1].type == ErrorType.TTS_ERROR

    async def test_narration_uses_selected_voice(self, coordinator, story, narration_backend):
        await wait_until(lambda: coordinator.selected_voice is not None)
        await coordinator.load_story(story)
        await coordinator.select_voice("fr-1")
        await coordinator.set_playing(True)
        await wait_until(lambda: narration_backend.current is not None)
        assert narration_backend.current.voice.name == "Amelie"


class TestPersistence:
    async def test_resume_saved_state(self, narration, recognition, story):
        store = MemoryStore()
        saved = PersistedState(
            progress=Progress(current_node_id="C", visited_nodes=["A", "C"], voice_commands_used=2),
            preferences=Preferences(autoplay=False, dark_mode=False),
            selected_voice=VoiceIdentity(name="Daniel", lang="en-GB"),
        )
        StateRepository(store).save(saved)

        engine = EngineCoordinator(narration, recognition, repository=StateRepository(store))
        await engine.start()
        node = await engine.load_story(story, resume=True)
        assert node.id == "C"
        assert engine.progress.voice_commands_used == 2
        assert engine.preferences.dark_mode is False
        await wait_until(lambda: engine.selected_voice is not None)
        assert engine.selected_voice.name == "Daniel"
        await engine.stop()

    async def test_resume_at_unknown_node_starts_over(self, narration, recognition, story):
        store = MemoryStore()
        StateRepository(store).save(
            PersistedState(
                progress=Progress(current_node_id="gone", visited_nodes=["gone"]),
                preferences=Preferences(autoplay=False),
            )
        )
        engine = EngineCoordinator(narration, recognition, repository=StateRepository(store))
        await engine.start()
        node = await engine.load_story(story, resume=True)
        assert node.id == "A"
        assert engine.errors[-1].type == ErrorType.STORY_ERROR
        await engine.stop()

    async def test_corrupt_saved_state_reported(self, narration, recognition):
        store = MemoryStore()
        store.set("audio-storybook:state", "{not json")
        engine = EngineCoordinator(narration, recognition, repository=StateRepository(store))
        await engine.start()
        assert engine.errors[-1].type == ErrorType.STORAGE_ERROR
        await engine.stop()

    async def test_storage_failure_reported(self, narration, recognition, story):
        engine = EngineCoordinator(
            narration, recognition, repository=StateRepository(BrokenStore())
        )
        await engine.start()
        await engine.load_story(story)
        assert engine.current_node.id == "A"
        assert ErrorType.STORAGE_ERROR in [error.type for error in engine.errors]
        await engine.stop()

    async def test_play_time_accumulates(self, coordinator, story):
        await coordinator.load_story(story)
        await asyncio.sleep(0.02)
        await coordinator.make_choice(_choice(story, "A", "south"))
        assert coordinator.progress.total_play_time > 0


# ---------------------------------------------------------------------------
# Errors and snapshot
# ---------------------------------------------------------------------------


class TestErrorsAndSnapshot:
    async def test_record_error(self, coordinator, event_bus):
        queue = event_bus.subscribe()
        error = coordinator.record_error(ErrorType.NETWORK_ERROR, "Offline", "timeout")
        assert coordinator.errors == [error]
        events = _drain_events(queue)
        assert events[-1].type == EngineEventType.ERROR_REPORTED
        assert events[-1].error == error

        coordinator.clear_errors()
        assert coordinator.errors == []

    async def test_errors_expire(self, narration, recognition):
        now = [100.0]
        engine = EngineCoordinator(
            narration, recognition, errors=ErrorQueue(ttl=5.0, clock=lambda: now[0])
        )
        engine.record_error(ErrorType.TTS_ERROR, "boom")
        assert len(engine.errors) == 1
        now[0] += 5.0
        assert engine.errors == []

    async def test_snapshot(self, coordinator, story):
        await coordinator.load_story(story)
        snapshot = coordinator.snapshot()
        assert snapshot["story"]["title"] == "Crossroads"
        assert snapshot["current_node"]["id"] == "A"
        assert snapshot["current_node"]["choices"][0]["nextNode"] == "B"
        assert snapshot["progress"]["visited_nodes"] == ["A"]
        assert snapshot["navigation_state"] == "at_node"
        assert snapshot["is_playing"] is False
        assert snapshot["narration_state"] == "active"
