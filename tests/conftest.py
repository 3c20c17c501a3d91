"""Shared fixtures for Storyvoice tests.

The fake backends below stand in for the speech engines.  They never
fire callbacks on their own: tests drive them explicitly (``finish()``,
``fail()``, ``emit_final()``...) so every scenario is deterministic.
"""

import asyncio
from typing import Callable

import pytest

from storyvoice.engine.coordinator import EngineCoordinator
from storyvoice.engine.error_queue import ErrorQueue
from storyvoice.events.event_bus import EventBus
from storyvoice.storage.state_store import MemoryStore, StateRepository
from storyvoice.story.types import Story
from storyvoice.stt.backend import RecognitionBackend, RecognitionListener
from storyvoice.stt.recognition_session import SpeechInputSession
from storyvoice.stt.types import (
    RecognitionAlternative,
    RecognitionConfig,
    RecognitionEvent,
    RecognitionResult,
)
from storyvoice.tts.backend import NarrationBackend, Utterance
from storyvoice.tts.narration_session import SpeechOutputSession
from storyvoice.tts.types import Voice


# ---------------------------------------------------------------------------
# Fake narration engine
# ---------------------------------------------------------------------------


class FakeNarrationBackend(NarrationBackend):
    """In-memory narration engine.

    ``probe_reply`` controls how the empty probe utterance is answered:
    ``"end"`` (start then end), an engine error code, or ``None`` to
    never answer.
    """

    def __init__(self, voices: list[Voice] | None = None) -> None:
        self.available = True
        self.voices: list[Voice] = list(voices or [])
        self.listeners: list[Callable[[], None]] = []
        self.spoken: list[Utterance] = []
        self.current: Utterance | None = None
        self.cancel_count = 0
        self.probe_reply: str | None = "end"
        self.raise_on_speak: Exception | None = None
        self.started = False

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    @property
    def is_available(self) -> bool:
        return self.available

    @property
    def is_speaking(self) -> bool:
        return self.current is not None

    @property
    def backend_name(self) -> str:
        return "fake"

    def get_voices(self) -> list[Voice]:
        return list(self.voices)

    def on_voices_changed(self, callback: Callable[[], None]) -> None:
        self.listeners.append(callback)

    def speak(self, utterance: Utterance) -> None:
        if self.raise_on_speak is not None:
            raise self.raise_on_speak
        self.spoken.append(utterance)
        if not utterance.text:
            self._answer_probe(utterance)
            return
        self.current = utterance
        if utterance.on_start:
            utterance.on_start()

    def cancel(self) -> None:
        self.cancel_count += 1
        self.current = None

    # Test helpers ----------------------------------------------------

    @property
    def narrations(self) -> list[Utterance]:
        """Utterances with text (probes excluded)."""
        return [u for u in self.spoken if u.text]

    def finish(self) -> None:
        utterance, self.current = self.current, None
        if utterance and utterance.on_end:
            utterance.on_end()

    def fail(self, code: str) -> None:
        utterance, self.current = self.current, None
        if utterance and utterance.on_error:
            utterance.on_error(code)

    def publish_voices(self, voices: list[Voice]) -> None:
        self.voices = list(voices)
        for callback in list(self.listeners):
            callback()

    def _answer_probe(self, utterance: Utterance) -> None:
        if self.probe_reply is None:
            return
        if self.probe_reply == "end":
            if utterance.on_start:
                utterance.on_start()
            if utterance.on_end:
                utterance.on_end()
        elif utterance.on_error:
            utterance.on_error(self.probe_reply)


# ---------------------------------------------------------------------------
# Fake recognition engine
# ---------------------------------------------------------------------------


class FakeRecognitionBackend(RecognitionBackend):
    """In-memory recognition engine with scripted results."""

    def __init__(self) -> None:
        self.available = True
        self.started = False
        self.runs: list[RecognitionConfig] = []
        self.listener: RecognitionListener | None = None
        self.results: list[RecognitionResult] = []
        self.stop_calls = 0
        self.abort_calls = 0
        self.start_error: Exception | None = None

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    @property
    def is_available(self) -> bool:
        return self.available

    @property
    def backend_name(self) -> str:
        return "fake"

    async def start_recognition(
        self, config: RecognitionConfig, listener: RecognitionListener
    ) -> None:
        if self.start_error is not None:
            raise self.start_error
        self.runs.append(config)
        self.listener = listener
        self.results = []
        listener.on_start()

    def stop_recognition(self) -> None:
        self.stop_calls += 1

    def abort_recognition(self) -> None:
        self.abort_calls += 1

    # Test helpers ----------------------------------------------------

    def emit(self, *results: RecognitionResult) -> None:
        index = len(self.results)
        self.results.extend(results)
        self.listener.on_result(
            RecognitionEvent(result_index=index, results=list(self.results))
        )

    def emit_final(self, transcript: str, confidence: float | None = 0.9) -> None:
        self.emit(
            RecognitionResult(
                alternatives=[
                    RecognitionAlternative(transcript=transcript, confidence=confidence)
                ],
                is_final=True,
            )
        )

    def emit_interim(self, transcript: str) -> None:
        self.emit(
            RecognitionResult(
                alternatives=[RecognitionAlternative(transcript=transcript)],
                is_final=False,
            )
        )

    def emit_error(self, code: str, message: str | None = None) -> None:
        self.listener.on_error(code, message)

    def end(self) -> None:
        self.listener.on_end()


# ---------------------------------------------------------------------------
# Stories
# ---------------------------------------------------------------------------


def build_north_story() -> Story:
    """A crossroads (A) with an ending to the north (B) and a loop south (C)."""
    return Story.model_validate(
        {
            "title": "Crossroads",
            "author": "Tests",
            "version": "1.0",
            "startNode": "A",
            "nodes": {
                "A": {
                    "id": "A",
                    "title": "Crossroads",
                    "text": "You stand at a crossroads.",
                    "choices": [
                        {
                            "id": "north",
                            "text": "go north",
                            "keywords": ["north"],
                            "nextNode": "B",
                            "consequence": "went-north",
                        },
                        {
                            "id": "south",
                            "text": "walk into the southern forest",
                            "keywords": ["south", "forest"],
                            "nextNode": "C",
                            "consequence": "went-south",
                        },
                    ],
                },
                "B": {
                    "id": "B",
                    "title": "Home",
                    "text": "You made it home.",
                    "choices": [],
                    "isEnding": True,
                    "endingType": "good",
                },
                "C": {
                    "id": "C",
                    "title": "Forest",
                    "text": "Tall trees surround you.",
                    "choices": [
                        {
                            "id": "back",
                            "text": "return to the crossroads",
                            "keywords": ["back", "return"],
                            "nextNode": "A",
                            "consequence": "returned",
                        },
                        {
                            "id": "nowhere",
                            "text": "follow the broken trail",
                            "keywords": ["trail"],
                            "nextNode": "Z",
                            "consequence": "lost",
                        },
                    ],
                },
            },
        }
    )


@pytest.fixture
def story() -> Story:
    return build_north_story()


# ---------------------------------------------------------------------------
# Sessions and coordinator
# ---------------------------------------------------------------------------


@pytest.fixture
def voices() -> list[Voice]:
    return [
        Voice(voice_id="fr-1", name="Amelie", lang="fr-FR"),
        Voice(voice_id="en-1", name="Rachel", lang="en-US"),
        Voice(voice_id="en-2", name="Daniel", lang="en-GB", local_service=True),
    ]


@pytest.fixture
def narration_backend(voices: list[Voice]) -> FakeNarrationBackend:
    return FakeNarrationBackend(voices)


@pytest.fixture
def recognition_backend() -> FakeRecognitionBackend:
    return FakeRecognitionBackend()


@pytest.fixture
def narration(narration_backend: FakeNarrationBackend) -> SpeechOutputSession:
    return SpeechOutputSession(
        narration_backend, voice_load_attempts=3, voice_load_interval=0.01, probe_timeout=0.05
    )


@pytest.fixture
def recognition(recognition_backend: FakeRecognitionBackend) -> SpeechInputSession:
    return SpeechInputSession(recognition_backend)


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus(maxsize=64)


@pytest.fixture
async def coordinator(
    narration: SpeechOutputSession,
    recognition: SpeechInputSession,
    memory_store: MemoryStore,
    event_bus: EventBus,
):
    """A started coordinator over fake engines with autoplay turned off."""
    engine = EngineCoordinator(
        narration,
        recognition,
        repository=StateRepository(memory_store),
        event_bus=event_bus,
        errors=ErrorQueue(ttl=60.0),
    )
    await engine.start()
    await engine.update_preferences({"autoplay": False})
    yield engine
    await engine.stop()


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll *predicate* on the event loop until it holds or *timeout* passes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)
