"""FastAPI application factory for Storyvoice.

``create_app()`` wires an :class:`EngineCoordinator` to the HTTP routes
and manages its lifecycle: on startup the coordinator opens both speech
sessions and the story document is loaded (resuming saved progress); on
shutdown everything is stopped and saved.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from fastapi import FastAPI

from storyvoice import __version__
from storyvoice.config import STATE_PATH, STORY_PATH
from storyvoice.engine.coordinator import EngineCoordinator
from storyvoice.server.routes import router
from storyvoice.storage.state_store import JsonFileStore, StateRepository
from storyvoice.story.loader import load_story
from storyvoice.stt.recognition_session import SpeechInputSession
from storyvoice.stt.whisper_backend import WhisperRecognitionBackend
from storyvoice.tts.elevenlabs_backend import ElevenLabsNarrationBackend
from storyvoice.tts.narration_session import SpeechOutputSession

logger = logging.getLogger(__name__)


def build_coordinator() -> EngineCoordinator:
    """Coordinator backed by ElevenLabs, Whisper and the on-disk state file."""
    return EngineCoordinator(
        SpeechOutputSession(ElevenLabsNarrationBackend()),
        SpeechInputSession(WhisperRecognitionBackend()),
        repository=StateRepository(JsonFileStore(STATE_PATH)),
    )


def create_app(
    coordinator: EngineCoordinator | None = None,
    story_path: Path | str | None = None,
) -> FastAPI:
    """Build and return a fully-configured FastAPI application.

    The returned app has ``app.state.coordinator`` (the engine) and
    ``app.state.event_bus`` (its event bus) for the route handlers.
    """
    engine = coordinator or build_coordinator()
    path = Path(story_path) if story_path is not None else STORY_PATH

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Storyvoice server starting up")
        await engine.start()
        try:
            story = load_story(path)
            await engine.load_story(story, resume=True)
        except Exception:
            await engine.stop()
            raise
        try:
            yield
        finally:
            logger.info("Storyvoice server shutting down")
            await engine.stop()

    app = FastAPI(title="Storyvoice", version=__version__, lifespan=lifespan)
    app.state.coordinator = engine
    app.state.event_bus = engine.event_bus
    app.include_router(router)

    logger.info("FastAPI app created (story=%s)", path)
    return app
