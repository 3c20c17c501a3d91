"""Narration backend built from the ElevenLabs API and the audio player."""

import asyncio
import logging
from typing import Callable

from storyvoice.tts.audio_player import AudioPlayer
from storyvoice.tts.backend import NarrationBackend, Utterance
from storyvoice.tts.elevenlabs_client import ElevenLabsClient, SynthesisRequestError
from storyvoice.tts.types import Voice

logger = logging.getLogger(__name__)


class ElevenLabsNarrationBackend(NarrationBackend):
    """ElevenLabs synthesis played through the local output device.

    The voice catalog is fetched in the background after ``start()``;
    change listeners are notified once it arrives.
    """

    def __init__(
        self,
        client: ElevenLabsClient | None = None,
        player: AudioPlayer | None = None,
    ) -> None:
        self._client = client or ElevenLabsClient()
        self._player = player or AudioPlayer()
        self._voices: list[Voice] = []
        self._voice_listeners: list[Callable[[], None]] = []
        self._catalog_task: asyncio.Task | None = None
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        await self._client.start()
        await self._player.start()
        if self._client.is_available:
            self._catalog_task = asyncio.create_task(self._load_catalog())
        logger.info(
            "ElevenLabs narration backend started (api=%s, audio=%s)",
            self._client.is_available,
            self._player.is_available,
        )

    async def stop(self) -> None:
        self.cancel()
        for task in (self._task, self._catalog_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._task = None
        self._catalog_task = None
        await self._player.stop()
        await self._client.stop()

    @property
    def is_available(self) -> bool:
        return self._client.is_available and self._player.is_available

    @property
    def is_speaking(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def backend_name(self) -> str:
        return "elevenlabs"

    def get_voices(self) -> list[Voice]:
        return list(self._voices)

    def on_voices_changed(self, callback: Callable[[], None]) -> None:
        self._voice_listeners.append(callback)

    def speak(self, utterance: Utterance) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run(utterance))

    def cancel(self) -> None:
        if not self.is_speaking:
            return
        self._task.cancel()
        self._player.interrupt()

    async def _load_catalog(self) -> None:
        voices = await self._client.list_voices()
        if not voices:
            return
        self._voices = voices
        for callback in list(self._voice_listeners):
            try:
                callback()
            except Exception:
                logger.warning("Voice catalog listener failed", exc_info=True)

    async def _run(self, utterance: Utterance) -> None:
        """Synthesize, play and report one utterance."""
        if not self._client.is_available:
            self._report_error(utterance, "not-allowed")
            return
        if not self._player.is_available:
            self._report_error(utterance, "audio-hardware")
            return
        if not utterance.text.strip():
            if utterance.on_start:
                utterance.on_start()
            if utterance.on_end:
                utterance.on_end()
            return

        try:
            pcm = await self._client.synthesize(
                utterance.text,
                voice_id=utterance.voice.voice_id if utterance.voice else None,
                speed=utterance.rate,
            )
            if utterance.on_start:
                utterance.on_start()
            await self._player.play(pcm, utterance.volume)
        except asyncio.CancelledError:
            raise
        except SynthesisRequestError as exc:
            logger.warning("ElevenLabs synthesis failed: %s", exc)
            self._report_error(utterance, exc.code)
            return
        except Exception:
            logger.warning("ElevenLabs narration failed", exc_info=True)
            self._report_error(utterance, "synthesis-failed")
            return

        if utterance.on_end:
            utterance.on_end()

    @staticmethod
    def _report_error(utterance: Utterance, code: str) -> None:
        if utterance.on_error:
            utterance.on_error(code)
