"""Recognition backend built from the microphone and the Whisper API.

Each captured utterance is transcribed once and delivered as a single
final result.  In continuous mode the backend keeps capturing until it
is stopped; otherwise one utterance ends the run.
"""

import asyncio
import logging

from storyvoice.stt.backend import RecognitionBackend, RecognitionListener
from storyvoice.stt.microphone import MicrophoneCapture, MicrophoneError
from storyvoice.stt.stt_client import STTClient, TranscriptionError
from storyvoice.stt.types import (
    RecognitionAlternative,
    RecognitionConfig,
    RecognitionEvent,
    RecognitionResult,
)

logger = logging.getLogger(__name__)


class WhisperRecognitionBackend(RecognitionBackend):
    """Microphone capture plus Whisper transcription."""

    def __init__(self) -> None:
        self._microphone = MicrophoneCapture()
        self._client = STTClient()
        self._task: asyncio.Task | None = None
        self._stop_requested: bool = False

    async def start(self) -> None:
        await self._microphone.start()
        await self._client.start()
        logger.info(
            "Whisper recognition backend started (mic=%s, stt=%s)",
            self._microphone.is_available,
            self._client.is_available,
        )

    async def stop(self) -> None:
        self.abort_recognition()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._client.stop()
        await self._microphone.stop()

    @property
    def is_available(self) -> bool:
        return self._microphone.is_available and self._client.is_available

    @property
    def backend_name(self) -> str:
        return "whisper"

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start_recognition(
        self, config: RecognitionConfig, listener: RecognitionListener
    ) -> None:
        if self.is_running:
            # A previous run is still unwinding after abort; let it go.
            self._task.cancel()
        self._stop_requested = False
        self._task = asyncio.create_task(self._run(config, listener))

    def stop_recognition(self) -> None:
        if not self.is_running:
            return
        self._stop_requested = True
        self._microphone.finish()

    def abort_recognition(self) -> None:
        if not self.is_running:
            return
        self._stop_requested = True
        self._microphone.finish()
        self._task.cancel()

    async def _run(self, config: RecognitionConfig, listener: RecognitionListener) -> None:
        """Capture, transcribe and report until done, then signal the end."""
        results: list[RecognitionResult] = []
        listener.on_start()
        try:
            while True:
                try:
                    audio = await self._microphone.capture_until_silence()
                except MicrophoneError as exc:
                    listener.on_error("audio-capture", str(exc))
                    break

                if audio is None:
                    if not self._stop_requested:
                        listener.on_error("no-speech")
                    break

                try:
                    transcription = await self._client.transcribe(
                        audio, language=config.language
                    )
                except TranscriptionError as exc:
                    listener.on_error(exc.code, str(exc))
                    break

                if transcription is not None:
                    results.append(
                        RecognitionResult(
                            alternatives=[
                                RecognitionAlternative(
                                    transcript=transcription.text,
                                    confidence=transcription.confidence,
                                )
                            ],
                            is_final=True,
                        )
                    )
                    listener.on_result(
                        RecognitionEvent(result_index=len(results) - 1, results=results)
                    )

                if not config.continuous or self._stop_requested:
                    break
        except asyncio.CancelledError:
            logger.debug("Whisper recognition run cancelled")
            raise
        except Exception as exc:
            logger.warning("Whisper recognition run failed", exc_info=True)
            listener.on_error("generic", str(exc))

        listener.on_end()
