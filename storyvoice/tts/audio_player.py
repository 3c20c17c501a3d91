"""Interruptible PCM playback on the default output device."""

import asyncio
import logging

import numpy as np
import sounddevice as sd

from storyvoice.config import AUDIO_SAMPLE_RATE

logger = logging.getLogger(__name__)


class AudioPlayer:
    """Plays one PCM clip at a time; ``interrupt()`` silences it at once."""

    def __init__(self) -> None:
        self._has_output: bool = False
        self._playing: bool = False

    async def start(self) -> None:
        """Look for an output device; without one, ``play`` does nothing."""
        try:
            sd.query_devices(kind="output")
        except Exception:
            self._has_output = False
            logger.warning("No speaker found — narration will be silent")
            return
        self._has_output = True
        logger.info("Speaker found — narration audio enabled")

    async def stop(self) -> None:
        self.interrupt()
        self._has_output = False

    @property
    def is_available(self) -> bool:
        return self._has_output

    @property
    def is_playing(self) -> bool:
        return self._playing

    async def play(self, pcm_bytes: bytes, volume: float = 1.0) -> None:
        """Play int16 PCM bytes at *volume* (0.0-1.0) until done or interrupted."""
        if not self._has_output:
            return
        self._playing = True
        try:
            await asyncio.to_thread(self._play_sync, pcm_bytes, volume)
        finally:
            self._playing = False

    def interrupt(self) -> None:
        """Halt any in-progress playback."""
        if not self._playing:
            return
        try:
            sd.stop()
        except Exception:
            logger.debug("sounddevice stop failed", exc_info=True)

    @staticmethod
    def _to_float(pcm_bytes: bytes, volume: float) -> np.ndarray:
        audio = np.frombuffer(pcm_bytes, dtype=np.int16).astype(np.float32) / 32768.0
        return audio * float(np.clip(volume, 0.0, 1.0))

    def _play_sync(self, pcm_bytes: bytes, volume: float) -> None:
        """Runs in a worker thread via ``asyncio.to_thread``."""
        sd.play(self._to_float(pcm_bytes, volume), samplerate=AUDIO_SAMPLE_RATE)
        sd.wait()
