"""Utterance capture from the default input device.

Speech is delimited by signal energy: a capture waits for the RMS level
to rise above a threshold, then records until it has stayed below that
threshold for a given pause.  All durations are counted in whole 100 ms
reads.
"""

import asyncio
import logging
import math
import threading
from dataclasses import dataclass

import numpy as np
import sounddevice as sd

from storyvoice.config import (
    AUDIO_SAMPLE_RATE,
    STT_LISTEN_TIMEOUT,
    STT_MAX_RECORD_DURATION,
    STT_SILENCE_DURATION,
    STT_SILENCE_THRESHOLD,
)

logger = logging.getLogger(__name__)

_READ_SECONDS = 0.1


class MicrophoneError(Exception):
    """The input device could not be opened or read."""


def _reads(seconds: float) -> int:
    return max(1, math.ceil(round(seconds / _READ_SECONDS, 6)))


@dataclass(frozen=True)
class _Utterance:
    """Limits for one capture, in reads."""

    sample_rate: int
    threshold: float
    onset_reads: int
    pause_reads: int
    max_reads: int

    @property
    def read_size(self) -> int:
        return int(self.sample_rate * _READ_SECONDS)


class MicrophoneCapture:
    """Captures one utterance at a time.

    ``start()`` only probes for an input device; a machine without one
    reports ``is_available = False`` instead of failing.  ``finish()`` may
    be called from the event loop while a capture runs in its worker
    thread: the capture then returns whatever speech it already holds.
    """

    def __init__(self) -> None:
        self._available: bool = False
        self._listening: bool = False
        self._finish = threading.Event()

    async def start(self) -> None:
        try:
            sd.query_devices(kind="input")
        except Exception:
            self._available = False
            logger.warning("No microphone input device — voice choices disabled")
            return
        self._available = True
        logger.info("Microphone input device detected")

    async def stop(self) -> None:
        self.finish()
        self._listening = False
        self._available = False

    @property
    def is_available(self) -> bool:
        return self._available

    @property
    def is_listening(self) -> bool:
        return self._listening

    def finish(self) -> None:
        """End the current capture early, keeping any recorded speech."""
        self._finish.set()

    async def capture_until_silence(
        self,
        *,
        max_duration: float | None = None,
        silence_threshold: float | None = None,
        silence_duration: float | None = None,
        sample_rate: int | None = None,
        listen_timeout: float | None = None,
    ) -> bytes | None:
        """Record one utterance as PCM 16-bit mono bytes.

        Returns ``None`` when nobody spoke within *listen_timeout* (or
        before ``finish()``).  Raises :class:`MicrophoneError` when the
        device is missing or fails before any speech was recorded.
        """
        if not self._available:
            raise MicrophoneError("No microphone input device")

        limits = _Utterance(
            sample_rate=sample_rate or AUDIO_SAMPLE_RATE,
            threshold=silence_threshold or STT_SILENCE_THRESHOLD,
            onset_reads=_reads(listen_timeout or STT_LISTEN_TIMEOUT),
            pause_reads=_reads(silence_duration or STT_SILENCE_DURATION),
            max_reads=_reads(max_duration or STT_MAX_RECORD_DURATION),
        )
        self._finish.clear()
        self._listening = True
        try:
            return await asyncio.to_thread(self._capture_sync, limits)
        finally:
            self._listening = False

    def _capture_sync(self, limits: _Utterance) -> bytes | None:
        """Blocking capture; runs in a worker thread."""
        speech: list[np.ndarray] = []
        try:
            with sd.InputStream(
                samplerate=limits.sample_rate,
                channels=1,
                dtype="int16",
                blocksize=limits.read_size,
            ) as stream:
                first = self._wait_for_onset(stream, limits)
                if first is None:
                    return None
                speech.append(first)
                self._record_until_pause(stream, limits, speech)
        except Exception as exc:
            if not speech:
                raise MicrophoneError(str(exc)) from exc
            logger.warning("Microphone failed mid-utterance — keeping %d reads", len(speech))

        return np.concatenate(speech).tobytes()

    def _wait_for_onset(self, stream, limits: _Utterance) -> np.ndarray | None:
        for _ in range(limits.onset_reads):
            if self._finish.is_set():
                break
            chunk, _overflowed = stream.read(limits.read_size)
            if self._compute_rms(chunk) > limits.threshold:
                return chunk.copy()
        logger.debug("No speech onset")
        return None

    def _record_until_pause(
        self, stream, limits: _Utterance, speech: list[np.ndarray]
    ) -> None:
        quiet = 0
        while len(speech) < limits.max_reads and not self._finish.is_set():
            chunk, _overflowed = stream.read(limits.read_size)
            speech.append(chunk.copy())
            quiet = quiet + 1 if self._compute_rms(chunk) < limits.threshold else 0
            if quiet >= limits.pause_reads:
                break

    @staticmethod
    def _compute_rms(data: np.ndarray) -> float:
        """RMS level of int16 samples, normalized to 0.0-1.0."""
        samples = data.astype(np.float32) / 32768.0
        return float(np.sqrt(np.mean(samples ** 2)))
