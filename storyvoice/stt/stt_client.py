"""OpenAI Whisper API HTTP client with health checking.

Sends captured audio to the Whisper transcription endpoint and returns
the transcript with an estimated confidence.  Failures raise
:class:`TranscriptionError` carrying a recognition engine error code so
the recognition session can classify them.
"""

import io
import logging
import math
import time
import wave
from dataclasses import dataclass

import httpx

from storyvoice.config import (
    AUDIO_SAMPLE_RATE,
    STT_API_KEY,
    STT_BASE_URL,
    STT_HEALTH_CHECK_INTERVAL,
    STT_MODEL,
    STT_TIMEOUT,
)

logger = logging.getLogger(__name__)


class TranscriptionError(Exception):
    """A failed transcription request with an engine error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Transcription:
    text: str
    confidence: float | None = None


class STTClient:
    """Async client for the Whisper transcription endpoint."""

    def __init__(self) -> None:
        self._client: httpx.AsyncClient | None = None
        self._available: bool = False
        self._checked_at: float = 0.0

    async def start(self) -> None:
        """Open the HTTP session and probe the API once."""
        if not STT_API_KEY:
            self._available = False
            logger.info("No STT API key — speech recognition disabled")
            return

        self._client = httpx.AsyncClient(
            base_url=STT_BASE_URL,
            headers={"Authorization": f"Bearer {STT_API_KEY}"},
            timeout=STT_TIMEOUT,
        )
        await self._probe_models()

    async def stop(self) -> None:
        client, self._client = self._client, None
        self._available = False
        if client is not None:
            await client.aclose()

    @property
    def is_available(self) -> bool:
        return self._available

    async def transcribe(
        self, audio_bytes: bytes, language: str | None = None
    ) -> Transcription | None:
        """Send PCM audio to Whisper, return the transcript or ``None`` if empty.

        *language* may be a full tag ("en-US"); only its ISO-639-1 part is
        sent.  Raises :class:`TranscriptionError` on failure.
        """
        await self._refresh_availability()

        if not self._client:
            raise TranscriptionError("not-allowed", "Whisper API key not configured")

        data = {"model": STT_MODEL, "response_format": "verbose_json"}
        if language:
            data["language"] = language.split("-")[0].lower()

        try:
            response = await self._client.post(
                "/v1/audio/transcriptions",
                data=data,
                files={"file": ("audio.wav", self._wrap_wav(audio_bytes), "audio/wav")},
            )
        except (httpx.ConnectError, httpx.TimeoutException, OSError) as exc:
            self._available = False
            raise TranscriptionError("network", f"Whisper API unreachable: {exc}") from exc

        if response.status_code in (401, 403):
            self._available = False
            raise TranscriptionError(
                "not-allowed", f"Whisper API rejected credentials ({response.status_code})"
            )
        if response.status_code >= 400:
            raise TranscriptionError(
                "generic", f"Whisper API returned status {response.status_code}"
            )

        try:
            result = response.json()
        except ValueError as exc:
            raise TranscriptionError("generic", "Whisper API returned invalid JSON") from exc

        text = str(result.get("text", "")).strip()
        if not text:
            return None
        logger.debug("STT transcript: %s", text)
        return Transcription(text=text, confidence=self._confidence(result))

    @staticmethod
    def _confidence(result: dict) -> float | None:
        """Estimate confidence as ``exp(mean(avg_logprob))`` over segments."""
        logprobs = [
            segment["avg_logprob"]
            for segment in result.get("segments") or []
            if isinstance(segment, dict) and "avg_logprob" in segment
        ]
        if not logprobs:
            return None
        return min(1.0, max(0.0, math.exp(sum(logprobs) / len(logprobs))))

    async def _probe_models(self) -> None:
        """Mark the API usable when ``GET /v1/models`` accepts our key."""
        self._checked_at = time.monotonic()
        if not self._client:
            self._available = False
            return
        try:
            status = (await self._client.get("/v1/models")).status_code
        except (httpx.ConnectError, httpx.TimeoutException, OSError) as exc:
            self._available = False
            logger.warning("Cannot reach %s — voice input unavailable: %s", STT_BASE_URL, exc)
            return

        self._available = status == 200
        if self._available:
            logger.info("Whisper ready (%s, model %s)", STT_BASE_URL, STT_MODEL)
        else:
            logger.warning("Whisper models probe got HTTP %d — voice input unavailable", status)

    async def _refresh_availability(self) -> None:
        """Probe again once an unavailable API has been idle for the interval."""
        if self._available:
            return
        if time.monotonic() - self._checked_at >= STT_HEALTH_CHECK_INTERVAL:
            await self._probe_models()

    @staticmethod
    def _wrap_wav(pcm_bytes: bytes, sample_rate: int = AUDIO_SAMPLE_RATE) -> io.BytesIO:
        """Mono 16-bit WAV container around raw PCM."""
        buf = io.BytesIO()
        with wave.open(buf, "wb") as wav:
            wav.setnchannels(1)
            wav.setsampwidth(2)
            wav.setframerate(sample_rate)
            wav.writeframes(pcm_bytes)
        buf.seek(0)
        return buf
