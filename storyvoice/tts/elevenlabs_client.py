"""ElevenLabs HTTP client: voice catalog and text-to-speech.

Returns raw PCM audio for the story narration and the list of voices
the account can use.  Synthesis failures raise
:class:`SynthesisRequestError` carrying a narration engine error code.
"""

import logging
import time

import httpx

from storyvoice.config import (
    AUDIO_SAMPLE_RATE,
    ELEVENLABS_API_KEY,
    ELEVENLABS_BASE_URL,
    TTS_HEALTH_CHECK_INTERVAL,
    TTS_MODEL,
    TTS_TIMEOUT,
    TTS_VOICE_ID,
)
from storyvoice.tts.types import Voice

logger = logging.getLogger(__name__)

# ElevenLabs accepts voice_settings.speed only within this range.
MIN_SPEED = 0.7
MAX_SPEED = 1.2


class SynthesisRequestError(Exception):
    """A failed synthesis request with an engine error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


def _voice_language(entry: dict) -> str:
    for verified in entry.get("verified_languages") or []:
        if isinstance(verified, dict):
            lang = verified.get("locale") or verified.get("language")
            if lang:
                return str(lang)
    labels = entry.get("labels") or {}
    return str(labels.get("language", ""))


class ElevenLabsClient:
    """Async client for the ElevenLabs voices and text-to-speech endpoints."""

    def __init__(self) -> None:
        self._client: httpx.AsyncClient | None = None
        self._available: bool = False
        self._checked_at: float = 0.0

    async def start(self) -> None:
        """Open the HTTP session and verify the API key."""
        if not ELEVENLABS_API_KEY:
            self._available = False
            logger.info("No ElevenLabs API key — narration disabled")
            return

        self._client = httpx.AsyncClient(
            base_url=ELEVENLABS_BASE_URL,
            headers={"xi-api-key": ELEVENLABS_API_KEY},
            timeout=TTS_TIMEOUT,
        )
        await self._probe_account()

    async def stop(self) -> None:
        client, self._client = self._client, None
        self._available = False
        if client is not None:
            await client.aclose()

    @property
    def is_available(self) -> bool:
        return self._available

    async def list_voices(self) -> list[Voice]:
        """Fetch the account's voice catalog; empty on any failure."""
        if not self._client:
            return []
        try:
            response = await self._client.get("/v1/voices")
            response.raise_for_status()
            entries = response.json().get("voices") or []
        except (httpx.HTTPError, ValueError, AttributeError):
            logger.warning("ElevenLabs voice catalog request failed", exc_info=True)
            return []

        voices = [
            Voice(
                voice_id=str(entry["voice_id"]),
                name=str(entry.get("name") or entry["voice_id"]),
                lang=_voice_language(entry),
                default=entry["voice_id"] == TTS_VOICE_ID,
            )
            for entry in entries
            if isinstance(entry, dict) and entry.get("voice_id")
        ]
        logger.info("ElevenLabs catalog: %d voices", len(voices))
        return voices

    async def synthesize(
        self, text: str, voice_id: str | None = None, speed: float | None = None
    ) -> bytes:
        """Synthesize *text* to PCM 16-bit mono bytes.

        Raises :class:`SynthesisRequestError` on failure.
        """
        await self._refresh_availability()

        if not self._client:
            raise SynthesisRequestError("not-allowed", "ElevenLabs API key not configured")

        payload: dict = {"text": text, "model_id": TTS_MODEL}
        if speed is not None:
            payload["voice_settings"] = {"speed": min(MAX_SPEED, max(MIN_SPEED, speed))}

        try:
            response = await self._client.post(
                f"/v1/text-to-speech/{voice_id or TTS_VOICE_ID}",
                json=payload,
                params={"output_format": f"pcm_{AUDIO_SAMPLE_RATE}"},
            )
        except (httpx.ConnectError, httpx.TimeoutException, OSError) as exc:
            self._available = False
            raise SynthesisRequestError(
                "network", f"ElevenLabs unreachable: {exc}"
            ) from exc

        if response.status_code in (401, 403):
            self._available = False
            raise SynthesisRequestError(
                "not-allowed", f"ElevenLabs rejected credentials ({response.status_code})"
            )
        if response.status_code >= 400:
            raise SynthesisRequestError(
                "synthesis-failed", f"ElevenLabs returned status {response.status_code}"
            )
        return response.content

    async def _probe_account(self) -> None:
        """Mark the API usable when ``GET /v1/user`` accepts our key."""
        self._checked_at = time.monotonic()
        if not self._client:
            self._available = False
            return
        try:
            status = (await self._client.get("/v1/user")).status_code
        except (httpx.ConnectError, httpx.TimeoutException, OSError) as exc:
            self._available = False
            logger.warning("Cannot reach %s — narration unavailable: %s", ELEVENLABS_BASE_URL, exc)
            return

        self._available = status == 200
        if self._available:
            logger.info(
                "ElevenLabs ready (%s, voice %s, model %s)",
                ELEVENLABS_BASE_URL,
                TTS_VOICE_ID,
                TTS_MODEL,
            )
        else:
            logger.warning("ElevenLabs account probe got HTTP %d — narration unavailable", status)

    async def _refresh_availability(self) -> None:
        if self._available:
            return
        if time.monotonic() - self._checked_at >= TTS_HEALTH_CHECK_INTERVAL:
            await self._probe_account()
