"""
ElevenLabs text-to-speech for the simulated client's voice.
"""
import logging
from typing import Optional

import httpx

from trainer.core.config import settings
from trainer.core.exceptions import SpeechSynthesisError
from trainer.core.training_config import training_config
from trainer.services.audio_cache import AudioCache
from trainer.services.speech_io import SpeechSynthesizer

logger = logging.getLogger(__name__)

DEFAULT_VOICE_SETTINGS = {
    "stability": 0.7,
    "similarity_boost": 0.8,
    "style": 0.3,
    "use_speaker_boost": True,
}


class ElevenLabsService(SpeechSynthesizer):
    """Synthesizes speech over the ElevenLabs REST API, with an optional Redis audio cache."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model_id: Optional[str] = None,
        cache: Optional[AudioCache] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.elevenlabs_api_key
        self.base_url = (base_url or settings.elevenlabs_base_url).rstrip("/")
        self.model_id = model_id or settings.elevenlabs_model_id
        self.cache = cache
        self.timeout = timeout or training_config.SYNTHESIS_TIMEOUT_SECONDS

        if not self.api_key:
            logger.warning("No ElevenLabs API key found. Voice synthesis is unavailable.")

    async def synthesize(self, text: str, voice_id: Optional[str]) -> bytes:
        """
        Turn text into MP3 audio.

        Args:
            text: Text to speak, truncated to the configured maximum length
            voice_id: ElevenLabs voice id

        Returns:
            audio/mpeg bytes

        Raises:
            SpeechSynthesisError: missing key or voice, HTTP failure, empty audio
        """
        if not self.api_key:
            raise SpeechSynthesisError("ElevenLabs API key not configured")
        if not voice_id:
            raise SpeechSynthesisError("No voice selected")
        if not text or not text.strip():
            raise SpeechSynthesisError("Nothing to synthesize")

        text = text.strip()[:training_config.TTS_MAX_CHARS]

        if self.cache:
            cached = await self.cache.get(text, voice_id)
            if cached:
                return cached

        payload = {
            "text": text,
            "model_id": self.model_id,
            "voice_settings": DEFAULT_VOICE_SETTINGS,
        }
        headers = {
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
            "xi-api-key": self.api_key,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/text-to-speech/{voice_id}",
                    json=payload,
                    headers=headers,
                )
        except httpx.HTTPError as e:
            logger.error(f"ElevenLabs request failed: {e}")
            raise SpeechSynthesisError(f"ElevenLabs request failed: {e}") from e

        if response.status_code != 200:
            logger.error(f"ElevenLabs returned {response.status_code}: {response.text[:200]}")
            raise SpeechSynthesisError(f"ElevenLabs API error: {response.status_code}")

        audio = response.content
        if not audio:
            raise SpeechSynthesisError("ElevenLabs returned empty audio")

        if self.cache:
            await self.cache.set(text, voice_id, audio)

        logger.debug(f"Synthesized {len(audio)} bytes for voice {voice_id}")
        return audio
