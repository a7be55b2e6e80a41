import base64
import hashlib
import logging
import time
from typing import Callable, Optional

from redis import asyncio as aioredis

from trainer.core.config import settings
from trainer.core.training_config import training_config

logger = logging.getLogger(__name__)


class AudioCache:
    """
    Redis cache for synthesized audio.

    Implements the cache key pattern: tts_audio:{voice_id}:{sha1(text)}
    Every method degrades to a cache miss when Redis is unavailable. After a
    failed connection the cache stays off for `retry_interval` seconds.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        retry_interval: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.redis_url = redis_url or settings.redis_url
        self.ttl_seconds = ttl_seconds or training_config.TTS_CACHE_TTL_SECONDS
        self.retry_interval = retry_interval
        self._clock = clock
        self._client: Optional[aioredis.Redis] = None
        self._connection_tested = False
        self._retry_after = 0.0

    async def _get_client(self) -> Optional[aioredis.Redis]:
        """
        Get Redis client with lazy initialization and connection testing.

        Returns:
            Redis client if available, None if connection fails or a recent attempt failed
        """
        if self._client is not None and self._connection_tested:
            return self._client
        if self._clock() < self._retry_after:
            return None

        try:
            self._client = aioredis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=2,
                socket_timeout=2,
                retry_on_timeout=True,
                health_check_interval=30,
            )
            await self._client.ping()
            self._connection_tested = True
            logger.info("✅ Redis connection established for audio cache")
            return self._client
        except Exception as e:
            logger.warning(
                f"⚠️ Redis connection failed: {str(e)}. Audio will not be cached for {self.retry_interval:.0f}s."
            )
            self._client = None
            self._connection_tested = False
            self._retry_after = self._clock() + self.retry_interval
            return None

    @staticmethod
    def cache_key(text: str, voice_id: str) -> str:
        digest = hashlib.sha1(text.encode("utf-8")).hexdigest()
        return f"tts_audio:{voice_id}:{digest}"

    async def get(self, text: str, voice_id: str) -> Optional[bytes]:
        client = await self._get_client()
        if not client:
            return None

        try:
            cached = await client.get(self.cache_key(text, voice_id))
            if cached is None:
                return None
            logger.debug(f"✅ Audio cache hit for voice {voice_id}")
            return base64.b64decode(cached)
        except Exception as e:
            logger.error(f"❌ Audio cache lookup failed: {str(e)}")
            return None

    async def set(self, text: str, voice_id: str, audio: bytes) -> bool:
        client = await self._get_client()
        if not client:
            return False

        try:
            encoded = base64.b64encode(audio).decode("ascii")
            await client.setex(self.cache_key(text, voice_id), self.ttl_seconds, encoded)
            return True
        except Exception as e:
            logger.error(f"❌ Failed to cache audio: {str(e)}")
            return False
