import base64
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import httpx
import pytest

from trainer.core.exceptions import SpeechSynthesisError
from trainer.services.audio_cache import AudioCache
from trainer.services.elevenlabs_service import DEFAULT_VOICE_SETTINGS, ElevenLabsService


def mock_http_client(status_code=200, content=b"mp3-bytes", post_error=None):
    """Patch target for httpx.AsyncClient used as an async context manager."""
    response = Mock(status_code=status_code, content=content, text="error body")
    client = MagicMock()
    client.post = AsyncMock(return_value=response, side_effect=post_error)
    client_class = MagicMock()
    client_class.return_value.__aenter__ = AsyncMock(return_value=client)
    client_class.return_value.__aexit__ = AsyncMock(return_value=False)
    return client_class, client


@pytest.fixture
def service():
    return ElevenLabsService(api_key="test-key", base_url="https://tts.example/v1/", model_id="eleven_multilingual_v2")


class TestElevenLabsService:

    @pytest.mark.asyncio
    async def test_synthesize_posts_text_and_returns_audio(self, service):
        client_class, client = mock_http_client()

        with patch("trainer.services.elevenlabs_service.httpx.AsyncClient", client_class):
            audio = await service.synthesize("  Hola, ¿quién habla?  ", "voice-123")

        assert audio == b"mp3-bytes"
        url = client.post.await_args.args[0]
        assert url == "https://tts.example/v1/text-to-speech/voice-123"
        kwargs = client.post.await_args.kwargs
        assert kwargs["json"] == {
            "text": "Hola, ¿quién habla?",
            "model_id": "eleven_multilingual_v2",
            "voice_settings": DEFAULT_VOICE_SETTINGS,
        }
        assert kwargs["headers"]["xi-api-key"] == "test-key"
        assert kwargs["headers"]["Accept"] == "audio/mpeg"

    @pytest.mark.asyncio
    async def test_long_text_is_truncated(self, service):
        client_class, client = mock_http_client()

        with patch("trainer.services.elevenlabs_service.httpx.AsyncClient", client_class), \
                patch("trainer.services.elevenlabs_service.training_config.TTS_MAX_CHARS", 10):
            await service.synthesize("a" * 50, "voice-123")

        assert client.post.await_args.kwargs["json"]["text"] == "a" * 10

    @pytest.mark.asyncio
    @pytest.mark.parametrize("api_key, text, voice_id", [
        ("", "Hola", "voice-123"),
        ("test-key", "Hola", None),
        ("test-key", "   ", "voice-123"),
    ])
    async def test_missing_inputs_raise_without_request(self, api_key, text, voice_id):
        client_class, client = mock_http_client()
        service = ElevenLabsService(api_key=api_key)

        with patch("trainer.services.elevenlabs_service.httpx.AsyncClient", client_class):
            with pytest.raises(SpeechSynthesisError):
                await service.synthesize(text, voice_id)

        client.post.assert_not_called()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code, content", [(401, b""), (500, b"oops"), (200, b"")])
    async def test_bad_responses_raise(self, service, status_code, content):
        client_class, _ = mock_http_client(status_code=status_code, content=content)

        with patch("trainer.services.elevenlabs_service.httpx.AsyncClient", client_class):
            with pytest.raises(SpeechSynthesisError):
                await service.synthesize("Hola", "voice-123")

    @pytest.mark.asyncio
    async def test_transport_error_raises(self, service):
        client_class, _ = mock_http_client(post_error=httpx.ConnectTimeout("timed out"))

        with patch("trainer.services.elevenlabs_service.httpx.AsyncClient", client_class):
            with pytest.raises(SpeechSynthesisError, match="request failed"):
                await service.synthesize("Hola", "voice-123")

    @pytest.mark.asyncio
    async def test_cache_hit_skips_request(self):
        cache = Mock()
        cache.get = AsyncMock(return_value=b"cached-audio")
        cache.set = AsyncMock(return_value=True)
        service = ElevenLabsService(api_key="test-key", cache=cache)
        client_class, client = mock_http_client()

        with patch("trainer.services.elevenlabs_service.httpx.AsyncClient", client_class):
            audio = await service.synthesize("Hola", "voice-123")

        assert audio == b"cached-audio"
        client.post.assert_not_called()
        cache.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_cache_miss_stores_result(self):
        cache = Mock()
        cache.get = AsyncMock(return_value=None)
        cache.set = AsyncMock(return_value=True)
        service = ElevenLabsService(api_key="test-key", cache=cache)
        client_class, _ = mock_http_client()

        with patch("trainer.services.elevenlabs_service.httpx.AsyncClient", client_class):
            await service.synthesize("Hola", "voice-123")

        cache.set.assert_awaited_once_with("Hola", "voice-123", b"mp3-bytes")


def mock_redis_client(ping_error=None):
    client = Mock()
    client.ping = AsyncMock(side_effect=ping_error)
    client.get = AsyncMock(return_value=None)
    client.setex = AsyncMock(return_value=True)
    return client


class TestAudioCache:

    def test_key_is_stable_per_voice_and_text(self):
        key = AudioCache.cache_key("Hola", "voice-1")

        assert key.startswith("tts_audio:voice-1:")
        assert key == AudioCache.cache_key("Hola", "voice-1")
        assert key != AudioCache.cache_key("Hola", "voice-2")

    @pytest.mark.asyncio
    async def test_set_and_get_round_trip_through_base64(self):
        redis_client = mock_redis_client()
        with patch("trainer.services.audio_cache.aioredis.from_url", return_value=redis_client):
            cache = AudioCache(redis_url="redis://cache:6379/0", ttl_seconds=60)

            assert await cache.set("Hola", "voice-1", b"\x00\xffaudio") is True
            key, ttl, stored = redis_client.setex.call_args.args
            assert key == AudioCache.cache_key("Hola", "voice-1")
            assert ttl == 60
            assert stored == base64.b64encode(b"\x00\xffaudio").decode("ascii")

            redis_client.get.return_value = stored
            assert await cache.get("Hola", "voice-1") == b"\x00\xffaudio"

    @pytest.mark.asyncio
    async def test_miss_returns_none(self):
        with patch("trainer.services.audio_cache.aioredis.from_url", return_value=mock_redis_client()):
            assert await AudioCache().get("Hola", "voice-1") is None

    @pytest.mark.asyncio
    async def test_unavailable_redis_degrades_to_miss(self):
        redis_client = mock_redis_client(ping_error=ConnectionError("refused"))
        with patch("trainer.services.audio_cache.aioredis.from_url", return_value=redis_client):
            cache = AudioCache()

            assert await cache.get("Hola", "voice-1") is None
            assert await cache.set("Hola", "voice-1", b"audio") is False

    @pytest.mark.asyncio
    async def test_failed_connection_is_retried_once_per_interval(self):
        now = [100.0]
        redis_client = mock_redis_client(ping_error=ConnectionError("refused"))
        with patch("trainer.services.audio_cache.aioredis.from_url", return_value=redis_client) as from_url:
            cache = AudioCache(retry_interval=30.0, clock=lambda: now[0])

            for _ in range(5):
                assert await cache.get("Hola", "voice-1") is None
            assert from_url.call_count == 1

            now[0] += 31.0
            redis_client.ping.side_effect = None
            assert await cache.set("Hola", "voice-1", b"audio") is True
            assert from_url.call_count == 2
            redis_client.setex.assert_awaited_once()
