from unittest.mock import AsyncMock, Mock

import pytest

from trainer.core.exceptions import SessionNotFoundError
from trainer.schemas.training import OrchestratorState
from trainer.services.session_registry import TrainingSessionRegistry
from trainer.services.speech_io import NullSpeechIO, VoiceSpeechIO


@pytest.fixture
def registry(mock_llm, mock_persistence, training_options):
    synthesizer = Mock()
    synthesizer.synthesize = AsyncMock(return_value=b"mp3-bytes")
    return TrainingSessionRegistry(
        persistence=mock_persistence,
        llm=mock_llm,
        synthesizer=synthesizer,
        options=training_options,
    )


class TestTrainingSessionRegistry:

    @pytest.mark.asyncio
    async def test_chat_session_is_registered_connected(self, registry, chat_config):
        orchestrator = await registry.create_session(chat_config, greet=False)

        assert orchestrator.session_id in registry
        assert len(registry) == 1
        assert orchestrator.state == OrchestratorState.GREETING
        assert isinstance(orchestrator.speech_io, NullSpeechIO)
        assert registry.get_channel(orchestrator.session_id).session_id == orchestrator.session_id

    @pytest.mark.asyncio
    async def test_voice_session_uses_channel_for_capture_and_playback(self, registry, voice_config):
        orchestrator = await registry.create_session(voice_config, greet=False)
        channel = registry.get_channel(orchestrator.session_id)

        assert isinstance(orchestrator.speech_io, VoiceSpeechIO)
        assert orchestrator.speech_io.capture_source is channel.capture
        assert orchestrator.speech_io.playback_sink is channel.playback
        assert orchestrator.speech_io.synthesizer is registry.synthesizer

    @pytest.mark.asyncio
    async def test_greeting_runs_in_background(self, registry, chat_config):
        orchestrator = await registry.create_session(chat_config)
        for task in list(registry._tasks):
            await task

        assert orchestrator.state == OrchestratorState.LISTENING
        assert len(orchestrator.transcript) == 1

    @pytest.mark.asyncio
    async def test_unknown_session_raises(self, registry):
        with pytest.raises(SessionNotFoundError):
            registry.get("missing")
        with pytest.raises(SessionNotFoundError):
            registry.get_channel("missing")

    @pytest.mark.asyncio
    async def test_remove_and_shutdown(self, registry, chat_config):
        orchestrator = await registry.create_session(chat_config, greet=False)

        registry.remove(orchestrator.session_id)
        await registry.shutdown()

        assert orchestrator.session_id not in registry
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_ended_sessions_are_evicted_and_keep_their_result(self, registry, chat_config):
        orchestrators = [await registry.create_session(chat_config, greet=False) for _ in range(3)]
        assert len(registry) == 3

        results = [await registry.end_session(o.session_id) for o in orchestrators]

        assert len(registry) == 0
        for orchestrator, result in zip(orchestrators, results):
            assert orchestrator.session_id not in registry
            assert registry.get_result(orchestrator.session_id) is result
            assert await registry.end_session(orchestrator.session_id) is result
        with pytest.raises(SessionNotFoundError):
            registry.get_channel(orchestrators[0].session_id)

    @pytest.mark.asyncio
    async def test_ending_closes_the_session_websockets(self, registry, chat_config):
        orchestrator = await registry.create_session(chat_config, greet=False)
        channel = registry.get_channel(orchestrator.session_id)
        websocket = Mock()
        websocket.send_text = AsyncMock()
        websocket.close = AsyncMock()
        await channel.add_connection(websocket)

        await registry.end_session(orchestrator.session_id)

        websocket.close.assert_awaited_once_with(code=1000)
        assert channel.connection_count == 0

    @pytest.mark.asyncio
    async def test_remembered_results_are_bounded(self, mock_llm, mock_persistence, chat_config, training_options):
        training_options.ENDED_RESULTS_LIMIT = 2
        registry = TrainingSessionRegistry(persistence=mock_persistence, llm=mock_llm, synthesizer=Mock(), options=training_options)
        session_ids = []
        for _ in range(3):
            orchestrator = await registry.create_session(chat_config, greet=False)
            session_ids.append(orchestrator.session_id)
            await registry.end_session(orchestrator.session_id)

        assert registry.get_result(session_ids[0]) is None
        assert registry.get_result(session_ids[1]) is not None
        assert registry.get_result(session_ids[2]) is not None
