"""
Registry of live training sessions.

Each session gets its own orchestrator, event bus and WebSocket channel.
Collaborators (database, language model, voice synthesis) are shared and
built from settings on first use.
"""
import asyncio
import logging
from collections import OrderedDict
from typing import Dict, Optional, Set
from uuid import uuid4

from trainer.core.exceptions import SessionNotFoundError
from trainer.core.training_config import TrainingConfig, training_config
from trainer.schemas.training import SessionConfig, SessionResult
from trainer.services.audio_cache import AudioCache
from trainer.services.elevenlabs_service import ElevenLabsService
from trainer.services.event_bus import SessionEventBus
from trainer.services.persistence_service import TrainingPersistenceService
from trainer.services.realtime_channel import SessionChannel
from trainer.services.session_orchestrator import TrainingSessionOrchestrator
from trainer.services.speech_io import NullSpeechIO, VoiceSpeechIO
from trainer.services.training_llm_service import TrainingLLMService

logger = logging.getLogger(__name__)


class TrainingSessionRegistry:
    """Holds one orchestrator and one channel per live session id."""

    def __init__(
        self,
        persistence=None,
        llm=None,
        synthesizer=None,
        options: Optional[TrainingConfig] = None,
    ):
        self.options = options or training_config
        self.persistence = persistence or TrainingPersistenceService()
        self.llm = llm or TrainingLLMService()
        self.synthesizer = synthesizer or ElevenLabsService(cache=AudioCache())
        self._sessions: Dict[str, TrainingSessionOrchestrator] = {}
        self._channels: Dict[str, SessionChannel] = {}
        self._tasks: Set[asyncio.Task] = set()
        # Results of recently ended sessions, oldest first
        self._results: "OrderedDict[str, SessionResult]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def create_session(self, config: SessionConfig, greet: bool = True) -> TrainingSessionOrchestrator:
        """
        Build and connect a new session; the greeting runs in the background.
        """
        session_id = str(uuid4())
        channel = SessionChannel(session_id, ack_timeout=self.options.PLAYBACK_ACK_TIMEOUT_SECONDS)

        if config.is_voice:
            speech_io = VoiceSpeechIO(
                channel.capture,
                self.synthesizer,
                channel.playback,
                synthesis_timeout=self.options.SYNTHESIS_TIMEOUT_SECONDS,
            )
        else:
            speech_io = NullSpeechIO()

        orchestrator = TrainingSessionOrchestrator(
            config,
            persistence=self.persistence,
            llm=self.llm,
            speech_io=speech_io,
            event_bus=SessionEventBus(),
            options=self.options,
            session_id=session_id,
        )
        orchestrator.events.subscribe_all(channel.handle_event)

        await orchestrator.connect()
        channel.session_id = orchestrator.session_id
        self._sessions[orchestrator.session_id] = orchestrator
        self._channels[orchestrator.session_id] = channel
        logger.info(f"Registered training session {orchestrator.session_id} ({config.interaction_mode.value})")

        if greet:
            self.spawn(orchestrator.greet())
        return orchestrator

    def get(self, session_id: str) -> TrainingSessionOrchestrator:
        orchestrator = self._sessions.get(session_id)
        if orchestrator is None:
            raise SessionNotFoundError(session_id)
        return orchestrator

    def get_channel(self, session_id: str) -> SessionChannel:
        channel = self._channels.get(session_id)
        if channel is None:
            raise SessionNotFoundError(session_id)
        return channel

    async def end_session(self, session_id: str) -> SessionResult:
        """
        End a live session and evict it. Ending an evicted session returns its
        remembered result.
        """
        cached = self._results.get(session_id)
        if cached is not None:
            return cached

        result = await self.get(session_id).end()
        await self._evict(session_id, result)
        return result

    def get_result(self, session_id: str) -> Optional[SessionResult]:
        return self._results.get(session_id)

    async def _evict(self, session_id: str, result: SessionResult) -> None:
        self._results[session_id] = result
        self._results.move_to_end(session_id)
        while len(self._results) > self.options.ENDED_RESULTS_LIMIT:
            self._results.popitem(last=False)

        channel = self._channels.get(session_id)
        self.remove(session_id)
        if channel is not None:
            await channel.close()
        logger.info(f"Evicted ended session {session_id} ({len(self._sessions)} live)")

    def remove(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._channels.pop(session_id, None)

    def spawn(self, coro) -> asyncio.Task:
        """Run a session coroutine in the background and keep a reference to it."""
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background session task failed: {task.exception()}")

    async def shutdown(self) -> None:
        """Cancel outstanding background work (application shutdown)."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        logger.info(f"Training session registry shut down ({len(self._sessions)} sessions in memory)")


_registry: Optional[TrainingSessionRegistry] = None


def get_training_registry() -> TrainingSessionRegistry:
    """FastAPI dependency returning the process-wide registry."""
    global _registry
    if _registry is None:
        _registry = TrainingSessionRegistry()
    return _registry


async def shutdown_training_registry() -> None:
    if _registry is not None:
        await _registry.shutdown()
