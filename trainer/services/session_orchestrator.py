"""
TrainingSessionOrchestrator

Drives one training attempt from connection to final evaluation.

Key responsibilities:
- State machine: connecting -> greeting -> listening <-> thinking <-> speaking,
  with paused and ended
- Single in-flight user turn; chat submissions made while busy are queued,
  voice input arriving while busy is dropped
- Active-duration accounting that excludes paused intervals
- Discarding late async results through a generation token bumped on end
- Best-effort persistence in the background, never blocking the conversation
"""
import asyncio
import logging
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Dict, List, Optional, Set
from uuid import uuid4

from trainer.core.exceptions import ConversationGenerationError
from trainer.core.training_config import TrainingConfig, training_config
from trainer.schemas.training import (
    LiveSession,
    MetricSnapshot,
    OrchestratorState,
    Sender,
    SessionConfig,
    SessionResult,
    SessionStatus,
    Turn,
)
from trainer.services.evaluation_finalizer import EvaluationFinalizer
from trainer.services.event_bus import EventType, SessionEvent, SessionEventBus
from trainer.services.metrics_engine import MetricsEngine
from trainer.services.persistence_service import session_counters
from trainer.services.speech_io import NullSpeechIO, SpeechIOAdapter
from trainer.services.training_llm_service import SESSION_START_PROMPT
from trainer.services.transcript_store import TranscriptStore

logger = logging.getLogger(__name__)

# Opening line per client emotional stance, used when the greeting reply fails
WELCOME_MESSAGES = {
    "curious": "Hola, me dijeron que me pueden ayudar. Tengo algunas preguntas sobre sus servicios...",
    "skeptical": "Buenos días. Honestamente, no suelo responder a estas llamadas, pero decidí escuchar. ¿Qué tienen para ofrecer?",
    "hurried": "Hola, tengo poco tiempo. ¿De qué se trata esto exactamente?",
    "annoyed": "¿Sí? Mire, estoy ocupado. Esto más vale que sea importante.",
    "interested": "¡Hola! Vi que me llamaron. Me interesa saber más sobre lo que ofrecen.",
    "neutral": "Buenos días, ¿en qué puedo ayudarle?",
}

VALID_TRANSITIONS = {
    OrchestratorState.CONNECTING: {OrchestratorState.GREETING, OrchestratorState.ENDED},
    OrchestratorState.GREETING: {OrchestratorState.LISTENING, OrchestratorState.SPEAKING, OrchestratorState.ENDED},
    OrchestratorState.LISTENING: {OrchestratorState.THINKING, OrchestratorState.PAUSED, OrchestratorState.ENDED},
    OrchestratorState.THINKING: {
        OrchestratorState.SPEAKING,
        OrchestratorState.LISTENING,
        OrchestratorState.PAUSED,
        OrchestratorState.ENDED,
    },
    OrchestratorState.SPEAKING: {OrchestratorState.LISTENING, OrchestratorState.PAUSED, OrchestratorState.ENDED},
    OrchestratorState.PAUSED: {
        OrchestratorState.LISTENING,
        OrchestratorState.THINKING,
        OrchestratorState.SPEAKING,
        OrchestratorState.ENDED,
    },
    OrchestratorState.ENDED: set(),  # Terminal
}

PAUSABLE_STATES = (OrchestratorState.LISTENING, OrchestratorState.THINKING, OrchestratorState.SPEAKING)


def welcome_message(emotion: Optional[str]) -> str:
    return WELCOME_MESSAGES.get(emotion or "neutral", WELCOME_MESSAGES["neutral"])


class TrainingSessionOrchestrator:
    """
    Session-scoped conversation controller.

    One instance per training attempt; nothing is shared between sessions.
    Collaborators are injected so tests can replace any of them.
    """

    def __init__(
        self,
        config: SessionConfig,
        persistence=None,
        llm=None,
        speech_io: Optional[SpeechIOAdapter] = None,
        metrics_engine: Optional[MetricsEngine] = None,
        finalizer: Optional[EvaluationFinalizer] = None,
        event_bus: Optional[SessionEventBus] = None,
        clock: Callable[[], float] = time.monotonic,
        options: Optional[TrainingConfig] = None,
        session_id: Optional[str] = None,
    ):
        self.options = options or training_config
        self.session = LiveSession(id=session_id or str(uuid4()), config=config)
        self.transcript = TranscriptStore(self.session)
        self.persistence = persistence
        self.llm = llm
        self.metrics = metrics_engine or MetricsEngine(
            jitter=self.options.METRICS_JITTER,
            seed=self.options.METRICS_SEED,
        )
        self.finalizer = finalizer or EvaluationFinalizer(
            llm,
            persistence,
            timeout=self.options.EVALUATION_TIMEOUT_SECONDS,
        )
        self.events = event_bus or SessionEventBus()
        self.speech_io = speech_io or NullSpeechIO()
        self.speech_io.bind_warning_handler(self._on_speech_warning)
        self._clock = clock

        self._state = OrchestratorState.CONNECTING
        self._generation = 0
        self._in_flight = False
        self._queue: Deque[str] = deque()

        self._started_at: Optional[float] = None
        self._pause_started: Optional[float] = None
        self._paused_total = 0.0
        self._frozen_duration: Optional[int] = None
        self._paused_from: Optional[OrchestratorState] = None
        self._held_reply: Optional[Turn] = None

        self._tasks: Set[asyncio.Task] = set()
        self._persistence_tasks: Set[asyncio.Task] = set()
        self._end_task: Optional[asyncio.Future] = None

    # Properties

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def is_voice(self) -> bool:
        return self.session.config.is_voice

    @property
    def is_ended(self) -> bool:
        return self._state == OrchestratorState.ENDED

    @property
    def latest_metrics(self) -> Optional[MetricSnapshot]:
        return self.metrics.latest

    @property
    def result(self) -> Optional[SessionResult]:
        """The end() result once it is available."""
        if self._end_task is None or not self._end_task.done() or self._end_task.cancelled():
            return None
        if self._end_task.exception() is not None:
            return None
        return self._end_task.result()

    def accepts_input(self, text) -> bool:
        """Whether submit_user_text(text) would process or queue the text right now."""
        if not isinstance(text, str) or not text.strip():
            return False
        if self._state == OrchestratorState.LISTENING:
            return True
        return self._state in PAUSABLE_STATES and not self.is_voice

    def active_duration(self, now: Optional[float] = None) -> float:
        """Seconds since connect with every paused interval subtracted."""
        if self._frozen_duration is not None:
            return float(self._frozen_duration)
        if self._started_at is None:
            return 0.0
        now = self._clock() if now is None else now
        paused = self._paused_total
        if self._pause_started is not None:
            paused += now - self._pause_started
        return max(0.0, now - self._started_at - paused)

    def snapshot(self) -> Dict[str, Any]:
        """Live view of the session for the API layer."""
        latest = self.metrics.latest
        return {
            **self.session.to_summary(),
            "state": self._state.value,
            "active_duration_seconds": round(self.active_duration(), 1),
            "queued_submissions": len(self._queue),
            "metrics": latest.model_dump(mode="json") if latest else None,
            "turns": [turn.model_dump(mode="json") for turn in self.transcript.all()],
        }

    # Lifecycle

    async def start(self) -> None:
        await self.connect()
        await self.greet()

    async def connect(self) -> LiveSession:
        """
        Create the persisted session. A persistence failure leaves the session
        running unpersisted instead of failing.
        """
        if self._state != OrchestratorState.CONNECTING:
            return self.session

        self._started_at = self._clock()
        token = self._generation
        persisted_id = None
        if self.persistence is not None:
            try:
                persisted_id = await self.persistence.create_session(self.session)
            except Exception as e:
                logger.error(f"Session creation failed, continuing unpersisted: {e}")
                persisted_id = None

        if persisted_id:
            self.session.id = str(persisted_id)
            self.session.persisted = True
        else:
            logger.warning(f"Session {self.session.id} running in degraded mode (not persisted)")
            self.session.persisted = False

        if token != self._generation:
            # Ended while the row was being created: close it, never reopen the session
            logger.info(f"Session {self.session.id} ended during connect")
            last = self.metrics.latest
            await self._end_session_record(last.overall if last else 0)
            return self.session

        self.session.status = SessionStatus.ACTIVE
        await self._transition(OrchestratorState.GREETING)
        return self.session

    async def greet(self) -> None:
        """Ask the client persona for its opening line and deliver it."""
        if self._state != OrchestratorState.GREETING:
            return

        token = self._generation
        self._in_flight = True
        try:
            text = await self._request_reply(prompt=SESSION_START_PROMPT)
        except Exception as e:
            logger.warning(f"Greeting generation failed, using canned opening: {e}")
            text = None
        finally:
            self._in_flight = False

        if token != self._generation:
            logger.debug(f"Discarding greeting for ended session {self.session.id}")
            return

        turn = await self._append_turn(Sender.AGENT, text or welcome_message(self.session.config.persona.emotion))
        await self._deliver_reply(turn, token)
        await self._drain_queue()

    async def submit_user_text(self, text) -> bool:
        """
        Feed a finalized user utterance (typed or transcribed).

        Returns:
            True when the text was processed or queued, False when ignored
        """
        if not isinstance(text, str) or not text.strip():
            return False
        text = text.strip()

        if self._state == OrchestratorState.LISTENING and not self._in_flight:
            await self._run_pipeline(text)
            await self._drain_queue()
            return True

        if self._state in PAUSABLE_STATES and not self.is_voice:
            self._queue.append(text)
            logger.debug(f"Session {self.session.id}: queued submission while {self._state.value}")
            return True

        logger.debug(f"Session {self.session.id}: dropped submission in state {self._state.value}")
        return False

    async def pause(self) -> bool:
        if self._state not in PAUSABLE_STATES:
            return False

        self._paused_from = self._state
        if self._state == OrchestratorState.SPEAKING:
            # Replayed from the start on resume
            self._held_reply = self.transcript.last(Sender.AGENT)
        self._pause_started = self._clock()
        self.session.status = SessionStatus.PAUSED

        await self._transition(OrchestratorState.PAUSED)
        await self.speech_io.stop_capture()
        await self.speech_io.stop_speaking()
        self._persist("update_status", self.session.id, SessionStatus.PAUSED)
        return True

    async def resume(self) -> bool:
        if self._state != OrchestratorState.PAUSED:
            return False

        if self._pause_started is not None:
            self._paused_total += self._clock() - self._pause_started
            self._pause_started = None
        self.session.status = SessionStatus.ACTIVE
        self._persist("update_status", self.session.id, SessionStatus.ACTIVE)

        target = self._paused_from or OrchestratorState.LISTENING
        self._paused_from = None
        held, self._held_reply = self._held_reply, None
        token = self._generation

        if target == OrchestratorState.SPEAKING and held is not None:
            await self._transition(OrchestratorState.SPEAKING)
            self._spawn(self._play_then_listen(held, token))
        elif target == OrchestratorState.THINKING:
            # The pending reply request picks up from here
            await self._transition(OrchestratorState.THINKING)
        else:
            await self._enter_listening()
            if self._queue:
                self._spawn(self._drain_queue())
        return True

    async def retry_capture(self) -> bool:
        """Restart capture after the user fixed microphone permissions."""
        if not self.is_voice or self._state != OrchestratorState.LISTENING:
            return False
        handle = await self.speech_io.retry_capture()
        return handle is not None

    async def end(self) -> SessionResult:
        """End the session. Repeated or concurrent calls share one result."""
        if self._end_task is None:
            self._end_task = asyncio.ensure_future(self._finish())
        return await asyncio.shield(self._end_task)

    # Capture callbacks

    async def _on_final_transcript(self, text: str) -> None:
        # Run separately so the capture channel keeps receiving (playback acks arrive on it)
        self._spawn(self.submit_user_text(text))

    async def _on_interim_transcript(self, text: str) -> None:
        if self._state == OrchestratorState.LISTENING:
            await self._emit(EventType.INTERIM_TRANSCRIPT, {"text": text})

    async def _on_speech_warning(self, code: str, message: str) -> None:
        await self._warn(code, message, retryable=code == "capture_permission_denied")

    # Pipeline

    async def _run_pipeline(self, text: str) -> None:
        token = self._generation
        self._in_flight = True
        try:
            if self.is_voice:
                await self.speech_io.stop_capture()

            previous_agent = self.transcript.last(Sender.AGENT)
            user_turn = await self._append_turn(Sender.USER, text)
            snapshot = self.metrics.update(text, previous_agent.text if previous_agent else None, user_turn.index)
            await self._publish_metrics(snapshot)

            await self._transition(OrchestratorState.THINKING)
            try:
                reply = await self._request_reply()
            except Exception as e:
                if token != self._generation:
                    return
                logger.warning(f"Session {self.session.id}: reply generation failed: {e}")
                await self._warn("reply_failed", "El cliente no pudo responder. Intenta de nuevo.", retryable=True)
                if self._state == OrchestratorState.PAUSED:
                    self._paused_from = OrchestratorState.LISTENING
                else:
                    await self._enter_listening()
                return
        finally:
            self._in_flight = False

        if token != self._generation:
            logger.debug(f"Discarding late reply for ended session {self.session.id}")
            return

        agent_turn = await self._append_turn(Sender.AGENT, reply)
        await self._deliver_reply(agent_turn, token)

    async def _request_reply(self, prompt: Optional[str] = None) -> str:
        if self.llm is None:
            raise ConversationGenerationError("No reply generator configured")

        history = self.transcript.recent(self.options.REPLY_HISTORY_WINDOW)
        reply = await asyncio.wait_for(
            self.llm.generate_reply(
                history,
                self.session.config.scenario,
                self.session.config.persona,
                prompt=prompt,
            ),
            timeout=self.options.REPLY_TIMEOUT_SECONDS,
        )
        if not isinstance(reply, str) or not reply.strip():
            raise ConversationGenerationError("Empty reply")
        return reply

    async def _deliver_reply(self, turn: Turn, token: int) -> None:
        """Play (voice) or show (chat) a freshly appended agent turn."""
        if self._state == OrchestratorState.PAUSED:
            # Applied silently; the transition waits for resume
            if self.is_voice:
                self._held_reply = turn
                self._paused_from = OrchestratorState.SPEAKING
            else:
                self._paused_from = OrchestratorState.LISTENING
            return

        if self.is_voice:
            await self._transition(OrchestratorState.SPEAKING)
            await self._play_then_listen(turn, token)
        else:
            await self._enter_listening()

    async def _play_then_listen(self, turn: Turn, token: int) -> None:
        await self.speech_io.speak(turn.text, self.session.config.persona.voice_id)
        if token != self._generation or self._state != OrchestratorState.SPEAKING:
            return
        await self._enter_listening()

    async def _enter_listening(self) -> None:
        if not await self._transition(OrchestratorState.LISTENING):
            return
        if self.is_voice:
            await self.speech_io.start_capture(self._on_final_transcript, self._on_interim_transcript)

    async def _drain_queue(self) -> None:
        while self._queue and self._state == OrchestratorState.LISTENING and not self._in_flight:
            await self._run_pipeline(self._queue.popleft())

    async def _append_turn(self, sender: Sender, text: str) -> Turn:
        turn = self.transcript.append(sender, text, self.active_duration())
        self._persist("append_turn", self.session, turn, session_counters(self.session))
        await self._emit(EventType.TURN_APPENDED, turn.model_dump(mode="json"))
        return turn

    async def _publish_metrics(self, snapshot: MetricSnapshot) -> None:
        for name, value in snapshot.as_metric_records():
            self._persist("record_metric", self.session.id, name, value)
        await self._emit(EventType.METRICS_UPDATED, snapshot.model_dump(mode="json"))

    # End of session

    async def _finish(self) -> SessionResult:
        self._generation += 1
        now = self._clock()
        if self._pause_started is not None:
            self._paused_total += now - self._pause_started
            self._pause_started = None

        duration = int(round(self.active_duration(now)))
        self._frozen_duration = duration
        self.session.duration_seconds = duration
        self.session.completed_at = datetime.now(timezone.utc)
        self.session.status = SessionStatus.COMPLETED
        self._queue.clear()
        self._held_reply = None

        await self._transition(OrchestratorState.ENDED)
        try:
            await self.speech_io.close()
        except Exception as e:
            logger.warning(f"Failed to release speech resources for session {self.session.id}: {e}")

        if self._persistence_tasks:
            await asyncio.gather(*list(self._persistence_tasks), return_exceptions=True)

        last = self.metrics.latest
        if not self._has_enough_turns():
            logger.info(f"Session {self.session.id} ended after {len(self.transcript)} turns, too short to evaluate")
            await self._end_session_record(last.overall if last else 0)
            return self._result(too_short=True)

        evaluation = await self.finalizer.finalize(self.session, self.transcript.all(), last)
        warnings = list(self.finalizer.warnings)
        for warning in warnings:
            await self._warn("evaluation_fallback", warning, retryable=False)
        await self._emit(EventType.EVALUATION_READY, evaluation.model_dump(mode="json"))
        await self._end_session_record(evaluation.overall_score)

        logger.info(f"Session {self.session.id} completed: {duration}s, overall={evaluation.overall_score}")
        return self._result(evaluation=evaluation, warnings=warnings)

    def _has_enough_turns(self) -> bool:
        return (
            len(self.transcript) >= self.options.MIN_TURNS_FOR_EVALUATION
            and self.transcript.count(Sender.USER) > 0
            and self.transcript.count(Sender.AGENT) > 0
        )

    async def _end_session_record(self, final_score: int) -> None:
        if self.persistence is None or not self.session.persisted:
            return
        try:
            await self.persistence.end_session(self.session, final_score)
        except Exception as e:
            logger.error(f"Failed to close session record {self.session.id}: {e}")

    def _result(self, too_short: bool = False, evaluation=None, warnings: Optional[List[str]] = None) -> SessionResult:
        return SessionResult(
            session_id=self.session.id,
            status=self.session.status,
            duration_seconds=self.session.duration_seconds,
            total_messages=self.session.total_messages,
            user_words_count=self.session.user_words_count,
            ai_words_count=self.session.ai_words_count,
            persisted=self.session.persisted,
            too_short=too_short,
            evaluation=evaluation,
            warnings=warnings or [],
        )

    # Plumbing

    async def _transition(self, new_state: OrchestratorState) -> bool:
        old_state = self._state
        if new_state == old_state:
            return True
        if new_state not in VALID_TRANSITIONS.get(old_state, set()):
            logger.warning(f"Invalid state transition from {old_state.value} to {new_state.value} for session {self.session.id}")
            return False

        self._state = new_state
        logger.info(f"Session {self.session.id} state updated: {old_state.value} -> {new_state.value}")
        await self._emit(EventType.STATE_CHANGED, {
            "previous_state": old_state.value,
            "current_state": new_state.value,
            "capture_active": self.speech_io.capture_active,
            "playback_active": self.speech_io.playback_active,
        })
        return True

    async def _emit(self, event_type: EventType, data: Dict[str, Any]) -> None:
        await self.events.emit(SessionEvent(event_type=event_type, session_id=self.session.id, data=data))

    async def _warn(self, code: str, message: str, retryable: bool = True) -> None:
        await self._emit(EventType.WARNING, {"code": code, "message": message, "retryable": retryable})

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(self._guarded(coro))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro) -> None:
        try:
            await coro
        except Exception as e:
            logger.error(f"Background step failed for session {self.session.id}: {e}")

    def _persist(self, operation: str, *args) -> None:
        """Fire-and-forget persistence write, tracked so end() can wait for it."""
        if self.persistence is None or not self.session.persisted:
            return
        task = asyncio.ensure_future(self._run_persistence(operation, *args))
        self._persistence_tasks.add(task)
        task.add_done_callback(self._persistence_tasks.discard)

    async def _run_persistence(self, operation: str, *args) -> None:
        try:
            ok = await getattr(self.persistence, operation)(*args)
            if ok is False:
                logger.warning(f"Persistence {operation} for session {self.session.id} was not stored")
        except Exception as e:
            logger.error(f"Persistence {operation} failed for session {self.session.id}: {e}")
