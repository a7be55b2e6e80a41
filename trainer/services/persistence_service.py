"""
Persistence for training sessions.

Writes are best-effort: each one gets a fixed retry budget with exponential
backoff, then the failure is logged and reported as False. A live session
never fails because the database is down.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from trainer.core.database import AsyncSessionLocal
from trainer.core.training_config import training_config
from trainer.models.training_session import (
    ConversationMessage,
    RealTimeMetric,
    SessionEvaluation,
    TrainingSession,
)
from trainer.schemas.training import Evaluation, LiveSession, SessionStatus, Turn

logger = logging.getLogger(__name__)


def session_counters(session: LiveSession) -> Dict[str, int]:
    """Current message and word counters of a live session."""
    return {
        "total_messages": session.total_messages,
        "user_words_count": session.user_words_count,
        "ai_words_count": session.ai_words_count,
    }


class TrainingPersistenceService:
    """
    Database access for training sessions.

    Uses short-lived async SQLAlchemy sessions from a session factory, one per
    write attempt, so a failed attempt never leaves a half-applied transaction behind.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.max_attempts = max(1, max_attempts or training_config.PERSISTENCE_MAX_ATTEMPTS)
        self.backoff_seconds = (
            training_config.PERSISTENCE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )

    async def _with_retries(self, operation: str, work: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
        """
        Await work(db) and commit, retrying with exponential backoff.

        Returns:
            work's return value, or None once the retry budget is spent
        """
        for attempt in range(1, self.max_attempts + 1):
            db = self.session_factory()
            try:
                result = await work(db)
                await db.commit()
                return result
            except Exception as e:
                await db.rollback()
                logger.warning(f"{operation} failed (attempt {attempt}/{self.max_attempts}): {e}")
            finally:
                await db.close()

            if attempt < self.max_attempts and self.backoff_seconds > 0:
                await asyncio.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        logger.error(f"{operation} failed after {self.max_attempts} attempts, giving up")
        return None

    async def create_session(self, session: LiveSession) -> Optional[str]:
        """
        Insert the session row.

        Returns:
            The persisted session id, or None when the database is unavailable
        """
        config = session.config

        async def work(db: AsyncSession) -> str:
            row = TrainingSession(
                id=session.id,
                user_id=config.user_id,
                scenario_id=config.scenario.id,
                scenario_title=config.scenario.title,
                scenario_description=config.scenario.description,
                interaction_mode=config.interaction_mode.value,
                client_emotion=config.persona.emotion,
                voice_id=config.persona.voice_id,
                voice_used=config.persona.voice_name or config.persona.voice_id,
                session_status=SessionStatus.ACTIVE.value,
                started_at=session.created_at,
            )
            db.add(row)
            await db.flush()
            return row.id

        session_id = await self._with_retries("create_session", work)
        if session_id:
            logger.info(f"Created training session {session_id} for user {config.user_id}")
        return session_id

    async def append_turn(
        self,
        session: LiveSession,
        turn: Turn,
        counters: Optional[Dict[str, int]] = None,
    ) -> bool:
        """
        Insert one message and store the session's counters.

        Args:
            counters: counters as of this turn; read from the session when omitted
        """
        counters = dict(counters) if counters is not None else session_counters(session)

        async def work(db: AsyncSession) -> bool:
            db.add(ConversationMessage(
                session_id=session.id,
                sender=turn.sender.value,
                content=turn.text,
                turn_index=turn.index,
                timestamp_in_session=turn.offset_seconds,
            ))
            row = await db.get(TrainingSession, session.id)
            if row is not None:
                for key, value in counters.items():
                    setattr(row, key, value)
            return True

        return bool(await self._with_retries("append_turn", work))

    async def record_metric(self, session_id: str, metric_name: str, metric_value: float) -> bool:
        async def work(db: AsyncSession) -> bool:
            db.add(RealTimeMetric(session_id=session_id, metric_name=metric_name, metric_value=float(metric_value)))
            return True

        return bool(await self._with_retries("record_metric", work))

    async def update_status(self, session_id: str, status: SessionStatus) -> bool:
        async def work(db: AsyncSession) -> bool:
            row = await db.get(TrainingSession, session_id)
            if row is None:
                return False
            row.session_status = status.value
            return True

        return bool(await self._with_retries("update_status", work))

    async def end_session(self, session: LiveSession, final_score: Optional[int]) -> bool:
        """Mark the session completed with its frozen duration, counters and final score."""

        async def work(db: AsyncSession) -> bool:
            row = await db.get(TrainingSession, session.id)
            if row is None:
                logger.warning(f"end_session: session {session.id} not found")
                return False
            row.session_status = SessionStatus.COMPLETED.value
            row.completed_at = session.completed_at or datetime.now(timezone.utc)
            row.duration_seconds = session.duration_seconds
            row.duration_minutes = session.duration_seconds // 60
            for key, value in session_counters(session).items():
                setattr(row, key, value)
            row.score = final_score
            return True

        return bool(await self._with_retries("end_session", work))

    async def upsert_evaluation(self, session_id: str, evaluation: Evaluation) -> bool:
        """Insert or update the single evaluation row for a session."""
        values = {
            "overall_score": evaluation.overall_score,
            "rapport_score": evaluation.rapport_score,
            "clarity_score": evaluation.clarity_score,
            "empathy_score": evaluation.empathy_score,
            "accuracy_score": evaluation.accuracy_score,
            "strengths": list(evaluation.strengths),
            "improvements": list(evaluation.improvements),
            "specific_feedback": evaluation.specific_feedback,
            "ai_analysis": evaluation.ai_analysis,
            "is_fallback": evaluation.is_fallback,
        }
        query = select(SessionEvaluation).where(SessionEvaluation.session_id == session_id)

        def apply(row: SessionEvaluation) -> None:
            for key, value in values.items():
                setattr(row, key, value)

        async def work(db: AsyncSession) -> bool:
            result = await db.execute(query)
            row = result.scalar_one_or_none()
            if row is not None:
                apply(row)
                return True
            try:
                # Savepoint so a concurrent insert turns into an update
                async with db.begin_nested():
                    db.add(SessionEvaluation(session_id=session_id, **values))
            except IntegrityError:
                result = await db.execute(query)
                apply(result.scalar_one())
            return True

        return bool(await self._with_retries("upsert_evaluation", work))

    # Read helpers (used by the API layer)

    async def get_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as db:
            row = await db.get(TrainingSession, session_id)
            return self._session_to_dict(row) if row else None

    async def get_user_sessions(self, user_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrainingSession)
                .where(TrainingSession.user_id == user_id)
                .order_by(TrainingSession.created_at.desc())
                .limit(limit)
            )
            return [self._session_to_dict(row) for row in result.scalars().all()]

    async def get_session_messages(self, session_id: str) -> List[Dict[str, Any]]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(ConversationMessage)
                .where(ConversationMessage.session_id == session_id)
                .order_by(ConversationMessage.turn_index.asc())
            )
            return [
                {
                    "index": row.turn_index,
                    "sender": row.sender,
                    "text": row.content,
                    "offset_seconds": row.timestamp_in_session,
                    "created_at": row.created_at,
                }
                for row in result.scalars().all()
            ]

    async def get_session_evaluation(self, session_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(SessionEvaluation).where(SessionEvaluation.session_id == session_id)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            return {
                "session_id": row.session_id,
                "overall_score": row.overall_score,
                "rapport_score": row.rapport_score,
                "clarity_score": row.clarity_score,
                "empathy_score": row.empathy_score,
                "accuracy_score": row.accuracy_score,
                "strengths": row.strengths or [],
                "improvements": row.improvements or [],
                "specific_feedback": row.specific_feedback or "",
                "ai_analysis": row.ai_analysis,
                "is_fallback": row.is_fallback,
                "created_at": row.created_at,
            }

    async def count_metrics(self, session_id: str, metric_name: Optional[str] = None) -> int:
        query = select(func.count()).select_from(RealTimeMetric).where(RealTimeMetric.session_id == session_id)
        if metric_name:
            query = query.where(RealTimeMetric.metric_name == metric_name)
        async with self.session_factory() as db:
            result = await db.execute(query)
            return result.scalar_one()

    @staticmethod
    def _session_to_dict(row: TrainingSession) -> Dict[str, Any]:
        return {
            "id": row.id,
            "user_id": row.user_id,
            "scenario_id": row.scenario_id,
            "scenario_title": row.scenario_title,
            "interaction_mode": row.interaction_mode,
            "client_emotion": row.client_emotion,
            "voice_used": row.voice_used,
            "status": row.session_status,
            "started_at": row.started_at,
            "completed_at": row.completed_at,
            "duration_seconds": row.duration_seconds,
            "duration_minutes": row.duration_minutes,
            "total_messages": row.total_messages,
            "user_words_count": row.user_words_count,
            "ai_words_count": row.ai_words_count,
            "score": row.score,
            "created_at": row.created_at,
        }
