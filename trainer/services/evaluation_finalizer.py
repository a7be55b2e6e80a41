"""
Final evaluation of a completed training session.

The remote scorer gets the rendered transcript; whatever it returns is
normalized into bounded integer scores. When the scorer is unavailable the
evaluation is rebuilt from the last live metric snapshot instead.
"""
import asyncio
import logging
import math
from typing import Any, Dict, Iterable, List, Optional

from trainer.core.training_config import training_config
from trainer.schemas.training import Evaluation, LiveSession, MetricSnapshot, Sender, Turn

logger = logging.getLogger(__name__)

SENDER_LABELS = {
    Sender.USER: "Usuario",
    Sender.AGENT: "Cliente IA",
}

SCORE_FIELDS = {
    "overall_score": "overall",
    "rapport_score": "rapport",
    "clarity_score": "clarity",
    "empathy_score": "empathy",
    "accuracy_score": "accuracy",
}

FALLBACK_FEEDBACK = (
    "No fue posible obtener la evaluación detallada. Estas puntuaciones se basan "
    "en las métricas registradas durante la conversación."
)


def render_transcript(turns: Iterable[Turn]) -> str:
    """One line per turn, labelled by sender."""
    return "\n".join(f"{SENDER_LABELS[turn.sender]}: {turn.text}" for turn in turns)


def normalize_score(value: Any, fallback: int) -> int:
    """
    Clamp a scorer value to an integer in [0, 100].

    Missing values take the local fallback; numeric strings are parsed;
    anything else non-numeric scores 0.
    """
    if value is None:
        value = fallback
    if isinstance(value, bool):
        return 0
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return 0
    if not isinstance(value, (int, float)) or math.isnan(value):
        return 0
    if math.isinf(value):
        return 100 if value > 0 else 0
    return max(0, min(100, int(math.floor(value + 0.5))))


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value if item is not None and str(item).strip()]
    return []


class EvaluationFinalizer:
    """Scores a finished session and stores the result."""

    def __init__(self, scorer, persistence=None, timeout: Optional[float] = None):
        """
        Args:
            scorer: object with async score_transcript(transcript, scenario, duration_seconds, stats)
            persistence: object with async upsert_evaluation(session_id, evaluation), optional
            timeout: seconds granted to the scorer
        """
        self.scorer = scorer
        self.persistence = persistence
        self.timeout = timeout or training_config.EVALUATION_TIMEOUT_SECONDS
        self.warnings: List[str] = []

    async def finalize(
        self,
        session: LiveSession,
        transcript: Iterable[Turn],
        local_snapshot: Optional[MetricSnapshot],
    ) -> Evaluation:
        """
        Produce the session's Evaluation. Never raises.

        Args:
            session: The completed session (duration already frozen)
            transcript: All turns in order
            local_snapshot: Last live metrics, used for missing scores and fallback
        """
        self.warnings = []
        local = local_snapshot or MetricSnapshot()
        text = render_transcript(transcript)
        stats = {
            "total_messages": session.total_messages,
            "user_words_count": session.user_words_count,
            "ai_words_count": session.ai_words_count,
        }

        try:
            raw = await asyncio.wait_for(
                self.scorer.score_transcript(
                    text,
                    session.config.scenario,
                    session.duration_seconds,
                    stats,
                    timeout=self.timeout,
                ),
                timeout=self.timeout,
            )
            if not isinstance(raw, dict):
                raise TypeError(f"Scorer returned {type(raw).__name__}, expected an object")
            evaluation = self._from_scorer(raw, local)
        except Exception as e:
            logger.error(f"Evaluation scoring failed for session {session.id}, using local metrics: {e}")
            self.warnings.append("La evaluación detallada no está disponible; se usaron las métricas en vivo.")
            evaluation = self.fallback_evaluation(local)

        if self.persistence is not None and session.persisted:
            stored = False
            try:
                stored = await self.persistence.upsert_evaluation(session.id, evaluation)
            except Exception as e:
                logger.error(f"Failed to store evaluation for session {session.id}: {e}")
            if not stored:
                logger.warning(f"Evaluation for session {session.id} was not persisted")

        logger.info(
            f"Session {session.id} evaluated: overall={evaluation.overall_score} "
            f"fallback={evaluation.is_fallback}"
        )
        return evaluation

    def _from_scorer(self, raw: Dict[str, Any], local: MetricSnapshot) -> Evaluation:
        scores = {
            field: normalize_score(raw.get(field), getattr(local, metric))
            for field, metric in SCORE_FIELDS.items()
        }

        improvements = _string_list(raw.get("improvements"))
        for item in _string_list(raw.get("critical_errors")):
            if item not in improvements:
                improvements.append(item)

        feedback = raw.get("specific_feedback")
        return Evaluation(
            **scores,
            strengths=_string_list(raw.get("strengths")),
            improvements=improvements,
            specific_feedback=feedback if isinstance(feedback, str) else "",
            ai_analysis=raw,
            is_fallback=False,
        )

    @staticmethod
    def fallback_evaluation(local: MetricSnapshot) -> Evaluation:
        """Evaluation built only from the last live snapshot."""
        improvements = list(local.critical_issues)
        for hint in local.live_coaching:
            if hint not in improvements:
                improvements.append(hint)

        return Evaluation(
            overall_score=local.overall,
            rapport_score=local.rapport,
            clarity_score=local.clarity,
            empathy_score=local.empathy,
            accuracy_score=local.accuracy,
            strengths=list(local.positive_points),
            improvements=improvements,
            specific_feedback=FALLBACK_FEEDBACK,
            ai_analysis={"source": "local_metrics", "trend": local.trend.value},
            is_fallback=True,
        )
