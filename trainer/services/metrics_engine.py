"""
Live performance metrics for a training session.

Scores are heuristics over what the trainee writes or says: how many turns
they take, how long and readable their messages are, whether they
acknowledge the client, ask discovery questions, or rush into price talk.
Every value is bounded to [0, 100] and the engine never raises.
"""
import logging
import math
import random
import re
from typing import List, Optional

import textstat

from trainer.schemas.training import MetricSnapshot, Trend

logger = logging.getLogger(__name__)

COURTESY_PATTERN = re.compile(r"gracias|perd[oó]n|disculp|entiendo|comprendo|thank|sorry|understand", re.IGNORECASE)
DISCOVERY_PATTERN = re.compile(r"espec[ií]fic|detalle|informaci[oó]n|necesita|detail|information", re.IGNORECASE)
PRICE_PATTERN = re.compile(r"precio|costo|cu[aá]nto|price|cost", re.IGNORECASE)

# Turn index before which talking price counts against the trainee
EARLY_PRICE_TURN_LIMIT = 6
LONG_MESSAGE_CHARS = 20
NEUTRAL_SCORE = 50


def clamp_score(value) -> int:
    """Round half up and clamp to [0, 100]."""
    return max(0, min(100, int(math.floor(float(value) + 0.5))))


class MetricsEngine:
    """Rolling metric computation, one snapshot per user turn."""

    # Starting point shown before the first user turn
    BASELINE = MetricSnapshot(rapport=45, clarity=50, empathy=40, accuracy=55, overall=48)

    def __init__(self, jitter: int = 3, seed: Optional[int] = None, rng: Optional[random.Random] = None):
        self.jitter = max(0, int(jitter))
        self._rng = rng or random.Random(seed)
        self._user_turns = 0
        self._long_messages = 0
        self._courtesy_messages = 0
        self._discovery_questions = 0
        self._early_price_talk = False
        self._history: List[MetricSnapshot] = []

    @property
    def latest(self) -> Optional[MetricSnapshot]:
        return self._history[-1] if self._history else None

    @property
    def history(self) -> List[MetricSnapshot]:
        return list(self._history)

    def update(self, latest_user_text, latest_agent_text, turn_index) -> MetricSnapshot:
        """
        Recompute the scores after a user turn.

        Args:
            latest_user_text: What the trainee just said
            latest_agent_text: The client's previous line (may be None)
            turn_index: Transcript index of the user turn

        Returns:
            The new MetricSnapshot, with trend relative to the previous one
        """
        try:
            index = int(turn_index)
        except (TypeError, ValueError):
            index = self._user_turns

        try:
            if not isinstance(latest_user_text, str) or not latest_user_text.strip():
                return self._record(self._neutral(index))
            return self._record(self._score(latest_user_text.strip(), latest_agent_text, index))
        except Exception as e:
            logger.error(f"Metric computation failed, using neutral scores: {e}")
            return self._record(self._neutral(index))

    def _score(self, user_text: str, agent_text, turn_index: int) -> MetricSnapshot:
        self._user_turns += 1
        if len(user_text) > LONG_MESSAGE_CHARS:
            self._long_messages += 1
        if COURTESY_PATTERN.search(user_text):
            self._courtesy_messages += 1
        if "?" in user_text or DISCOVERY_PATTERN.search(user_text):
            self._discovery_questions += 1
        if PRICE_PATTERN.search(user_text) and turn_index < EARLY_PRICE_TURN_LIMIT:
            self._early_price_talk = True

        rapport = 45 + self._user_turns * 2 + self._echo_bonus(user_text, agent_text)
        clarity = 40 + self._long_messages * 8 + self._readability_adjustment(user_text)
        empathy = 35 + self._courtesy_messages * 12
        accuracy = 50 + self._discovery_questions * 6
        if self._early_price_talk:
            rapport -= 20
            accuracy -= 15
        if self.jitter:
            accuracy += self._rng.randint(-self.jitter, self.jitter)

        return self._build(rapport, clarity, empathy, accuracy, turn_index)

    def _neutral(self, turn_index: int) -> MetricSnapshot:
        return self._build(NEUTRAL_SCORE, NEUTRAL_SCORE, NEUTRAL_SCORE, NEUTRAL_SCORE, turn_index)

    def _build(self, rapport, clarity, empathy, accuracy, turn_index: int) -> MetricSnapshot:
        rapport, clarity, empathy, accuracy = (clamp_score(v) for v in (rapport, clarity, empathy, accuracy))
        overall = clamp_score((rapport + clarity + empathy + accuracy) / 4)

        previous = self.latest or self.BASELINE
        if overall > previous.overall:
            trend = Trend.UP
        elif overall < previous.overall:
            trend = Trend.DOWN
        else:
            trend = Trend.STABLE

        positive_points, critical_issues, live_coaching = self._coaching(rapport, clarity, empathy, overall)
        return MetricSnapshot(
            rapport=rapport,
            clarity=clarity,
            empathy=empathy,
            accuracy=accuracy,
            overall=overall,
            trend=trend,
            turn_index=turn_index,
            positive_points=positive_points,
            critical_issues=critical_issues,
            live_coaching=live_coaching,
        )

    def _record(self, snapshot: MetricSnapshot) -> MetricSnapshot:
        self._history.append(snapshot)
        return snapshot

    def _echo_bonus(self, user_text: str, agent_text) -> int:
        """Small rapport bonus when the trainee picks up the client's own words."""
        if not isinstance(agent_text, str) or not agent_text:
            return 0
        client_words = {w.strip(".,;:!?¿¡").lower() for w in agent_text.split() if len(w) > 4}
        user_words = {w.strip(".,;:!?¿¡").lower() for w in user_text.split() if len(w) > 4}
        return 5 if client_words & user_words else 0

    def _readability_adjustment(self, text: str) -> float:
        """Bounded +/-10 adjustment from Flesch reading ease."""
        if len(text.split()) < 3:
            return 0.0
        try:
            reading_ease = textstat.flesch_reading_ease(text)
        except Exception as e:
            logger.debug(f"Readability scoring unavailable: {e}")
            return 0.0
        return max(-10.0, min(10.0, (reading_ease - 50.0) / 5.0))

    def _coaching(self, rapport: int, clarity: int, empathy: int, overall: int):
        positive_points: List[str] = []
        critical_issues: List[str] = []
        live_coaching: List[str] = []

        if overall < 40:
            live_coaching.append("Necesitas conectar mejor con el cliente")
            critical_issues.append("Puntuación baja")
        if self._early_price_talk:
            critical_issues.append("Habló de precio antes de entender las necesidades")
        if rapport < 50:
            live_coaching.append("Muestra más empatía y interés genuino")
        if clarity < 50:
            live_coaching.append("Sé más claro en tu comunicación")
        if self._discovery_questions == 0:
            live_coaching.append("Haz más preguntas abiertas")

        if rapport >= 70:
            positive_points.append("Buena conexión")
        if clarity >= 70:
            positive_points.append("Comunicación clara")
        if empathy >= 70:
            positive_points.append("Excelente empatía")

        return positive_points, critical_issues, live_coaching
