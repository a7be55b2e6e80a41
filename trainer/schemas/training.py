"""
Domain types for live training sessions.

Configuration, turns, metric snapshots and evaluations are immutable pydantic
models; the live session record is a mutable dataclass owned by its
orchestrator.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field


class Sender(str, Enum):
    USER = "user"
    AGENT = "agent"


class InteractionMode(str, Enum):
    CHAT = "chat"
    CALL = "call"


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class OrchestratorState(str, Enum):
    """Session orchestrator state machine states"""
    CONNECTING = "connecting"
    GREETING = "greeting"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"
    PAUSED = "paused"
    ENDED = "ended"


class Trend(str, Enum):
    UP = "up"
    DOWN = "down"
    STABLE = "stable"


METRIC_NAMES = ("rapport", "clarity", "empathy", "accuracy", "overall")


class ScenarioContext(BaseModel):
    """Scenario the trainee is practicing"""
    id: str = "sales-cold-call"
    title: str = "Entrenamiento General"
    description: str = ""
    instructions: str = ""
    scenario_type: str = "sales"

    class Config:
        frozen = True


class ClientPersona(BaseModel):
    """Simulated client: emotional stance and voice identity"""
    emotion: str = "neutral"
    voice_id: Optional[str] = None
    voice_name: Optional[str] = None

    class Config:
        frozen = True


class SessionConfig(BaseModel):
    """Immutable configuration handed from session setup to the orchestrator"""
    user_id: Optional[str] = None
    scenario: ScenarioContext = Field(default_factory=ScenarioContext)
    interaction_mode: InteractionMode = InteractionMode.CHAT
    persona: ClientPersona = Field(default_factory=ClientPersona)

    class Config:
        frozen = True
        extra = "forbid"

    @property
    def is_voice(self) -> bool:
        return self.interaction_mode == InteractionMode.CALL


class Turn(BaseModel):
    """One utterance, never mutated after creation"""
    session_id: str
    index: int
    sender: Sender
    text: str
    offset_seconds: float
    created_at: datetime

    class Config:
        frozen = True

    @property
    def word_count(self) -> int:
        return count_words(self.text)


class MetricSnapshot(BaseModel):
    """Live performance scores recorded after a user turn"""
    rapport: int = Field(50, ge=0, le=100)
    clarity: int = Field(50, ge=0, le=100)
    empathy: int = Field(50, ge=0, le=100)
    accuracy: int = Field(50, ge=0, le=100)
    overall: int = Field(50, ge=0, le=100)
    trend: Trend = Trend.STABLE
    turn_index: int = 0
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    positive_points: List[str] = Field(default_factory=list)
    critical_issues: List[str] = Field(default_factory=list)
    live_coaching: List[str] = Field(default_factory=list)

    class Config:
        frozen = True

    def as_metric_records(self) -> List[Tuple[str, int]]:
        """Flatten into (metric_name, value) pairs for the metrics log."""
        return [(name, getattr(self, name)) for name in METRIC_NAMES]


class Evaluation(BaseModel):
    """Final scoring record of a completed session"""
    overall_score: int = Field(..., ge=0, le=100)
    rapport_score: int = Field(..., ge=0, le=100)
    clarity_score: int = Field(..., ge=0, le=100)
    empathy_score: int = Field(..., ge=0, le=100)
    accuracy_score: int = Field(..., ge=0, le=100)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)
    specific_feedback: str = ""
    ai_analysis: Optional[Dict[str, Any]] = None
    is_fallback: bool = False

    class Config:
        frozen = True


@dataclass
class LiveSession:
    """In-memory record of one training attempt; authoritative while the session runs."""
    id: str
    config: SessionConfig
    status: SessionStatus = SessionStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_seconds: int = 0
    total_messages: int = 0
    user_words_count: int = 0
    ai_words_count: int = 0
    persisted: bool = False

    def to_summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.config.user_id,
            "scenario_id": self.config.scenario.id,
            "scenario_title": self.config.scenario.title,
            "interaction_mode": self.config.interaction_mode.value,
            "client_emotion": self.config.persona.emotion,
            "voice_used": self.config.persona.voice_name or self.config.persona.voice_id,
            "status": self.status.value,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
            "duration_seconds": self.duration_seconds,
            "total_messages": self.total_messages,
            "user_words_count": self.user_words_count,
            "ai_words_count": self.ai_words_count,
            "persisted": self.persisted,
        }


class SessionResult(BaseModel):
    """Returned to the caller when a session ends"""
    session_id: str
    status: SessionStatus
    duration_seconds: int
    total_messages: int
    user_words_count: int
    ai_words_count: int
    persisted: bool
    too_short: bool = False
    evaluation: Optional[Evaluation] = None
    warnings: List[str] = Field(default_factory=list)


def count_words(text: Optional[str]) -> int:
    """Whitespace-separated, non-empty tokens."""
    if not text:
        return 0
    return len([token for token in text.split() if token.strip()])
