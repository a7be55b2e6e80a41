import os

# Keep the application off real services while tests import it
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6399/0")

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from trainer.core.database import Base
from trainer.core.training_config import TrainingConfig
from trainer.schemas.training import ClientPersona, InteractionMode, ScenarioContext, SessionConfig
from trainer.services.speech_io import CaptureHandle, SpeechIOAdapter
import trainer.models  # noqa: F401


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSpeechIO(SpeechIOAdapter):
    """Records capture and playback calls; playback completes immediately."""

    def __init__(self, speak_result: bool = True):
        super().__init__()
        self.speak_result = speak_result
        self.spoken = []
        self.capture_starts = 0
        self.capture_stops = 0
        self.speaking_stops = 0
        self.on_final = None
        self.on_interim = None
        self._capturing = False

    @property
    def capture_active(self) -> bool:
        return self._capturing

    async def start_capture(self, on_final, on_interim=None):
        self.capture_starts += 1
        self.on_final = on_final
        self.on_interim = on_interim
        self._capturing = True
        return CaptureHandle(id=self.capture_starts)

    async def stop_capture(self, handle=None):
        if self._capturing:
            self.capture_stops += 1
        self._capturing = False

    async def speak(self, text, voice_id):
        self.spoken.append(text)
        return self.speak_result

    async def stop_speaking(self):
        self.speaking_stops += 1

    async def retry_capture(self):
        return await self.start_capture(self.on_final, self.on_interim)


@pytest.fixture
def training_options():
    return TrainingConfig(
        REPLY_TIMEOUT_SECONDS=2.0,
        EVALUATION_TIMEOUT_SECONDS=2.0,
        SYNTHESIS_TIMEOUT_SECONDS=2.0,
        PLAYBACK_ACK_TIMEOUT_SECONDS=2.0,
        PERSISTENCE_BACKOFF_SECONDS=0.0,
        METRICS_JITTER=0,
    )


@pytest.fixture
def chat_config():
    return SessionConfig(
        user_id="user-1",
        scenario=ScenarioContext(
            id="crm-demo",
            title="Venta de software CRM",
            description="Llamada en frío a una pyme",
            instructions="El cliente usa hojas de cálculo y duda del costo",
        ),
        interaction_mode=InteractionMode.CHAT,
        persona=ClientPersona(emotion="skeptical"),
    )


@pytest.fixture
def voice_config(chat_config):
    return chat_config.model_copy(update={
        "interaction_mode": InteractionMode.CALL,
        "persona": ClientPersona(emotion="hurried", voice_id="voice-123", voice_name="Laura"),
    })


@pytest.fixture
def mock_llm():
    llm = Mock()
    llm.generate_reply = AsyncMock(return_value="Buenos días. ¿Qué tienen para ofrecer?")
    llm.score_transcript = AsyncMock(return_value={
        "overall_score": 72,
        "rapport_score": 70,
        "clarity_score": 75,
        "empathy_score": 68,
        "accuracy_score": 74,
        "strengths": ["Buena apertura"],
        "improvements": ["Haz más preguntas de descubrimiento"],
        "critical_errors": [],
        "specific_feedback": "Buen trabajo en general.",
    })
    return llm


@pytest.fixture
def mock_persistence():
    persistence = Mock()
    persistence.create_session = AsyncMock(side_effect=lambda session: session.id)
    persistence.append_turn = AsyncMock(return_value=True)
    persistence.record_metric = AsyncMock(return_value=True)
    persistence.update_status = AsyncMock(return_value=True)
    persistence.end_session = AsyncMock(return_value=True)
    persistence.upsert_evaluation = AsyncMock(return_value=True)
    return persistence


@pytest.fixture
def db_session_factory(tmp_path):
    """
    Async session factory over a throwaway SQLite file.

    NullPool opens a fresh aiosqlite connection per session, so the factory
    works from any event loop (pytest-asyncio or the TestClient portal).
    """
    database_path = tmp_path / "training.db"
    sync_engine = create_engine(f"sqlite:///{database_path}")
    Base.metadata.create_all(sync_engine)
    sync_engine.dispose()

    engine = create_async_engine(f"sqlite+aiosqlite:///{database_path}", poolclass=NullPool)
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def wait_until(predicate, attempts: int = 200):
    """Yield to the event loop until predicate() holds."""
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()
