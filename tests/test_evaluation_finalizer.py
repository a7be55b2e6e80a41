import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import select

from trainer.models.training_session import SessionEvaluation
from trainer.schemas.training import LiveSession, MetricSnapshot, Sender, SessionConfig, Trend
from trainer.services.evaluation_finalizer import (
    EvaluationFinalizer,
    normalize_score,
    render_transcript,
)
from trainer.services.persistence_service import TrainingPersistenceService
from trainer.services.transcript_store import TranscriptStore


@pytest.fixture
def session():
    live = LiveSession(id="session-1", config=SessionConfig(), persisted=True)
    live.duration_seconds = 95
    return live


@pytest.fixture
def transcript(session):
    store = TranscriptStore(session)
    store.append(Sender.AGENT, "Buenos días, ¿quién habla?", 0)
    store.append(Sender.USER, "Hola, le llamo de Acme. ¿Tiene un minuto?", 2.5)
    store.append(Sender.AGENT, "Dígame rápido.", 4)
    return list(store.all())


@pytest.fixture
def local_snapshot():
    return MetricSnapshot(
        rapport=61,
        clarity=58,
        empathy=47,
        accuracy=56,
        overall=56,
        trend=Trend.UP,
        critical_issues=["Habló de precio antes de entender las necesidades"],
        live_coaching=["Haz más preguntas abiertas"],
        positive_points=[],
    )


def make_scorer(result=None, side_effect=None):
    scorer = Mock()
    scorer.score_transcript = AsyncMock(return_value=result, side_effect=side_effect)
    return scorer


def test_render_transcript_labels_senders(transcript):
    assert render_transcript(transcript) == (
        "Cliente IA: Buenos días, ¿quién habla?\n"
        "Usuario: Hola, le llamo de Acme. ¿Tiene un minuto?\n"
        "Cliente IA: Dígame rápido."
    )


@pytest.mark.parametrize("value, fallback, expected", [
    (150, 10, 100),
    (-20, 10, 0),
    (72.5, 10, 73),
    ("81", 10, 81),
    ("muy bueno", 10, 0),
    (None, 44, 44),
    (float("nan"), 10, 0),
    (float("inf"), 10, 100),
    (True, 10, 0),
    ([80], 10, 0),
])
def test_normalize_score(value, fallback, expected):
    assert normalize_score(value, fallback) == expected


class TestEvaluationFinalizer:

    @pytest.mark.asyncio
    async def test_scorer_result_is_normalized(self, session, transcript, local_snapshot):
        scorer = make_scorer({
            "overall_score": 150,
            "rapport_score": "70",
            "empathy_score": -5,
            "strengths": ["Presentación clara"],
            "improvements": "Indaga más sobre el problema",
            "critical_errors": ["No identificó al decisor"],
            "specific_feedback": "Buen arranque.",
        })
        finalizer = EvaluationFinalizer(scorer, timeout=1)

        evaluation = await finalizer.finalize(session, transcript, local_snapshot)

        assert evaluation.overall_score == 100
        assert evaluation.rapport_score == 70
        assert evaluation.empathy_score == 0
        # Missing scores come from the live snapshot
        assert evaluation.clarity_score == 58
        assert evaluation.accuracy_score == 56
        assert evaluation.strengths == ["Presentación clara"]
        assert evaluation.improvements == ["Indaga más sobre el problema", "No identificó al decisor"]
        assert evaluation.specific_feedback == "Buen arranque."
        assert evaluation.is_fallback is False
        assert finalizer.warnings == []

    @pytest.mark.asyncio
    async def test_scorer_receives_rendered_transcript_and_stats(self, session, transcript, local_snapshot):
        scorer = make_scorer({"overall_score": 60})
        finalizer = EvaluationFinalizer(scorer, timeout=1)

        await finalizer.finalize(session, transcript, local_snapshot)

        args = scorer.score_transcript.await_args.args
        assert args[0].startswith("Cliente IA: Buenos días")
        assert args[1] == session.config.scenario
        assert args[2] == 95
        assert args[3] == {"total_messages": 3, "user_words_count": 8, "ai_words_count": 6}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("result, side_effect", [
        (None, Exception("connection reset")),
        (["not", "an", "object"], None),
        ("texto libre", None),
    ])
    async def test_unusable_scorer_output_falls_back_to_live_metrics(
        self, session, transcript, local_snapshot, result, side_effect
    ):
        finalizer = EvaluationFinalizer(make_scorer(result, side_effect), timeout=1)

        evaluation = await finalizer.finalize(session, transcript, local_snapshot)

        assert evaluation.is_fallback is True
        assert evaluation.overall_score == 56
        assert evaluation.rapport_score == 61
        assert evaluation.improvements == [
            "Habló de precio antes de entender las necesidades",
            "Haz más preguntas abiertas",
        ]
        assert evaluation.ai_analysis == {"source": "local_metrics", "trend": "up"}
        assert len(finalizer.warnings) == 1

    @pytest.mark.asyncio
    async def test_scorer_timeout_falls_back(self, session, transcript, local_snapshot):
        async def slow(*args, **kwargs):
            await asyncio.sleep(1)
            return {"overall_score": 90}

        scorer = Mock()
        scorer.score_transcript = slow
        finalizer = EvaluationFinalizer(scorer, timeout=0.01)

        evaluation = await finalizer.finalize(session, transcript, local_snapshot)

        assert evaluation.is_fallback is True
        assert finalizer.warnings

    @pytest.mark.asyncio
    async def test_missing_snapshot_uses_neutral_scores(self, session, transcript):
        finalizer = EvaluationFinalizer(make_scorer(side_effect=Exception("down")), timeout=1)

        evaluation = await finalizer.finalize(session, transcript, None)

        assert evaluation.is_fallback is True
        assert evaluation.overall_score == MetricSnapshot().overall

    @pytest.mark.asyncio
    async def test_evaluation_is_stored_for_persisted_sessions(self, session, transcript, local_snapshot):
        persistence = Mock()
        persistence.upsert_evaluation = AsyncMock(return_value=True)
        finalizer = EvaluationFinalizer(make_scorer({"overall_score": 80}), persistence, timeout=1)

        evaluation = await finalizer.finalize(session, transcript, local_snapshot)

        persistence.upsert_evaluation.assert_awaited_once_with("session-1", evaluation)

    @pytest.mark.asyncio
    async def test_unpersisted_session_is_not_stored(self, session, transcript, local_snapshot):
        session.persisted = False
        persistence = Mock()
        persistence.upsert_evaluation = AsyncMock(return_value=True)
        finalizer = EvaluationFinalizer(make_scorer({"overall_score": 80}), persistence, timeout=1)

        await finalizer.finalize(session, transcript, local_snapshot)

        persistence.upsert_evaluation.assert_not_called()

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_raise(self, session, transcript, local_snapshot):
        persistence = Mock()
        persistence.upsert_evaluation = AsyncMock(side_effect=Exception("database locked"))
        finalizer = EvaluationFinalizer(make_scorer({"overall_score": 80}), persistence, timeout=1)

        evaluation = await finalizer.finalize(session, transcript, local_snapshot)

        assert evaluation.overall_score == 80

    @pytest.mark.asyncio
    async def test_finalizing_twice_keeps_one_stored_evaluation(self, session, transcript, local_snapshot, db_session_factory):
        persistence = TrainingPersistenceService(session_factory=db_session_factory, backoff_seconds=0)
        await persistence.create_session(session)
        scorer = make_scorer(side_effect=[{"overall_score": 64}, {"overall_score": 81}])
        finalizer = EvaluationFinalizer(scorer, persistence, timeout=1)

        await finalizer.finalize(session, transcript, local_snapshot)
        await finalizer.finalize(session, transcript, local_snapshot)

        async with db_session_factory() as db:
            result = await db.execute(select(SessionEvaluation).where(SessionEvaluation.session_id == "session-1"))
            rows = result.scalars().all()
        assert len(rows) == 1
        assert rows[0].overall_score == 81
