"""
Persistence models for training sessions.

One row per training attempt, one row per turn, an append-only log of live
metric values and a single evaluation per session (unique on session_id so
repeated finalization upserts instead of duplicating).
"""
import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import String, DateTime, Text, JSON, ForeignKey, Integer, Float, Boolean
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from trainer.core.database import Base


class TrainingSession(Base):
    __tablename__ = "training_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()), index=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(255), index=True, nullable=True)

    # Scenario and persona
    scenario_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    scenario_title: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    scenario_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    interaction_mode: Mapped[str] = mapped_column(String(20), default="chat")  # chat, call
    client_emotion: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    voice_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    voice_used: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Lifecycle
    session_status: Mapped[str] = mapped_column(String(20), default="active")  # pending, active, paused, completed
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[int] = mapped_column(Integer, default=0)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=0)

    # Counters
    total_messages: Mapped[int] = mapped_column(Integer, default=0)
    user_words_count: Mapped[int] = mapped_column(Integer, default=0)
    ai_words_count: Mapped[int] = mapped_column(Integer, default=0)
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    # Relationships
    messages: Mapped[List["ConversationMessage"]] = relationship(back_populates="session", cascade="all, delete-orphan")
    metrics: Mapped[List["RealTimeMetric"]] = relationship(back_populates="session", cascade="all, delete-orphan")
    evaluation: Mapped[Optional["SessionEvaluation"]] = relationship(back_populates="session", uselist=False, cascade="all, delete-orphan")


class ConversationMessage(Base):
    __tablename__ = "conversation_messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("training_sessions.id"), nullable=False, index=True)
    sender: Mapped[str] = mapped_column(String(20), nullable=False)  # user, agent
    content: Mapped[str] = mapped_column(Text, nullable=False)
    turn_index: Mapped[int] = mapped_column(Integer, nullable=False)
    timestamp_in_session: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    session: Mapped["TrainingSession"] = relationship(back_populates="messages")


class RealTimeMetric(Base):
    __tablename__ = "real_time_metrics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("training_sessions.id"), nullable=False, index=True)
    metric_name: Mapped[str] = mapped_column(String(50), nullable=False)
    metric_value: Mapped[float] = mapped_column(Float, nullable=False)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())

    session: Mapped["TrainingSession"] = relationship(back_populates="metrics")


class SessionEvaluation(Base):
    __tablename__ = "session_evaluations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("training_sessions.id"), nullable=False, unique=True, index=True)

    overall_score: Mapped[int] = mapped_column(Integer, default=0)
    rapport_score: Mapped[int] = mapped_column(Integer, default=0)
    clarity_score: Mapped[int] = mapped_column(Integer, default=0)
    empathy_score: Mapped[int] = mapped_column(Integer, default=0)
    accuracy_score: Mapped[int] = mapped_column(Integer, default=0)

    strengths: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    improvements: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    specific_feedback: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    ai_analysis: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    is_fallback: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now(), nullable=True)

    session: Mapped["TrainingSession"] = relationship(back_populates="evaluation")
