"""
Training session configuration.
Centralizes timing, retry and scoring parameters used by the session orchestrator,
the evaluation finalizer and the speech collaborators.
"""
import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class TrainingConfig:
    """Centralized configuration for live training sessions"""

    # Collaborator timeouts (seconds)
    REPLY_TIMEOUT_SECONDS: float = 30.0
    EVALUATION_TIMEOUT_SECONDS: float = 30.0
    SYNTHESIS_TIMEOUT_SECONDS: float = 15.0
    PLAYBACK_ACK_TIMEOUT_SECONDS: float = 120.0

    # Conversation window sent to the language model
    REPLY_HISTORY_WINDOW: int = 20

    # Evaluation gate: minimum turns (with both senders present)
    MIN_TURNS_FOR_EVALUATION: int = 2

    # Best-effort persistence
    PERSISTENCE_MAX_ATTEMPTS: int = 3
    PERSISTENCE_BACKOFF_SECONDS: float = 0.5

    # Live metrics
    METRICS_JITTER: int = 3
    METRICS_SEED: Optional[int] = None

    # Synthesized audio cache
    TTS_CACHE_TTL_SECONDS: int = 300
    TTS_MAX_CHARS: int = 500

    # Ended sessions whose results stay available after eviction
    ENDED_RESULTS_LIMIT: int = 200

    @classmethod
    def from_env(cls) -> 'TrainingConfig':
        """Load configuration from environment variables with defaults"""
        seed = os.getenv("TRAINING_METRICS_SEED")
        return cls(
            REPLY_TIMEOUT_SECONDS=float(os.getenv("TRAINING_REPLY_TIMEOUT", "30")),
            EVALUATION_TIMEOUT_SECONDS=float(os.getenv("TRAINING_EVALUATION_TIMEOUT", "30")),
            SYNTHESIS_TIMEOUT_SECONDS=float(os.getenv("TRAINING_SYNTHESIS_TIMEOUT", "15")),
            PLAYBACK_ACK_TIMEOUT_SECONDS=float(os.getenv("TRAINING_PLAYBACK_ACK_TIMEOUT", "120")),
            REPLY_HISTORY_WINDOW=int(os.getenv("TRAINING_REPLY_HISTORY_WINDOW", "20")),
            MIN_TURNS_FOR_EVALUATION=int(os.getenv("TRAINING_MIN_TURNS_FOR_EVALUATION", "2")),
            PERSISTENCE_MAX_ATTEMPTS=int(os.getenv("TRAINING_PERSISTENCE_MAX_ATTEMPTS", "3")),
            PERSISTENCE_BACKOFF_SECONDS=float(os.getenv("TRAINING_PERSISTENCE_BACKOFF", "0.5")),
            METRICS_JITTER=int(os.getenv("TRAINING_METRICS_JITTER", "3")),
            METRICS_SEED=int(seed) if seed else None,
            TTS_CACHE_TTL_SECONDS=int(os.getenv("TRAINING_TTS_CACHE_TTL", "300")),
            TTS_MAX_CHARS=int(os.getenv("TRAINING_TTS_MAX_CHARS", "500")),
            ENDED_RESULTS_LIMIT=int(os.getenv("TRAINING_ENDED_RESULTS_LIMIT", "200")),
        )


# Global configuration instance
training_config = TrainingConfig.from_env()
