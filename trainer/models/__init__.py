# Import all models here so metadata.create_all can detect them
from .training_session import TrainingSession, ConversationMessage, RealTimeMetric, SessionEvaluation

__all__ = [
    "TrainingSession",
    "ConversationMessage",
    "RealTimeMetric",
    "SessionEvaluation",
]
