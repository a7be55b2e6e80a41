"""
WebSocket message schemas for live training sessions.
Server-to-client messages mirror the orchestrator's lifecycle events; the
client-to-server side carries speech capture results and playback
acknowledgements.
"""
from pydantic import BaseModel
from typing import Optional, Dict, Any, Literal
from datetime import datetime


class WebSocketMessage(BaseModel):
    """Base WebSocket message structure"""
    type: str
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]


class StateUpdateMessage(BaseModel):
    """Orchestrator state change"""
    type: Literal["state_update"] = "state_update"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]  # Contains: previous_state, current_state, capture_active, playback_active


class TurnAppendedMessage(BaseModel):
    """New turn in the transcript"""
    type: Literal["turn_appended"] = "turn_appended"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]  # Contains: index, sender, text, offset_seconds


class MetricsUpdatedMessage(BaseModel):
    """Live metric snapshot"""
    type: Literal["metrics_updated"] = "metrics_updated"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]  # Contains: rapport, clarity, empathy, accuracy, overall, trend


class EvaluationReadyMessage(BaseModel):
    """Final evaluation delivery"""
    type: Literal["evaluation_ready"] = "evaluation_ready"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]


class InterimTranscriptMessage(BaseModel):
    """Partial speech-to-text echo"""
    type: Literal["interim_transcript"] = "interim_transcript"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]  # Contains: text


class AudioMessage(BaseModel):
    """Synthesized audio for the browser to play"""
    type: Literal["audio"] = "audio"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]  # Contains: utterance_id, audio_base64, mime_type


class StopAudioMessage(BaseModel):
    """Stop whatever is playing"""
    type: Literal["stop_audio"] = "stop_audio"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]


class CaptureControlMessage(BaseModel):
    """Ask the browser to start or stop speech recognition"""
    type: Literal["capture_control"] = "capture_control"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]  # Contains: action (start/stop), handle_id


class WarningMessage(BaseModel):
    """User-facing, non-fatal warning"""
    type: Literal["warning"] = "warning"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]  # Contains: code, message, retryable


class ErrorMessage(BaseModel):
    """Error message for WebSocket communication"""
    type: Literal["error"] = "error"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]  # Contains: error_type, message


class ConnectionMessage(BaseModel):
    """Connection status messages"""
    type: Literal["connection_status"] = "connection_status"
    session_id: str
    timestamp: datetime
    payload: Dict[str, Any]  # Contains: status (connected/disconnected), client_count, current_state


# Union type for all possible WebSocket messages
WebSocketMessageType = (
    StateUpdateMessage |
    TurnAppendedMessage |
    MetricsUpdatedMessage |
    EvaluationReadyMessage |
    InterimTranscriptMessage |
    AudioMessage |
    StopAudioMessage |
    CaptureControlMessage |
    WarningMessage |
    ErrorMessage |
    ConnectionMessage
)
