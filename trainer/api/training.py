import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from trainer.core.exceptions import SessionNotFoundError
from trainer.schemas.training import (
    ClientPersona,
    InteractionMode,
    ScenarioContext,
    SessionConfig,
    SessionResult,
)
from trainer.services.session_registry import TrainingSessionRegistry, get_training_registry

logger = logging.getLogger(__name__)

router = APIRouter()


# Request/Response Models
class StartSessionRequest(BaseModel):
    user_id: Optional[str] = None
    scenario_id: str = "sales-cold-call"
    scenario_title: str = "Entrenamiento General"
    scenario_description: str = ""
    scenario_instructions: str = ""
    scenario_type: str = "sales"
    interaction_mode: InteractionMode = InteractionMode.CHAT
    client_emotion: str = "neutral"
    voice_id: Optional[str] = None
    voice_name: Optional[str] = None

    def to_config(self) -> SessionConfig:
        return SessionConfig(
            user_id=self.user_id,
            scenario=ScenarioContext(
                id=self.scenario_id,
                title=self.scenario_title,
                description=self.scenario_description,
                instructions=self.scenario_instructions,
                scenario_type=self.scenario_type,
            ),
            interaction_mode=self.interaction_mode,
            persona=ClientPersona(
                emotion=self.client_emotion,
                voice_id=self.voice_id,
                voice_name=self.voice_name,
            ),
        )


class StartSessionResponse(BaseModel):
    session_id: str
    state: str
    interaction_mode: str
    persisted: bool


class MessageRequest(BaseModel):
    text: str


class MessageResponse(BaseModel):
    session_id: str
    accepted: bool
    state: str


class ControlResponse(BaseModel):
    session_id: str
    success: bool
    state: str


@router.post("/sessions", response_model=StartSessionResponse)
async def start_session(
    request: StartSessionRequest,
    registry: TrainingSessionRegistry = Depends(get_training_registry),
):
    """
    Start a training session.
    The session is created right away; the client's opening line arrives over
    the WebSocket (or through GET /sessions/{id}) once generated.
    """
    try:
        orchestrator = await registry.create_session(request.to_config())
    except Exception as e:
        logger.error(f"Failed to start training session: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start session: {str(e)}")

    return StartSessionResponse(
        session_id=orchestrator.session_id,
        state=orchestrator.state.value,
        interaction_mode=request.interaction_mode.value,
        persisted=orchestrator.session.persisted,
    )


@router.post("/sessions/{session_id}/messages", response_model=MessageResponse)
async def submit_message(
    session_id: str,
    request: MessageRequest,
    wait: bool = False,
    registry: TrainingSessionRegistry = Depends(get_training_registry),
):
    """
    Submit a typed message.
    By default the reply is produced in the background; pass wait=true to
    return only after the client has answered.
    """
    orchestrator = _get_live(registry, session_id)

    if wait:
        accepted = await orchestrator.submit_user_text(request.text)
    else:
        accepted = orchestrator.accepts_input(request.text)
        if accepted:
            registry.spawn(orchestrator.submit_user_text(request.text))

    return MessageResponse(session_id=session_id, accepted=accepted, state=orchestrator.state.value)


@router.post("/sessions/{session_id}/pause", response_model=ControlResponse)
async def pause_session(session_id: str, registry: TrainingSessionRegistry = Depends(get_training_registry)):
    orchestrator = _get_live(registry, session_id)
    success = await orchestrator.pause()
    return ControlResponse(session_id=session_id, success=success, state=orchestrator.state.value)


@router.post("/sessions/{session_id}/resume", response_model=ControlResponse)
async def resume_session(session_id: str, registry: TrainingSessionRegistry = Depends(get_training_registry)):
    orchestrator = _get_live(registry, session_id)
    success = await orchestrator.resume()
    return ControlResponse(session_id=session_id, success=success, state=orchestrator.state.value)


@router.post("/sessions/{session_id}/capture/retry", response_model=ControlResponse)
async def retry_capture(session_id: str, registry: TrainingSessionRegistry = Depends(get_training_registry)):
    """Restart speech capture after microphone permission was granted."""
    orchestrator = _get_live(registry, session_id)
    success = await orchestrator.retry_capture()
    return ControlResponse(session_id=session_id, success=success, state=orchestrator.state.value)


@router.post("/sessions/{session_id}/end", response_model=SessionResult)
async def end_session(session_id: str, registry: TrainingSessionRegistry = Depends(get_training_registry)):
    """
    End the session and return its result.
    Sessions that are too short come back with too_short=true and no evaluation.
    """
    if session_id not in registry and registry.get_result(session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    try:
        return await registry.end_session(session_id)
    except Exception as e:
        logger.error(f"Error ending session {session_id}: {e}")
        raise HTTPException(status_code=500, detail="Failed to end session")


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, registry: TrainingSessionRegistry = Depends(get_training_registry)) -> Dict[str, Any]:
    """Live snapshot when the session is in memory, stored record otherwise."""
    if session_id in registry:
        return registry.get(session_id).snapshot()

    stored = await _read(registry.persistence.get_session(session_id))
    if stored is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return stored


@router.get("/sessions/{session_id}/messages")
async def get_session_messages(
    session_id: str,
    registry: TrainingSessionRegistry = Depends(get_training_registry),
) -> List[Dict[str, Any]]:
    if session_id in registry:
        return [turn.model_dump(mode="json") for turn in registry.get(session_id).transcript.all()]

    if await _read(registry.persistence.get_session(session_id)) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return await _read(registry.persistence.get_session_messages(session_id))


@router.get("/sessions/{session_id}/evaluation")
async def get_session_evaluation(
    session_id: str,
    registry: TrainingSessionRegistry = Depends(get_training_registry),
) -> Dict[str, Any]:
    result = registry.get(session_id).result if session_id in registry else registry.get_result(session_id)
    if result is not None and result.evaluation is not None:
        return {"session_id": session_id, **result.evaluation.model_dump(mode="json")}

    evaluation = await _read(registry.persistence.get_session_evaluation(session_id))
    if evaluation is None:
        raise HTTPException(status_code=404, detail="Evaluation not found")
    return evaluation


@router.get("/user/{user_id}/history")
async def get_user_history(
    user_id: str,
    limit: int = 20,
    registry: TrainingSessionRegistry = Depends(get_training_registry),
) -> List[Dict[str, Any]]:
    """Most recent stored sessions of a user."""
    return await _read(registry.persistence.get_user_sessions(user_id, limit=limit))


def _get_live(registry: TrainingSessionRegistry, session_id: str):
    try:
        return registry.get(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")


async def _read(coro):
    try:
        return await coro
    except Exception as e:
        logger.error(f"Error reading training data: {e}")
        raise HTTPException(status_code=500, detail="Failed to read training data")
