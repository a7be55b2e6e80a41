"""
WebSocket API for live training sessions.

Endpoint `/ws/training/{session_id}`:
- Server pushes state, turn, metric, evaluation, warning and audio messages
- Client sends transcript_update, capture_error, playback_ended,
  playback_error and heartbeat messages
"""
import json
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from trainer.core.exceptions import SessionNotFoundError
from trainer.schemas.websocket import ErrorMessage, WebSocketMessage
from trainer.services.realtime_channel import SessionChannel
from trainer.services.session_registry import TrainingSessionRegistry, get_training_registry

logger = logging.getLogger(__name__)

router = APIRouter()


async def handle_message(websocket: WebSocket, channel: SessionChannel, message: str) -> None:
    """Handle one incoming WebSocket message from a client"""
    try:
        data = json.loads(message)
        if not isinstance(data, dict):
            raise ValueError("Message must be a JSON object")
        message_type = data.get("type")

        logger.debug(f"Received WebSocket message: {message_type} for session {channel.session_id}")

        if message_type == "heartbeat":
            channel.touch(websocket)
            await _send_heartbeat(websocket, channel.session_id)
        elif not await channel.handle_client_message(data):
            logger.warning(f"Unknown message type: {message_type}")
            await _send_error(websocket, channel.session_id, "unknown_message_type", f"Unknown message type: {message_type}")

    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in WebSocket message: {e}")
        await _send_error(websocket, channel.session_id, "invalid_json", "Invalid JSON format")
    except Exception as e:
        logger.error(f"Error handling WebSocket message: {e}")
        await _send_error(websocket, channel.session_id, "message_handling_error", str(e))


async def _send_heartbeat(websocket: WebSocket, session_id: str) -> None:
    now = datetime.now(timezone.utc)
    response = WebSocketMessage(
        type="heartbeat_response",
        session_id=session_id,
        timestamp=now,
        payload={"status": "alive", "server_time": now.isoformat()},
    )
    await websocket.send_text(response.model_dump_json())


async def _send_error(websocket: WebSocket, session_id: str, error_type: str, message: str) -> None:
    """Send error message to WebSocket client"""
    error_message = ErrorMessage(
        session_id=session_id,
        timestamp=datetime.now(timezone.utc),
        payload={"error_type": error_type, "message": message},
    )
    try:
        await websocket.send_text(error_message.model_dump_json())
    except Exception as e:
        logger.error(f"Failed to send error message: {e}")


@router.websocket("/ws/training/{session_id}")
async def training_websocket_endpoint(
    websocket: WebSocket,
    session_id: str,
    registry: TrainingSessionRegistry = Depends(get_training_registry),
):
    """
    Real-time channel of a live training session.
    Closes with 1008 when the session is not live in this process.
    """
    try:
        orchestrator = registry.get(session_id)
        channel = registry.get_channel(session_id)
    except SessionNotFoundError:
        await websocket.close(code=1008, reason="Session not found")
        return

    await websocket.accept()
    await channel.add_connection(websocket, current_state=orchestrator.state.value)

    try:
        while True:
            message = await websocket.receive_text()
            await handle_message(websocket, channel, message)

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected for session: {session_id}")
    except Exception as e:
        logger.error(f"WebSocket error for session {session_id}: {e}")
    finally:
        await channel.remove_connection(websocket)
