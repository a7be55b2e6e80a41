"""
WebSocket channel between a live training session and its browser clients.

The browser owns the microphone and the audio element, so in call mode the
capture source and the playback sink are both proxies over this channel:
- CaptureSource sends capture_control start/stop and receives transcripts
  and recognition errors
- PlaybackSink sends base64 audio and waits for the client's playback_ended
  acknowledgement
Orchestrator events are fanned out to every connection of the session.
"""
import asyncio
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from trainer.core.exceptions import CaptureError, PlaybackError
from trainer.core.training_config import training_config
from trainer.schemas.websocket import (
    AudioMessage,
    CaptureControlMessage,
    ConnectionMessage,
    EvaluationReadyMessage,
    InterimTranscriptMessage,
    MetricsUpdatedMessage,
    StateUpdateMessage,
    StopAudioMessage,
    TurnAppendedMessage,
    WarningMessage,
    WebSocketMessageType,
)
from trainer.services.event_bus import EventType, SessionEvent, call_maybe_async
from trainer.services.speech_io import AudioPlaybackSink, SpeechCaptureSource

logger = logging.getLogger(__name__)

EVENT_MESSAGES = {
    EventType.STATE_CHANGED: StateUpdateMessage,
    EventType.TURN_APPENDED: TurnAppendedMessage,
    EventType.METRICS_UPDATED: MetricsUpdatedMessage,
    EventType.EVALUATION_READY: EvaluationReadyMessage,
    EventType.WARNING: WarningMessage,
    EventType.INTERIM_TRANSCRIPT: InterimTranscriptMessage,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActiveConnection:
    """Represents an active WebSocket connection"""
    websocket: object  # WebSocket instance
    session_id: str
    connected_at: datetime
    last_heartbeat: datetime


class WebSocketCaptureSource(SpeechCaptureSource):
    """Speech recognition running in the browser, driven over the channel."""

    def __init__(self, channel: "SessionChannel"):
        self.channel = channel
        self.active = False
        self._on_final = None
        self._on_interim = None
        self._on_error = None

    async def start(self, on_final, on_interim, on_error) -> None:
        self._on_final = on_final
        self._on_interim = on_interim
        self._on_error = on_error
        self.active = True
        await self.channel.broadcast(CaptureControlMessage(
            session_id=self.channel.session_id,
            timestamp=_now(),
            payload={"action": "start"},
        ))

    async def stop(self) -> None:
        if not self.active:
            return
        self.active = False
        await self.channel.broadcast(CaptureControlMessage(
            session_id=self.channel.session_id,
            timestamp=_now(),
            payload={"action": "stop"},
        ))

    async def push_transcript(self, interim: Optional[str] = None, final: Optional[str] = None) -> None:
        """Deliver recognition results from the client; ignored while stopped."""
        if not self.active:
            logger.debug("Ignoring transcript while capture is stopped")
            return
        if final:
            await call_maybe_async(self._on_final, final)
        elif interim:
            await call_maybe_async(self._on_interim, interim)

    async def report_error(self, code: str, details: str = "") -> None:
        if not self.active:
            return
        await call_maybe_async(self._on_error, CaptureError.from_code(code, details))


class WebSocketPlaybackSink(AudioPlaybackSink):
    """The browser's single audio element; one pending utterance at a time."""

    def __init__(self, channel: "SessionChannel", ack_timeout: Optional[float] = None):
        self.channel = channel
        self.ack_timeout = ack_timeout or training_config.PLAYBACK_ACK_TIMEOUT_SECONDS
        self._pending: Optional[Tuple[int, asyncio.Future]] = None

    @property
    def pending_utterance(self) -> Optional[int]:
        return self._pending[0] if self._pending else None

    async def play(self, audio: bytes, utterance_id: int) -> bool:
        if self.channel.connection_count == 0:
            raise PlaybackError("No client connected for playback")

        future = asyncio.get_running_loop().create_future()
        self._pending = (utterance_id, future)
        try:
            sent = await self.channel.broadcast(AudioMessage(
                session_id=self.channel.session_id,
                timestamp=_now(),
                payload={
                    "utterance_id": utterance_id,
                    "audio_base64": base64.b64encode(audio).decode("ascii"),
                    "mime_type": "audio/mpeg",
                },
            ))
            if sent == 0:
                raise PlaybackError("Audio could not be delivered to any client")
            try:
                return await asyncio.wait_for(future, timeout=self.ack_timeout)
            except asyncio.TimeoutError:
                raise PlaybackError(f"No playback acknowledgement after {self.ack_timeout} seconds")
        finally:
            if self._pending is not None and self._pending[1] is future:
                self._pending = None

    def release(self) -> None:
        """Resolve the pending utterance as interrupted."""
        pending, self._pending = self._pending, None
        if pending is not None and not pending[1].done():
            pending[1].set_result(False)

    async def stop(self) -> None:
        self.release()
        await self.channel.broadcast(StopAudioMessage(
            session_id=self.channel.session_id,
            timestamp=_now(),
            payload={},
        ))

    def acknowledge(self, utterance_id: Optional[int] = None) -> bool:
        """Client reports the utterance finished playing."""
        if self._pending is None:
            return False
        pending_id, future = self._pending
        if utterance_id is not None and utterance_id != pending_id:
            logger.debug(f"Ignoring stale playback acknowledgement for utterance {utterance_id}")
            return False
        if not future.done():
            future.set_result(True)
        return True

    def fail(self, utterance_id: Optional[int], reason: str) -> bool:
        """Client reports the audio could not be played (autoplay blocked, decode error)."""
        if self._pending is None:
            return False
        pending_id, future = self._pending
        if utterance_id is not None and utterance_id != pending_id:
            return False
        if not future.done():
            future.set_exception(PlaybackError(reason or "Client playback error"))
        return True


class SessionChannel:
    """
    WebSocket connections of one training session.
    Broadcasts orchestrator events and routes client messages to capture and playback.
    """

    def __init__(self, session_id: str, ack_timeout: Optional[float] = None):
        self.session_id = session_id
        self._connections: List[ActiveConnection] = []
        self._lock = asyncio.Lock()
        self.capture = WebSocketCaptureSource(self)
        self.playback = WebSocketPlaybackSink(self, ack_timeout)

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def add_connection(self, websocket, current_state: Optional[str] = None) -> None:
        async with self._lock:
            now = _now()
            self._connections.append(ActiveConnection(
                websocket=websocket,
                session_id=self.session_id,
                connected_at=now,
                last_heartbeat=now,
            ))
        logger.info(f"WebSocket connection added for session {self.session_id}")

        message = ConnectionMessage(
            session_id=self.session_id,
            timestamp=_now(),
            payload={
                "status": "connected",
                "client_count": self.connection_count,
                "current_state": current_state,
            },
        )
        try:
            await websocket.send_text(message.model_dump_json())
        except Exception as e:
            logger.error(f"Error sending connection status: {e}")

    async def remove_connection(self, websocket) -> None:
        async with self._lock:
            self._connections = [conn for conn in self._connections if conn.websocket is not websocket]
        logger.info(f"WebSocket connection removed for session {self.session_id}")

    async def close(self, code: int = 1000) -> None:
        """Close every connection of an ended session."""
        self.capture.active = False
        self.playback.release()

        async with self._lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            try:
                await connection.websocket.close(code=code)
            except Exception as e:
                logger.warning(f"Error closing WebSocket for session {self.session_id}: {e}")
        if connections:
            logger.info(f"Closed {len(connections)} WebSocket connection(s) for session {self.session_id}")

    def touch(self, websocket) -> None:
        for connection in self._connections:
            if connection.websocket is websocket:
                connection.last_heartbeat = _now()

    async def broadcast(self, message: WebSocketMessageType) -> int:
        """Send to every connection; returns how many received it."""
        payload = message.model_dump_json()
        delivered = 0
        disconnected = []

        # Copy so a disconnect during iteration is safe
        for connection in list(self._connections):
            try:
                await connection.websocket.send_text(payload)
                delivered += 1
            except Exception as e:
                logger.error(f"Error sending message to WebSocket: {e}")
                disconnected.append(connection)

        if disconnected:
            async with self._lock:
                self._connections = [conn for conn in self._connections if conn not in disconnected]
        return delivered

    async def handle_event(self, event: SessionEvent) -> None:
        """Event bus listener: forward an orchestrator event to the clients."""
        message_cls = EVENT_MESSAGES.get(event.event_type)
        if message_cls is None:
            return
        await self.broadcast(message_cls(
            session_id=event.session_id,
            timestamp=event.timestamp,
            payload=event.data,
        ))

    async def handle_client_message(self, data: Dict[str, Any]) -> bool:
        """
        Route a message received from a client.

        Returns:
            False for unknown message types
        """
        message_type = data.get("type")
        payload = data.get("payload") or {}

        if message_type == "transcript_update":
            await self.capture.push_transcript(
                interim=payload.get("interim_transcript"),
                final=payload.get("final_transcript"),
            )
        elif message_type == "capture_error":
            await self.capture.report_error(payload.get("error", ""), payload.get("message", ""))
        elif message_type == "playback_ended":
            self.playback.acknowledge(payload.get("utterance_id"))
        elif message_type == "playback_error":
            self.playback.fail(payload.get("utterance_id"), payload.get("message", ""))
        else:
            return False
        return True
