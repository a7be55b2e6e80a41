import asyncio
import base64
import json
from unittest.mock import AsyncMock, Mock

import pytest

from conftest import wait_until
from trainer.core.exceptions import CaptureErrorKind, PlaybackError
from trainer.services.event_bus import EventType, SessionEvent
from trainer.services.realtime_channel import SessionChannel


def make_websocket(fail=False):
    websocket = Mock()
    websocket.send_text = AsyncMock(side_effect=Exception("closed") if fail else None)
    return websocket


def sent_messages(websocket):
    return [json.loads(call.args[0]) for call in websocket.send_text.await_args_list]


@pytest.fixture
def channel():
    return SessionChannel("session-1", ack_timeout=1.0)


class TestConnections:

    @pytest.mark.asyncio
    async def test_add_connection_sends_status(self, channel):
        websocket = make_websocket()

        await channel.add_connection(websocket, current_state="listening")

        assert channel.connection_count == 1
        message = sent_messages(websocket)[0]
        assert message["type"] == "connection_status"
        assert message["payload"] == {"status": "connected", "client_count": 1, "current_state": "listening"}

    @pytest.mark.asyncio
    async def test_broadcast_drops_failed_connections(self, channel):
        healthy, broken = make_websocket(), make_websocket()
        await channel.add_connection(healthy)
        await channel.add_connection(broken)
        broken.send_text.side_effect = Exception("closed")

        await channel.handle_event(SessionEvent(
            event_type=EventType.WARNING,
            session_id="session-1",
            data={"code": "reply_failed", "message": "x", "retryable": True},
        ))

        assert channel.connection_count == 1
        assert sent_messages(healthy)[-1]["type"] == "warning"

    @pytest.mark.asyncio
    async def test_events_map_to_message_types(self, channel):
        websocket = make_websocket()
        await channel.add_connection(websocket)

        for event_type in (EventType.STATE_CHANGED, EventType.TURN_APPENDED, EventType.METRICS_UPDATED):
            await channel.handle_event(SessionEvent(event_type=event_type, session_id="session-1", data={}))

        types = [message["type"] for message in sent_messages(websocket)[1:]]
        assert types == ["state_update", "turn_appended", "metrics_updated"]

    @pytest.mark.asyncio
    async def test_remove_connection(self, channel):
        websocket = make_websocket()
        await channel.add_connection(websocket)
        await channel.remove_connection(websocket)

        assert channel.connection_count == 0

    @pytest.mark.asyncio
    async def test_close_closes_every_connection(self, channel):
        first, second = make_websocket(), make_websocket()
        first.close = AsyncMock()
        second.close = AsyncMock(side_effect=RuntimeError("already closed"))
        await channel.add_connection(first)
        await channel.add_connection(second)

        await channel.close()
        await channel.close()

        assert channel.connection_count == 0
        first.close.assert_awaited_once_with(code=1000)
        second.close.assert_awaited_once_with(code=1000)

    @pytest.mark.asyncio
    async def test_unknown_client_message(self, channel):
        assert await channel.handle_client_message({"type": "dance"}) is False


class TestCaptureProxy:

    @pytest.mark.asyncio
    async def test_start_and_stop_send_capture_control(self, channel):
        websocket = make_websocket()
        await channel.add_connection(websocket)

        await channel.capture.start(Mock(), Mock(), Mock())
        await channel.capture.stop()

        controls = [m["payload"]["action"] for m in sent_messages(websocket) if m["type"] == "capture_control"]
        assert controls == ["start", "stop"]

    @pytest.mark.asyncio
    async def test_transcripts_are_routed_only_while_capturing(self, channel):
        finals, interims = [], []
        await channel.handle_client_message({"type": "transcript_update", "payload": {"final_transcript": "antes"}})
        await channel.capture.start(finals.append, interims.append, Mock())

        await channel.handle_client_message({"type": "transcript_update", "payload": {"interim_transcript": "hol"}})
        await channel.handle_client_message({"type": "transcript_update", "payload": {"final_transcript": "hola"}})

        assert finals == ["hola"]
        assert interims == ["hol"]

    @pytest.mark.asyncio
    async def test_capture_error_is_classified(self, channel):
        errors = []
        await channel.capture.start(Mock(), Mock(), errors.append)

        await channel.handle_client_message({"type": "capture_error", "payload": {"error": "not-allowed"}})

        assert errors[0].kind == CaptureErrorKind.PERMISSION_DENIED


class TestPlaybackProxy:

    @pytest.mark.asyncio
    async def test_play_sends_audio_and_waits_for_ack(self, channel):
        websocket = make_websocket()
        await channel.add_connection(websocket)

        task = asyncio.create_task(channel.playback.play(b"mp3", 7))
        assert await wait_until(lambda: channel.playback.pending_utterance == 7)

        audio = sent_messages(websocket)[-1]
        assert audio["type"] == "audio"
        assert base64.b64decode(audio["payload"]["audio_base64"]) == b"mp3"

        # Acknowledgement for an older utterance is ignored
        await channel.handle_client_message({"type": "playback_ended", "payload": {"utterance_id": 6}})
        assert not task.done()

        await channel.handle_client_message({"type": "playback_ended", "payload": {"utterance_id": 7}})
        assert await task is True
        assert channel.playback.pending_utterance is None

    @pytest.mark.asyncio
    async def test_play_without_clients_raises(self, channel):
        with pytest.raises(PlaybackError):
            await channel.playback.play(b"mp3", 1)

    @pytest.mark.asyncio
    async def test_client_playback_error_raises(self, channel):
        await channel.add_connection(make_websocket())

        task = asyncio.create_task(channel.playback.play(b"mp3", 1))
        assert await wait_until(lambda: channel.playback.pending_utterance == 1)
        await channel.handle_client_message({
            "type": "playback_error",
            "payload": {"utterance_id": 1, "message": "autoplay blocked"},
        })

        with pytest.raises(PlaybackError, match="autoplay blocked"):
            await task

    @pytest.mark.asyncio
    async def test_missing_ack_times_out(self, channel):
        await channel.add_connection(make_websocket())
        channel.playback.ack_timeout = 0.01

        with pytest.raises(PlaybackError):
            await channel.playback.play(b"mp3", 1)

    @pytest.mark.asyncio
    async def test_stop_interrupts_pending_playback(self, channel):
        websocket = make_websocket()
        await channel.add_connection(websocket)

        task = asyncio.create_task(channel.playback.play(b"mp3", 3))
        assert await wait_until(lambda: channel.playback.pending_utterance == 3)
        await channel.playback.stop()

        assert await task is False
        assert sent_messages(websocket)[-1]["type"] == "stop_audio"

    @pytest.mark.asyncio
    async def test_close_resolves_pending_playback(self, channel):
        websocket = make_websocket()
        websocket.close = AsyncMock()
        await channel.add_connection(websocket)

        task = asyncio.create_task(channel.playback.play(b"mp3", 4))
        assert await wait_until(lambda: channel.playback.pending_utterance == 4)
        await channel.close()

        assert await task is False
        assert channel.playback.pending_utterance is None
