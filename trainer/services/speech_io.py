"""
Speech input/output for training sessions.

Chat sessions use NullSpeechIO. Call sessions use VoiceSpeechIO, which glues
a capture source (speech-to-text running on the client), a synthesizer
(ElevenLabs) and a playback sink (the client's audio element) into one
adapter with a single capture handle and a single playback slot.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from trainer.core.exceptions import CaptureError, CaptureErrorKind, PlaybackError, SpeechSynthesisError
from trainer.core.training_config import training_config
from trainer.services.event_bus import call_maybe_async

logger = logging.getLogger(__name__)

TranscriptCallback = Callable[[str], Union[None, Awaitable[None]]]
WarningCallback = Callable[[str, str], Union[None, Awaitable[None]]]
CaptureErrorCallback = Callable[[CaptureError], Awaitable[None]]


@dataclass
class CaptureHandle:
    """Identifies one capture run; inactive handles ignore late results."""
    id: int
    active: bool = True


class SpeechCaptureSource(ABC):
    """Streams recognized speech from the trainee."""

    @abstractmethod
    async def start(
        self,
        on_final: TranscriptCallback,
        on_interim: TranscriptCallback,
        on_error: CaptureErrorCallback,
    ) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...


class SpeechSynthesizer(ABC):
    @abstractmethod
    async def synthesize(self, text: str, voice_id: Optional[str]) -> bytes:
        """Return encoded audio or raise SpeechSynthesisError."""


class AudioPlaybackSink(ABC):
    """Plays one utterance at a time."""

    @abstractmethod
    async def play(self, audio: bytes, utterance_id: int) -> bool:
        """
        Play audio and wait until it is done.

        Returns True when playback ran to completion, False when it was
        stopped. Raises PlaybackError when it could not be played.
        """

    @abstractmethod
    async def stop(self) -> None:
        ...


class SpeechIOAdapter(ABC):
    """Capture and playback as seen by the session orchestrator."""

    def __init__(self):
        self._warning_handler: Optional[WarningCallback] = None

    def bind_warning_handler(self, handler: Optional[WarningCallback]) -> None:
        self._warning_handler = handler

    async def _warn(self, code: str, message: str) -> None:
        try:
            await call_maybe_async(self._warning_handler, code, message)
        except Exception as e:
            logger.error(f"Warning handler failed: {e}")

    @property
    def capture_active(self) -> bool:
        return False

    @property
    def playback_active(self) -> bool:
        return False

    @abstractmethod
    async def start_capture(
        self,
        on_final: TranscriptCallback,
        on_interim: Optional[TranscriptCallback] = None,
    ) -> Optional[CaptureHandle]:
        ...

    @abstractmethod
    async def stop_capture(self, handle: Optional[CaptureHandle] = None) -> None:
        ...

    @abstractmethod
    async def speak(self, text: str, voice_id: Optional[str]) -> bool:
        ...

    @abstractmethod
    async def stop_speaking(self) -> None:
        ...

    @abstractmethod
    async def retry_capture(self) -> Optional[CaptureHandle]:
        ...

    async def close(self) -> None:
        await self.stop_speaking()
        await self.stop_capture()


class NullSpeechIO(SpeechIOAdapter):
    """Chat mode: no capture, playback completes immediately."""

    async def start_capture(self, on_final, on_interim=None) -> Optional[CaptureHandle]:
        return None

    async def stop_capture(self, handle: Optional[CaptureHandle] = None) -> None:
        return None

    async def speak(self, text: str, voice_id: Optional[str]) -> bool:
        return True

    async def stop_speaking(self) -> None:
        return None

    async def retry_capture(self) -> Optional[CaptureHandle]:
        return None


class VoiceSpeechIO(SpeechIOAdapter):
    """Call mode: client-side capture, ElevenLabs synthesis, client-side playback."""

    def __init__(
        self,
        capture_source: SpeechCaptureSource,
        synthesizer: SpeechSynthesizer,
        playback_sink: AudioPlaybackSink,
        synthesis_timeout: Optional[float] = None,
    ):
        super().__init__()
        self.capture_source = capture_source
        self.synthesizer = synthesizer
        self.playback_sink = playback_sink
        self.synthesis_timeout = synthesis_timeout or training_config.SYNTHESIS_TIMEOUT_SECONDS

        self._handle: Optional[CaptureHandle] = None
        self._handle_seq = 0
        self._on_final: Optional[TranscriptCallback] = None
        self._on_interim: Optional[TranscriptCallback] = None
        self._permission_blocked = False
        self._playback_warned = False

        self._utterance = 0
        self._playing = False

    @property
    def capture_active(self) -> bool:
        return self._handle is not None and self._handle.active

    @property
    def playback_active(self) -> bool:
        return self._playing

    @property
    def permission_blocked(self) -> bool:
        return self._permission_blocked

    # Capture

    async def start_capture(self, on_final, on_interim=None) -> Optional[CaptureHandle]:
        self._on_final = on_final
        self._on_interim = on_interim

        if self._permission_blocked:
            logger.debug("Capture blocked until permission is granted")
            return None
        if self.capture_active:
            return self._handle

        self._handle_seq += 1
        handle = CaptureHandle(id=self._handle_seq)
        self._handle = handle

        try:
            await self.capture_source.start(self._deliver_final, self._deliver_interim, self._handle_capture_error)
        except CaptureError as e:
            await self._handle_capture_error(e)
        except Exception as e:
            await self._handle_capture_error(CaptureError(CaptureErrorKind.OTHER, str(e)))

        return handle if handle.active else None

    async def stop_capture(self, handle: Optional[CaptureHandle] = None) -> None:
        current = self._handle
        if current is None or not current.active:
            return
        if handle is not None and handle.id != current.id:
            return
        current.active = False
        try:
            await self.capture_source.stop()
        except Exception as e:
            logger.warning(f"Failed to stop capture source: {e}")

    async def retry_capture(self) -> Optional[CaptureHandle]:
        """Clear a permission block and start capture again with the last callbacks."""
        self._permission_blocked = False
        if self._on_final is None:
            return None
        return await self.start_capture(self._on_final, self._on_interim)

    async def _deliver_final(self, text: str) -> None:
        if not self.capture_active:
            return
        await call_maybe_async(self._on_final, text)

    async def _deliver_interim(self, text: str) -> None:
        if not self.capture_active:
            return
        await call_maybe_async(self._on_interim, text)

    async def _handle_capture_error(self, error: CaptureError) -> None:
        handle = self._handle
        if handle is None or not handle.active:
            return

        if error.kind == CaptureErrorKind.NO_SPEECH:
            logger.debug("No speech detected, restarting capture")
            try:
                await self.capture_source.start(self._deliver_final, self._deliver_interim, self._handle_capture_error)
            except Exception as e:
                handle.active = False
                logger.error(f"Capture restart failed: {e}")
                await self._warn("capture_error", "No se pudo reiniciar el reconocimiento de voz")
            return

        handle.active = False
        try:
            await self.capture_source.stop()
        except Exception as e:
            logger.debug(f"Capture source stop after error failed: {e}")

        if error.kind == CaptureErrorKind.PERMISSION_DENIED:
            if not self._permission_blocked:
                self._permission_blocked = True
                logger.warning("Microphone permission denied, capture stopped")
                await self._warn(
                    "capture_permission_denied",
                    "Permiso de micrófono denegado. Habilítalo y vuelve a intentarlo.",
                )
            return

        logger.warning(f"Capture stopped after error: {error}")
        await self._warn("capture_error", "Error en el reconocimiento de voz")

    # Playback

    async def speak(self, text: str, voice_id: Optional[str]) -> bool:
        """
        Synthesize and play text, replacing whatever is playing.

        Returns True only when this utterance played to completion. Never raises.
        """
        self._utterance += 1
        utterance = self._utterance
        if self._playing:
            await self._stop_sink()

        try:
            audio = await asyncio.wait_for(
                self.synthesizer.synthesize(text, voice_id),
                timeout=self.synthesis_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"Speech synthesis timed out after {self.synthesis_timeout} seconds")
            await self._warn("synthesis_failed", "La síntesis de voz tardó demasiado")
            return False
        except SpeechSynthesisError as e:
            logger.error(f"Speech synthesis failed: {e}")
            await self._warn("synthesis_failed", "No se pudo generar la voz del cliente")
            return False
        except Exception as e:
            logger.error(f"Unexpected synthesis error: {e}")
            await self._warn("synthesis_failed", "No se pudo generar la voz del cliente")
            return False

        if utterance != self._utterance:
            # Superseded or stopped while synthesizing
            return False

        self._playing = True
        try:
            completed = await self.playback_sink.play(audio, utterance)
        except PlaybackError as e:
            logger.error(f"Playback failed: {e}")
            await self._warn_playback_failed()
            return False
        except Exception as e:
            logger.error(f"Unexpected playback error: {e}")
            await self._warn_playback_failed()
            return False
        finally:
            if utterance == self._utterance:
                self._playing = False

        if completed:
            self._playback_warned = False
        return bool(completed) and utterance == self._utterance

    async def stop_speaking(self) -> None:
        self._utterance += 1
        if self._playing:
            await self._stop_sink()

    async def _warn_playback_failed(self) -> None:
        # One warning per run of failures
        if self._playback_warned:
            return
        self._playback_warned = True
        await self._warn("playback_failed", "No se pudo reproducir el audio")

    async def _stop_sink(self) -> None:
        self._playing = False
        try:
            await self.playback_sink.stop()
        except Exception as e:
            logger.warning(f"Failed to stop playback: {e}")
