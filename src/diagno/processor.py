"""Pipecat processors that connect the consultation controller to audio.

Pipeline layout::

    transport.input() -> AudioGateProcessor -> STT -> ConsultationProcessor -> TTS -> transport.output()

The controller never sees frames.  It talks to the capture ports, and the
port implementations here translate between port calls and pipecat frames:
transcriptions become transcript events, ``speak`` becomes a TTSSpeakFrame
that completes when the output transport reports the bot stopped speaking.
"""

import asyncio
import logging
from typing import Optional

from pipecat.frames.frames import (
    BotStartedSpeakingFrame,
    BotStoppedSpeakingFrame,
    CancelFrame,
    EndFrame,
    ErrorFrame,
    Frame,
    InputAudioRawFrame,
    InterimTranscriptionFrame,
    InterruptionFrame,
    TranscriptionFrame,
    TTSSpeakFrame,
)
from pipecat.processors.frame_processor import FrameDirection, FrameProcessor

from diagno.capture import MediaDevices, MediaHandles, MediaTrack, Recognizer, Synthesizer, TranscriptEvent
from diagno.errors import DeviceUnavailable, RecognizerFatalError, RecognizerTransientError, SynthesisError

logger = logging.getLogger(__name__)


def is_fatal(error: ErrorFrame) -> bool:
    """True for errors the service will not recover from (bad key, permission)."""
    if getattr(error, "fatal", False):
        return True
    category = getattr(error, "category", None)
    return bool(getattr(category, "is_permanent", False))


class AudioGateProcessor(FrameProcessor):
    """Drop caller audio while the microphone track is muted or stopped.

    Insert right after transport.input() so a muted caller never reaches STT.
    """

    def __init__(self, track: MediaTrack, **kwargs):
        super().__init__(**kwargs)
        self.track = track
        self.dropped = 0

    @property
    def open(self) -> bool:
        return self.track.enabled and not self.track.stopped

    async def process_frame(self, frame: Frame, direction: FrameDirection):
        await super().process_frame(frame, direction)

        if isinstance(frame, InputAudioRawFrame) and not self.open:
            self.dropped += 1
            return
        await self.push_frame(frame, direction)


class TransportMediaDevices(MediaDevices):
    """Media port over the WebSocket transport: the tracks exist as long as the socket does."""

    def __init__(self, audio_track: MediaTrack, video_track: Optional[MediaTrack] = None):
        self.audio_track = audio_track
        self.video_track = video_track

    async def acquire(self, audio: bool = True, video: bool = True) -> MediaHandles:
        if audio and self.audio_track.stopped:
            raise DeviceUnavailable("audio transport already closed")
        return MediaHandles(
            audio=[self.audio_track] if audio else [],
            video=[self.video_track] if video and self.video_track is not None else [],
        )


class PipecatRecognizer(Recognizer):
    """Recognizer port fed by the STT service's transcription frames."""

    def __init__(self):
        super().__init__()
        self.active = False

    def start(self) -> None:
        self.active = True

    def stop(self) -> None:
        self.active = False

    def feed(self, text: str, is_final: bool) -> None:
        if not self.active or self.listener is None:
            return
        self.listener.on_transcript(TranscriptEvent(text=text, is_final=is_final))

    def fail(self, message: str, fatal: bool = False) -> None:
        if not self.active or self.listener is None:
            return
        self.active = False
        error_cls = RecognizerFatalError if fatal else RecognizerTransientError
        self.listener.on_recognition_error(error_cls("service-not-allowed" if fatal else "network", message))

    def end(self) -> None:
        if not self.active or self.listener is None:
            return
        self.active = False
        self.listener.on_recognition_end()


class PipecatSynthesizer(Synthesizer):
    """Synthesizer port: one pending utterance at a time."""

    def __init__(self, processor: "ConsultationProcessor"):
        self._processor = processor
        self._pending: Optional[asyncio.Future] = None
        self._started = False

    @property
    def pending(self) -> bool:
        return self._pending is not None and not self._pending.done()

    async def speak(self, text: str) -> None:
        pending = asyncio.get_running_loop().create_future()
        self._pending = pending
        self._started = False
        try:
            await self._processor.push_frame(TTSSpeakFrame(text), FrameDirection.DOWNSTREAM)
            await asyncio.wait_for(pending, timeout=self._processor.SPEAK_TIMEOUT_S)
        except asyncio.TimeoutError as e:
            raise SynthesisError(f"speech not finished after {self._processor.SPEAK_TIMEOUT_S:.0f}s") from e
        finally:
            if self._pending is pending:
                self._pending = None

    def cancel(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()
        self._processor.interrupt()

    def started(self) -> None:
        if self.pending:
            self._started = True

    def finish(self) -> None:
        # A stop that arrives before our utterance started belongs to an earlier one.
        if self.pending and self._started:
            self._pending.set_result(None)

    def fail(self, message: str) -> None:
        if self.pending:
            self._pending.set_exception(SynthesisError(message))


class ConsultationProcessor(FrameProcessor):
    """Bridges STT/TTS frames to the capture ports used by the controller.

    Sits between STT and TTS.  Transcription frames are consumed here (they
    only reach the controller, through the recognizer port); everything else
    passes through.
    """

    SPEAK_TIMEOUT_S = 30.0

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.recognizer = PipecatRecognizer()
        self.synthesizer = PipecatSynthesizer(self)
        self._background: set[asyncio.Task] = set()

    async def process_frame(self, frame: Frame, direction: FrameDirection):
        await super().process_frame(frame, direction)

        if isinstance(frame, TranscriptionFrame):
            logger.debug("Transcription: '%s'", frame.text.strip())
            self.recognizer.feed(frame.text, is_final=True)
            return
        if isinstance(frame, InterimTranscriptionFrame):
            self.recognizer.feed(frame.text, is_final=False)
            return

        if isinstance(frame, BotStartedSpeakingFrame):
            self.synthesizer.started()
        elif isinstance(frame, BotStoppedSpeakingFrame):
            self.synthesizer.finish()
        elif isinstance(frame, ErrorFrame):
            self._handle_error(frame)
        elif isinstance(frame, (EndFrame, CancelFrame)):
            self.recognizer.end()

        await self.push_frame(frame, direction)

    def _handle_error(self, frame: ErrorFrame) -> None:
        # Only TTS sits downstream, so an error frame reaching us is a speech failure.
        logger.warning("Pipeline error from %s: %s", getattr(frame, "processor", None), frame.error)
        if self.synthesizer.pending:
            self.synthesizer.fail(str(frame.error))

    async def on_stt_error(self, processor: FrameProcessor, error: ErrorFrame) -> None:
        """``on_error`` handler for the STT service.

        STT errors travel upstream, away from this processor, so they are
        taken from the service's event instead of the frame stream.
        """
        logger.warning("Speech recognition error from %s: %s", processor, error.error)
        self.recognizer.fail(str(error.error), fatal=is_fatal(error))

    def interrupt(self) -> None:
        """Stop whatever TTS is producing; called synchronously from cancel()."""
        task = asyncio.ensure_future(self.push_frame(InterruptionFrame(), FrameDirection.DOWNSTREAM))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
